"""
Application Use Cases — Port Allocation

This module binds scarce service instances ("ports") to paid subscriptions
and lets administrators move or release them.

Core guarantees provided:

- Atomicity: claim, subscription link and audit entry run inside one
  transaction.atomic() block. A failure at any step rolls back all of them.
- Subscription-scoped exclusion: select_for_update() on the subscription row
  serializes concurrent allocations for the same subscription, so the
  "already assigned" check and the claim behave as one critical section.
  The UNIQUE columns on both sides of the port/subscription link back this
  up at the storage layer.
- Compare-and-swap claim: a port is claimed with a conditional UPDATE
  (WHERE status = 'AVAILABLE'). Zero rows updated means a concurrent
  allocation won that port; the loop moves on to the next oldest one.
- Audit ordering: log entries are inserted while the port row lock is held,
  so the log for a port follows commit order.
- Explicit failure signaling: every rejection is a typed exception from
  provisioning.domain.exceptions. Database errors are translated to
  StorageTransient (safe to retry) or StorageFatal (needs reconciliation).

Retrying a successful allocation is rejected with AlreadyAssigned, so callers
may retry after StorageTransient without consuming a second port.
"""

import logging
import uuid
from contextlib import contextmanager
from dataclasses import dataclass

from django.conf import settings
from django.db import DatabaseError, IntegrityError, OperationalError, transaction

from provisioning.application import allocation_log, registry
from provisioning.domain.exceptions import (
    AlreadyAssigned,
    NoAvailablePorts,
    PortNotAssigned,
    PortNotFound,
    StorageFatal,
    StorageTransient,
    SubscriptionNotFound,
    TargetSubscriptionInvalid,
)
from provisioning.models import (
    AllocationAction,
    Port,
    PortStatus,
    Subscription,
    SubscriptionStatus,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_CLAIM_ATTEMPTS = 25


@dataclass(frozen=True)
class ReassignmentResult:
    port_id: uuid.UUID
    old_subscription_id: uuid.UUID
    new_subscription_id: uuid.UUID
    log_entry_id: uuid.UUID


@contextmanager
def _storage_errors(operation, **context):
    """Translates database exceptions escaping the block. Domain exceptions pass through."""
    try:
        yield
    except OperationalError as exc:
        logger.warning("%s not confirmed, transient storage failure: %s %s", operation, context, exc)
        raise StorageTransient(f"{operation} could not be confirmed: {exc}") from exc
    except IntegrityError as exc:
        logger.error("%s violated a storage constraint: %s %s", operation, context, exc)
        raise StorageFatal(f"{operation} violated a storage constraint: {exc}") from exc
    except DatabaseError as exc:
        logger.exception("%s failed in storage: %s", operation, context)
        raise StorageFatal(f"{operation} failed in storage: {exc}") from exc


def _parse_uuid(value):
    """Returns value as a UUID, or None when it is not a well-formed id."""
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None


def _max_claim_attempts():
    return getattr(settings, "PORT_ALLOCATION", {}).get("MAX_CLAIM_ATTEMPTS", DEFAULT_MAX_CLAIM_ATTEMPTS)


def _link_port(subscription_id, port_id):
    """Sets subscription.assigned_port, conditioned on the subscription holding no port."""
    updated = Subscription.objects.filter(
        id=subscription_id,
        assigned_port__isnull=True,
    ).update(assigned_port_id=port_id)
    return updated == 1


def _activate_if_pending(subscription):
    if subscription.status == SubscriptionStatus.PENDING_ALLOCATION:
        Subscription.objects.filter(id=subscription.id).update(status=SubscriptionStatus.ACTIVE)


def _claim_first_available(subscription_id):
    """
    Claims the oldest AVAILABLE port for the subscription and returns its id.

    A lost compare-and-swap excludes that port and re-queries. The loop ends
    when the available set is exhausted (NoAvailablePorts) or after
    MAX_CLAIM_ATTEMPTS lost races (StorageTransient).
    """
    lost = []
    max_attempts = _max_claim_attempts()

    while len(lost) < max_attempts:
        port = registry.find_available(exclude=lost)
        if port is None:
            logger.warning(
                "No available ports: subscription=%s lost_claims=%s",
                subscription_id, len(lost),
            )
            raise NoAvailablePorts(subscription_id)

        if registry.claim(port.id, subscription_id):
            return port.id

        # Another transaction claimed or disabled this port after we read it
        logger.info("Claim lost: port=%s subscription=%s", port.id, subscription_id)
        lost.append(port.id)

    logger.warning(
        "Claim contention limit reached: subscription=%s attempts=%s",
        subscription_id, max_attempts,
    )
    raise StorageTransient(
        f"Allocation for subscription {subscription_id} lost {max_attempts} consecutive claims"
    )


def allocate_port_to_subscription(subscription_id):
    """
    Assigns the oldest available port to a subscription and returns the port.

    Guarantees:
    - At most one successful allocation per subscription, ever
    - No port is claimed by two subscriptions
    - Port status, both link columns and the ASSIGNED log entry commit together
    - Rejections (not found, already assigned, no capacity) write nothing
    """
    if _parse_uuid(subscription_id) is None:
        logger.warning("Allocation rejected, malformed subscription id: %r", subscription_id)
        raise SubscriptionNotFound(subscription_id)

    with _storage_errors("allocate_port_to_subscription", subscription_id=subscription_id):
        with transaction.atomic():
            # Lock the subscription row; concurrent allocations for it wait here
            subscription = (
                Subscription.objects
                .select_for_update()
                .filter(id=subscription_id)
                .first()
            )

            if subscription is None:
                logger.warning("Allocation rejected, subscription not found: subscription=%s", subscription_id)
                raise SubscriptionNotFound(subscription_id)

            if subscription.assigned_port_id is not None:
                logger.info(
                    "Allocation rejected, already assigned: subscription=%s port=%s",
                    subscription_id, subscription.assigned_port_id,
                )
                raise AlreadyAssigned(subscription_id, subscription.assigned_port_id)

            port_id = _claim_first_available(subscription.id)

            if not _link_port(subscription.id, port_id):
                # Raising inside atomic() rolls the claim back with it
                logger.warning(
                    "Subscription link not applied, rolling back claim: subscription=%s port=%s",
                    subscription_id, port_id,
                )
                raise StorageTransient(
                    f"Port {port_id} could not be linked to subscription {subscription_id}"
                )

            _activate_if_pending(subscription)

            allocation_log.append(
                port_id,
                subscription.id,
                AllocationAction.ASSIGNED,
                actor_id=None,
                customer_id=subscription.customer_id,
            )

        port = registry.find_by_id(port_id)

    logger.info("Port allocated: subscription=%s port=%s", subscription_id, port_id)
    return port


def allocate_port_for_order(order_id):
    """
    Entry point for the payment collaborator once an order has been paid.

    Payment success never depends on capacity: when no port is available the
    subscription is marked PENDING_ALLOCATION for an operator to resolve, and
    NoAvailablePorts is re-raised so the caller can report it.
    """
    with _storage_errors("allocate_port_for_order", order_id=order_id):
        subscription_id = (
            Subscription.objects
            .filter(order_id=order_id)
            .values_list("id", flat=True)
            .first()
        )

    if subscription_id is None:
        logger.warning("Allocation rejected, no subscription for order: order=%s", order_id)
        raise SubscriptionNotFound(order_id=order_id)

    try:
        return allocate_port_to_subscription(subscription_id)
    except NoAvailablePorts:
        _mark_pending_allocation(subscription_id)
        raise


def _mark_pending_allocation(subscription_id):
    with _storage_errors("mark_pending_allocation", subscription_id=subscription_id):
        Subscription.objects.filter(
            id=subscription_id,
            assigned_port__isnull=True,
            status=SubscriptionStatus.ACTIVE,
        ).update(status=SubscriptionStatus.PENDING_ALLOCATION)

    logger.warning(
        "Operator action required: no port capacity, subscription=%s is pending allocation",
        subscription_id,
    )


def allocate_pending_subscriptions():
    """
    Retries allocation for every PENDING_ALLOCATION subscription, oldest first.

    Stops at the first NoAvailablePorts. Returns (allocated_ports,
    still_pending_subscription_ids).
    """
    pending_ids = list(
        Subscription.objects
        .filter(status=SubscriptionStatus.PENDING_ALLOCATION, assigned_port__isnull=True)
        .order_by("created_at", "id")
        .values_list("id", flat=True)
    )

    allocated = []
    for index, subscription_id in enumerate(pending_ids):
        try:
            allocated.append(allocate_port_to_subscription(subscription_id))
        except NoAvailablePorts:
            logger.warning(
                "Pending allocation stopped, capacity exhausted: allocated=%s pending=%s",
                len(allocated), len(pending_ids) - index,
            )
            return allocated, pending_ids[index:]
        except AlreadyAssigned:
            # Allocated by a concurrent worker since the pending list was read
            continue

    logger.info("Pending allocation finished: allocated=%s", len(allocated))
    return allocated, []


def reassign_port(port_id, new_subscription_id, actor_id):
    """
    Administrator-driven transfer of an ASSIGNED port to another subscription.

    The target must exist and hold no port; reassigning to the current holder
    is rejected. Detaching the previous subscription, attaching the new one,
    repointing the port and the REASSIGNED log entry commit together.

    Lock order: port row first, then both subscription rows ordered by id.
    """
    parsed_id = _parse_uuid(new_subscription_id)
    if parsed_id is None:
        raise TargetSubscriptionInvalid(new_subscription_id, "not a valid subscription id")
    new_subscription_id = parsed_id

    with _storage_errors("reassign_port", port_id=port_id, new_subscription_id=new_subscription_id):
        with transaction.atomic():
            port = Port.objects.select_for_update().filter(id=port_id).first()

            if port is None:
                raise PortNotFound(port_id)

            if port.status != PortStatus.ASSIGNED:
                logger.warning("Reassignment rejected, port not assigned: port=%s status=%s", port_id, port.status)
                raise PortNotAssigned(port_id, port.status)

            old_subscription_id = port.assigned_subscription_id

            subscriptions = {
                subscription.id: subscription
                for subscription in (
                    Subscription.objects
                    .select_for_update()
                    .filter(id__in=[old_subscription_id, new_subscription_id])
                    .order_by("id")
                )
            }
            new_subscription = subscriptions.get(new_subscription_id)

            if new_subscription is None:
                raise TargetSubscriptionInvalid(new_subscription_id, "subscription does not exist")

            if new_subscription_id == old_subscription_id:
                raise TargetSubscriptionInvalid(new_subscription_id, "subscription already holds this port")

            if new_subscription.assigned_port_id is not None:
                raise TargetSubscriptionInvalid(
                    new_subscription_id,
                    f"subscription already holds port {new_subscription.assigned_port_id}",
                )

            # Detach first so the UNIQUE column on assigned_port is never doubled
            detached = Subscription.objects.filter(
                id=old_subscription_id,
                assigned_port_id=port.id,
            ).update(assigned_port=None)

            if not detached:
                logger.error(
                    "Inconsistent link found during reassignment: port=%s references subscription=%s "
                    "but the subscription does not reference the port",
                    port.id, old_subscription_id,
                )
                raise StorageFatal(
                    f"Port {port.id} and subscription {old_subscription_id} disagree on their link; "
                    "reconcile manually before reassigning"
                )

            if not _link_port(new_subscription_id, port.id):
                raise StorageTransient(
                    f"Port {port.id} could not be linked to subscription {new_subscription_id}"
                )

            if not registry.repoint(port.id, old_subscription_id, new_subscription_id):
                raise StorageTransient(f"Port {port.id} could not be repointed")

            _activate_if_pending(new_subscription)

            entry = allocation_log.append(
                port.id,
                new_subscription_id,
                AllocationAction.REASSIGNED,
                actor_id=actor_id,
                customer_id=new_subscription.customer_id,
            )

    logger.info(
        "Port reassigned: port=%s from=%s to=%s actor=%s",
        port_id, old_subscription_id, new_subscription_id, actor_id,
    )
    return ReassignmentResult(
        port_id=port.id,
        old_subscription_id=old_subscription_id,
        new_subscription_id=new_subscription_id,
        log_entry_id=entry.id,
    )


def release_port(port_id, actor_id=None):
    """Returns an ASSIGNED port to AVAILABLE and clears its subscription link."""
    with _storage_errors("release_port", port_id=port_id):
        with transaction.atomic():
            port = Port.objects.select_for_update().filter(id=port_id).first()

            if port is None:
                raise PortNotFound(port_id)

            if port.status != PortStatus.ASSIGNED:
                logger.warning("Release rejected, port not assigned: port=%s status=%s", port_id, port.status)
                raise PortNotAssigned(port_id, port.status)

            subscription_id = port.assigned_subscription_id

            if not registry.release(port.id):
                raise StorageTransient(f"Port {port.id} could not be released")

            Subscription.objects.filter(id=subscription_id, assigned_port_id=port.id).update(assigned_port=None)

            allocation_log.append(port.id, subscription_id, AllocationAction.RELEASED, actor_id=actor_id)

        port.refresh_from_db()

    logger.info("Port released: port=%s subscription=%s actor=%s", port_id, subscription_id, actor_id)
    return port


def get_subscription_port(subscription_id):
    """The port shown to the customer on their dashboard, or None while pending."""
    if _parse_uuid(subscription_id) is None:
        raise SubscriptionNotFound(subscription_id)

    subscription = Subscription.objects.filter(id=subscription_id).first()
    if subscription is None:
        raise SubscriptionNotFound(subscription_id)
    if subscription.assigned_port_id is None:
        return None
    return registry.find_by_id(subscription.assigned_port_id)


def available_port_count():
    return registry.count_available()


def has_available_ports():
    return available_port_count() > 0
