"""
Port Registry — storage-level operations on Port rows.

The registry owns two kinds of operations:

- Queries (find_available, find_by_id, ...) which never write.
- Conditional updates (claim, release, repoint) which are compare-and-swap
  operations expressed as a single UPDATE ... WHERE status = <expected>.
  The number of rows updated is the outcome: zero means another transaction
  changed the row first, and nothing was written.

The registry does not open transactions around the conditional updates.
Callers in the allocation service run them inside transaction.atomic() so
the claim, the subscription link and the audit entry commit together.

Operator-facing helpers (create_port, bulk_import, update_port, set_status,
delete_port)
never produce the ASSIGNED status; only claim() does.
"""

import logging
from datetime import timedelta

from django.db import IntegrityError, transaction
from django.utils import timezone

from provisioning.domain.exceptions import (
    DuplicatePort,
    InvalidPortData,
    InvalidPortStatus,
    PortNotFound,
)
from provisioning.models import Port, PortStatus

logger = logging.getLogger(__name__)

OPERATOR_STATUSES = (PortStatus.AVAILABLE, PortStatus.DISABLED, PortStatus.RESERVED)

IMPORT_FIELDS = ("instance_url", "port_number", "server_region", "notes", "status")

EDITABLE_FIELDS = ("instance_url", "port_number", "server_region", "notes")


# Queries


def find_all():
    return Port.objects.order_by("created_at", "id")


def find_by_id(port_id):
    return Port.objects.filter(id=port_id).first()


def find_by_status(status):
    return Port.objects.filter(status=status).order_by("created_at", "id")


def find_by_subscription(subscription_id):
    return Port.objects.filter(assigned_subscription_id=subscription_id).first()


def find_available(exclude=()):
    """
    Returns the oldest AVAILABLE port, or None.

    Ports are handed out first-created, first-assigned. exclude lists port
    ids the caller already lost a claim on during the current allocation.
    """
    queryset = Port.objects.filter(status=PortStatus.AVAILABLE)
    if exclude:
        queryset = queryset.exclude(id__in=list(exclude))
    return queryset.order_by("created_at", "id").first()


def count_available():
    return Port.objects.filter(status=PortStatus.AVAILABLE).count()


# Conditional updates


def claim(port_id, subscription_id, assigned_at=None):
    """
    AVAILABLE -> ASSIGNED, conditioned on the port still being AVAILABLE.

    Returns False, with no state change, if the port was claimed (or
    disabled) by another transaction in the meantime.
    """
    updated = Port.objects.filter(id=port_id, status=PortStatus.AVAILABLE).update(
        status=PortStatus.ASSIGNED,
        assigned_subscription_id=subscription_id,
        assigned_at=assigned_at or timezone.now(),
    )
    return updated == 1


def release(port_id):
    """ASSIGNED -> AVAILABLE, clearing the subscription reference and assignment time."""
    updated = Port.objects.filter(id=port_id, status=PortStatus.ASSIGNED).update(
        status=PortStatus.AVAILABLE,
        assigned_subscription_id=None,
        assigned_at=None,
    )
    return updated == 1


def repoint(port_id, from_subscription_id, to_subscription_id, assigned_at=None):
    """Moves an ASSIGNED port to another subscription, conditioned on its current holder."""
    updated = Port.objects.filter(
        id=port_id,
        status=PortStatus.ASSIGNED,
        assigned_subscription_id=from_subscription_id,
    ).update(
        assigned_subscription_id=to_subscription_id,
        assigned_at=assigned_at or timezone.now(),
    )
    return updated == 1


# Operator helpers


def _clean_port_number(value):
    try:
        port_number = int(value)
    except (TypeError, ValueError):
        raise InvalidPortData(f"port_number must be an integer, got {value!r}")
    if not 1 <= port_number <= 65535:
        raise InvalidPortData(f"port_number must be between 1 and 65535, got {port_number}")
    return port_number


def create_port(instance_url, port_number, status=PortStatus.AVAILABLE, server_region="", notes="", created_at=None):
    """
    Registers a new port. Only AVAILABLE, DISABLED and RESERVED are accepted;
    ASSIGNED is reachable only through the allocation service.
    """
    instance_url = (instance_url or "").strip()
    if not instance_url:
        raise InvalidPortData("instance_url is required")

    port_number = _clean_port_number(port_number)

    status = status or PortStatus.AVAILABLE
    if status not in OPERATOR_STATUSES:
        raise InvalidPortData(
            f"status must be one of {', '.join(OPERATOR_STATUSES)}, got {status!r}"
        )

    if Port.objects.filter(instance_url=instance_url).exists():
        raise DuplicatePort(instance_url)

    try:
        with transaction.atomic():
            port = Port.objects.create(
                instance_url=instance_url,
                port_number=port_number,
                status=status,
                server_region=server_region or "",
                notes=notes or "",
                created_at=created_at or timezone.now(),
            )
    except IntegrityError:
        # Lost a race against a concurrent import of the same URL
        raise DuplicatePort(instance_url)

    logger.info("Port created: id=%s url=%s status=%s", port.id, instance_url, status)
    return port


def bulk_import(rows):
    """
    Creates one port per row. Rows are independent: a bad row is reported
    and skipped, it does not abort the import.

    Returns (imported_ports, errors) where errors maps row index to message.
    """
    imported = []
    errors = {}
    # Strictly increasing creation times keep file order as allocation order
    started_at = timezone.now()

    for index, row in enumerate(rows):
        fields = {key: row[key] for key in IMPORT_FIELDS if row.get(key) not in (None, "")}
        fields.setdefault("instance_url", None)
        fields.setdefault("port_number", None)
        try:
            imported.append(create_port(created_at=started_at + timedelta(microseconds=index), **fields))
        except (DuplicatePort, InvalidPortData) as exc:
            errors[index] = str(exc)

    logger.info("Port import finished: imported=%s failed=%s", len(imported), len(errors))
    return imported, errors


def update_port(port_id, **fields):
    """
    Edits the descriptive fields of a port: instance_url, port_number,
    server_region and notes. Status and assignment are left alone, they
    change only through set_status and the allocation service.
    """
    unknown = set(fields) - set(EDITABLE_FIELDS)
    if unknown:
        raise InvalidPortData(f"fields can not be edited: {', '.join(sorted(unknown))}")

    if "instance_url" in fields:
        fields["instance_url"] = (fields["instance_url"] or "").strip()
        if not fields["instance_url"]:
            raise InvalidPortData("instance_url is required")
    if "port_number" in fields:
        fields["port_number"] = _clean_port_number(fields["port_number"])
    for key in ("server_region", "notes"):
        if key in fields:
            fields[key] = fields[key] or ""

    try:
        with transaction.atomic():
            port = Port.objects.select_for_update().filter(id=port_id).first()
            if port is None:
                raise PortNotFound(port_id)

            instance_url = fields.get("instance_url")
            if instance_url and Port.objects.filter(instance_url=instance_url).exclude(id=port_id).exists():
                raise DuplicatePort(instance_url)

            for key, value in fields.items():
                setattr(port, key, value)
            if fields:
                port.save(update_fields=list(fields))
    except IntegrityError:
        raise DuplicatePort(fields.get("instance_url"))

    logger.info("Port updated: id=%s fields=%s", port_id, ",".join(sorted(fields)))
    return port


def set_status(port_id, status):
    """Operator toggle between AVAILABLE, DISABLED and RESERVED."""
    with transaction.atomic():
        port = Port.objects.select_for_update().filter(id=port_id).first()
        if port is None:
            raise PortNotFound(port_id)

        if status not in OPERATOR_STATUSES or port.status == PortStatus.ASSIGNED:
            raise InvalidPortStatus(port_id, port.status, status)

        port.status = status
        port.save(update_fields=["status"])

    logger.info("Port status changed: id=%s status=%s", port_id, status)
    return port


def delete_port(port_id):
    """Deletes an unassigned port that has no allocation history."""
    with transaction.atomic():
        port = Port.objects.select_for_update().filter(id=port_id).first()
        if port is None:
            raise PortNotFound(port_id)

        if port.status == PortStatus.ASSIGNED:
            raise InvalidPortStatus(port_id, port.status, "DELETED")

        # Audit history is permanent; such ports can only be disabled.
        if port.allocation_logs.exists():
            raise InvalidPortStatus(port_id, port.status, "DELETED")

        port.delete()

    logger.info("Port deleted: id=%s", port_id)
