from datetime import timedelta
from unittest import mock

from django.db import IntegrityError, OperationalError
from django.test import TestCase, override_settings

from provisioning.application import allocation_log, registry, use_cases
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
    PortAllocationLog,
    PortStatus,
    Subscription,
    SubscriptionStatus,
)
from provisioning.tests.factories import make_port, make_subscription


class LinkConsistencyMixin:
    def assertLinksConsistent(self):
        """A port references a subscription iff that subscription references the port."""
        for port in Port.objects.all():
            if port.assigned_subscription_id is None:
                self.assertFalse(Subscription.objects.filter(assigned_port_id=port.id).exists())
            else:
                self.assertEqual(port.status, PortStatus.ASSIGNED)
                subscription = Subscription.objects.get(id=port.assigned_subscription_id)
                self.assertEqual(subscription.assigned_port_id, port.id)

        for subscription in Subscription.objects.exclude(assigned_port=None):
            port = Port.objects.get(id=subscription.assigned_port_id)
            self.assertEqual(port.assigned_subscription_id, subscription.id)


class AllocatePortToSubscriptionTest(LinkConsistencyMixin, TestCase):
    """
    Tests for use_cases.allocate_port_to_subscription.

    Each test runs inside a transaction that is rolled back automatically;
    the service's own atomic() blocks become savepoints.
    """

    def setUp(self):
        self.older_port = make_port(1)
        self.newer_port = make_port(2)
        self.subscription = make_subscription()

    def test_allocates_oldest_available_port(self):
        port = use_cases.allocate_port_to_subscription(self.subscription.id)

        self.assertEqual(port.id, self.older_port.id)
        self.assertEqual(port.status, PortStatus.ASSIGNED)
        self.assertEqual(port.assigned_subscription_id, self.subscription.id)
        self.assertIsNotNone(port.assigned_at)

        self.newer_port.refresh_from_db()
        self.assertEqual(self.newer_port.status, PortStatus.AVAILABLE)

        self.subscription.refresh_from_db()
        self.assertEqual(self.subscription.assigned_port_id, self.older_port.id)
        self.assertLinksConsistent()

    def test_fifo_follows_creation_time_not_insert_order(self):
        latecomer = make_port(0)

        port = use_cases.allocate_port_to_subscription(self.subscription.id)

        self.assertEqual(port.id, latecomer.id)

    def test_writes_one_assigned_log_entry_without_actor(self):
        port = use_cases.allocate_port_to_subscription(self.subscription.id)

        entries = list(allocation_log.find_by_port(port.id))
        self.assertEqual(len(entries), 1)
        self.assertEqual(entries[0].action, AllocationAction.ASSIGNED)
        self.assertEqual(entries[0].subscription_id, self.subscription.id)
        self.assertEqual(entries[0].customer_id, "customer-1")
        self.assertIsNone(entries[0].performed_by)

    def test_repeated_calls_assign_exactly_once(self):
        first = use_cases.allocate_port_to_subscription(self.subscription.id)

        for _ in range(3):
            with self.assertRaises(AlreadyAssigned) as ctx:
                use_cases.allocate_port_to_subscription(self.subscription.id)
            self.assertEqual(ctx.exception.port_id, first.id)

        self.assertEqual(Port.objects.filter(status=PortStatus.ASSIGNED).count(), 1)
        self.assertEqual(PortAllocationLog.objects.count(), 1)

        self.newer_port.refresh_from_db()
        self.assertEqual(self.newer_port.status, PortStatus.AVAILABLE)

        self.subscription.refresh_from_db()
        self.assertEqual(self.subscription.assigned_port_id, first.id)

    def test_unknown_subscription(self):
        unknown = Subscription(customer_id="x", plan_id="y").id

        with self.assertRaises(SubscriptionNotFound) as ctx:
            use_cases.allocate_port_to_subscription(unknown)

        self.assertEqual(ctx.exception.code, "SUBSCRIPTION_NOT_FOUND")
        self.assertEqual(registry.count_available(), 2)

    def test_malformed_subscription_id_is_not_found(self):
        with self.assertRaises(SubscriptionNotFound) as ctx:
            use_cases.allocate_port_to_subscription("not-a-uuid")

        self.assertEqual(ctx.exception.subscription_id, "not-a-uuid")
        self.assertEqual(registry.count_available(), 2)
        self.assertFalse(PortAllocationLog.objects.exists())

    def test_exhaustion_mutates_nothing(self):
        use_cases.allocate_port_to_subscription(make_subscription(customer_id="other").id)
        registry.set_status(self.newer_port.id, PortStatus.DISABLED)
        make_port(3, status=PortStatus.RESERVED)

        ports_before = list(Port.objects.order_by("id").values())
        subscriptions_before = list(Subscription.objects.order_by("id").values())
        log_count_before = PortAllocationLog.objects.count()

        with self.assertRaises(NoAvailablePorts) as ctx:
            use_cases.allocate_port_to_subscription(self.subscription.id)

        self.assertEqual(ctx.exception.code, "NO_AVAILABLE_PORTS")
        self.assertEqual(list(Port.objects.order_by("id").values()), ports_before)
        self.assertEqual(list(Subscription.objects.order_by("id").values()), subscriptions_before)
        self.assertEqual(PortAllocationLog.objects.count(), log_count_before)

    def test_distinct_subscriptions_never_share_a_port(self):
        subscriptions = [self.subscription, make_subscription(customer_id="customer-2")]

        ports = [use_cases.allocate_port_to_subscription(s.id) for s in subscriptions]

        self.assertNotEqual(ports[0].id, ports[1].id)
        with self.assertRaises(NoAvailablePorts):
            use_cases.allocate_port_to_subscription(make_subscription(customer_id="customer-3").id)
        self.assertLinksConsistent()

    def test_lost_claim_moves_on_to_next_port(self):
        rival = make_subscription(customer_id="rival")
        real_claim = registry.claim
        raced = []

        def claim_after_rival(port_id, subscription_id, assigned_at=None):
            # A concurrent allocation for another subscription wins the first port
            if not raced:
                raced.append(port_id)
                real_claim(port_id, rival.id)
                Subscription.objects.filter(id=rival.id).update(assigned_port_id=port_id)
            return real_claim(port_id, subscription_id, assigned_at)

        with mock.patch("provisioning.application.registry.claim", side_effect=claim_after_rival):
            port = use_cases.allocate_port_to_subscription(self.subscription.id)

        self.assertEqual(raced, [self.older_port.id])
        self.assertEqual(port.id, self.newer_port.id)

        self.older_port.refresh_from_db()
        self.assertEqual(self.older_port.assigned_subscription_id, rival.id)
        self.assertLinksConsistent()

    def test_lost_claims_until_exhausted(self):
        with mock.patch("provisioning.application.registry.claim", return_value=False) as claim:
            with self.assertRaises(NoAvailablePorts):
                use_cases.allocate_port_to_subscription(self.subscription.id)

        self.assertEqual(claim.call_count, 2)

    @override_settings(PORT_ALLOCATION={"MAX_CLAIM_ATTEMPTS": 1})
    def test_contention_limit_is_transient(self):
        with mock.patch("provisioning.application.registry.claim", return_value=False):
            with self.assertRaises(StorageTransient):
                use_cases.allocate_port_to_subscription(self.subscription.id)

        self.subscription.refresh_from_db()
        self.assertIsNone(self.subscription.assigned_port_id)

    def test_storage_timeout_is_transient_and_retry_is_safe(self):
        with mock.patch(
            "provisioning.application.registry.claim",
            side_effect=OperationalError("database is locked"),
        ):
            with self.assertRaises(StorageTransient) as ctx:
                use_cases.allocate_port_to_subscription(self.subscription.id)

        self.assertEqual(ctx.exception.code, "STORAGE_TRANSIENT")
        self.assertEqual(registry.count_available(), 2)

        port = use_cases.allocate_port_to_subscription(self.subscription.id)
        self.assertEqual(port.id, self.older_port.id)

    def test_failed_link_rolls_back_claim(self):
        with mock.patch("provisioning.application.use_cases._link_port", return_value=False):
            with self.assertRaises(StorageTransient):
                use_cases.allocate_port_to_subscription(self.subscription.id)

        self.older_port.refresh_from_db()
        self.assertEqual(self.older_port.status, PortStatus.AVAILABLE)
        self.assertIsNone(self.older_port.assigned_subscription_id)
        self.assertEqual(PortAllocationLog.objects.count(), 0)
        self.assertLinksConsistent()

    def test_integrity_violation_is_fatal_and_logged(self):
        with mock.patch(
            "provisioning.application.allocation_log.append",
            side_effect=IntegrityError("constraint failed"),
        ):
            with self.assertLogs("provisioning.application.use_cases", level="ERROR"):
                with self.assertRaises(StorageFatal):
                    use_cases.allocate_port_to_subscription(self.subscription.id)

        self.older_port.refresh_from_db()
        self.assertEqual(self.older_port.status, PortStatus.AVAILABLE)
        self.subscription.refresh_from_db()
        self.assertIsNone(self.subscription.assigned_port_id)

    def test_pending_subscription_becomes_active(self):
        Subscription.objects.filter(id=self.subscription.id).update(status=SubscriptionStatus.PENDING_ALLOCATION)

        use_cases.allocate_port_to_subscription(self.subscription.id)

        self.subscription.refresh_from_db()
        self.assertEqual(self.subscription.status, SubscriptionStatus.ACTIVE)


class AllocatePortForOrderTest(TestCase):
    def setUp(self):
        self.subscription = make_subscription(order_id="order-100")

    def test_allocates_for_paid_order(self):
        port = make_port(1)

        allocated = use_cases.allocate_port_for_order("order-100")

        self.assertEqual(allocated.id, port.id)

    def test_unknown_order(self):
        with self.assertRaises(SubscriptionNotFound) as ctx:
            use_cases.allocate_port_for_order("order-missing")

        self.assertEqual(ctx.exception.order_id, "order-missing")
        self.assertIsNone(ctx.exception.subscription_id)
        self.assertEqual(str(ctx.exception), "No subscription found for order order-missing")

    def test_no_capacity_marks_subscription_pending(self):
        with self.assertLogs("provisioning.application.use_cases", level="WARNING") as logs:
            with self.assertRaises(NoAvailablePorts):
                use_cases.allocate_port_for_order("order-100")

        self.subscription.refresh_from_db()
        self.assertEqual(self.subscription.status, SubscriptionStatus.PENDING_ALLOCATION)
        self.assertIsNone(self.subscription.assigned_port_id)
        self.assertTrue(any("Operator action required" in line for line in logs.output))


class AllocatePendingSubscriptionsTest(TestCase):
    def setUp(self):
        self.first = make_subscription(
            customer_id="c1",
            status=SubscriptionStatus.PENDING_ALLOCATION,
        )
        self.second = make_subscription(
            customer_id="c2",
            status=SubscriptionStatus.PENDING_ALLOCATION,
            created_at=self.first.created_at + timedelta(seconds=1),
        )

    def test_allocates_oldest_pending_first_and_stops_when_exhausted(self):
        port = make_port(1)

        allocated, pending = use_cases.allocate_pending_subscriptions()

        self.assertEqual([p.id for p in allocated], [port.id])
        self.assertEqual(pending, [self.second.id])

        self.first.refresh_from_db()
        self.assertEqual(self.first.assigned_port_id, port.id)
        self.assertEqual(self.first.status, SubscriptionStatus.ACTIVE)

        self.second.refresh_from_db()
        self.assertEqual(self.second.status, SubscriptionStatus.PENDING_ALLOCATION)

    def test_allocates_all_when_capacity_allows(self):
        make_port(1)
        make_port(2)

        allocated, pending = use_cases.allocate_pending_subscriptions()

        self.assertEqual(len(allocated), 2)
        self.assertEqual(pending, [])


class ReassignPortTest(LinkConsistencyMixin, TestCase):
    def setUp(self):
        self.port = make_port(1)
        self.spare = make_port(2)
        self.holder = make_subscription(customer_id="customer-1")
        self.target = make_subscription(customer_id="customer-2")
        use_cases.allocate_port_to_subscription(self.holder.id)

    def test_moves_port_and_logs_actor(self):
        result = use_cases.reassign_port(self.port.id, self.target.id, "admin-7")

        self.assertEqual(result.old_subscription_id, self.holder.id)
        self.assertEqual(result.new_subscription_id, self.target.id)

        self.holder.refresh_from_db()
        self.target.refresh_from_db()
        self.port.refresh_from_db()
        self.assertIsNone(self.holder.assigned_port_id)
        self.assertEqual(self.target.assigned_port_id, self.port.id)
        self.assertEqual(self.port.assigned_subscription_id, self.target.id)
        self.assertEqual(self.port.status, PortStatus.ASSIGNED)

        reassigned = PortAllocationLog.objects.filter(action=AllocationAction.REASSIGNED)
        self.assertEqual(reassigned.count(), 1)
        entry = reassigned.get()
        self.assertEqual(entry.id, result.log_entry_id)
        self.assertEqual(entry.port_id, self.port.id)
        self.assertEqual(entry.subscription_id, self.target.id)
        self.assertEqual(entry.customer_id, "customer-2")
        self.assertEqual(entry.performed_by, "admin-7")

        self.assertEqual(
            [e.action for e in allocation_log.find_by_port(self.port.id)],
            [AllocationAction.ASSIGNED, AllocationAction.REASSIGNED],
        )
        self.assertLinksConsistent()

    def test_accepts_string_subscription_id(self):
        use_cases.reassign_port(self.port.id, str(self.target.id), "admin-7")

        self.target.refresh_from_db()
        self.assertEqual(self.target.assigned_port_id, self.port.id)

    def test_unassigned_port(self):
        with self.assertRaises(PortNotAssigned) as ctx:
            use_cases.reassign_port(self.spare.id, self.target.id, "admin-7")

        self.assertEqual(ctx.exception.code, "PORT_NOT_ASSIGNED")
        self.assertEqual(ctx.exception.status, PortStatus.AVAILABLE)

    def test_missing_port(self):
        missing = Port(instance_url="x", port_number=1).id

        with self.assertRaises(PortNotFound):
            use_cases.reassign_port(missing, self.target.id, "admin-7")

    def test_missing_target(self):
        missing = Subscription(customer_id="x", plan_id="y").id

        with self.assertRaises(TargetSubscriptionInvalid):
            use_cases.reassign_port(self.port.id, missing, "admin-7")

        self.holder.refresh_from_db()
        self.assertEqual(self.holder.assigned_port_id, self.port.id)

    def test_malformed_target_id(self):
        with self.assertRaises(TargetSubscriptionInvalid):
            use_cases.reassign_port(self.port.id, "not-a-uuid", "admin-7")

    def test_target_already_holding_a_port(self):
        use_cases.allocate_port_to_subscription(self.target.id)

        with self.assertRaises(TargetSubscriptionInvalid) as ctx:
            use_cases.reassign_port(self.port.id, self.target.id, "admin-7")

        self.assertEqual(ctx.exception.code, "TARGET_SUBSCRIPTION_INVALID")
        self.assertFalse(PortAllocationLog.objects.filter(action=AllocationAction.REASSIGNED).exists())
        self.assertLinksConsistent()

    def test_target_is_current_holder(self):
        with self.assertRaises(TargetSubscriptionInvalid):
            use_cases.reassign_port(self.port.id, self.holder.id, "admin-7")

    def test_failure_partway_leaves_original_link(self):
        with mock.patch("provisioning.application.registry.repoint", return_value=False):
            with self.assertRaises(StorageTransient):
                use_cases.reassign_port(self.port.id, self.target.id, "admin-7")

        self.holder.refresh_from_db()
        self.target.refresh_from_db()
        self.assertEqual(self.holder.assigned_port_id, self.port.id)
        self.assertIsNone(self.target.assigned_port_id)
        self.assertLinksConsistent()

    def test_broken_link_is_fatal_and_changes_nothing(self):
        # Port still points at the holder, the holder no longer points back
        Subscription.objects.filter(id=self.holder.id).update(assigned_port=None)

        with self.assertLogs("provisioning.application.use_cases", level="ERROR"):
            with self.assertRaises(StorageFatal) as ctx:
                use_cases.reassign_port(self.port.id, self.target.id, "admin-7")

        self.assertEqual(ctx.exception.code, "STORAGE_FATAL")
        self.port.refresh_from_db()
        self.target.refresh_from_db()
        self.assertEqual(self.port.assigned_subscription_id, self.holder.id)
        self.assertIsNone(self.target.assigned_port_id)
        self.assertFalse(PortAllocationLog.objects.filter(action=AllocationAction.REASSIGNED).exists())


class ReleasePortTest(LinkConsistencyMixin, TestCase):
    def setUp(self):
        self.port = make_port(1)
        self.subscription = make_subscription()
        use_cases.allocate_port_to_subscription(self.subscription.id)

    def test_release_returns_port_to_pool(self):
        port = use_cases.release_port(self.port.id, actor_id="admin-1")

        self.assertEqual(port.status, PortStatus.AVAILABLE)
        self.assertIsNone(port.assigned_subscription_id)
        self.assertIsNone(port.assigned_at)

        self.subscription.refresh_from_db()
        self.assertIsNone(self.subscription.assigned_port_id)

        entry = allocation_log.find_by_port(self.port.id).last()
        self.assertEqual(entry.action, AllocationAction.RELEASED)
        self.assertEqual(entry.subscription_id, self.subscription.id)
        self.assertEqual(entry.performed_by, "admin-1")
        self.assertLinksConsistent()

    def test_released_port_can_be_allocated_again(self):
        use_cases.release_port(self.port.id)
        other = make_subscription(customer_id="customer-2")

        port = use_cases.allocate_port_to_subscription(other.id)

        self.assertEqual(port.id, self.port.id)
        self.assertEqual(allocation_log.find_by_port(self.port.id).count(), 3)

    def test_release_of_available_port(self):
        use_cases.release_port(self.port.id)

        with self.assertRaises(PortNotAssigned):
            use_cases.release_port(self.port.id)


class SubscriptionPortLookupTest(TestCase):
    def test_pending_subscription_has_no_port(self):
        subscription = make_subscription()

        self.assertIsNone(use_cases.get_subscription_port(subscription.id))

    def test_assigned_subscription_returns_port(self):
        port = make_port(1)
        subscription = make_subscription()
        use_cases.allocate_port_to_subscription(subscription.id)

        self.assertEqual(use_cases.get_subscription_port(subscription.id).id, port.id)

    def test_availability(self):
        self.assertFalse(use_cases.has_available_ports())
        make_port(1)
        self.assertTrue(use_cases.has_available_ports())
        self.assertEqual(use_cases.available_port_count(), 1)

    def test_malformed_subscription_id_is_not_found(self):
        with self.assertRaises(SubscriptionNotFound):
            use_cases.get_subscription_port("not-a-uuid")
