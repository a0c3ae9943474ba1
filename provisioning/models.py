"""
Persistence Models — Port Provisioning (Django ORM)

This module defines the persistence layer for allocating service instances
("ports") to paid customer subscriptions.

Key architectural decisions:

- Port is the single shared mutable resource. Its status moves to ASSIGNED
  only through a conditional UPDATE issued by the allocation service.
- Port.assigned_subscription and Subscription.assigned_port are both
  one-to-one (UNIQUE) columns, so the database itself rejects a second port
  for the same subscription and a second subscription for the same port.
- A CHECK constraint ties the port status to its subscription reference:
  a port references a subscription if and only if it is ASSIGNED.
- PortAllocationLog is append-only. Updates and deletions raise.

Architectural note:

Subscription is owned by the surrounding billing code. Only the fields the
allocation core reads or writes are modelled here.
"""

import uuid

from django.db import models
from django.db.models import Q
from django.utils import timezone


class PortStatus(models.TextChoices):
    AVAILABLE = "AVAILABLE", "Available"
    ASSIGNED = "ASSIGNED", "Assigned"
    DISABLED = "DISABLED", "Disabled"
    RESERVED = "RESERVED", "Reserved"


class SubscriptionStatus(models.TextChoices):
    ACTIVE = "ACTIVE", "Active"
    PENDING_ALLOCATION = "PENDING_ALLOCATION", "Pending allocation"
    EXPIRED = "EXPIRED", "Expired"
    CANCELLED = "CANCELLED", "Cancelled"


class AllocationAction(models.TextChoices):
    ASSIGNED = "ASSIGNED", "Assigned"
    REASSIGNED = "REASSIGNED", "Reassigned"
    RELEASED = "RELEASED", "Released"


class Subscription(models.Model):
    """
    A customer's paid plan term.

    customer_id, plan_id and order_id are opaque references into the billing
    side of the portal. assigned_port is written only by the allocation
    service.
    """

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    customer_id = models.CharField(max_length=64, db_index=True)
    plan_id = models.CharField(max_length=64)
    order_id = models.CharField(max_length=64, unique=True, null=True, blank=True)

    status = models.CharField(
        max_length=20,
        choices=SubscriptionStatus.choices,
        default=SubscriptionStatus.ACTIVE,
    )

    assigned_port = models.OneToOneField(
        "Port",
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="+",
    )

    created_at = models.DateTimeField(default=timezone.now)

    class Meta:
        db_table = "subscriptions"
        ordering = ["created_at"]

    def __str__(self):
        return f"Subscription {self.id} ({self.status})"


class Port(models.Model):
    """
    One allocatable service instance.

    created_at has a default rather than auto_now_add so that imports can
    preserve the original creation order, which drives FIFO allocation.
    """

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    instance_url = models.CharField(max_length=255, unique=True)
    port_number = models.PositiveIntegerField()
    server_region = models.CharField(max_length=64, blank=True, default="")
    notes = models.TextField(blank=True, default="")

    status = models.CharField(
        max_length=20,
        choices=PortStatus.choices,
        default=PortStatus.AVAILABLE,
    )

    # UNIQUE: at most one port may reference a given subscription.
    assigned_subscription = models.OneToOneField(
        Subscription,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="+",
    )
    assigned_at = models.DateTimeField(null=True, blank=True)

    created_at = models.DateTimeField(default=timezone.now)

    class Meta:
        db_table = "ports"
        ordering = ["created_at", "id"]
        indexes = [
            models.Index(fields=["status", "created_at"], name="idx_ports_status_created"),
        ]
        constraints = [
            models.CheckConstraint(
                condition=(
                    Q(status=PortStatus.ASSIGNED, assigned_subscription__isnull=False)
                    | (~Q(status=PortStatus.ASSIGNED) & Q(assigned_subscription__isnull=True))
                ),
                name="ports_assigned_iff_subscription",
            ),
        ]

    def __str__(self):
        return f"Port {self.instance_url}:{self.port_number} ({self.status})"


class PortAllocationLog(models.Model):
    """
    Immutable audit record of one allocation state change.

    performed_by is null for system-triggered actions (payment webhook)
    and carries the administrator's id for manual reassignment or release.
    """

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    port = models.ForeignKey(
        Port,
        on_delete=models.PROTECT,
        related_name="allocation_logs",
    )
    subscription = models.ForeignKey(
        Subscription,
        on_delete=models.PROTECT,
        related_name="allocation_logs",
    )
    customer_id = models.CharField(max_length=64, blank=True, default="")
    action = models.CharField(max_length=20, choices=AllocationAction.choices)
    performed_by = models.CharField(max_length=64, null=True, blank=True)
    timestamp = models.DateTimeField(default=timezone.now)

    class Meta:
        db_table = "port_allocation_logs"
        ordering = ["timestamp", "id"]
        indexes = [
            models.Index(fields=["port", "timestamp"], name="idx_alloc_log_port"),
            models.Index(fields=["subscription", "timestamp"], name="idx_alloc_log_subscription"),
            models.Index(fields=["action"], name="idx_alloc_log_action"),
        ]

    def __str__(self):
        return f"{self.action} port={self.port_id} subscription={self.subscription_id} at {self.timestamp}"

    def save(self, *args, **kwargs):
        if not self._state.adding:
            raise ValueError("Allocation log entries are append-only. Updates are not allowed.")
        super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise ValueError("Allocation log entries are append-only. Deletions are not allowed.")
