"""
Allocation Log — append-only audit trail of port assignments.

Entries are written by the allocation service inside the same transaction
as the state change they describe, while that transaction still holds the
port row lock. Entries for one port are therefore written in the order the
changes commit, and chronological ordering by timestamp reflects it.
"""

import csv

from provisioning.models import PortAllocationLog, Subscription

EXPORT_COLUMNS = (
    "timestamp",
    "action",
    "port_id",
    "instance_url",
    "port_number",
    "subscription_id",
    "customer_id",
    "performed_by",
)


def append(port_id, subscription_id, action, actor_id=None, customer_id=None):
    if customer_id is None:
        customer_id = (
            Subscription.objects.filter(id=subscription_id)
            .values_list("customer_id", flat=True)
            .first()
        ) or ""

    return PortAllocationLog.objects.create(
        port_id=port_id,
        subscription_id=subscription_id,
        customer_id=customer_id,
        action=action,
        performed_by=actor_id,
    )


def find_by_port(port_id):
    return PortAllocationLog.objects.filter(port_id=port_id).order_by("timestamp", "id")


def find_by_subscription(subscription_id):
    return PortAllocationLog.objects.filter(subscription_id=subscription_id).order_by("timestamp", "id")


def find_all(
    action=None,
    port_id=None,
    subscription_id=None,
    customer_id=None,
    performed_by=None,
    date_from=None,
    date_to=None,
):
    """Filtered audit listing, newest first."""
    queryset = PortAllocationLog.objects.select_related("port")

    if action:
        queryset = queryset.filter(action=action)
    if port_id:
        queryset = queryset.filter(port_id=port_id)
    if subscription_id:
        queryset = queryset.filter(subscription_id=subscription_id)
    if customer_id:
        queryset = queryset.filter(customer_id=customer_id)
    if performed_by:
        queryset = queryset.filter(performed_by=performed_by)
    if date_from:
        queryset = queryset.filter(timestamp__date__gte=date_from)
    if date_to:
        queryset = queryset.filter(timestamp__date__lte=date_to)

    return queryset.order_by("-timestamp", "-id")


def export_csv(entries, stream):
    """Writes one header row and one row per entry to a text stream."""
    writer = csv.writer(stream)
    writer.writerow(EXPORT_COLUMNS)

    for entry in entries:
        writer.writerow([
            entry.timestamp.isoformat(),
            entry.action,
            entry.port_id,
            entry.port.instance_url,
            entry.port.port_number,
            entry.subscription_id,
            entry.customer_id,
            entry.performed_by or "",
        ])
