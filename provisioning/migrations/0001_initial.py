import uuid

import django.db.models.deletion
import django.utils.timezone
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name="Subscription",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("customer_id", models.CharField(db_index=True, max_length=64)),
                ("plan_id", models.CharField(max_length=64)),
                ("order_id", models.CharField(blank=True, max_length=64, null=True, unique=True)),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("ACTIVE", "Active"),
                            ("PENDING_ALLOCATION", "Pending allocation"),
                            ("EXPIRED", "Expired"),
                            ("CANCELLED", "Cancelled"),
                        ],
                        default="ACTIVE",
                        max_length=20,
                    ),
                ),
                ("created_at", models.DateTimeField(default=django.utils.timezone.now)),
            ],
            options={
                "db_table": "subscriptions",
                "ordering": ["created_at"],
            },
        ),
        migrations.CreateModel(
            name="Port",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("instance_url", models.CharField(max_length=255, unique=True)),
                ("port_number", models.PositiveIntegerField()),
                ("server_region", models.CharField(blank=True, default="", max_length=64)),
                ("notes", models.TextField(blank=True, default="")),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("AVAILABLE", "Available"),
                            ("ASSIGNED", "Assigned"),
                            ("DISABLED", "Disabled"),
                            ("RESERVED", "Reserved"),
                        ],
                        default="AVAILABLE",
                        max_length=20,
                    ),
                ),
                ("assigned_at", models.DateTimeField(blank=True, null=True)),
                ("created_at", models.DateTimeField(default=django.utils.timezone.now)),
                (
                    "assigned_subscription",
                    models.OneToOneField(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="+",
                        to="provisioning.subscription",
                    ),
                ),
            ],
            options={
                "db_table": "ports",
                "ordering": ["created_at", "id"],
                "indexes": [
                    models.Index(fields=["status", "created_at"], name="idx_ports_status_created"),
                ],
                "constraints": [
                    models.CheckConstraint(
                        condition=(
                            models.Q(("assigned_subscription__isnull", False), ("status", "ASSIGNED"))
                            | models.Q(
                                models.Q(("status", "ASSIGNED"), _negated=True),
                                ("assigned_subscription__isnull", True),
                            )
                        ),
                        name="ports_assigned_iff_subscription",
                    ),
                ],
            },
        ),
        migrations.AddField(
            model_name="subscription",
            name="assigned_port",
            field=models.OneToOneField(
                blank=True,
                null=True,
                on_delete=django.db.models.deletion.PROTECT,
                related_name="+",
                to="provisioning.port",
            ),
        ),
        migrations.CreateModel(
            name="PortAllocationLog",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("customer_id", models.CharField(blank=True, default="", max_length=64)),
                (
                    "action",
                    models.CharField(
                        choices=[
                            ("ASSIGNED", "Assigned"),
                            ("REASSIGNED", "Reassigned"),
                            ("RELEASED", "Released"),
                        ],
                        max_length=20,
                    ),
                ),
                ("performed_by", models.CharField(blank=True, max_length=64, null=True)),
                ("timestamp", models.DateTimeField(default=django.utils.timezone.now)),
                (
                    "port",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="allocation_logs",
                        to="provisioning.port",
                    ),
                ),
                (
                    "subscription",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="allocation_logs",
                        to="provisioning.subscription",
                    ),
                ),
            ],
            options={
                "db_table": "port_allocation_logs",
                "ordering": ["timestamp", "id"],
                "indexes": [
                    models.Index(fields=["port", "timestamp"], name="idx_alloc_log_port"),
                    models.Index(fields=["subscription", "timestamp"], name="idx_alloc_log_subscription"),
                    models.Index(fields=["action"], name="idx_alloc_log_action"),
                ],
            },
        ),
    ]
