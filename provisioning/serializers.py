from rest_framework import serializers

from provisioning.application.registry import OPERATOR_STATUSES
from provisioning.models import AllocationAction, Port, PortAllocationLog

OPERATOR_STATUS_CHOICES = [(status.value, status.label) for status in OPERATOR_STATUSES]


class PortSerializer(serializers.ModelSerializer):
    class Meta:
        model = Port
        fields = [
            "id",
            "instance_url",
            "port_number",
            "server_region",
            "notes",
            "status",
            "assigned_subscription",
            "assigned_at",
            "created_at",
        ]
        read_only_fields = fields


class PortCreateSerializer(serializers.Serializer):
    instance_url = serializers.CharField(max_length=255)
    port_number = serializers.IntegerField(min_value=1, max_value=65535)
    server_region = serializers.CharField(max_length=64, required=False, allow_blank=True, default="")
    notes = serializers.CharField(required=False, allow_blank=True, default="")
    status = serializers.ChoiceField(choices=OPERATOR_STATUS_CHOICES, required=False, default="AVAILABLE")


class PortUpdateSerializer(serializers.Serializer):
    """Partial edit of descriptive fields; only the keys sent are validated."""

    instance_url = serializers.CharField(max_length=255, required=False)
    port_number = serializers.IntegerField(min_value=1, max_value=65535, required=False)
    server_region = serializers.CharField(max_length=64, required=False, allow_blank=True)
    notes = serializers.CharField(required=False, allow_blank=True)

    def validate(self, attrs):
        unknown = set(self.initial_data) - set(self.fields)
        if unknown:
            raise serializers.ValidationError(f"Fields can not be edited: {', '.join(sorted(unknown))}")
        if not attrs:
            raise serializers.ValidationError("No editable fields supplied.")
        return attrs


class PortStatusSerializer(serializers.Serializer):
    status = serializers.ChoiceField(choices=OPERATOR_STATUS_CHOICES)


class ReassignPortSerializer(serializers.Serializer):
    subscription_id = serializers.UUIDField()
    actor_id = serializers.CharField(max_length=64)


class ReleasePortSerializer(serializers.Serializer):
    actor_id = serializers.CharField(max_length=64, required=False, allow_null=True, default=None)


class AllocationLogEntrySerializer(serializers.ModelSerializer):
    class Meta:
        model = PortAllocationLog
        fields = [
            "id",
            "port",
            "subscription",
            "customer_id",
            "action",
            "performed_by",
            "timestamp",
        ]
        read_only_fields = fields


class AllocationLogFilterSerializer(serializers.Serializer):
    """Query-string filters for the audit listing and its CSV export."""

    action = serializers.ChoiceField(choices=AllocationAction.choices, required=False)
    port_id = serializers.UUIDField(required=False)
    subscription_id = serializers.UUIDField(required=False)
    customer_id = serializers.CharField(max_length=64, required=False)
    performed_by = serializers.CharField(max_length=64, required=False)
    date_from = serializers.DateField(required=False)
    date_to = serializers.DateField(required=False)
