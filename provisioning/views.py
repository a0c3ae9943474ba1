"""
API Layer — Port Provisioning Endpoints (Django REST Framework)

This module exposes the HTTP interface of the allocation core to the rest of
the portal: the payment collaborator, the administration screens and the
customer dashboard.

Design intent:

Views are thin controllers. Their responsibilities are limited to:

- Input validation and type coercion through serializers
- Delegation to the application layer (use_cases, registry, allocation_log)
- Translation of domain exceptions into HTTP responses

Architectural decisions:

- No business rules are implemented here. Locking, compare-and-swap claims
  and audit writes all live in the application layer.
- Every domain exception maps to a fixed status code, and the response body
  always carries the exception's stable code so clients can distinguish
  "no ports" from "subscription not found" from "already assigned".
- Authentication and CSRF belong to the surrounding portal; the acting
  administrator's id arrives in the request body.
"""

import io

from django.http import HttpResponse
from django.utils import timezone
from rest_framework import status
from rest_framework.response import Response
from rest_framework.settings import api_settings
from rest_framework.views import APIView

from provisioning.application import allocation_log, registry, use_cases
from provisioning.domain.exceptions import (
    AlreadyAssigned,
    DuplicatePort,
    InvalidPortData,
    InvalidPortStatus,
    NoAvailablePorts,
    PortNotAssigned,
    PortNotFound,
    ProvisioningError,
    StorageFatal,
    StorageTransient,
    SubscriptionNotFound,
    TargetSubscriptionInvalid,
)
from provisioning.models import PortStatus, SubscriptionStatus
from provisioning.serializers import (
    AllocationLogEntrySerializer,
    AllocationLogFilterSerializer,
    PortCreateSerializer,
    PortSerializer,
    PortStatusSerializer,
    PortUpdateSerializer,
    ReassignPortSerializer,
    ReleasePortSerializer,
)

# Subclasses before their bases: PortNotFound is a PortNotAssigned.
ERROR_STATUS = (
    (SubscriptionNotFound, status.HTTP_404_NOT_FOUND),
    (PortNotFound, status.HTTP_404_NOT_FOUND),
    (AlreadyAssigned, status.HTTP_409_CONFLICT),
    (NoAvailablePorts, status.HTTP_409_CONFLICT),
    (PortNotAssigned, status.HTTP_409_CONFLICT),
    (DuplicatePort, status.HTTP_409_CONFLICT),
    (InvalidPortStatus, status.HTTP_409_CONFLICT),
    (TargetSubscriptionInvalid, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (InvalidPortData, status.HTTP_400_BAD_REQUEST),
    (StorageTransient, status.HTTP_503_SERVICE_UNAVAILABLE),
    (StorageFatal, status.HTTP_500_INTERNAL_SERVER_ERROR),
)


def paginated_response(request, queryset, serializer_class, view=None):
    """Pages a listing with ?limit=&offset=, defaulting to PAGE_SIZE rows."""
    paginator = api_settings.DEFAULT_PAGINATION_CLASS()
    page = paginator.paginate_queryset(queryset, request, view=view)
    return paginator.get_paginated_response(serializer_class(page, many=True).data)


def error_response(exc):
    for exc_class, http_status in ERROR_STATUS:
        if isinstance(exc, exc_class):
            break
    else:
        http_status = status.HTTP_500_INTERNAL_SERVER_ERROR

    return Response({"error": exc.code, "message": str(exc)}, status=http_status)


class OrderPaidView(APIView):
    """
    POST /api/provisioning/orders/<order_id>/paid/

    Called by the payment collaborator after a successful payment. A missing
    port never fails the payment: the subscription is parked as
    PENDING_ALLOCATION and 202 is returned.
    """

    def post(self, request, order_id):
        try:
            port = use_cases.allocate_port_for_order(order_id)
        except NoAvailablePorts as exc:
            return Response(
                {
                    "status": SubscriptionStatus.PENDING_ALLOCATION,
                    "error": exc.code,
                    "message": str(exc),
                },
                status=status.HTTP_202_ACCEPTED,
            )
        except ProvisioningError as exc:
            return error_response(exc)

        return Response(PortSerializer(port).data, status=status.HTTP_201_CREATED)


class SubscriptionAllocateView(APIView):
    """POST /api/provisioning/subscriptions/<uuid>/allocate/"""

    def post(self, request, subscription_id):
        try:
            port = use_cases.allocate_port_to_subscription(subscription_id)
        except ProvisioningError as exc:
            return error_response(exc)

        return Response(PortSerializer(port).data, status=status.HTTP_201_CREATED)


class SubscriptionPortView(APIView):
    """
    GET /api/provisioning/subscriptions/<uuid>/port/

    The customer dashboard's view of its port. "port" is null while the
    subscription is waiting for capacity.
    """

    def get(self, request, subscription_id):
        try:
            port = use_cases.get_subscription_port(subscription_id)
        except ProvisioningError as exc:
            return error_response(exc)

        return Response({
            "subscription_id": str(subscription_id),
            "port": PortSerializer(port).data if port is not None else None,
        })


class PortListView(APIView):
    """GET|POST /api/provisioning/ports/"""

    def get(self, request):
        port_status = request.query_params.get("status")

        if port_status:
            if port_status not in PortStatus.values:
                return Response(
                    {"error": f"status must be one of {', '.join(PortStatus.values)}."},
                    status=status.HTTP_400_BAD_REQUEST,
                )
            ports = registry.find_by_status(port_status)
        else:
            ports = registry.find_all()

        return paginated_response(request, ports, PortSerializer, view=self)

    def post(self, request):
        serializer = PortCreateSerializer(data=request.data)
        if not serializer.is_valid():
            return Response({"error": serializer.errors}, status=status.HTTP_400_BAD_REQUEST)

        try:
            port = registry.create_port(**serializer.validated_data)
        except ProvisioningError as exc:
            return error_response(exc)

        return Response(PortSerializer(port).data, status=status.HTTP_201_CREATED)


class PortAvailabilityView(APIView):
    """GET /api/provisioning/ports/availability/"""

    def get(self, request):
        return Response({"available": use_cases.available_port_count()})


class PortDetailView(APIView):
    """GET|PATCH|DELETE /api/provisioning/ports/<uuid>/"""

    def get(self, request, port_id):
        port = registry.find_by_id(port_id)
        if port is None:
            return error_response(PortNotFound(port_id))

        return Response(PortSerializer(port).data)

    def patch(self, request, port_id):
        serializer = PortUpdateSerializer(data=request.data)
        if not serializer.is_valid():
            return Response({"error": serializer.errors}, status=status.HTTP_400_BAD_REQUEST)

        try:
            port = registry.update_port(port_id, **serializer.validated_data)
        except ProvisioningError as exc:
            return error_response(exc)

        return Response(PortSerializer(port).data)

    def delete(self, request, port_id):
        try:
            registry.delete_port(port_id)
        except ProvisioningError as exc:
            return error_response(exc)

        return Response(status=status.HTTP_204_NO_CONTENT)


class PortStatusView(APIView):
    """
    POST /api/provisioning/ports/<uuid>/status/

    Operator toggle between AVAILABLE, DISABLED and RESERVED.
    """

    def post(self, request, port_id):
        serializer = PortStatusSerializer(data=request.data)
        if not serializer.is_valid():
            return Response({"error": serializer.errors}, status=status.HTTP_400_BAD_REQUEST)

        try:
            port = registry.set_status(port_id, serializer.validated_data["status"])
        except ProvisioningError as exc:
            return error_response(exc)

        return Response(PortSerializer(port).data)


class PortReassignView(APIView):
    """POST /api/provisioning/ports/<uuid>/reassign/"""

    def post(self, request, port_id):
        serializer = ReassignPortSerializer(data=request.data)
        if not serializer.is_valid():
            return Response({"error": serializer.errors}, status=status.HTTP_400_BAD_REQUEST)

        try:
            result = use_cases.reassign_port(
                port_id,
                serializer.validated_data["subscription_id"],
                serializer.validated_data["actor_id"],
            )
        except ProvisioningError as exc:
            return error_response(exc)

        return Response({
            "port_id": str(result.port_id),
            "old_subscription_id": str(result.old_subscription_id),
            "new_subscription_id": str(result.new_subscription_id),
            "log_entry_id": str(result.log_entry_id),
        })


class PortReleaseView(APIView):
    """POST /api/provisioning/ports/<uuid>/release/"""

    def post(self, request, port_id):
        serializer = ReleasePortSerializer(data=request.data)
        if not serializer.is_valid():
            return Response({"error": serializer.errors}, status=status.HTTP_400_BAD_REQUEST)

        try:
            port = use_cases.release_port(port_id, actor_id=serializer.validated_data["actor_id"])
        except ProvisioningError as exc:
            return error_response(exc)

        return Response(PortSerializer(port).data)


class PortAllocationLogView(APIView):
    """
    GET /api/provisioning/ports/<uuid>/logs/

    Allocation history of one port, oldest first.
    """

    def get(self, request, port_id):
        if registry.find_by_id(port_id) is None:
            return error_response(PortNotFound(port_id))

        entries = allocation_log.find_by_port(port_id)
        return Response(AllocationLogEntrySerializer(entries, many=True).data)


class AllocationLogListView(APIView):
    """GET /api/provisioning/logs/: filtered audit listing, newest first."""

    def get(self, request):
        filters = AllocationLogFilterSerializer(data=request.query_params)
        if not filters.is_valid():
            return Response({"error": filters.errors}, status=status.HTTP_400_BAD_REQUEST)

        entries = allocation_log.find_all(**filters.validated_data)
        return paginated_response(request, entries, AllocationLogEntrySerializer, view=self)


class AllocationLogExportView(APIView):
    """GET /api/provisioning/logs/export/: the filtered listing as a CSV download."""

    def get(self, request):
        filters = AllocationLogFilterSerializer(data=request.query_params)
        if not filters.is_valid():
            return Response({"error": filters.errors}, status=status.HTTP_400_BAD_REQUEST)

        buffer = io.StringIO()
        allocation_log.export_csv(allocation_log.find_all(**filters.validated_data), buffer)

        filename = f"port_allocation_logs_{timezone.now():%Y-%m-%d_%H%M%S}.csv"
        response = HttpResponse(buffer.getvalue(), content_type="text/csv; charset=utf-8")
        response["Content-Disposition"] = f'attachment; filename="{filename}"'
        return response
