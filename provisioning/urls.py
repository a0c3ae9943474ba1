from django.urls import path

from .views import (
    AllocationLogExportView,
    AllocationLogListView,
    OrderPaidView,
    PortAllocationLogView,
    PortAvailabilityView,
    PortDetailView,
    PortListView,
    PortReassignView,
    PortReleaseView,
    PortStatusView,
    SubscriptionAllocateView,
    SubscriptionPortView,
)

urlpatterns = [
    path("orders/<str:order_id>/paid/", OrderPaidView.as_view(), name="order-paid"),
    path("subscriptions/<uuid:subscription_id>/allocate/", SubscriptionAllocateView.as_view(), name="subscription-allocate"),
    path("subscriptions/<uuid:subscription_id>/port/", SubscriptionPortView.as_view(), name="subscription-port"),
    path("ports/", PortListView.as_view(), name="port-list"),
    path("ports/availability/", PortAvailabilityView.as_view(), name="port-availability"),
    path("ports/<uuid:port_id>/", PortDetailView.as_view(), name="port-detail"),
    path("ports/<uuid:port_id>/status/", PortStatusView.as_view(), name="port-status"),
    path("ports/<uuid:port_id>/reassign/", PortReassignView.as_view(), name="port-reassign"),
    path("ports/<uuid:port_id>/release/", PortReleaseView.as_view(), name="port-release"),
    path("ports/<uuid:port_id>/logs/", PortAllocationLogView.as_view(), name="port-logs"),
    path("logs/", AllocationLogListView.as_view(), name="allocation-log-list"),
    path("logs/export/", AllocationLogExportView.as_view(), name="allocation-log-export"),
]
