"""URL routes for dunning endpoints."""
from django.urls import path

from .views import (
    DueRetriesView,
    DunningConfigView,
    DunningHistoryView,
    DunningProcessView,
    DunningStatsView,
    FailedPaymentView,
    ManualRetryView,
    RecoveryView,
    ResetDunningView,
    ScheduledRetriesView,
)

app_name = "dunning"

urlpatterns = [
    path("admin/process/", DunningProcessView.as_view(), name="admin-process"),
    path("admin/retries/", ScheduledRetriesView.as_view(), name="admin-retries"),
    path("admin/retries/due/", DueRetriesView.as_view(), name="admin-retries-due"),
    path("admin/retry/<uuid:invoice_id>/", ManualRetryView.as_view(), name="admin-retry"),
    path("admin/config/", DunningConfigView.as_view(), name="admin-config"),
    path("admin/stats/", DunningStatsView.as_view(), name="admin-stats"),
    path("admin/failed-payment/", FailedPaymentView.as_view(), name="admin-failed-payment"),
    path("admin/recovery/", RecoveryView.as_view(), name="admin-recovery"),
    path(
        "subscriptions/<uuid:subscription_id>/dunning-history/",
        DunningHistoryView.as_view(),
        name="subscription-dunning-history",
    ),
    path(
        "subscriptions/<uuid:subscription_id>/reset-dunning/",
        ResetDunningView.as_view(),
        name="subscription-reset-dunning",
    ),
]
