"""Dunning API views."""

from .admin import (
    DueRetriesView,
    DunningConfigView,
    DunningProcessView,
    DunningStatsView,
    FailedPaymentView,
    ManualRetryView,
    RecoveryView,
    ScheduledRetriesView,
)
from .subscriptions import DunningHistoryView, ResetDunningView
