"""Prometheus metrics helpers for the dunning domain."""
from __future__ import annotations

from prometheus_client import Counter, Histogram

DUNNING_RETRY_OUTCOME_COUNT = Counter(
    "dunning_retry_outcome_total",
    "Outcome of dunning charge retries",
    labelnames=("outcome",),
)

DUNNING_FAILED_CHARGE_COUNT = Counter(
    "dunning_failed_charge_total",
    "Failed charges processed by the dunning orchestrator",
    labelnames=("gateway",),
)

DUNNING_CANCELLATION_COUNT = Counter(
    "dunning_cancellation_total",
    "Subscriptions cancelled after exhausting dunning retries",
)

DUNNING_RECOVERY_COUNT = Counter(
    "dunning_recovery_total",
    "Invoices recovered by a successful payment during dunning",
)

DUNNING_EMAIL_COUNT = Counter(
    "dunning_email_total",
    "Dunning notifications dispatched",
    labelnames=("email_type", "delivery_status"),
)

DUNNING_BATCH_DURATION = Histogram(
    "dunning_batch_duration_seconds",
    "Duration of dunning batch runs",
    buckets=(0.1, 0.5, 1, 5, 15, 60, 300),
)

DUNNING_REQUEST_COUNT = Counter(
    "dunning_request_total",
    "Number of dunning API requests",
    labelnames=("endpoint", "method", "status"),
)

DUNNING_REQUEST_LATENCY = Histogram(
    "dunning_request_duration_seconds",
    "Latency of dunning API requests",
    labelnames=("endpoint", "method"),
    buckets=(0.05, 0.1, 0.25, 0.5, 1, 2, 5),
)
