"""Status and classification choices shared by dunning models and services."""
from django.db import models


class SubscriptionStatus(models.TextChoices):
    ACTIVE = "active", "Active"
    PAST_DUE = "past_due", "Past due"
    PAUSED = "paused", "Paused"
    CANCELLED = "cancelled", "Cancelled"


class InvoiceStatus(models.TextChoices):
    PENDING = "pending", "Pending"
    BILLED = "billed", "Billed"
    PAID = "paid", "Paid"
    FAILED = "failed", "Failed"


class DunningEmailType(models.TextChoices):
    FIRST_FAILURE = "first_failure", "First failure"
    RETRY_FAILURE = "retry_failure", "Retry failure"
    FINAL_NOTICE = "final_notice", "Final notice"
    CANCELLATION_NOTICE = "cancellation_notice", "Cancellation notice"
    PAYMENT_RECOVERED = "payment_recovered", "Payment recovered"


class CancellationReason(models.TextChoices):
    CUSTOMER_REQUESTED = "customer_requested", "Customer requested"
    PAYMENT_FAILED = "payment_failed", "Payment failed"
    FRAUDULENT = "fraudulent", "Fraudulent"
    TOO_EXPENSIVE = "too_expensive", "Too expensive"
    NOT_USEFUL = "not_useful", "Not useful"
    OTHER = "other", "Other"


class EmailDeliveryStatus(models.TextChoices):
    SENT = "sent", "Sent"
    FAILED = "failed", "Failed"


RETRYABLE_INVOICE_STATUSES = frozenset({InvoiceStatus.BILLED, InvoiceStatus.FAILED})
RETRYABLE_SUBSCRIPTION_STATUSES = frozenset({SubscriptionStatus.ACTIVE, SubscriptionStatus.PAST_DUE})
OPEN_INVOICE_STATUSES = frozenset({InvoiceStatus.PENDING, InvoiceStatus.BILLED, InvoiceStatus.FAILED})
