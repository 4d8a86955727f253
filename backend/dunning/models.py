"""Dunning models: subscriptions, their invoices, retry attempts and notification audit rows."""
import uuid
from decimal import Decimal

from django.conf import settings
from django.core.exceptions import ValidationError
from django.core.validators import MinValueValidator
from django.db import models

from dunning.enums import (
    CancellationReason,
    DunningEmailType,
    EmailDeliveryStatus,
    InvoiceStatus,
    SubscriptionStatus,
)
from dunning.services.records import (
    DunningEmailRecord,
    InvoiceSnapshot,
    RetryAttemptRecord,
    SubscriptionSnapshot,
)


def _default_currency() -> str:
    """Resolve default billing currency from settings."""
    return getattr(settings, "DUNNING_DEFAULT_CURRENCY", "usd").lower()


class Subscription(models.Model):
    """Recurring billing agreement whose failed charges are recovered by dunning."""

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    owner = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        related_name="dunning_subscriptions",
        null=True,
        blank=True,
        help_text="Customer account allowed to view and reset dunning state",
    )
    customer_email = models.EmailField(
        help_text="Recipient of dunning notifications",
    )
    status = models.CharField(
        max_length=20,
        choices=SubscriptionStatus.choices,
        default=SubscriptionStatus.ACTIVE,
        help_text="Lifecycle state of the subscription",
    )
    gateway = models.CharField(
        max_length=64,
        blank=True,
        help_text="Payment gateway id; selects per-gateway dunning policy",
    )
    payment_method_id = models.CharField(
        max_length=255,
        blank=True,
        help_text="Gateway payment method reference charged on retries",
    )
    currency = models.CharField(max_length=3, default=_default_currency)
    amount = models.DecimalField(
        max_digits=12,
        decimal_places=2,
        default=Decimal("0.00"),
        validators=[MinValueValidator(Decimal("0.00"))],
        help_text="Recurring charge amount per billing cycle",
    )
    cancellation_reason = models.CharField(
        max_length=32,
        choices=CancellationReason.choices,
        null=True,
        blank=True,
    )
    cancellation_details = models.TextField(blank=True)
    cancelled_at = models.DateTimeField(null=True, blank=True)
    last_failure_reason = models.CharField(max_length=512, blank=True)
    last_payment_id = models.CharField(max_length=255, blank=True)
    last_payment_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "dunning_subscription"
        verbose_name = "Subscription"
        verbose_name_plural = "Subscriptions"
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["status"], name="dunning_sub_status_idx"),
        ]

    def __str__(self):
        return f"Subscription<{self.id}:{self.status}>"

    def to_snapshot(self) -> SubscriptionSnapshot:
        return SubscriptionSnapshot(
            id=self.id,
            customer_email=self.customer_email,
            status=self.status,
            currency=self.currency,
            amount=self.amount,
            payment_method_id=self.payment_method_id,
            gateway=self.gateway,
            cancellation_reason=self.cancellation_reason or None,
            cancellation_details=self.cancellation_details,
            cancelled_at=self.cancelled_at,
            last_failure_reason=self.last_failure_reason,
            last_payment_id=self.last_payment_id,
            last_payment_at=self.last_payment_at,
        )


class SubscriptionInvoice(models.Model):
    """One billing cycle's invoice and its dunning counters."""

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    subscription = models.ForeignKey(
        Subscription,
        on_delete=models.PROTECT,
        related_name="invoices",
    )
    cycle_number = models.PositiveIntegerField(help_text="Billing cycle this invoice belongs to")
    total = models.DecimalField(max_digits=12, decimal_places=2)
    status = models.CharField(
        max_length=20,
        choices=InvoiceStatus.choices,
        default=InvoiceStatus.PENDING,
    )
    failed_attempts = models.PositiveIntegerField(
        default=0,
        help_text="Failed charge attempts recorded so far; never decreases",
    )
    last_failed_at = models.DateTimeField(null=True, blank=True)
    failure_reason = models.CharField(max_length=512, blank=True)
    next_retry_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="When the next automatic retry is due; empty once retries stop",
    )
    retry_count = models.PositiveIntegerField(default=0)
    paid_at = models.DateTimeField(null=True, blank=True)
    payment_id = models.CharField(max_length=255, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "dunning_subscription_invoice"
        verbose_name = "Subscription invoice"
        verbose_name_plural = "Subscription invoices"
        ordering = ["subscription_id", "cycle_number"]
        constraints = [
            models.UniqueConstraint(
                fields=["subscription", "cycle_number"],
                name="unique_dunning_invoice_cycle",
            ),
        ]
        indexes = [
            models.Index(fields=["status", "next_retry_at"], name="dunning_inv_retry_idx"),
        ]

    def __str__(self):
        return f"SubscriptionInvoice<{self.subscription_id}#{self.cycle_number}:{self.status}>"

    def to_snapshot(self) -> InvoiceSnapshot:
        return InvoiceSnapshot(
            id=self.id,
            subscription_id=self.subscription_id,
            cycle_number=self.cycle_number,
            total=self.total,
            status=self.status,
            failed_attempts=self.failed_attempts,
            last_failed_at=self.last_failed_at,
            failure_reason=self.failure_reason,
            next_retry_at=self.next_retry_at,
            retry_count=self.retry_count,
            paid_at=self.paid_at,
            payment_id=self.payment_id,
            created_at=self.created_at,
        )


class PaymentRetryAttempt(models.Model):
    """Immutable audit trail of every charge attempt made for an invoice."""

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    subscription = models.ForeignKey(
        Subscription,
        on_delete=models.PROTECT,
        related_name="retry_attempts",
    )
    invoice = models.ForeignKey(
        SubscriptionInvoice,
        on_delete=models.PROTECT,
        related_name="retry_attempts",
    )
    attempt_number = models.PositiveIntegerField(validators=[MinValueValidator(1)])
    attempted_at = models.DateTimeField()
    succeeded = models.BooleanField(default=False)
    error_message = models.TextField(blank=True)
    error_code = models.CharField(max_length=64, blank=True)
    next_retry_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="Retry time scheduled as a result of this attempt",
    )
    payment_method_id = models.CharField(max_length=255, blank=True)
    gateway_transaction_id = models.CharField(max_length=255, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "dunning_payment_retry_attempt"
        verbose_name = "Payment retry attempt"
        verbose_name_plural = "Payment retry attempts"
        ordering = ["attempt_number", "attempted_at"]
        constraints = [
            models.UniqueConstraint(
                fields=["invoice", "attempt_number"],
                name="unique_dunning_attempt_per_invoice",
            ),
        ]

    def save(self, *args, **kwargs):
        if not self._state.adding:
            raise ValidationError("PaymentRetryAttempt records are immutable and cannot be updated.")
        return super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise ValidationError("PaymentRetryAttempt records are immutable and cannot be deleted.")

    def __str__(self):
        outcome = "ok" if self.succeeded else "failed"
        return f"PaymentRetryAttempt<{self.invoice_id}#{self.attempt_number}:{outcome}>"

    def to_record(self) -> RetryAttemptRecord:
        return RetryAttemptRecord(
            id=self.id,
            subscription_id=self.subscription_id,
            invoice_id=self.invoice_id,
            attempt_number=self.attempt_number,
            attempted_at=self.attempted_at,
            succeeded=self.succeeded,
            error_message=self.error_message,
            error_code=self.error_code,
            next_retry_at=self.next_retry_at,
            payment_method_id=self.payment_method_id,
            gateway_transaction_id=self.gateway_transaction_id,
        )


class DunningEmail(models.Model):
    """Audit row for every dunning notification handed to the notifier."""

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    subscription = models.ForeignKey(
        Subscription,
        on_delete=models.PROTECT,
        related_name="dunning_emails",
    )
    invoice = models.ForeignKey(
        SubscriptionInvoice,
        on_delete=models.PROTECT,
        related_name="dunning_emails",
    )
    email_type = models.CharField(max_length=32, choices=DunningEmailType.choices)
    recipient = models.EmailField()
    subject = models.CharField(max_length=255)
    body_text = models.TextField()
    body_html = models.TextField(blank=True)
    sent_at = models.DateTimeField()
    delivery_status = models.CharField(
        max_length=16,
        choices=EmailDeliveryStatus.choices,
        default=EmailDeliveryStatus.SENT,
    )
    delivery_error = models.TextField(blank=True)
    opened_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="Set by the email tracker, never by the dunning engine",
    )
    clicked_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        db_table = "dunning_email"
        verbose_name = "Dunning email"
        verbose_name_plural = "Dunning emails"
        ordering = ["sent_at"]
        indexes = [
            models.Index(fields=["subscription", "sent_at"], name="dunning_email_sub_idx"),
        ]

    def __str__(self):
        return f"DunningEmail<{self.email_type} to {self.recipient}>"

    def to_record(self) -> DunningEmailRecord:
        return DunningEmailRecord(
            id=self.id,
            subscription_id=self.subscription_id,
            invoice_id=self.invoice_id,
            email_type=self.email_type,
            recipient=self.recipient,
            subject=self.subject,
            body_text=self.body_text,
            body_html=self.body_html,
            sent_at=self.sent_at,
            delivery_status=self.delivery_status,
            delivery_error=self.delivery_error,
            opened_at=self.opened_at,
            clicked_at=self.clicked_at,
        )
