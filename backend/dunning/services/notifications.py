"""Dunning email content, gated dispatch and the Django mail notifier."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Optional, Protocol

from django.conf import settings
from django.core.mail import EmailMultiAlternatives
from django.utils import timezone
from django.utils.html import format_html

from dunning.enums import DunningEmailType, EmailDeliveryStatus
from dunning.observability.logging import log_dunning_event
from dunning.observability.metrics import DUNNING_EMAIL_COUNT
from dunning.services.errors import DunningUpstreamError
from dunning.services.policy import DunningPolicy, get_dunning_settings
from dunning.services.records import DunningEmailRecord, InvoiceSnapshot, SubscriptionSnapshot
from dunning.services.repository import DunningRepository
from dunning.services.timeouts import CallTimeout, call_with_timeout

logger = logging.getLogger(__name__)

SUBJECTS = {
    DunningEmailType.FIRST_FAILURE: "Payment Failed - Please Update Your Payment Method",
    DunningEmailType.RETRY_FAILURE: "Payment Failed Again - Action Required",
    DunningEmailType.FINAL_NOTICE: "Final Notice: Subscription Cancellation Pending",
    DunningEmailType.CANCELLATION_NOTICE: "Subscription Cancelled Due to Non-Payment",
    DunningEmailType.PAYMENT_RECOVERED: "Payment Successful - Subscription Active",
}


@dataclass(frozen=True)
class EmailContent:
    subject: str
    body_text: str
    body_html: str


def _format_amount(subscription: SubscriptionSnapshot, invoice: InvoiceSnapshot) -> str:
    return f"{invoice.total} {subscription.currency.upper()}"


def _format_when(invoice: InvoiceSnapshot) -> str:
    if invoice.next_retry_at is None:
        return "not scheduled"
    return invoice.next_retry_at.strftime("%Y-%m-%d %H:%M UTC")


def build_email_content(email_type: DunningEmailType, subscription: SubscriptionSnapshot,
                        invoice: InvoiceSnapshot, policy: DunningPolicy) -> EmailContent:
    """Map an email type and the current invoice state to subject and bodies.

    The invoice snapshot is expected to already carry the failure being reported,
    so ``failed_attempts`` is the attempt number shown to the customer.
    """

    email_type = DunningEmailType(email_type)
    amount = _format_amount(subscription, invoice)
    subject = SUBJECTS[email_type]

    if email_type == DunningEmailType.FIRST_FAILURE:
        text = (
            "We were unable to process your subscription payment.\n\n"
            f"Amount: {amount}\n"
            f"Next retry: {_format_when(invoice)}\n\n"
            "Please update your payment method to avoid interruption."
        )
        html = format_html(
            "<html><body><h1>Payment Failed</h1>"
            "<p>We were unable to process your subscription payment.</p>"
            "<p><strong>Amount:</strong> {}</p>"
            "<p><strong>Next retry:</strong> {}</p>"
            "<p>Please update your payment method to avoid interruption.</p>"
            "</body></html>",
            amount,
            _format_when(invoice),
        )
    elif email_type == DunningEmailType.RETRY_FAILURE:
        text = (
            "Your subscription payment failed again.\n\n"
            f"Attempt: {invoice.failed_attempts}/{policy.max_retries}\n"
            f"Amount: {amount}\n"
            f"Next retry: {_format_when(invoice)}\n\n"
            "Please update your payment method immediately."
        )
        html = format_html(
            "<html><body><h1>Payment Failed Again</h1>"
            "<p>Your subscription payment failed again.</p>"
            "<p><strong>Attempt:</strong> {}/{}</p>"
            "<p><strong>Amount:</strong> {}</p>"
            "<p><strong>Next retry:</strong> {}</p>"
            "<p>Please update your payment method immediately.</p>"
            "</body></html>",
            invoice.failed_attempts,
            policy.max_retries,
            amount,
            _format_when(invoice),
        )
    elif email_type == DunningEmailType.FINAL_NOTICE:
        text = (
            "FINAL NOTICE: Your subscription will be cancelled if payment is not received.\n\n"
            f"Attempt: {invoice.failed_attempts}/{policy.max_retries}\n"
            f"Amount: {amount}\n"
            f"Final retry: {_format_when(invoice)}\n\n"
            "Please update your payment method before the final retry."
        )
        html = format_html(
            "<html><body><h1>Final Notice</h1>"
            "<p><strong>Your subscription will be cancelled if payment is not received.</strong></p>"
            "<p><strong>Attempt:</strong> {}/{}</p>"
            "<p><strong>Amount:</strong> {}</p>"
            "<p><strong>Final retry:</strong> {}</p>"
            "<p>Please update your payment method before the final retry.</p>"
            "</body></html>",
            invoice.failed_attempts,
            policy.max_retries,
            amount,
            _format_when(invoice),
        )
    elif email_type == DunningEmailType.CANCELLATION_NOTICE:
        text = (
            "Your subscription has been cancelled due to non-payment.\n\n"
            f"Subscription: {subscription.id}\n"
            f"Outstanding amount: {amount}\n\n"
            "To reactivate your subscription, please place a new order."
        )
        html = format_html(
            "<html><body><h1>Subscription Cancelled</h1>"
            "<p>Your subscription has been cancelled due to non-payment.</p>"
            "<p><strong>Subscription:</strong> {}</p>"
            "<p><strong>Outstanding amount:</strong> {}</p>"
            "<p>To reactivate your subscription, please place a new order.</p>"
            "</body></html>",
            subscription.id,
            amount,
        )
    else:
        text = (
            "Great news! Your payment was successful.\n\n"
            f"Amount: {amount}\n\n"
            "Your subscription is now active."
        )
        html = format_html(
            "<html><body><h1>Payment Successful!</h1>"
            "<p>Great news! Your payment was successful.</p>"
            "<p><strong>Amount:</strong> {}</p>"
            "<p>Your subscription is now active.</p>"
            "</body></html>",
            amount,
        )

    return EmailContent(subject=subject, body_text=text, body_html=str(html))


def is_email_enabled(email_type: DunningEmailType, policy: DunningPolicy) -> bool:
    if email_type == DunningEmailType.FIRST_FAILURE:
        return policy.email_on_first_failure
    if email_type == DunningEmailType.FINAL_NOTICE:
        return policy.email_on_final_failure
    return True


class Notifier(Protocol):
    def send(self, *, email_type: DunningEmailType, subject: str, body_text: str, body_html: str,
             recipient: str) -> None:
        ...


class DjangoMailNotifier:
    """Deliver dunning emails through the configured Django email backend."""

    def __init__(self, from_email: Optional[str] = None, connection=None):
        self.from_email = from_email or get_dunning_settings().get("FROM_EMAIL") or settings.DEFAULT_FROM_EMAIL
        self.connection = connection

    def send(self, *, email_type: DunningEmailType, subject: str, body_text: str, body_html: str,
             recipient: str) -> None:
        message = EmailMultiAlternatives(
            subject=subject,
            body=body_text,
            from_email=self.from_email,
            to=[recipient],
            connection=self.connection,
            headers={"X-Dunning-Email-Type": DunningEmailType(email_type).value},
        )
        if body_html:
            message.attach_alternative(body_html, "text/html")
        message.send(fail_silently=False)


@dataclass(frozen=True)
class NotificationOutcome:
    email_type: DunningEmailType
    skipped: bool = False
    record: Optional[DunningEmailRecord] = None
    error: Optional[DunningUpstreamError] = None

    @property
    def delivered(self) -> bool:
        return not self.skipped and self.error is None


class NotificationTrigger:
    """Gate, deliver and audit dunning emails.

    Delivery is fire-and-forget: every dispatched email leaves a ``DunningEmail``
    row marked ``sent`` or ``failed`` and transport problems come back as a
    ``DunningUpstreamError`` on the outcome instead of being raised.
    """

    def __init__(self, repository: DunningRepository, notifier: Optional[Notifier], *,
                 timeout: Optional[float] = None, clock: Callable = timezone.now):
        self.repository = repository
        self.notifier = notifier
        self.timeout = timeout
        self.clock = clock

    def dispatch(self, email_type: DunningEmailType, subscription: SubscriptionSnapshot,
                 invoice: InvoiceSnapshot, policy: DunningPolicy) -> NotificationOutcome:
        email_type = DunningEmailType(email_type)
        if not is_email_enabled(email_type, policy):
            logger.info(
                "Skipping %s email for subscription %s; disabled by policy",
                email_type.value,
                subscription.id,
            )
            return NotificationOutcome(email_type=email_type, skipped=True)

        content = build_email_content(email_type, subscription, invoice, policy)
        error = self._deliver(email_type, subscription, content)

        status = EmailDeliveryStatus.FAILED if error else EmailDeliveryStatus.SENT
        DUNNING_EMAIL_COUNT.labels(email_type=email_type.value, delivery_status=status.value).inc()

        record = DunningEmailRecord(
            subscription_id=subscription.id,
            invoice_id=invoice.id,
            email_type=email_type,
            recipient=subscription.customer_email,
            subject=content.subject,
            body_text=content.body_text,
            body_html=content.body_html,
            sent_at=self.clock(),
            delivery_status=status,
            delivery_error=error.message if error else "",
        )
        try:
            record = self.repository.record_dunning_email(record)
        except Exception as exc:
            logger.exception("Failed to record %s email for subscription %s", email_type.value, subscription.id)
            error = error or DunningUpstreamError(f"Could not record dunning email: {exc}")

        log_dunning_event(
            message="dunning.email",
            subscription_id=subscription.id,
            invoice_id=invoice.id,
            extra={"email_type": email_type.value, "delivery_status": status.value},
        )
        return NotificationOutcome(email_type=email_type, record=record, error=error)

    def _deliver(self, email_type: DunningEmailType, subscription: SubscriptionSnapshot,
                 content: EmailContent) -> Optional[DunningUpstreamError]:
        if self.notifier is None:
            return DunningUpstreamError("No notifier configured", code="notifier_unavailable")
        try:
            call_with_timeout(
                self.notifier.send,
                self.timeout,
                email_type=email_type,
                subject=content.subject,
                body_text=content.body_text,
                body_html=content.body_html,
                recipient=subscription.customer_email,
            )
        except CallTimeout:
            logger.warning("Notifier timed out sending %s to subscription %s", email_type.value, subscription.id)
            return DunningUpstreamError("Notifier timed out", code="notifier_timeout")
        except Exception as exc:
            logger.warning(
                "Notifier failed sending %s to subscription %s: %s",
                email_type.value,
                subscription.id,
                exc,
            )
            return DunningUpstreamError(str(exc) or exc.__class__.__name__, code="notifier_failed")
        return None
