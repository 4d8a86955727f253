"""Django ORM binding of the dunning repository contract."""
from __future__ import annotations

import logging
import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Iterator, List, Optional

from django.db import IntegrityError, transaction
from django.db.models import F

from dunning.enums import (
    OPEN_INVOICE_STATUSES,
    CancellationReason,
    InvoiceStatus,
    SubscriptionStatus,
)
from dunning.models import DunningEmail, PaymentRetryAttempt, Subscription, SubscriptionInvoice
from dunning.services.errors import DunningNotFound, DunningValidationError
from dunning.services.records import (
    DunningEmailRecord,
    InvoiceSnapshot,
    RetryAttemptRecord,
    SubscriptionSnapshot,
)

logger = logging.getLogger(__name__)


class DjangoDunningRepository:
    """Persist dunning state in the project database.

    ``lock_invoice`` opens ``transaction.atomic()`` and takes a row lock with
    ``select_for_update``; nested use becomes a savepoint inside the same
    transaction, so the lock is re-entrant for the calling thread.
    """

    def _invoice_queryset(self):
        return SubscriptionInvoice.objects.all()

    def _get_subscription_row(self, subscription_id: uuid.UUID, *, for_update: bool = False) -> Subscription:
        queryset = Subscription.objects.all()
        if for_update:
            queryset = queryset.select_for_update()
        try:
            return queryset.get(pk=subscription_id)
        except Subscription.DoesNotExist as exc:
            raise DunningNotFound(f"Subscription {subscription_id} not found") from exc

    def _get_invoice_row(self, invoice_id: uuid.UUID, *, for_update: bool = False) -> SubscriptionInvoice:
        queryset = self._invoice_queryset()
        if for_update:
            queryset = queryset.select_for_update()
        try:
            return queryset.get(pk=invoice_id)
        except SubscriptionInvoice.DoesNotExist as exc:
            raise DunningNotFound(f"Invoice {invoice_id} not found") from exc

    # Reads

    def find_subscription(self, subscription_id: uuid.UUID) -> Optional[SubscriptionSnapshot]:
        row = Subscription.objects.filter(pk=subscription_id).first()
        return row.to_snapshot() if row else None

    def get_invoice(self, invoice_id: uuid.UUID) -> Optional[InvoiceSnapshot]:
        row = self._invoice_queryset().filter(pk=invoice_id).first()
        return row.to_snapshot() if row else None

    def list_invoices(self, subscription_id: uuid.UUID) -> List[InvoiceSnapshot]:
        rows = self._invoice_queryset().filter(subscription_id=subscription_id).order_by("cycle_number")
        return [row.to_snapshot() for row in rows]

    def get_retry_attempts(self, invoice_id: uuid.UUID) -> List[RetryAttemptRecord]:
        rows = PaymentRetryAttempt.objects.filter(invoice_id=invoice_id).order_by("attempt_number", "attempted_at")
        return [row.to_record() for row in rows]

    def get_pending_invoices(self) -> List[InvoiceSnapshot]:
        statuses = [status.value for status in OPEN_INVOICE_STATUSES]
        rows = self._invoice_queryset().filter(status__in=statuses).order_by("created_at", "id")
        return [row.to_snapshot() for row in rows]

    def get_dunning_emails(self, subscription_id: uuid.UUID) -> List[DunningEmailRecord]:
        rows = DunningEmail.objects.filter(subscription_id=subscription_id).order_by("sent_at")
        return [row.to_record() for row in rows]

    # Locking

    @contextmanager
    def lock_invoice(self, invoice_id: uuid.UUID) -> Iterator[None]:
        with transaction.atomic():
            # Missing invoices are reported by the caller's own lookup.
            list(self._invoice_queryset().select_for_update().filter(pk=invoice_id).values_list("pk", flat=True))
            yield

    # Invoice writes

    def mark_invoice_failed(self, invoice_id: uuid.UUID, reason: str, *, failed_at: datetime,
                            next_retry_at: Optional[datetime] = None) -> InvoiceSnapshot:
        with transaction.atomic():
            updated = self._invoice_queryset().filter(pk=invoice_id).update(
                status=InvoiceStatus.FAILED,
                failed_attempts=F("failed_attempts") + 1,
                retry_count=F("retry_count") + 1,
                last_failed_at=failed_at,
                failure_reason=reason[:512],
                next_retry_at=next_retry_at,
            )
            if not updated:
                raise DunningNotFound(f"Invoice {invoice_id} not found")
            return self._get_invoice_row(invoice_id).to_snapshot()

    def mark_invoice_paid(self, invoice_id: uuid.UUID, payment_id: str, *, paid_at: datetime) -> InvoiceSnapshot:
        with transaction.atomic():
            row = self._get_invoice_row(invoice_id, for_update=True)
            row.status = InvoiceStatus.PAID
            row.paid_at = paid_at
            row.payment_id = payment_id
            row.next_retry_at = None
            row.save(update_fields=["status", "paid_at", "payment_id", "next_retry_at", "updated_at"])
            return row.to_snapshot()

    def clear_next_retry(self, invoice_id: uuid.UUID) -> InvoiceSnapshot:
        with transaction.atomic():
            row = self._get_invoice_row(invoice_id, for_update=True)
            if row.next_retry_at is not None:
                row.next_retry_at = None
                row.save(update_fields=["next_retry_at", "updated_at"])
            return row.to_snapshot()

    def record_retry_attempt(self, attempt: RetryAttemptRecord) -> RetryAttemptRecord:
        try:
            with transaction.atomic():
                row = PaymentRetryAttempt.objects.create(
                    id=attempt.id,
                    subscription_id=attempt.subscription_id,
                    invoice_id=attempt.invoice_id,
                    attempt_number=attempt.attempt_number,
                    attempted_at=attempt.attempted_at,
                    succeeded=attempt.succeeded,
                    error_message=attempt.error_message,
                    error_code=attempt.error_code[:64],
                    next_retry_at=attempt.next_retry_at,
                    payment_method_id=attempt.payment_method_id,
                    gateway_transaction_id=attempt.gateway_transaction_id,
                )
        except IntegrityError as exc:
            logger.warning(
                "Duplicate retry attempt %s for invoice %s rejected",
                attempt.attempt_number,
                attempt.invoice_id,
            )
            raise DunningValidationError(
                f"Attempt {attempt.attempt_number} already recorded for invoice {attempt.invoice_id}",
                code="duplicate_attempt",
            ) from exc
        return row.to_record()

    # Subscription writes

    def cancel_subscription(self, subscription_id: uuid.UUID, reason: CancellationReason, *, details: str,
                            cancelled_at: datetime) -> SubscriptionSnapshot:
        with transaction.atomic():
            row = self._get_subscription_row(subscription_id, for_update=True)
            row.status = SubscriptionStatus.CANCELLED
            row.cancellation_reason = CancellationReason(reason)
            row.cancellation_details = details
            row.cancelled_at = cancelled_at
            row.save(update_fields=[
                "status", "cancellation_reason", "cancellation_details", "cancelled_at", "updated_at",
            ])
            return row.to_snapshot()

    def record_payment(self, subscription_id: uuid.UUID, payment_id: str, *, paid_at: datetime) -> SubscriptionSnapshot:
        with transaction.atomic():
            row = self._get_subscription_row(subscription_id, for_update=True)
            if row.status == SubscriptionStatus.PAST_DUE:
                row.status = SubscriptionStatus.ACTIVE
            row.last_payment_id = payment_id
            row.last_payment_at = paid_at
            row.save(update_fields=["status", "last_payment_id", "last_payment_at", "updated_at"])
            return row.to_snapshot()

    def record_failed_payment(self, subscription_id: uuid.UUID, reason: str) -> SubscriptionSnapshot:
        with transaction.atomic():
            row = self._get_subscription_row(subscription_id, for_update=True)
            if row.status == SubscriptionStatus.ACTIVE:
                row.status = SubscriptionStatus.PAST_DUE
            row.last_failure_reason = reason[:512]
            row.save(update_fields=["status", "last_failure_reason", "updated_at"])
            return row.to_snapshot()

    def reactivate_subscription(self, subscription_id: uuid.UUID) -> SubscriptionSnapshot:
        with transaction.atomic():
            row = self._get_subscription_row(subscription_id, for_update=True)
            if row.status == SubscriptionStatus.PAST_DUE:
                row.status = SubscriptionStatus.ACTIVE
                row.save(update_fields=["status", "updated_at"])
            return row.to_snapshot()

    # Emails

    def record_dunning_email(self, email: DunningEmailRecord) -> DunningEmailRecord:
        row = DunningEmail.objects.create(
            id=email.id,
            subscription_id=email.subscription_id,
            invoice_id=email.invoice_id,
            email_type=email.email_type,
            recipient=email.recipient,
            subject=email.subject[:255],
            body_text=email.body_text,
            body_html=email.body_html,
            sent_at=email.sent_at,
            delivery_status=email.delivery_status,
            delivery_error=email.delivery_error,
        )
        return row.to_record()
