"""In-process dunning repository used by tests and local tooling."""
from __future__ import annotations

import threading
import uuid
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime
from typing import Dict, Iterator, List, Optional, Tuple

from dunning.enums import (
    OPEN_INVOICE_STATUSES,
    CancellationReason,
    InvoiceStatus,
    SubscriptionStatus,
)
from dunning.services.errors import DunningNotFound, DunningValidationError
from dunning.services.records import (
    DunningEmailRecord,
    InvoiceSnapshot,
    RetryAttemptRecord,
    SubscriptionSnapshot,
)


class InMemoryDunningRepository:
    """Dict-backed binding of ``DunningRepository`` with per-invoice re-entrant locks."""

    def __init__(self):
        self._state_lock = threading.RLock()
        self._invoice_locks: Dict[uuid.UUID, threading.RLock] = {}
        self._subscriptions: Dict[uuid.UUID, SubscriptionSnapshot] = {}
        self._invoices: Dict[uuid.UUID, InvoiceSnapshot] = {}
        self._attempts: Dict[Tuple[uuid.UUID, int], RetryAttemptRecord] = {}
        self._emails: List[DunningEmailRecord] = []

    # Seeding helpers

    def add_subscription(self, subscription: SubscriptionSnapshot) -> SubscriptionSnapshot:
        with self._state_lock:
            self._subscriptions[subscription.id] = subscription
        return subscription

    def add_invoice(self, invoice: InvoiceSnapshot) -> InvoiceSnapshot:
        with self._state_lock:
            if invoice.subscription_id not in self._subscriptions:
                raise DunningNotFound(f"Subscription {invoice.subscription_id} not found")
            self._invoices[invoice.id] = invoice
        return invoice

    # Reads

    def find_subscription(self, subscription_id: uuid.UUID) -> Optional[SubscriptionSnapshot]:
        with self._state_lock:
            return self._subscriptions.get(subscription_id)

    def get_invoice(self, invoice_id: uuid.UUID) -> Optional[InvoiceSnapshot]:
        with self._state_lock:
            return self._invoices.get(invoice_id)

    def list_invoices(self, subscription_id: uuid.UUID) -> List[InvoiceSnapshot]:
        with self._state_lock:
            invoices = [inv for inv in self._invoices.values() if inv.subscription_id == subscription_id]
        return sorted(invoices, key=lambda inv: inv.cycle_number)

    def get_retry_attempts(self, invoice_id: uuid.UUID) -> List[RetryAttemptRecord]:
        with self._state_lock:
            attempts = [attempt for (key, _), attempt in self._attempts.items() if key == invoice_id]
        return sorted(attempts, key=lambda attempt: (attempt.attempt_number, attempt.attempted_at))

    def get_pending_invoices(self) -> List[InvoiceSnapshot]:
        with self._state_lock:
            return [inv for inv in self._invoices.values() if inv.status in OPEN_INVOICE_STATUSES]

    def get_dunning_emails(self, subscription_id: uuid.UUID) -> List[DunningEmailRecord]:
        with self._state_lock:
            emails = [email for email in self._emails if email.subscription_id == subscription_id]
        return sorted(emails, key=lambda email: email.sent_at)

    # Locking

    @contextmanager
    def lock_invoice(self, invoice_id: uuid.UUID) -> Iterator[None]:
        with self._state_lock:
            lock = self._invoice_locks.setdefault(invoice_id, threading.RLock())
        with lock:
            yield

    # Invoice writes

    def _update_invoice(self, invoice_id: uuid.UUID, **changes) -> InvoiceSnapshot:
        with self._state_lock:
            invoice = self._invoices.get(invoice_id)
            if invoice is None:
                raise DunningNotFound(f"Invoice {invoice_id} not found")
            updated = replace(invoice, **changes)
            self._invoices[invoice_id] = updated
            return updated

    def mark_invoice_failed(self, invoice_id: uuid.UUID, reason: str, *, failed_at: datetime,
                            next_retry_at: Optional[datetime] = None) -> InvoiceSnapshot:
        with self._state_lock:
            invoice = self.get_invoice(invoice_id)
            if invoice is None:
                raise DunningNotFound(f"Invoice {invoice_id} not found")
            return self._update_invoice(
                invoice_id,
                status=InvoiceStatus.FAILED,
                failed_attempts=invoice.failed_attempts + 1,
                retry_count=invoice.retry_count + 1,
                last_failed_at=failed_at,
                failure_reason=reason,
                next_retry_at=next_retry_at,
            )

    def mark_invoice_paid(self, invoice_id: uuid.UUID, payment_id: str, *, paid_at: datetime) -> InvoiceSnapshot:
        return self._update_invoice(
            invoice_id,
            status=InvoiceStatus.PAID,
            paid_at=paid_at,
            payment_id=payment_id,
            next_retry_at=None,
        )

    def clear_next_retry(self, invoice_id: uuid.UUID) -> InvoiceSnapshot:
        return self._update_invoice(invoice_id, next_retry_at=None)

    def record_retry_attempt(self, attempt: RetryAttemptRecord) -> RetryAttemptRecord:
        key = (attempt.invoice_id, attempt.attempt_number)
        with self._state_lock:
            if key in self._attempts:
                raise DunningValidationError(
                    f"Attempt {attempt.attempt_number} already recorded for invoice {attempt.invoice_id}",
                    code="duplicate_attempt",
                )
            self._attempts[key] = attempt
        return attempt

    # Subscription writes

    def _update_subscription(self, subscription_id: uuid.UUID, **changes) -> SubscriptionSnapshot:
        with self._state_lock:
            subscription = self._subscriptions.get(subscription_id)
            if subscription is None:
                raise DunningNotFound(f"Subscription {subscription_id} not found")
            updated = replace(subscription, **changes)
            self._subscriptions[subscription_id] = updated
            return updated

    def cancel_subscription(self, subscription_id: uuid.UUID, reason: CancellationReason, *, details: str,
                            cancelled_at: datetime) -> SubscriptionSnapshot:
        return self._update_subscription(
            subscription_id,
            status=SubscriptionStatus.CANCELLED,
            cancellation_reason=reason,
            cancellation_details=details,
            cancelled_at=cancelled_at,
        )

    def record_payment(self, subscription_id: uuid.UUID, payment_id: str, *, paid_at: datetime) -> SubscriptionSnapshot:
        with self._state_lock:
            subscription = self.find_subscription(subscription_id)
            if subscription is None:
                raise DunningNotFound(f"Subscription {subscription_id} not found")
            status = subscription.status
            if status == SubscriptionStatus.PAST_DUE:
                status = SubscriptionStatus.ACTIVE
            return self._update_subscription(
                subscription_id, status=status, last_payment_id=payment_id, last_payment_at=paid_at,
            )

    def record_failed_payment(self, subscription_id: uuid.UUID, reason: str) -> SubscriptionSnapshot:
        with self._state_lock:
            subscription = self.find_subscription(subscription_id)
            if subscription is None:
                raise DunningNotFound(f"Subscription {subscription_id} not found")
            status = subscription.status
            if status == SubscriptionStatus.ACTIVE:
                status = SubscriptionStatus.PAST_DUE
            return self._update_subscription(subscription_id, status=status, last_failure_reason=reason)

    def reactivate_subscription(self, subscription_id: uuid.UUID) -> SubscriptionSnapshot:
        with self._state_lock:
            subscription = self.find_subscription(subscription_id)
            if subscription is None:
                raise DunningNotFound(f"Subscription {subscription_id} not found")
            if subscription.status != SubscriptionStatus.PAST_DUE:
                return subscription
            return self._update_subscription(subscription_id, status=SubscriptionStatus.ACTIVE)

    # Emails

    def record_dunning_email(self, email: DunningEmailRecord) -> DunningEmailRecord:
        with self._state_lock:
            self._emails.append(email)
        return email
