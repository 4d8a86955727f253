"""Storage contract consumed by the dunning orchestrator and batch runner."""
from __future__ import annotations

import uuid
from datetime import datetime
from typing import ContextManager, List, Optional, Protocol

from dunning.enums import CancellationReason
from dunning.services.records import (
    DunningEmailRecord,
    InvoiceSnapshot,
    RetryAttemptRecord,
    SubscriptionSnapshot,
)


class DunningRepository(Protocol):
    """Durable state for subscriptions, invoices, retry attempts and dunning emails.

    Reads return frozen snapshots. Writes return the updated snapshot so callers
    never hold a stale copy across a mutation. ``lock_invoice`` serialises every
    read-modify-write on one invoice and must be re-entrant within a thread.
    """

    def find_subscription(self, subscription_id: uuid.UUID) -> Optional[SubscriptionSnapshot]:
        ...

    def get_invoice(self, invoice_id: uuid.UUID) -> Optional[InvoiceSnapshot]:
        ...

    def list_invoices(self, subscription_id: uuid.UUID) -> List[InvoiceSnapshot]:
        ...

    def lock_invoice(self, invoice_id: uuid.UUID) -> ContextManager[None]:
        ...

    def mark_invoice_failed(self, invoice_id: uuid.UUID, reason: str, *, failed_at: datetime,
                            next_retry_at: Optional[datetime] = None) -> InvoiceSnapshot:
        ...

    def mark_invoice_paid(self, invoice_id: uuid.UUID, payment_id: str, *, paid_at: datetime) -> InvoiceSnapshot:
        ...

    def clear_next_retry(self, invoice_id: uuid.UUID) -> InvoiceSnapshot:
        ...

    def record_retry_attempt(self, attempt: RetryAttemptRecord) -> RetryAttemptRecord:
        ...

    def get_retry_attempts(self, invoice_id: uuid.UUID) -> List[RetryAttemptRecord]:
        ...

    def get_pending_invoices(self) -> List[InvoiceSnapshot]:
        ...

    def cancel_subscription(self, subscription_id: uuid.UUID, reason: CancellationReason, *, details: str,
                            cancelled_at: datetime) -> SubscriptionSnapshot:
        ...

    def record_payment(self, subscription_id: uuid.UUID, payment_id: str, *, paid_at: datetime) -> SubscriptionSnapshot:
        ...

    def record_failed_payment(self, subscription_id: uuid.UUID, reason: str) -> SubscriptionSnapshot:
        ...

    def reactivate_subscription(self, subscription_id: uuid.UUID) -> SubscriptionSnapshot:
        ...

    def record_dunning_email(self, email: DunningEmailRecord) -> DunningEmailRecord:
        ...

    def get_dunning_emails(self, subscription_id: uuid.UUID) -> List[DunningEmailRecord]:
        ...
