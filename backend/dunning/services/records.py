"""Point-in-time snapshots handed out by dunning repositories."""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from django.utils import timezone

from dunning.enums import (
    CancellationReason,
    DunningEmailType,
    EmailDeliveryStatus,
    InvoiceStatus,
    SubscriptionStatus,
)


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass(frozen=True)
class SubscriptionSnapshot:
    id: uuid.UUID
    customer_email: str
    status: SubscriptionStatus
    currency: str
    amount: Decimal
    payment_method_id: str = ""
    gateway: str = ""
    cancellation_reason: Optional[CancellationReason] = None
    cancellation_details: str = ""
    cancelled_at: Optional[datetime] = None
    last_failure_reason: str = ""
    last_payment_id: str = ""
    last_payment_at: Optional[datetime] = None

    def __post_init__(self):
        object.__setattr__(self, "status", SubscriptionStatus(self.status))
        if self.cancellation_reason is not None:
            object.__setattr__(self, "cancellation_reason", CancellationReason(self.cancellation_reason))

    @property
    def is_cancelled(self) -> bool:
        return self.status == SubscriptionStatus.CANCELLED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": str(self.id),
            "customer_email": self.customer_email,
            "status": self.status.value,
            "currency": self.currency,
            "amount": str(self.amount),
            "payment_method_id": self.payment_method_id,
            "gateway": self.gateway,
            "cancellation_reason": self.cancellation_reason.value if self.cancellation_reason else None,
            "cancellation_details": self.cancellation_details,
            "cancelled_at": _isoformat(self.cancelled_at),
        }


@dataclass(frozen=True)
class InvoiceSnapshot:
    id: uuid.UUID
    subscription_id: uuid.UUID
    cycle_number: int
    total: Decimal
    status: InvoiceStatus
    failed_attempts: int = 0
    last_failed_at: Optional[datetime] = None
    failure_reason: str = ""
    next_retry_at: Optional[datetime] = None
    retry_count: int = 0
    paid_at: Optional[datetime] = None
    payment_id: str = ""
    created_at: datetime = field(default_factory=timezone.now)

    def __post_init__(self):
        object.__setattr__(self, "status", InvoiceStatus(self.status))

    @property
    def is_paid(self) -> bool:
        return self.status == InvoiceStatus.PAID

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": str(self.id),
            "subscription_id": str(self.subscription_id),
            "cycle_number": self.cycle_number,
            "total": str(self.total),
            "status": self.status.value,
            "failed_attempts": self.failed_attempts,
            "last_failed_at": _isoformat(self.last_failed_at),
            "failure_reason": self.failure_reason,
            "next_retry_at": _isoformat(self.next_retry_at),
            "retry_count": self.retry_count,
            "paid_at": _isoformat(self.paid_at),
            "payment_id": self.payment_id,
        }


@dataclass(frozen=True)
class RetryAttemptRecord:
    """Immutable audit entry for one charge attempt against an invoice."""

    subscription_id: uuid.UUID
    invoice_id: uuid.UUID
    attempt_number: int
    attempted_at: datetime
    succeeded: bool
    error_message: str = ""
    error_code: str = ""
    next_retry_at: Optional[datetime] = None
    payment_method_id: str = ""
    gateway_transaction_id: str = ""
    id: uuid.UUID = field(default_factory=uuid.uuid4)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": str(self.id),
            "subscription_id": str(self.subscription_id),
            "invoice_id": str(self.invoice_id),
            "attempt_number": self.attempt_number,
            "attempted_at": _isoformat(self.attempted_at),
            "succeeded": self.succeeded,
            "error_message": self.error_message,
            "error_code": self.error_code,
            "next_retry_at": _isoformat(self.next_retry_at),
            "payment_method_id": self.payment_method_id,
            "gateway_transaction_id": self.gateway_transaction_id,
        }


@dataclass(frozen=True)
class DunningEmailRecord:
    """Immutable audit entry for a dunning notification."""

    subscription_id: uuid.UUID
    invoice_id: uuid.UUID
    email_type: DunningEmailType
    recipient: str
    subject: str
    body_text: str
    body_html: str
    sent_at: datetime
    delivery_status: EmailDeliveryStatus = EmailDeliveryStatus.SENT
    delivery_error: str = ""
    opened_at: Optional[datetime] = None
    clicked_at: Optional[datetime] = None
    id: uuid.UUID = field(default_factory=uuid.uuid4)

    def __post_init__(self):
        object.__setattr__(self, "email_type", DunningEmailType(self.email_type))
        object.__setattr__(self, "delivery_status", EmailDeliveryStatus(self.delivery_status))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": str(self.id),
            "subscription_id": str(self.subscription_id),
            "invoice_id": str(self.invoice_id),
            "email_type": self.email_type.value,
            "recipient": self.recipient,
            "subject": self.subject,
            "sent_at": _isoformat(self.sent_at),
            "delivery_status": self.delivery_status.value,
            "delivery_error": self.delivery_error,
            "opened_at": _isoformat(self.opened_at),
            "clicked_at": _isoformat(self.clicked_at),
        }
