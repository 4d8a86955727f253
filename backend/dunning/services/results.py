"""Outcome types returned by the dunning orchestrator and batch runner."""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, ClassVar, Dict, List, Optional, Union

from dunning.enums import SubscriptionStatus
from dunning.services.records import (
    DunningEmailRecord,
    InvoiceSnapshot,
    RetryAttemptRecord,
    SubscriptionSnapshot,
)


@dataclass(frozen=True)
class RecoverySuccess:
    kind: ClassVar[str] = "success"

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind}


@dataclass(frozen=True)
class RetryScheduled:
    kind: ClassVar[str] = "retry_scheduled"

    next_retry_at: datetime
    attempt_number: int
    max_attempts: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "next_retry_at": self.next_retry_at.isoformat(),
            "attempt_number": self.attempt_number,
            "max_attempts": self.max_attempts,
        }


@dataclass(frozen=True)
class FailedPermanent:
    kind: ClassVar[str] = "failed_permanent"

    cancelled_at: datetime
    reason: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "cancelled_at": self.cancelled_at.isoformat(),
            "reason": self.reason,
        }


RecoveryResult = Union[RecoverySuccess, RetryScheduled, FailedPermanent]


@dataclass(frozen=True)
class RetryableInvoice:
    invoice: InvoiceSnapshot
    subscription: SubscriptionSnapshot

    @property
    def next_retry_at(self) -> Optional[datetime]:
        return self.invoice.next_retry_at

    @property
    def attempt_number(self) -> int:
        return self.invoice.failed_attempts + 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "invoice": self.invoice.to_dict(),
            "subscription": self.subscription.to_dict(),
            "next_retry_at": self.next_retry_at.isoformat() if self.next_retry_at else None,
            "attempt_number": self.attempt_number,
        }


@dataclass
class RetryProcessingResult:
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: bool = False
    errors: List[str] = field(default_factory=list)

    @property
    def pending(self) -> int:
        return self.processed - self.succeeded - self.failed

    def to_dict(self) -> Dict[str, Any]:
        return {
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "pending": self.pending,
            "skipped": self.skipped,
            "errors": list(self.errors),
        }


@dataclass
class DunningJobResult:
    job_id: uuid.UUID
    retries: RetryProcessingResult = field(default_factory=RetryProcessingResult)
    cancelled: int = 0
    skipped: bool = False
    duration_ms: int = 0

    def to_dict(self) -> Dict[str, Any]:
        payload = self.retries.to_dict()
        payload.update(
            {
                "job_id": str(self.job_id),
                "cancelled": self.cancelled,
                "skipped": self.skipped,
                "duration_ms": self.duration_ms,
            }
        )
        return payload


@dataclass(frozen=True)
class DunningStats:
    pending_retries: int
    invoices_due: int
    next_run_in_minutes: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pending_retries": self.pending_retries,
            "invoices_due": self.invoices_due,
            "next_run_in_minutes": self.next_run_in_minutes,
        }


@dataclass(frozen=True)
class DunningHistory:
    subscription_id: uuid.UUID
    subscription_status: SubscriptionStatus
    retry_attempts: List[RetryAttemptRecord]
    emails_sent: List[DunningEmailRecord]
    is_cancelled: bool

    @property
    def total_attempts(self) -> int:
        return len(self.retry_attempts)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "subscription_id": str(self.subscription_id),
            "subscription_status": SubscriptionStatus(self.subscription_status).value,
            "retry_attempts": [attempt.to_dict() for attempt in self.retry_attempts],
            "emails_sent": [email.to_dict() for email in self.emails_sent],
            "total_attempts": self.total_attempts,
            "is_cancelled": self.is_cancelled,
        }
