"""Charge capability consumed by the dunning orchestrator."""
from __future__ import annotations

import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional, Protocol


@dataclass(frozen=True)
class ChargeOutcome:
    success: bool
    transaction_id: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None

    @classmethod
    def declined(cls, error_message: str, error_code: Optional[str] = None) -> "ChargeOutcome":
        return cls(success=False, error_code=error_code, error_message=error_message)

    @classmethod
    def approved(cls, transaction_id: str) -> "ChargeOutcome":
        return cls(success=True, transaction_id=transaction_id)


class ChargeGateway(Protocol):
    """Payment gateway able to charge a stored payment method.

    ``idempotency_key`` identifies the invoice, not the attempt. Once a charge
    for a key has succeeded the gateway must not settle another one for it;
    a later call with that key returns the original approval, including
    after a call that timed out on our side. Declines are returned as
    ``ChargeOutcome(success=False)`` and may be retried under the same key;
    transport problems are raised.
    """

    def charge(self, *, invoice_id: uuid.UUID, amount: Decimal, currency: str, payment_method_id: str,
               idempotency_key: str) -> ChargeOutcome:
        ...


def build_idempotency_key(invoice_id: uuid.UUID) -> str:
    return f"dunning:invoice:{invoice_id}"
