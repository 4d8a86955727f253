"""Per-invoice dunning state machine: failed charges, retries, recovery and cancellation."""
from __future__ import annotations

import logging
import threading
import uuid
from contextlib import contextmanager
from datetime import timedelta
from typing import Callable, Iterator, List, Optional, Tuple

from django.utils import timezone

from dunning.enums import (
    RETRYABLE_INVOICE_STATUSES,
    RETRYABLE_SUBSCRIPTION_STATUSES,
    CancellationReason,
    DunningEmailType,
    SubscriptionStatus,
)
from dunning.observability.logging import log_dunning_event
from dunning.observability.metrics import (
    DUNNING_CANCELLATION_COUNT,
    DUNNING_FAILED_CHARGE_COUNT,
    DUNNING_RECOVERY_COUNT,
    DUNNING_RETRY_OUTCOME_COUNT,
)
from dunning.services.errors import (
    DunningError,
    DunningNotFound,
    DunningUpstreamError,
    DunningValidationError,
)
from dunning.services.gateway import ChargeGateway, ChargeOutcome, build_idempotency_key
from dunning.services.notifications import NotificationTrigger
from dunning.services.policy import DunningPolicy, PolicyRegistry
from dunning.services.records import InvoiceSnapshot, RetryAttemptRecord, SubscriptionSnapshot
from dunning.services.repository import DunningRepository
from dunning.services.results import (
    DunningHistory,
    FailedPermanent,
    RecoveryResult,
    RecoverySuccess,
    RetryScheduled,
)
from dunning.services.timeouts import CallTimeout, call_with_timeout

logger = logging.getLogger(__name__)

_PendingEmail = Tuple[DunningEmailType, SubscriptionSnapshot, InvoiceSnapshot, DunningPolicy]


def select_failure_email(attempt_number: int, policy: DunningPolicy) -> DunningEmailType:
    """Email sent after a non-final failure. The final notice wins over the first failure."""

    # With max_retries=3 the second failure already gets final_notice, never retry_failure.
    if attempt_number == policy.max_retries - 1:
        return DunningEmailType.FINAL_NOTICE
    if attempt_number == 1:
        return DunningEmailType.FIRST_FAILURE
    return DunningEmailType.RETRY_FAILURE


def cancellation_details(attempts: int) -> str:
    return f"Payment failed after {attempts} retry attempts"


class DunningOrchestrator:
    """Drive failed invoices through retries towards recovery or cancellation.

    All read-modify-write work on an invoice happens inside
    ``repository.lock_invoice``. Emails triggered inside a locked section are
    queued and delivered once the outermost section for the thread has exited,
    so customers are only told about committed state.
    """

    def __init__(
        self,
        repository: DunningRepository,
        policies: Optional[PolicyRegistry] = None,
        *,
        gateway: Optional[ChargeGateway] = None,
        notifications: Optional[NotificationTrigger] = None,
        clock: Callable = timezone.now,
        charge_timeout: Optional[float] = None,
    ):
        self.repository = repository
        self.policies = policies or PolicyRegistry()
        self.gateway = gateway
        self.notifications = notifications
        self.clock = clock
        self.charge_timeout = charge_timeout
        self._local = threading.local()

    # Lookups

    def policy_for(self, subscription: SubscriptionSnapshot) -> DunningPolicy:
        return self.policies.for_gateway(subscription.gateway)

    def _require_subscription(self, subscription_id: uuid.UUID) -> SubscriptionSnapshot:
        subscription = self.repository.find_subscription(subscription_id)
        if subscription is None:
            raise DunningNotFound(f"Subscription {subscription_id} not found")
        return subscription

    def _require_invoice(self, invoice_id: uuid.UUID, subscription_id: Optional[uuid.UUID] = None) -> InvoiceSnapshot:
        invoice = self.repository.get_invoice(invoice_id)
        if invoice is None:
            raise DunningNotFound(f"Invoice {invoice_id} not found")
        if subscription_id is not None and invoice.subscription_id != subscription_id:
            raise DunningValidationError(
                f"Invoice {invoice_id} does not belong to subscription {subscription_id}",
                code="invoice_mismatch",
            )
        return invoice

    def _find_attempt(self, invoice_id: uuid.UUID, attempt_number: int) -> Optional[RetryAttemptRecord]:
        for attempt in self.repository.get_retry_attempts(invoice_id):
            if attempt.attempt_number == attempt_number:
                return attempt
        return None

    def _latest_failing_invoice(self, subscription_id: uuid.UUID) -> Optional[InvoiceSnapshot]:
        failing = [
            invoice for invoice in self.repository.list_invoices(subscription_id)
            if invoice.status in RETRYABLE_INVOICE_STATUSES
        ]
        if not failing:
            return None
        return max(failing, key=lambda invoice: invoice.cycle_number)

    # Locking and deferred notifications

    @contextmanager
    def _invoice_section(self, invoice_id: uuid.UUID) -> Iterator[None]:
        depth = getattr(self._local, "depth", 0)
        if depth == 0:
            self._local.pending = []
        self._local.depth = depth + 1
        pending: List[_PendingEmail] = []
        try:
            with self.repository.lock_invoice(invoice_id):
                yield
        finally:
            self._local.depth = depth
            if depth == 0:
                pending, self._local.pending = self._local.pending, []
        for email in pending:
            self._dispatch(*email)

    def _notify(self, email_type: DunningEmailType, subscription: SubscriptionSnapshot,
                invoice: InvoiceSnapshot, policy: DunningPolicy) -> None:
        if getattr(self._local, "depth", 0):
            self._local.pending.append((email_type, subscription, invoice, policy))
        else:
            self._dispatch(email_type, subscription, invoice, policy)

    def _dispatch(self, email_type: DunningEmailType, subscription: SubscriptionSnapshot,
                  invoice: InvoiceSnapshot, policy: DunningPolicy) -> None:
        if self.notifications is None:
            logger.debug("No notification trigger configured; dropping %s email", email_type.value)
            return
        outcome = self.notifications.dispatch(email_type, subscription, invoice, policy)
        if outcome.error is not None:
            logger.warning(
                "Dunning email %s for subscription %s not delivered: %s",
                email_type.value,
                subscription.id,
                outcome.error.message,
            )

    # Operations

    def process_failed_charge(
        self,
        subscription_id: uuid.UUID,
        invoice_id: uuid.UUID,
        error_message: str,
        *,
        error_code: Optional[str] = None,
        attempt_number: Optional[int] = None,
        payment_method_id: str = "",
    ) -> RecoveryResult:
        """Record a failed charge and schedule the next retry or cancel the subscription.

        ``attempt_number`` makes the call idempotent: replaying a number that is
        already recorded returns the original result without side effects. A report
        without a number never replays a successful charge; it is rejected as
        ``invoice_paid`` instead.
        """

        self._require_subscription(subscription_id)
        self._require_invoice(invoice_id, subscription_id)

        with self._invoice_section(invoice_id):
            invoice = self._require_invoice(invoice_id, subscription_id)
            subscription = self._require_subscription(subscription_id)
            policy = self.policy_for(subscription)

            expected = invoice.failed_attempts + 1
            number = expected if attempt_number is None else attempt_number
            recorded = self._find_attempt(invoice_id, number)
            if recorded is not None and recorded.succeeded and attempt_number is None:
                raise DunningValidationError(f"Invoice {invoice_id} is already paid", code="invoice_paid")
            if recorded is not None:
                logger.info("Attempt %s for invoice %s already recorded; replaying result", number, invoice_id)
                return self._replay(recorded, subscription, policy)
            if number != expected:
                raise DunningValidationError(
                    f"Attempt {number} is out of order for invoice {invoice_id}; expected {expected}",
                    code="attempt_out_of_order",
                    details={"expected_attempt": expected},
                )

            if invoice.is_paid:
                raise DunningValidationError(f"Invoice {invoice_id} is already paid", code="invoice_paid")
            if subscription.is_cancelled:
                raise DunningValidationError(
                    f"Subscription {subscription_id} is cancelled", code="subscription_cancelled",
                )
            if invoice.failed_attempts >= policy.max_retries:
                raise DunningValidationError(
                    f"Invoice {invoice_id} has exhausted its {policy.max_retries} retries",
                    code="max_retries_reached",
                )

            now = self.clock()
            final = number >= policy.max_retries
            next_retry_at = None if final else now + timedelta(days=policy.retry_interval_days(number))

            self.repository.record_retry_attempt(
                RetryAttemptRecord(
                    subscription_id=subscription_id,
                    invoice_id=invoice_id,
                    attempt_number=number,
                    attempted_at=now,
                    succeeded=False,
                    error_message=error_message,
                    error_code=error_code or "",
                    next_retry_at=next_retry_at,
                    payment_method_id=payment_method_id or subscription.payment_method_id,
                )
            )
            invoice = self.repository.mark_invoice_failed(
                invoice_id, error_message, failed_at=now, next_retry_at=next_retry_at,
            )
            subscription = self.repository.record_failed_payment(subscription_id, error_message)
            DUNNING_FAILED_CHARGE_COUNT.labels(gateway=subscription.gateway or "default").inc()

            log_dunning_event(
                message="dunning.charge_failed",
                subscription_id=subscription_id,
                invoice_id=invoice_id,
                extra={
                    "attempt_number": number,
                    "max_retries": policy.max_retries,
                    "error_code": error_code or "",
                    "next_retry_at": next_retry_at.isoformat() if next_retry_at else None,
                },
            )

            if final:
                return self._cancel(subscription, policy)

            self._notify(select_failure_email(number, policy), subscription, invoice, policy)
            return RetryScheduled(next_retry_at=next_retry_at, attempt_number=number, max_attempts=policy.max_retries)

    def _replay(self, recorded: RetryAttemptRecord, subscription: SubscriptionSnapshot,
                policy: DunningPolicy) -> RecoveryResult:
        if recorded.succeeded:
            return RecoverySuccess()
        if recorded.next_retry_at is not None:
            return RetryScheduled(
                next_retry_at=recorded.next_retry_at,
                attempt_number=recorded.attempt_number,
                max_attempts=policy.max_retries,
            )
        # The terminal attempt was stored but cancellation did not complete.
        return self._cancel(subscription, policy)

    def execute_retry(self, invoice_id: uuid.UUID, *, manual: bool = False) -> RecoveryResult:
        """Charge a due invoice once, then route the outcome through recovery or failure."""

        if self.gateway is None:
            raise DunningUpstreamError("No charge gateway configured", code="gateway_unavailable")

        with self._invoice_section(invoice_id):
            invoice = self._require_invoice(invoice_id)
            subscription = self._require_subscription(invoice.subscription_id)
            policy = self.policy_for(subscription)
            self._check_retryable(invoice, subscription, policy, manual=manual)

            number = invoice.failed_attempts + 1
            outcome = self._charge(invoice, subscription, number)

            if outcome.success:
                self.repository.record_retry_attempt(
                    RetryAttemptRecord(
                        subscription_id=subscription.id,
                        invoice_id=invoice_id,
                        attempt_number=number,
                        attempted_at=self.clock(),
                        succeeded=True,
                        payment_method_id=subscription.payment_method_id,
                        gateway_transaction_id=outcome.transaction_id or "",
                    )
                )
                result = self.process_recovery(subscription.id, invoice_id, outcome.transaction_id or "")
            else:
                result = self.process_failed_charge(
                    subscription.id,
                    invoice_id,
                    outcome.error_message or "Payment declined",
                    error_code=outcome.error_code,
                    attempt_number=number,
                    payment_method_id=subscription.payment_method_id,
                )

        DUNNING_RETRY_OUTCOME_COUNT.labels(outcome=result.kind).inc()
        log_dunning_event(
            message="dunning.retry_executed",
            subscription_id=subscription.id,
            invoice_id=invoice_id,
            actor="manual" if manual else "scheduler",
            extra={"attempt_number": number, "result": result.kind},
        )
        return result

    def manual_retry(self, invoice_id: uuid.UUID) -> RecoveryResult:
        return self.execute_retry(invoice_id, manual=True)

    def _check_retryable(self, invoice: InvoiceSnapshot, subscription: SubscriptionSnapshot,
                         policy: DunningPolicy, *, manual: bool) -> None:
        if invoice.status not in RETRYABLE_INVOICE_STATUSES:
            raise DunningValidationError(
                f"Invoice {invoice.id} is {invoice.status.value} and cannot be retried",
                code="invoice_not_retryable",
            )
        if not manual and invoice.next_retry_at is not None and invoice.next_retry_at > self.clock():
            raise DunningValidationError(
                f"Retry for invoice {invoice.id} is not due yet",
                code="retry_not_due",
                details={"next_retry_at": invoice.next_retry_at.isoformat()},
            )
        if subscription.status not in RETRYABLE_SUBSCRIPTION_STATUSES:
            raise DunningValidationError(
                f"Subscription {subscription.id} is {subscription.status.value}",
                code="subscription_not_retryable",
            )
        if invoice.failed_attempts >= policy.max_retries:
            raise DunningValidationError(
                f"Invoice {invoice.id} has exhausted its {policy.max_retries} retries",
                code="max_retries_reached",
            )

    def _charge(self, invoice: InvoiceSnapshot, subscription: SubscriptionSnapshot, attempt_number: int) -> ChargeOutcome:
        try:
            return call_with_timeout(
                self.gateway.charge,
                self.charge_timeout,
                invoice_id=invoice.id,
                amount=invoice.total,
                currency=subscription.currency,
                payment_method_id=subscription.payment_method_id,
                idempotency_key=build_idempotency_key(invoice.id),
            )
        except CallTimeout:
            logger.warning("Charge for invoice %s attempt %s timed out", invoice.id, attempt_number)
            return ChargeOutcome.declined("Payment gateway timed out", error_code="timeout")
        except DunningError:
            raise
        except Exception as exc:
            logger.exception("Charge gateway error for invoice %s", invoice.id)
            raise DunningUpstreamError(f"Charge gateway error: {exc}", code="gateway_error") from exc

    def cancel_after_retries(self, subscription_id: uuid.UUID) -> FailedPermanent:
        """Cancel a subscription whose retries are exhausted. Idempotent."""

        subscription = self._require_subscription(subscription_id)
        latest = self._latest_failing_invoice(subscription_id)
        if latest is None:
            return self._cancel(subscription, self.policy_for(subscription))
        with self._invoice_section(latest.id):
            subscription = self._require_subscription(subscription_id)
            return self._cancel(subscription, self.policy_for(subscription))

    def _cancel(self, subscription: SubscriptionSnapshot, policy: DunningPolicy) -> FailedPermanent:
        if subscription.is_cancelled:
            return FailedPermanent(
                cancelled_at=subscription.cancelled_at or self.clock(),
                reason=subscription.cancellation_details or CancellationReason.PAYMENT_FAILED.value,
            )

        latest = self._latest_failing_invoice(subscription.id)
        reason = cancellation_details(latest.failed_attempts if latest else 0)
        now = self.clock()
        subscription = self.repository.cancel_subscription(
            subscription.id, CancellationReason.PAYMENT_FAILED, details=reason, cancelled_at=now,
        )
        for invoice in self.repository.list_invoices(subscription.id):
            if invoice.status in RETRYABLE_INVOICE_STATUSES and invoice.next_retry_at is not None:
                self.repository.clear_next_retry(invoice.id)

        DUNNING_CANCELLATION_COUNT.inc()
        log_dunning_event(
            message="dunning.subscription_cancelled",
            subscription_id=subscription.id,
            invoice_id=latest.id if latest else None,
            extra={"reason": reason},
        )
        if latest is not None:
            latest = self.repository.get_invoice(latest.id) or latest
            self._notify(DunningEmailType.CANCELLATION_NOTICE, subscription, latest, policy)
        return FailedPermanent(cancelled_at=now, reason=reason)

    def process_recovery(self, subscription_id: uuid.UUID, invoice_id: uuid.UUID, payment_id: str) -> RecoverySuccess:
        """Mark an invoice paid and restore a past-due subscription. Idempotent."""

        self._require_subscription(subscription_id)
        self._require_invoice(invoice_id, subscription_id)

        with self._invoice_section(invoice_id):
            invoice = self._require_invoice(invoice_id, subscription_id)
            if invoice.is_paid:
                logger.info("Invoice %s already paid; recovery is a no-op", invoice_id)
                return RecoverySuccess()

            subscription = self._require_subscription(subscription_id)
            policy = self.policy_for(subscription)
            now = self.clock()
            invoice = self.repository.mark_invoice_paid(invoice_id, payment_id, paid_at=now)
            DUNNING_RECOVERY_COUNT.inc()

            if subscription.is_cancelled:
                logger.warning(
                    "Invoice %s paid after subscription %s was cancelled; not reactivating",
                    invoice_id,
                    subscription_id,
                )
                return RecoverySuccess()

            subscription = self.repository.record_payment(subscription_id, payment_id, paid_at=now)
            log_dunning_event(
                message="dunning.recovered",
                subscription_id=subscription_id,
                invoice_id=invoice_id,
                extra={"payment_id": payment_id, "subscription_status": subscription.status.value},
            )
            self._notify(DunningEmailType.PAYMENT_RECOVERED, subscription, invoice, policy)
        return RecoverySuccess()

    def reset_dunning_state(self, subscription_id: uuid.UUID, *, actor: Optional[str] = None) -> SubscriptionSnapshot:
        """Return a past-due subscription to active without touching invoice counters."""

        subscription = self._require_subscription(subscription_id)
        if subscription.status != SubscriptionStatus.PAST_DUE:
            logger.info(
                "Reset requested for subscription %s in status %s; nothing to do",
                subscription_id,
                subscription.status.value,
            )
            return subscription
        subscription = self.repository.reactivate_subscription(subscription_id)
        log_dunning_event(message="dunning.reset", subscription_id=subscription_id, actor=actor)
        return subscription

    def get_dunning_history(self, subscription_id: uuid.UUID) -> DunningHistory:
        subscription = self._require_subscription(subscription_id)
        attempts: List[RetryAttemptRecord] = []
        for invoice in self.repository.list_invoices(subscription_id):
            attempts.extend(self.repository.get_retry_attempts(invoice.id))
        attempts.sort(key=lambda attempt: (attempt.attempt_number, attempt.attempted_at))
        return DunningHistory(
            subscription_id=subscription.id,
            subscription_status=subscription.status,
            retry_attempts=attempts,
            emails_sent=self.repository.get_dunning_emails(subscription_id),
            is_cancelled=(
                subscription.is_cancelled
                and subscription.cancellation_reason == CancellationReason.PAYMENT_FAILED
            ),
        )
