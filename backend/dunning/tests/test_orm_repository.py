from datetime import timedelta
from decimal import Decimal

import pytest
from django.core.exceptions import ValidationError

from dunning.enums import DunningEmailType, InvoiceStatus, SubscriptionStatus
from dunning.models import PaymentRetryAttempt, Subscription, SubscriptionInvoice
from dunning.services.errors import DunningValidationError
from dunning.services.gateway import ChargeOutcome
from dunning.services.notifications import NotificationTrigger
from dunning.services.orchestrator import DunningOrchestrator
from dunning.services.orm_repository import DjangoDunningRepository
from dunning.services.policy import PolicyRegistry
from dunning.services.records import RetryAttemptRecord
from dunning.services.results import FailedPermanent, RecoverySuccess, RetryScheduled
from dunning.services.runner import DunningBatchRunner
from dunning.tests.fakes import NOW, FakeChargeGateway, FrozenClock, RecordingNotifier

pytestmark = pytest.mark.django_db


@pytest.fixture
def orm_repository():
    return DjangoDunningRepository()


@pytest.fixture
def subscription_row():
    return Subscription.objects.create(
        customer_email="customer@example.com",
        status=SubscriptionStatus.ACTIVE,
        currency="usd",
        amount=Decimal("49.00"),
        payment_method_id="pm_card_visa",
    )


@pytest.fixture
def invoice_row(subscription_row):
    return SubscriptionInvoice.objects.create(
        subscription=subscription_row,
        cycle_number=1,
        total=Decimal("49.00"),
        status=InvoiceStatus.BILLED,
    )


def test_snapshots_mirror_rows(orm_repository, subscription_row, invoice_row):
    subscription = orm_repository.find_subscription(subscription_row.id)
    invoice = orm_repository.get_invoice(invoice_row.id)

    assert subscription.status == SubscriptionStatus.ACTIVE
    assert subscription.amount == Decimal("49.00")
    assert subscription.cancellation_reason is None
    assert invoice.status == InvoiceStatus.BILLED
    assert invoice.failed_attempts == 0
    assert [inv.id for inv in orm_repository.list_invoices(subscription_row.id)] == [invoice_row.id]
    assert [inv.id for inv in orm_repository.get_pending_invoices()] == [invoice_row.id]


def test_mark_invoice_failed_increments_counters(orm_repository, invoice_row):
    retry_at = NOW + timedelta(days=1)

    orm_repository.mark_invoice_failed(invoice_row.id, "Card declined", failed_at=NOW)
    invoice = orm_repository.mark_invoice_failed(invoice_row.id, "Card declined", failed_at=NOW,
                                                 next_retry_at=retry_at)

    assert invoice.status == InvoiceStatus.FAILED
    assert invoice.failed_attempts == 2
    assert invoice.retry_count == 2
    assert invoice.next_retry_at == retry_at
    assert orm_repository.clear_next_retry(invoice_row.id).next_retry_at is None


def test_duplicate_attempt_is_rejected(orm_repository, subscription_row, invoice_row):
    attempt = RetryAttemptRecord(
        subscription_id=subscription_row.id,
        invoice_id=invoice_row.id,
        attempt_number=1,
        attempted_at=NOW,
        succeeded=False,
        error_message="Card declined",
    )
    orm_repository.record_retry_attempt(attempt)

    with pytest.raises(DunningValidationError) as exc:
        orm_repository.record_retry_attempt(
            RetryAttemptRecord(
                subscription_id=subscription_row.id,
                invoice_id=invoice_row.id,
                attempt_number=1,
                attempted_at=NOW,
                succeeded=False,
            )
        )

    assert exc.value.code == "duplicate_attempt"
    assert PaymentRetryAttempt.objects.filter(invoice=invoice_row).count() == 1


def test_retry_attempt_rows_are_immutable(orm_repository, subscription_row, invoice_row):
    orm_repository.record_retry_attempt(
        RetryAttemptRecord(
            subscription_id=subscription_row.id,
            invoice_id=invoice_row.id,
            attempt_number=1,
            attempted_at=NOW,
            succeeded=False,
        )
    )
    row = PaymentRetryAttempt.objects.get(invoice=invoice_row)

    row.error_message = "rewritten"
    with pytest.raises(ValidationError):
        row.save()
    with pytest.raises(ValidationError):
        row.delete()


def test_lock_is_reentrant(orm_repository, invoice_row):
    with orm_repository.lock_invoice(invoice_row.id):
        with orm_repository.lock_invoice(invoice_row.id):
            orm_repository.mark_invoice_failed(invoice_row.id, "declined", failed_at=NOW)

    assert orm_repository.get_invoice(invoice_row.id).failed_attempts == 1


def test_subscription_transitions(orm_repository, subscription_row):
    assert orm_repository.record_failed_payment(subscription_row.id, "declined").status == SubscriptionStatus.PAST_DUE
    assert orm_repository.reactivate_subscription(subscription_row.id).status == SubscriptionStatus.ACTIVE

    orm_repository.record_failed_payment(subscription_row.id, "declined")
    recovered = orm_repository.record_payment(subscription_row.id, "pay_1", paid_at=NOW)
    assert recovered.status == SubscriptionStatus.ACTIVE
    assert recovered.last_payment_id == "pay_1"


def test_full_dunning_cycle_on_database(orm_repository, subscription_row, invoice_row):
    clock = FrozenClock(NOW)
    notifier = RecordingNotifier()
    gateway = FakeChargeGateway()
    orchestrator = DunningOrchestrator(
        orm_repository,
        PolicyRegistry(),
        gateway=gateway,
        notifications=NotificationTrigger(orm_repository, notifier, clock=clock),
        clock=clock,
    )
    runner = DunningBatchRunner(orchestrator)

    first = orchestrator.process_failed_charge(subscription_row.id, invoice_row.id, "Card declined")
    assert isinstance(first, RetryScheduled)
    assert runner.get_invoices_for_retry() == []

    clock.advance(days=1)
    assert runner.process_all_due_retries().pending == 1

    clock.advance(days=3)
    result = runner.process_all_due_retries()
    assert result.failed == 1

    subscription_row.refresh_from_db()
    invoice_row.refresh_from_db()
    assert subscription_row.status == SubscriptionStatus.CANCELLED
    assert subscription_row.cancellation_details == "Payment failed after 3 retry attempts"
    assert invoice_row.failed_attempts == 3
    assert invoice_row.next_retry_at is None
    assert PaymentRetryAttempt.objects.filter(invoice=invoice_row).count() == 3
    assert notifier.types == ["first_failure", "final_notice", "cancellation_notice"]
    assert {email.email_type for email in orm_repository.get_dunning_emails(subscription_row.id)} == {
        DunningEmailType.FIRST_FAILURE,
        DunningEmailType.FINAL_NOTICE,
        DunningEmailType.CANCELLATION_NOTICE,
    }
    assert isinstance(orchestrator.cancel_after_retries(subscription_row.id), FailedPermanent)


def test_recovery_on_database(orm_repository, subscription_row, invoice_row):
    clock = FrozenClock(NOW)
    gateway = FakeChargeGateway()
    orchestrator = DunningOrchestrator(orm_repository, PolicyRegistry(), gateway=gateway, clock=clock)
    orchestrator.process_failed_charge(subscription_row.id, invoice_row.id, "Card declined")
    gateway.outcomes.append(ChargeOutcome.approved("txn_db"))

    assert orchestrator.manual_retry(invoice_row.id) == RecoverySuccess()

    subscription_row.refresh_from_db()
    invoice_row.refresh_from_db()
    assert subscription_row.status == SubscriptionStatus.ACTIVE
    assert invoice_row.status == InvoiceStatus.PAID
    assert invoice_row.payment_id == "txn_db"
    assert PaymentRetryAttempt.objects.get(invoice=invoice_row, attempt_number=2).succeeded is True
