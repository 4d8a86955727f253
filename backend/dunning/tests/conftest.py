import uuid
from decimal import Decimal

import pytest

from dunning.enums import InvoiceStatus, SubscriptionStatus
from dunning.services.memory_repository import InMemoryDunningRepository
from dunning.services.notifications import NotificationTrigger
from dunning.services.orchestrator import DunningOrchestrator
from dunning.services.policy import DunningPolicy, PolicyRegistry
from dunning.services.records import InvoiceSnapshot, SubscriptionSnapshot
from dunning.services.runner import DunningBatchRunner
from dunning.tests.fakes import NOW, FakeChargeGateway, FrozenClock, RecordingNotifier


@pytest.fixture
def clock():
    return FrozenClock(NOW)


@pytest.fixture
def repository():
    return InMemoryDunningRepository()


@pytest.fixture
def gateway():
    return FakeChargeGateway()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def policies():
    return PolicyRegistry(default=DunningPolicy())


@pytest.fixture
def orchestrator(repository, policies, gateway, notifier, clock):
    trigger = NotificationTrigger(repository, notifier, clock=clock)
    return DunningOrchestrator(repository, policies, gateway=gateway, notifications=trigger, clock=clock)


@pytest.fixture
def runner(orchestrator):
    return DunningBatchRunner(orchestrator)


@pytest.fixture
def make_subscription(repository):
    def factory(status=SubscriptionStatus.ACTIVE, gateway="", **kwargs):
        subscription = SubscriptionSnapshot(
            id=kwargs.pop("id", uuid.uuid4()),
            customer_email=kwargs.pop("customer_email", "customer@example.com"),
            status=status,
            currency=kwargs.pop("currency", "usd"),
            amount=kwargs.pop("amount", Decimal("29.00")),
            payment_method_id=kwargs.pop("payment_method_id", "pm_card_visa"),
            gateway=gateway,
            **kwargs,
        )
        return repository.add_subscription(subscription)

    return factory


@pytest.fixture
def make_invoice(repository):
    def factory(subscription, status=InvoiceStatus.BILLED, cycle_number=1, **kwargs):
        invoice = InvoiceSnapshot(
            id=kwargs.pop("id", uuid.uuid4()),
            subscription_id=subscription.id,
            cycle_number=cycle_number,
            total=kwargs.pop("total", Decimal("29.00")),
            status=status,
            created_at=kwargs.pop("created_at", NOW),
            **kwargs,
        )
        return repository.add_invoice(invoice)

    return factory
