from datetime import timedelta
from decimal import Decimal

from django.core import mail

from dunning.enums import DunningEmailType, EmailDeliveryStatus, InvoiceStatus
from dunning.services.notifications import (
    SUBJECTS,
    DjangoMailNotifier,
    NotificationTrigger,
    build_email_content,
)
from dunning.services.policy import DunningPolicy
from dunning.tests.fakes import NOW, RecordingNotifier


def test_every_email_type_has_a_subject(make_subscription, make_invoice):
    subscription = make_subscription()
    invoice = make_invoice(subscription)

    for email_type in DunningEmailType:
        content = build_email_content(email_type, subscription, invoice, DunningPolicy())
        assert content.subject == SUBJECTS[email_type]
        assert content.body_text
        assert content.body_html.startswith("<html>")


def test_retry_failure_shows_attempt_and_next_retry(make_subscription, make_invoice):
    subscription = make_subscription(currency="eur", amount=Decimal("12.50"))
    invoice = make_invoice(
        subscription,
        status=InvoiceStatus.FAILED,
        total=Decimal("12.50"),
        failed_attempts=2,
        next_retry_at=NOW + timedelta(days=3),
    )

    content = build_email_content(DunningEmailType.RETRY_FAILURE, subscription, invoice, DunningPolicy(max_retries=4))

    assert "Attempt: 2/4" in content.body_text
    assert "Amount: 12.50 EUR" in content.body_text
    assert "Next retry: 2024-03-04 12:00 UTC" in content.body_text


def test_html_body_escapes_values(make_subscription, make_invoice):
    subscription = make_subscription(currency="<b>")
    invoice = make_invoice(subscription)

    content = build_email_content(DunningEmailType.PAYMENT_RECOVERED, subscription, invoice, DunningPolicy())

    assert "&lt;B&gt;" in content.body_html
    assert "<B>" not in content.body_html


def test_disabled_email_is_skipped_without_record(repository, notifier, clock, make_subscription, make_invoice):
    trigger = NotificationTrigger(repository, notifier, clock=clock)
    subscription = make_subscription()
    invoice = make_invoice(subscription)
    policy = DunningPolicy(email_on_first_failure=False, email_on_final_failure=False)

    first = trigger.dispatch(DunningEmailType.FIRST_FAILURE, subscription, invoice, policy)
    final = trigger.dispatch(DunningEmailType.FINAL_NOTICE, subscription, invoice, policy)
    cancelled = trigger.dispatch(DunningEmailType.CANCELLATION_NOTICE, subscription, invoice, policy)

    assert first.skipped and final.skipped
    assert cancelled.delivered
    assert notifier.types == ["cancellation_notice"]
    assert [e.email_type for e in repository.get_dunning_emails(subscription.id)] == [
        DunningEmailType.CANCELLATION_NOTICE,
    ]


def test_sent_email_is_recorded(repository, notifier, clock, make_subscription, make_invoice):
    trigger = NotificationTrigger(repository, notifier, clock=clock)
    subscription = make_subscription(customer_email="billing@example.com")
    invoice = make_invoice(subscription)

    outcome = trigger.dispatch(DunningEmailType.FIRST_FAILURE, subscription, invoice, DunningPolicy())

    assert outcome.delivered
    assert outcome.record.recipient == "billing@example.com"
    assert outcome.record.sent_at == NOW
    assert outcome.record.delivery_status == EmailDeliveryStatus.SENT
    assert notifier.sent[0]["recipient"] == "billing@example.com"


def test_notifier_timeout_is_recorded_as_failed(repository, clock, make_subscription, make_invoice):
    trigger = NotificationTrigger(repository, RecordingNotifier(delay=0.5), timeout=0.05, clock=clock)
    subscription = make_subscription()
    invoice = make_invoice(subscription)

    outcome = trigger.dispatch(DunningEmailType.PAYMENT_RECOVERED, subscription, invoice, DunningPolicy())

    assert not outcome.delivered
    assert outcome.error.code == "notifier_timeout"
    assert outcome.record.delivery_status == EmailDeliveryStatus.FAILED


def test_missing_notifier_is_recorded_as_failed(repository, clock, make_subscription, make_invoice):
    trigger = NotificationTrigger(repository, None, clock=clock)
    subscription = make_subscription()
    invoice = make_invoice(subscription)

    outcome = trigger.dispatch(DunningEmailType.FIRST_FAILURE, subscription, invoice, DunningPolicy())

    assert outcome.error.code == "notifier_unavailable"
    assert repository.get_dunning_emails(subscription.id)[0].delivery_status == EmailDeliveryStatus.FAILED


def test_django_mail_notifier_sends_multipart_message(settings):
    settings.EMAIL_BACKEND = "django.core.mail.backends.locmem.EmailBackend"
    settings.DUNNING = {"FROM_EMAIL": "billing@dunning.test"}

    DjangoMailNotifier().send(
        email_type=DunningEmailType.FINAL_NOTICE,
        subject=SUBJECTS[DunningEmailType.FINAL_NOTICE],
        body_text="text body",
        body_html="<p>html body</p>",
        recipient="customer@example.com",
    )

    assert len(mail.outbox) == 1
    message = mail.outbox[0]
    assert message.from_email == "billing@dunning.test"
    assert message.to == ["customer@example.com"]
    assert message.extra_headers["X-Dunning-Email-Type"] == "final_notice"
    assert message.alternatives[0][0] == "<p>html body</p>"


def test_django_mail_notifier_defaults_to_default_from_email(settings):
    settings.DUNNING = {}
    settings.DEFAULT_FROM_EMAIL = "noreply@dunning.test"

    assert DjangoMailNotifier().from_email == "noreply@dunning.test"


def test_string_email_type_is_coerced(repository, notifier, clock, make_subscription, make_invoice):
    trigger = NotificationTrigger(repository, notifier, clock=clock)
    subscription = make_subscription()
    invoice = make_invoice(subscription)

    outcome = trigger.dispatch("payment_recovered", subscription, invoice, DunningPolicy())

    assert outcome.email_type is DunningEmailType.PAYMENT_RECOVERED
