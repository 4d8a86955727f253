import uuid
from datetime import timedelta
from decimal import Decimal

from django.contrib.auth import get_user_model
from django.core.cache import cache
from django.test import override_settings
from django.urls import reverse
from django.utils import timezone
from rest_framework.test import APIClient, APITestCase

from dunning.enums import DunningEmailType, InvoiceStatus, SubscriptionStatus
from dunning.models import DunningEmail, PaymentRetryAttempt, Subscription, SubscriptionInvoice
from dunning.tasks import BATCH_LOCK_KEY

TEST_DUNNING = {
    "CHARGE_GATEWAY": "dunning.tests.fakes.ApprovingGateway",
    "NOTIFIER": "dunning.tests.fakes.RecordingNotifier",
    "CHARGE_TIMEOUT_SECONDS": 0,
    "NOTIFY_TIMEOUT_SECONDS": 0,
}


@override_settings(DUNNING=TEST_DUNNING)
class DunningApiTestBase(APITestCase):
    def setUp(self):
        self.client = APIClient()
        User = get_user_model()
        self.owner = User.objects.create_user(
            username="alice",
            email="alice@example.com",
            password="password123",
        )
        self.other_user = User.objects.create_user(
            username="bob",
            email="bob@example.com",
            password="password123",
        )
        self.staff = User.objects.create_user(
            username="ops",
            email="ops@example.com",
            password="password123",
            is_staff=True,
        )
        self.subscription = Subscription.objects.create(
            owner=self.owner,
            customer_email="alice@example.com",
            status=SubscriptionStatus.PAST_DUE,
            currency="usd",
            amount=Decimal("19.00"),
            payment_method_id="pm_card_visa",
        )
        self.invoice = SubscriptionInvoice.objects.create(
            subscription=self.subscription,
            cycle_number=1,
            total=Decimal("19.00"),
            status=InvoiceStatus.FAILED,
            failed_attempts=1,
            last_failed_at=timezone.now() - timedelta(days=1),
            next_retry_at=timezone.now() - timedelta(minutes=5),
        )


class AdminDunningApiTests(DunningApiTestBase):
    def setUp(self):
        super().setUp()
        self.client.force_authenticate(self.staff)

    def test_manual_retry_recovers_invoice(self):
        response = self.client.post(reverse("dunning:admin-retry", args=[self.invoice.id]))

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["kind"], "success")
        self.invoice.refresh_from_db()
        self.subscription.refresh_from_db()
        self.assertEqual(self.invoice.status, InvoiceStatus.PAID)
        self.assertEqual(self.subscription.status, SubscriptionStatus.ACTIVE)
        self.assertTrue(PaymentRetryAttempt.objects.get(invoice=self.invoice, attempt_number=2).succeeded)
        email = DunningEmail.objects.get(subscription=self.subscription)
        self.assertEqual(email.email_type, DunningEmailType.PAYMENT_RECOVERED)

    def test_manual_retry_unknown_invoice_returns_404(self):
        response = self.client.post(reverse("dunning:admin-retry", args=[uuid.uuid4()]))

        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.data["code"], "not_found")
        self.assertIn("details", response.data)

    def test_manual_retry_paid_invoice_returns_400(self):
        self.invoice.status = InvoiceStatus.PAID
        self.invoice.save(update_fields=["status"])

        response = self.client.post(reverse("dunning:admin-retry", args=[self.invoice.id]))

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.data["code"], "invoice_not_retryable")

    def test_failed_payment_schedules_retry(self):
        invoice = SubscriptionInvoice.objects.create(
            subscription=self.subscription,
            cycle_number=2,
            total=Decimal("19.00"),
            status=InvoiceStatus.BILLED,
        )

        response = self.client.post(
            reverse("dunning:admin-failed-payment"),
            {
                "subscription_id": str(self.subscription.id),
                "invoice_id": str(invoice.id),
                "error_message": "Card declined",
                "error_code": "card_declined",
                "attempt_number": 1,
            },
            format="json",
        )

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["kind"], "retry_scheduled")
        self.assertEqual(response.data["attempt_number"], 1)
        self.assertEqual(response.data["max_attempts"], 3)
        invoice.refresh_from_db()
        self.assertEqual(invoice.failed_attempts, 1)

    def test_failed_payment_out_of_order_returns_400(self):
        response = self.client.post(
            reverse("dunning:admin-failed-payment"),
            {
                "subscription_id": str(self.subscription.id),
                "invoice_id": str(self.invoice.id),
                "error_message": "Card declined",
                "attempt_number": 4,
            },
            format="json",
        )

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.data["code"], "attempt_out_of_order")
        self.assertEqual(response.data["details"], {"expected_attempt": 2})

    def test_failed_payment_rejects_invalid_payload(self):
        response = self.client.post(
            reverse("dunning:admin-failed-payment"),
            {"subscription_id": "not-a-uuid"},
            format="json",
        )

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.data["code"], "invalid_request")
        self.assertIn("invoice_id", response.data["details"])

    def test_recovery_marks_invoice_paid(self):
        response = self.client.post(
            reverse("dunning:admin-recovery"),
            {
                "subscription_id": str(self.subscription.id),
                "invoice_id": str(self.invoice.id),
                "payment_id": "pay_external",
            },
            format="json",
        )

        self.assertEqual(response.status_code, 200)
        self.invoice.refresh_from_db()
        self.assertEqual(self.invoice.payment_id, "pay_external")

    def test_scheduled_and_due_retries(self):
        SubscriptionInvoice.objects.create(
            subscription=self.subscription,
            cycle_number=2,
            total=Decimal("19.00"),
            status=InvoiceStatus.FAILED,
            failed_attempts=1,
            next_retry_at=timezone.now() + timedelta(days=2),
        )

        scheduled = self.client.get(reverse("dunning:admin-retries"))
        due = self.client.get(reverse("dunning:admin-retries-due"))

        self.assertEqual(scheduled.data["count"], 2)
        self.assertEqual(due.data["count"], 1)
        self.assertEqual(due.data["results"][0]["invoice"]["id"], str(self.invoice.id))
        self.assertEqual(due.data["results"][0]["attempt_number"], 2)

    def test_stats_and_config(self):
        stats = self.client.get(reverse("dunning:admin-stats"))
        config = self.client.get(reverse("dunning:admin-config"))

        self.assertEqual(stats.status_code, 200)
        self.assertEqual(stats.data, {"pending_retries": 1, "invoices_due": 1, "next_run_in_minutes": 60})
        self.assertEqual(config.data["default"]["max_retries"], 3)
        self.assertEqual(config.data["default"]["retry_intervals_days"], [1, 3, 7])
        self.assertTrue(config.data["enabled"])

    def test_process_runs_job(self):
        response = self.client.post(reverse("dunning:admin-process"))

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["processed"], 1)
        self.assertEqual(response.data["succeeded"], 1)
        self.assertFalse(response.data["skipped"])

    def test_process_conflicts_when_batch_running(self):
        cache.add(BATCH_LOCK_KEY, "other-worker", timeout=60)
        try:
            response = self.client.post(reverse("dunning:admin-process"))
        finally:
            cache.delete(BATCH_LOCK_KEY)

        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.data["code"], "batch_running")
        self.invoice.refresh_from_db()
        self.assertEqual(self.invoice.status, InvoiceStatus.FAILED)


class AdminPermissionTests(DunningApiTestBase):
    def test_admin_endpoints_require_staff(self):
        self.client.force_authenticate(self.owner)

        for name, method, args in [
            ("dunning:admin-process", "post", []),
            ("dunning:admin-retries", "get", []),
            ("dunning:admin-retry", "post", [self.invoice.id]),
            ("dunning:admin-stats", "get", []),
            ("dunning:admin-config", "get", []),
        ]:
            response = getattr(self.client, method)(reverse(name, args=args))
            self.assertEqual(response.status_code, 403, name)

        self.invoice.refresh_from_db()
        self.assertEqual(self.invoice.status, InvoiceStatus.FAILED)


class SubscriptionDunningApiTests(DunningApiTestBase):
    def _history_url(self, subscription_id=None):
        return reverse("dunning:subscription-dunning-history", args=[subscription_id or self.subscription.id])

    def test_owner_sees_history(self):
        PaymentRetryAttempt.objects.create(
            subscription=self.subscription,
            invoice=self.invoice,
            attempt_number=1,
            attempted_at=timezone.now() - timedelta(days=1),
            error_message="Card declined",
        )
        self.client.force_authenticate(self.owner)

        response = self.client.get(self._history_url())

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["total_attempts"], 1)
        self.assertEqual(response.data["subscription_status"], "past_due")
        self.assertFalse(response.data["is_cancelled"])

    def test_other_user_is_forbidden(self):
        self.client.force_authenticate(self.other_user)

        response = self.client.get(self._history_url())

        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.data["code"], "forbidden")

    def test_staff_can_read_any_history(self):
        self.client.force_authenticate(self.staff)

        response = self.client.get(self._history_url())

        self.assertEqual(response.status_code, 200)

    def test_unknown_subscription_returns_404(self):
        self.client.force_authenticate(self.owner)

        response = self.client.get(self._history_url(uuid.uuid4()))

        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.data["code"], "not_found")

    def test_anonymous_request_is_rejected(self):
        response = self.client.get(self._history_url())

        self.assertIn(response.status_code, (401, 403))

    def test_owner_resets_dunning_state(self):
        self.client.force_authenticate(self.owner)

        response = self.client.post(
            reverse("dunning:subscription-reset-dunning", args=[self.subscription.id])
        )

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["status"], "active")
        self.invoice.refresh_from_db()
        self.assertEqual(self.invoice.failed_attempts, 1)
