from decimal import Decimal
import uuid

from django.conf import settings
import django.core.validators
from django.db import migrations, models
import django.db.models.deletion

import dunning.models


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="Subscription",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("customer_email", models.EmailField(help_text="Recipient of dunning notifications", max_length=254)),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("active", "Active"),
                            ("past_due", "Past due"),
                            ("paused", "Paused"),
                            ("cancelled", "Cancelled"),
                        ],
                        default="active",
                        help_text="Lifecycle state of the subscription",
                        max_length=20,
                    ),
                ),
                (
                    "gateway",
                    models.CharField(
                        blank=True,
                        help_text="Payment gateway id; selects per-gateway dunning policy",
                        max_length=64,
                    ),
                ),
                (
                    "payment_method_id",
                    models.CharField(
                        blank=True,
                        help_text="Gateway payment method reference charged on retries",
                        max_length=255,
                    ),
                ),
                ("currency", models.CharField(default=dunning.models._default_currency, max_length=3)),
                (
                    "amount",
                    models.DecimalField(
                        decimal_places=2,
                        default=Decimal("0.00"),
                        help_text="Recurring charge amount per billing cycle",
                        max_digits=12,
                        validators=[django.core.validators.MinValueValidator(Decimal("0.00"))],
                    ),
                ),
                (
                    "cancellation_reason",
                    models.CharField(
                        blank=True,
                        choices=[
                            ("customer_requested", "Customer requested"),
                            ("payment_failed", "Payment failed"),
                            ("fraudulent", "Fraudulent"),
                            ("too_expensive", "Too expensive"),
                            ("not_useful", "Not useful"),
                            ("other", "Other"),
                        ],
                        max_length=32,
                        null=True,
                    ),
                ),
                ("cancellation_details", models.TextField(blank=True)),
                ("cancelled_at", models.DateTimeField(blank=True, null=True)),
                ("last_failure_reason", models.CharField(blank=True, max_length=512)),
                ("last_payment_id", models.CharField(blank=True, max_length=255)),
                ("last_payment_at", models.DateTimeField(blank=True, null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "owner",
                    models.ForeignKey(
                        blank=True,
                        help_text="Customer account allowed to view and reset dunning state",
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="dunning_subscriptions",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                "verbose_name": "Subscription",
                "verbose_name_plural": "Subscriptions",
                "db_table": "dunning_subscription",
                "ordering": ["-created_at"],
                "indexes": [models.Index(fields=["status"], name="dunning_sub_status_idx")],
            },
        ),
        migrations.CreateModel(
            name="SubscriptionInvoice",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("cycle_number", models.PositiveIntegerField(help_text="Billing cycle this invoice belongs to")),
                ("total", models.DecimalField(decimal_places=2, max_digits=12)),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("pending", "Pending"),
                            ("billed", "Billed"),
                            ("paid", "Paid"),
                            ("failed", "Failed"),
                        ],
                        default="pending",
                        max_length=20,
                    ),
                ),
                (
                    "failed_attempts",
                    models.PositiveIntegerField(
                        default=0,
                        help_text="Failed charge attempts recorded so far; never decreases",
                    ),
                ),
                ("last_failed_at", models.DateTimeField(blank=True, null=True)),
                ("failure_reason", models.CharField(blank=True, max_length=512)),
                (
                    "next_retry_at",
                    models.DateTimeField(
                        blank=True,
                        help_text="When the next automatic retry is due; empty once retries stop",
                        null=True,
                    ),
                ),
                ("retry_count", models.PositiveIntegerField(default=0)),
                ("paid_at", models.DateTimeField(blank=True, null=True)),
                ("payment_id", models.CharField(blank=True, max_length=255)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "subscription",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="invoices",
                        to="dunning.subscription",
                    ),
                ),
            ],
            options={
                "verbose_name": "Subscription invoice",
                "verbose_name_plural": "Subscription invoices",
                "db_table": "dunning_subscription_invoice",
                "ordering": ["subscription_id", "cycle_number"],
                "indexes": [models.Index(fields=["status", "next_retry_at"], name="dunning_inv_retry_idx")],
                "constraints": [
                    models.UniqueConstraint(fields=("subscription", "cycle_number"), name="unique_dunning_invoice_cycle"),
                ],
            },
        ),
        migrations.CreateModel(
            name="PaymentRetryAttempt",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                (
                    "attempt_number",
                    models.PositiveIntegerField(validators=[django.core.validators.MinValueValidator(1)]),
                ),
                ("attempted_at", models.DateTimeField()),
                ("succeeded", models.BooleanField(default=False)),
                ("error_message", models.TextField(blank=True)),
                ("error_code", models.CharField(blank=True, max_length=64)),
                (
                    "next_retry_at",
                    models.DateTimeField(
                        blank=True,
                        help_text="Retry time scheduled as a result of this attempt",
                        null=True,
                    ),
                ),
                ("payment_method_id", models.CharField(blank=True, max_length=255)),
                ("gateway_transaction_id", models.CharField(blank=True, max_length=255)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                (
                    "invoice",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="retry_attempts",
                        to="dunning.subscriptioninvoice",
                    ),
                ),
                (
                    "subscription",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="retry_attempts",
                        to="dunning.subscription",
                    ),
                ),
            ],
            options={
                "verbose_name": "Payment retry attempt",
                "verbose_name_plural": "Payment retry attempts",
                "db_table": "dunning_payment_retry_attempt",
                "ordering": ["attempt_number", "attempted_at"],
                "constraints": [
                    models.UniqueConstraint(
                        fields=("invoice", "attempt_number"),
                        name="unique_dunning_attempt_per_invoice",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="DunningEmail",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                (
                    "email_type",
                    models.CharField(
                        choices=[
                            ("first_failure", "First failure"),
                            ("retry_failure", "Retry failure"),
                            ("final_notice", "Final notice"),
                            ("cancellation_notice", "Cancellation notice"),
                            ("payment_recovered", "Payment recovered"),
                        ],
                        max_length=32,
                    ),
                ),
                ("recipient", models.EmailField(max_length=254)),
                ("subject", models.CharField(max_length=255)),
                ("body_text", models.TextField()),
                ("body_html", models.TextField(blank=True)),
                ("sent_at", models.DateTimeField()),
                (
                    "delivery_status",
                    models.CharField(
                        choices=[("sent", "Sent"), ("failed", "Failed")],
                        default="sent",
                        max_length=16,
                    ),
                ),
                ("delivery_error", models.TextField(blank=True)),
                (
                    "opened_at",
                    models.DateTimeField(
                        blank=True,
                        help_text="Set by the email tracker, never by the dunning engine",
                        null=True,
                    ),
                ),
                ("clicked_at", models.DateTimeField(blank=True, null=True)),
                (
                    "invoice",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="dunning_emails",
                        to="dunning.subscriptioninvoice",
                    ),
                ),
                (
                    "subscription",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="dunning_emails",
                        to="dunning.subscription",
                    ),
                ),
            ],
            options={
                "verbose_name": "Dunning email",
                "verbose_name_plural": "Dunning emails",
                "db_table": "dunning_email",
                "ordering": ["sent_at"],
                "indexes": [models.Index(fields=["subscription", "sent_at"], name="dunning_email_sub_idx")],
            },
        ),
    ]
