from django.contrib import admin
from django.urls import reverse
from django.utils.html import format_html

from .models import DunningEmail, PaymentRetryAttempt, Subscription, SubscriptionInvoice


class SubscriptionInvoiceInline(admin.TabularInline):
    model = SubscriptionInvoice
    extra = 0
    fields = ("cycle_number", "total", "status", "failed_attempts", "next_retry_at", "paid_at")
    readonly_fields = fields
    show_change_link = True
    can_delete = False


@admin.register(Subscription)
class SubscriptionAdmin(admin.ModelAdmin):
    """Subscriptions and their dunning status."""

    list_display = ("id", "customer_email", "status", "gateway", "amount", "currency", "cancelled_at")
    search_fields = ("id", "customer_email", "payment_method_id", "owner__username", "owner__email")
    list_filter = ("status", "gateway", "cancellation_reason")
    readonly_fields = ("cancelled_at", "last_payment_at", "created_at", "updated_at")
    ordering = ("-created_at",)
    raw_id_fields = ("owner",)
    inlines = (SubscriptionInvoiceInline,)

    fieldsets = (
        ("Customer", {"fields": ("owner", "customer_email")}),
        ("Billing", {"fields": ("status", "gateway", "payment_method_id", "amount", "currency")}),
        (
            "Dunning",
            {
                "fields": (
                    "last_failure_reason",
                    "last_payment_id",
                    "last_payment_at",
                    "cancellation_reason",
                    "cancellation_details",
                    "cancelled_at",
                )
            },
        ),
        ("Timestamps", {"fields": ("created_at", "updated_at")}),
    )


@admin.register(SubscriptionInvoice)
class SubscriptionInvoiceAdmin(admin.ModelAdmin):
    list_display = (
        "id",
        "subscription_link",
        "cycle_number",
        "total",
        "status",
        "failed_attempts",
        "next_retry_at",
        "paid_at",
    )
    search_fields = ("id", "subscription__id", "subscription__customer_email", "payment_id")
    list_filter = ("status", "created_at")
    readonly_fields = ("failed_attempts", "retry_count", "last_failed_at", "created_at", "updated_at")
    ordering = ("-created_at",)
    list_select_related = ("subscription",)
    raw_id_fields = ("subscription",)

    @admin.display(description="Subscription")
    def subscription_link(self, obj):
        url = reverse("admin:dunning_subscription_change", args=[obj.subscription_id])
        return format_html('<a href="{}">{}</a>', url, obj.subscription_id)


@admin.register(PaymentRetryAttempt)
class PaymentRetryAttemptAdmin(admin.ModelAdmin):
    """Read-only audit trail for charge attempts."""

    list_display = (
        "id",
        "invoice_id",
        "attempt_number",
        "succeeded",
        "error_code",
        "attempted_at",
        "next_retry_at",
    )
    search_fields = ("id", "invoice__id", "subscription__id", "gateway_transaction_id")
    list_filter = ("succeeded", "error_code", "attempted_at")
    ordering = ("-attempted_at",)

    def get_readonly_fields(self, request, obj=None):
        return [field.name for field in self.model._meta.fields]

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False


@admin.register(DunningEmail)
class DunningEmailAdmin(admin.ModelAdmin):
    """Read-only audit trail for dunning notifications."""

    list_display = ("id", "subscription_id", "email_type", "recipient", "delivery_status", "sent_at", "opened_at")
    search_fields = ("id", "subscription__id", "recipient", "subject")
    list_filter = ("email_type", "delivery_status", "sent_at")
    ordering = ("-sent_at",)

    def get_readonly_fields(self, request, obj=None):
        return [field.name for field in self.model._meta.fields]

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False
