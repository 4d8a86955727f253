"""DRF serializers for dunning admin and customer endpoints."""
from __future__ import annotations

from rest_framework import serializers


class FailedPaymentRequestSerializer(serializers.Serializer):
    subscription_id = serializers.UUIDField()
    invoice_id = serializers.UUIDField()
    error_message = serializers.CharField(max_length=512)
    error_code = serializers.CharField(max_length=64, required=False, allow_blank=True, default="")
    attempt_number = serializers.IntegerField(min_value=1, required=False, allow_null=True, default=None)


class RecoveryRequestSerializer(serializers.Serializer):
    subscription_id = serializers.UUIDField()
    invoice_id = serializers.UUIDField()
    payment_id = serializers.CharField(max_length=255)
