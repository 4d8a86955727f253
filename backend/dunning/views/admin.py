"""Staff-only dunning operations."""
from __future__ import annotations

from rest_framework.permissions import IsAdminUser
from rest_framework.views import APIView

from dunning.serializers import FailedPaymentRequestSerializer, RecoveryRequestSerializer
from dunning.services.errors import DunningError
from dunning.services.factory import dunning_setting
from dunning.services.policy import load_policy_registry
from dunning.tasks import batch_lock
from dunning.views.base import DunningAPIMixin


class DunningProcessView(DunningAPIMixin, APIView):
    """Run the dunning job immediately."""

    permission_classes = [IsAdminUser]
    endpoint_label = "admin.process"

    def post(self, request):
        with batch_lock() as acquired:
            if not acquired:
                return self._error_response(
                    status=409,
                    code="batch_running",
                    message="A dunning batch is already running.",
                )
            job = self.get_runner().run()
        return self._success_response(job.to_dict(), message="dunning.admin.process")


class ScheduledRetriesView(DunningAPIMixin, APIView):
    permission_classes = [IsAdminUser]
    endpoint_label = "admin.retries"

    def get(self, request):
        retries = self.get_runner().get_scheduled_retries()
        return self._success_response({"count": len(retries), "results": [item.to_dict() for item in retries]})


class DueRetriesView(DunningAPIMixin, APIView):
    permission_classes = [IsAdminUser]
    endpoint_label = "admin.retries.due"

    def get(self, request):
        due = self.get_runner().get_invoices_for_retry()
        return self._success_response({"count": len(due), "results": [item.to_dict() for item in due]})


class ManualRetryView(DunningAPIMixin, APIView):
    """Retry one invoice now, ignoring its schedule."""

    permission_classes = [IsAdminUser]
    endpoint_label = "admin.retry"

    def post(self, request, invoice_id):
        try:
            result = self.get_orchestrator().manual_retry(invoice_id)
        except DunningError as exc:
            return self._dunning_error_response(exc)
        return self._success_response(result.to_dict(), message="dunning.admin.manual_retry", invoice_id=invoice_id)


class DunningConfigView(DunningAPIMixin, APIView):
    permission_classes = [IsAdminUser]
    endpoint_label = "admin.config"

    def get(self, request):
        payload = load_policy_registry().to_dict()
        payload.update(
            {
                "enabled": bool(dunning_setting("ENABLED")),
                "job_interval_minutes": dunning_setting("JOB_INTERVAL_MINUTES"),
                "charge_timeout_seconds": dunning_setting("CHARGE_TIMEOUT_SECONDS"),
                "notify_timeout_seconds": dunning_setting("NOTIFY_TIMEOUT_SECONDS"),
            }
        )
        return self._success_response(payload)


class DunningStatsView(DunningAPIMixin, APIView):
    permission_classes = [IsAdminUser]
    endpoint_label = "admin.stats"

    def get(self, request):
        return self._success_response(self.get_runner().get_stats().to_dict())


class FailedPaymentView(DunningAPIMixin, APIView):
    """Report a failed charge, e.g. from a gateway webhook relay."""

    permission_classes = [IsAdminUser]
    endpoint_label = "admin.failed_payment"

    def post(self, request):
        serializer = FailedPaymentRequestSerializer(data=request.data)
        if not serializer.is_valid():
            return self._error_response(
                status=400,
                code="invalid_request",
                message="Invalid failed payment payload.",
                details=serializer.errors,
            )
        data = serializer.validated_data
        try:
            result = self.get_orchestrator().process_failed_charge(
                data["subscription_id"],
                data["invoice_id"],
                data["error_message"],
                error_code=data.get("error_code") or None,
                attempt_number=data.get("attempt_number"),
            )
        except DunningError as exc:
            return self._dunning_error_response(exc)
        return self._success_response(
            result.to_dict(),
            message="dunning.admin.failed_payment",
            subscription_id=data["subscription_id"],
            invoice_id=data["invoice_id"],
        )


class RecoveryView(DunningAPIMixin, APIView):
    permission_classes = [IsAdminUser]
    endpoint_label = "admin.recovery"

    def post(self, request):
        serializer = RecoveryRequestSerializer(data=request.data)
        if not serializer.is_valid():
            return self._error_response(
                status=400,
                code="invalid_request",
                message="Invalid recovery payload.",
                details=serializer.errors,
            )
        data = serializer.validated_data
        try:
            result = self.get_orchestrator().process_recovery(
                data["subscription_id"], data["invoice_id"], data["payment_id"],
            )
        except DunningError as exc:
            return self._dunning_error_response(exc)
        return self._success_response(
            result.to_dict(),
            message="dunning.admin.recovery",
            subscription_id=data["subscription_id"],
            invoice_id=data["invoice_id"],
        )
