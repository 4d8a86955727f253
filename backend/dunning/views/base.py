"""Shared plumbing for dunning API views."""
from __future__ import annotations

from typing import Any, Dict, Optional

from rest_framework.response import Response

from dunning.observability.logging import log_dunning_event
from dunning.observability.metrics import DUNNING_REQUEST_COUNT, DUNNING_REQUEST_LATENCY
from dunning.services.errors import DunningError
from dunning.services.factory import build_batch_runner, build_orchestrator


class DunningAPIMixin:
    endpoint_label: str = "dunning"

    def dispatch(self, request, *args, **kwargs):
        with DUNNING_REQUEST_LATENCY.labels(endpoint=self.endpoint_label, method=request.method).time():
            return super().dispatch(request, *args, **kwargs)

    def get_orchestrator(self):
        return build_orchestrator()

    def get_runner(self):
        return build_batch_runner(self.get_orchestrator())

    def _record_request(self, status: int) -> None:
        DUNNING_REQUEST_COUNT.labels(
            endpoint=self.endpoint_label,
            method=self.request.method,
            status=str(status),
        ).inc()

    def _success_response(self, payload: Any, *, status: int = 200, message: Optional[str] = None,
                          subscription_id=None, invoice_id=None) -> Response:
        self._record_request(status)
        if message:
            log_dunning_event(
                message=message,
                subscription_id=subscription_id,
                invoice_id=invoice_id,
                actor=self._actor(),
            )
        return Response(payload, status=status)

    def _error_response(self, *, status: int, code: str, message: str,
                        details: Optional[Dict[str, Any]] = None) -> Response:
        self._record_request(status)
        log_dunning_event(
            message=message,
            actor=self._actor(),
            extra={"code": code, "details": details or {}, "endpoint": self.endpoint_label},
        )
        payload = {"code": code, "message": message, "details": details or {}}
        return Response(payload, status=status)

    def _dunning_error_response(self, exc: DunningError) -> Response:
        return self._error_response(
            status=exc.status_code,
            code=exc.code,
            message=exc.message,
            details=exc.details,
        )

    def _actor(self) -> Optional[str]:
        user = getattr(self.request, "user", None)
        if user is not None and user.is_authenticated:
            return str(user.pk)
        return None
