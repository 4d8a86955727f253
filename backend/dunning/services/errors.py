"""Error taxonomy shared by the dunning services and their HTTP binding."""
from __future__ import annotations

from typing import Any, Dict, Optional


class DunningError(RuntimeError):
    """Base error for dunning operations."""

    code = "dunning_error"
    status_code = 500

    def __init__(self, message: str, *, code: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": self.details}


class DunningNotFound(DunningError):
    """Raised when a subscription or invoice does not exist."""

    code = "not_found"
    status_code = 404


class DunningValidationError(DunningError):
    """Raised when a request violates the invoice state machine. Never retried."""

    code = "validation_error"
    status_code = 400


class DunningUpstreamError(DunningError):
    """Raised when a collaborator (gateway, notifier, storage) fails. Safe to retry."""

    code = "upstream_error"
    status_code = 502
