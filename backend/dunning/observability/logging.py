"""Structured logging helper for dunning events."""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

logger = logging.getLogger("dunning")


def log_dunning_event(*, message: str, subscription_id: Optional[Any] = None, invoice_id: Optional[Any] = None,
                      actor: Optional[str] = None, extra: Optional[Dict[str, Any]] = None,
                      level: int = logging.INFO) -> None:
    payload: Dict[str, Any] = {"message": message}
    if subscription_id:
        payload["subscription_id"] = str(subscription_id)
    if invoice_id:
        payload["invoice_id"] = str(invoice_id)
    if actor:
        payload["actor"] = actor
    if extra:
        payload.update(extra)
    logger.log(level, payload)
