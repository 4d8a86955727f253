"""Celery tasks driving the dunning batch runner."""
from __future__ import annotations

import logging
import uuid
from contextlib import contextmanager
from typing import Any, Dict, Iterator

from celery import shared_task
from django.core.cache import cache

from dunning.services.errors import DunningError, DunningUpstreamError
from dunning.services.factory import build_batch_runner, build_orchestrator, dunning_setting

logger = logging.getLogger(__name__)

BATCH_LOCK_KEY = "dunning:batch:lock"


@contextmanager
def batch_lock(key: str = BATCH_LOCK_KEY) -> Iterator[bool]:
    """Cross-process single flight using the shared Django cache."""

    token = uuid.uuid4().hex
    acquired = cache.add(key, token, timeout=dunning_setting("BATCH_LOCK_TIMEOUT_SECONDS"))
    try:
        yield acquired
    finally:
        if acquired and cache.get(key) == token:
            cache.delete(key)


@shared_task(queue="dunning")
def process_due_dunning_retries() -> Dict[str, Any]:
    """Run the dunning job: retry due invoices, then cancel expired grace periods."""

    with batch_lock() as acquired:
        if not acquired:
            logger.info("Dunning batch lock held by another worker; skipping run")
            return {"skipped": True, "reason": "locked"}
        job = build_batch_runner().run()
    return job.to_dict()


@shared_task(bind=True, queue="dunning", autoretry_for=(DunningUpstreamError,), retry_backoff=True, max_retries=3)
def execute_dunning_retry(self, invoice_id: str) -> Dict[str, Any]:
    """Retry a single invoice. Validation failures are reported, not retried."""

    orchestrator = build_orchestrator()
    try:
        result = orchestrator.execute_retry(uuid.UUID(str(invoice_id)))
    except DunningUpstreamError:
        logger.warning("Upstream failure retrying invoice %s; task will retry", invoice_id)
        raise
    except DunningError as exc:
        logger.info("Dunning retry for invoice %s rejected: %s", invoice_id, exc.message)
        return {"status": "rejected", **exc.to_dict()}
    return {"status": "processed", "result": result.to_dict()}


@shared_task(queue="dunning")
def cancel_expired_dunning_grace_periods() -> Dict[str, int]:
    """Cancel subscriptions still open after their final failure and grace period."""

    runner = build_batch_runner()
    if not runner.enabled:
        return {"cancelled": 0}
    return {"cancelled": runner.cancel_expired_grace_periods()}
