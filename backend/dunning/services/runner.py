"""Batch runner that executes every due dunning retry."""
from __future__ import annotations

import logging
import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Tuple

from django.db import close_old_connections

from dunning.enums import RETRYABLE_SUBSCRIPTION_STATUSES
from dunning.observability.logging import log_dunning_event
from dunning.observability.metrics import DUNNING_BATCH_DURATION
from dunning.services.orchestrator import DunningOrchestrator
from dunning.services.repository import DunningRepository
from dunning.services.results import (
    DunningJobResult,
    DunningStats,
    RecoverySuccess,
    RetryableInvoice,
    RetryProcessingResult,
    RetryScheduled,
)

logger = logging.getLogger(__name__)


def _retry_sort_key(item: RetryableInvoice) -> Tuple[bool, datetime, datetime, str]:
    next_retry_at = item.invoice.next_retry_at
    # Invoices without a scheduled time sort first.
    return (
        next_retry_at is not None,
        next_retry_at or item.invoice.created_at,
        item.invoice.created_at,
        str(item.invoice.id),
    )


class DunningBatchRunner:
    """Select due invoices and drive each one through ``execute_retry``.

    Only one batch runs at a time per runner; a concurrent call returns a
    result flagged ``skipped``. Failures are isolated per invoice.
    """

    def __init__(
        self,
        orchestrator: DunningOrchestrator,
        *,
        repository: Optional[DunningRepository] = None,
        max_workers: int = 1,
        enabled: bool = True,
        job_interval_minutes: int = 60,
        clock: Optional[Callable] = None,
    ):
        self.orchestrator = orchestrator
        self.repository = repository or orchestrator.repository
        self.max_workers = max(1, int(max_workers))
        self.enabled = enabled
        self.job_interval_minutes = job_interval_minutes
        self.clock = clock or orchestrator.clock
        self._run_lock = threading.Lock()

    def _candidates(self) -> List[RetryableInvoice]:
        candidates = []
        for invoice in self.repository.get_pending_invoices():
            subscription = self.repository.find_subscription(invoice.subscription_id)
            if subscription is None or subscription.status not in RETRYABLE_SUBSCRIPTION_STATUSES:
                continue
            policy = self.orchestrator.policy_for(subscription)
            if not 0 < invoice.failed_attempts < policy.max_retries:
                continue
            candidates.append(RetryableInvoice(invoice=invoice, subscription=subscription))
        return sorted(candidates, key=_retry_sort_key)

    def get_scheduled_retries(self) -> List[RetryableInvoice]:
        """All invoices still in their retry schedule, due or not."""

        return self._candidates()

    def get_invoices_for_retry(self) -> List[RetryableInvoice]:
        now = self.clock()
        return [
            item for item in self._candidates()
            if item.invoice.next_retry_at is None or item.invoice.next_retry_at <= now
        ]

    def process_all_due_retries(self) -> RetryProcessingResult:
        if not self._run_lock.acquire(blocking=False):
            logger.info("Dunning batch already running; skipping")
            return RetryProcessingResult(skipped=True)
        try:
            return self._process(self.get_invoices_for_retry())
        finally:
            self._run_lock.release()

    def _process(self, due: List[RetryableInvoice]) -> RetryProcessingResult:
        result = RetryProcessingResult()
        if self.max_workers > 1 and len(due) > 1:
            with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="dunning-batch") as pool:
                outcomes = list(pool.map(self._retry_one_in_worker, due))
        else:
            outcomes = [self._retry_one(item) for item in due]

        for item, (outcome, error) in zip(due, outcomes):
            result.processed += 1
            if error is not None:
                result.failed += 1
                result.errors.append(f"{item.invoice.id}: {error}")
            elif isinstance(outcome, RecoverySuccess):
                result.succeeded += 1
            elif isinstance(outcome, RetryScheduled):
                pass
            else:
                result.failed += 1
        logger.info(
            "Dunning batch processed=%s succeeded=%s failed=%s pending=%s",
            result.processed,
            result.succeeded,
            result.failed,
            result.pending,
        )
        return result

    def _retry_one(self, item: RetryableInvoice):
        try:
            return self.orchestrator.execute_retry(item.invoice.id), None
        except Exception as exc:
            logger.exception("Dunning retry failed for invoice %s", item.invoice.id)
            return None, exc

    def _retry_one_in_worker(self, item: RetryableInvoice):
        try:
            return self._retry_one(item)
        finally:
            close_old_connections()

    def cancel_expired_grace_periods(self) -> int:
        """Cancel subscriptions whose final failure is older than the grace period."""

        now = self.clock()
        cancelled = 0
        for invoice in self.repository.get_pending_invoices():
            subscription = self.repository.find_subscription(invoice.subscription_id)
            if subscription is None or subscription.is_cancelled:
                continue
            policy = self.orchestrator.policy_for(subscription)
            if invoice.failed_attempts < policy.max_retries or invoice.last_failed_at is None:
                continue
            if invoice.last_failed_at + timedelta(days=policy.grace_period_days) > now:
                continue
            try:
                self.orchestrator.cancel_after_retries(subscription.id)
            except Exception:
                logger.exception("Grace period cancellation failed for subscription %s", subscription.id)
                continue
            cancelled += 1
        return cancelled

    def run(self) -> DunningJobResult:
        """Full job: process due retries, then sweep expired grace periods."""

        job = DunningJobResult(job_id=uuid.uuid4())
        if not self.enabled:
            logger.info("Dunning job %s disabled; skipping", job.job_id)
            job.skipped = True
            return job

        started = time.monotonic()
        job.retries = self.process_all_due_retries()
        if job.retries.skipped:
            job.skipped = True
            return job
        job.cancelled = self.cancel_expired_grace_periods()
        elapsed = time.monotonic() - started
        job.duration_ms = int(elapsed * 1000)
        DUNNING_BATCH_DURATION.observe(elapsed)
        log_dunning_event(message="dunning.job_completed", actor="scheduler", extra=job.to_dict())
        return job

    def get_stats(self) -> DunningStats:
        return DunningStats(
            pending_retries=len(self.get_scheduled_retries()),
            invoices_due=len(self.get_invoices_for_retry()),
            next_run_in_minutes=self.job_interval_minutes,
        )
