"""Management command to run the dunning job from the command line."""
from __future__ import annotations

import uuid

from django.core.management.base import BaseCommand, CommandError

from dunning.services.errors import DunningError
from dunning.services.factory import build_batch_runner
from dunning.tasks import batch_lock


class Command(BaseCommand):
    help = "Process due dunning retries and cancel subscriptions past their grace period."

    def add_arguments(self, parser) -> None:
        parser.add_argument(
            "--invoice-id",
            dest="invoice_id",
            default=None,
            help="Manually retry only the specified invoice, ignoring its retry schedule.",
        )
        parser.add_argument(
            "--dry-run",
            action="store_true",
            help="List invoices that would be retried without charging anything.",
        )

    def handle(self, *args, **options) -> None:
        invoice_id = options.get("invoice_id")
        dry_run: bool = options.get("dry_run")
        runner = build_batch_runner()

        if invoice_id:
            try:
                parsed = uuid.UUID(invoice_id)
            except ValueError as exc:
                raise CommandError(f"Invalid invoice id: {invoice_id}") from exc
            if dry_run:
                self.stdout.write(f"Would retry invoice {parsed}")
                return
            try:
                result = runner.orchestrator.manual_retry(parsed)
            except DunningError as exc:
                raise CommandError(f"Retry failed ({exc.code}): {exc.message}") from exc
            self.stdout.write(self.style.SUCCESS(f"Invoice {parsed}: {result.kind}"))
            return

        due = runner.get_invoices_for_retry()
        if dry_run:
            if not due:
                self.stdout.write(self.style.WARNING("No invoices are due for retry."))
                return
            for item in due:
                self.stdout.write(
                    f"Would retry invoice {item.invoice.id} attempt {item.attempt_number} "
                    f"({item.invoice.total} {item.subscription.currency})"
                )
            self.stdout.write(self.style.WARNING(f"Dry run complete. {len(due)} invoices would be retried."))
            return

        with batch_lock() as acquired:
            if not acquired:
                self.stdout.write(self.style.WARNING("Another dunning batch is already running; skipping."))
                return
            job = runner.run()
        if job.skipped:
            self.stdout.write(self.style.WARNING("Dunning job skipped (disabled or already running)."))
            return

        retries = job.retries
        summary = (
            f"Dunning job {job.job_id}: {retries.processed} processed, {retries.succeeded} recovered, "
            f"{retries.failed} failed, {retries.pending} rescheduled, {job.cancelled} cancelled."
        )
        for error in retries.errors:
            self.stderr.write(error)
        if retries.errors:
            raise CommandError(summary)
        self.stdout.write(self.style.SUCCESS(summary))
