"""Periodic jobs guarded by leased locks and wall-clock budgets."""

import logging
import os
import socket
import time
from datetime import date, datetime, timedelta, UTC
from typing import Any, Callable, Optional

from fulfillbill.config import Settings
from fulfillbill.database.base import Database
from fulfillbill.domain.entities import FLAG_DATA_GAP
from fulfillbill.domain.errors import JobBudgetExceeded, PermanentDataGapError, SourceError, TransientSourceError
from fulfillbill.domain.reconciliation import ReconciliationService

logger = logging.getLogger(__name__)

JOB_SYNC_OPEN = "sync-open"
JOB_RECONCILE_CLOSED = "reconcile-closed"
JOB_REATTRIBUTE = "reattribute"
JOB_PRICE_PREVIEW = "price-preview"

STATUS_COMPLETED = "completed"
STATUS_SKIPPED = "skipped"
STATUS_TIMED_OUT = "timed_out"


class Deadline:
    """Wall-clock budget checked between batches."""

    def __init__(self, budget_seconds: float, clock: Callable[[], float] = time.monotonic):
        self.clock = clock
        self.budget_seconds = budget_seconds
        self.expires_at = clock() + budget_seconds

    def remaining(self) -> float:
        return max(0.0, self.expires_at - self.clock())

    def expired(self) -> bool:
        return self.clock() >= self.expires_at

    def check(self) -> None:
        """Raise JobBudgetExceeded once the budget is spent."""
        if self.expired():
            raise JobBudgetExceeded(f"Job exceeded its {self.budget_seconds:g}s budget")


class JobRunner:
    """Runs a job under a leased lock keyed by job name.

    A second runner asking for the same job while the lease is live is
    skipped. A lease left behind by a crashed process is reclaimed once it
    expires. Work committed before a budget overrun is kept.
    """

    def __init__(
        self,
        db: Database,
        settings: Optional[Settings] = None,
        owner: Optional[str] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self.db = db
        self.settings = settings or Settings()
        self.owner = owner or f"{socket.gethostname()}:{os.getpid()}"
        self.clock = clock
        self.monotonic = monotonic

    def run(
        self,
        job_name: str,
        func: Callable[[Deadline], dict[str, Any]],
        lease_seconds: Optional[int] = None,
        budget_seconds: Optional[int] = None,
    ) -> dict[str, Any]:
        """Run ``func`` if the job's lock can be taken.

        Args:
            job_name: Lock key
            func: Job body; receives the Deadline and returns its statistics
            lease_seconds: Lock lease (defaults to settings.job_lease_seconds)
            budget_seconds: Wall-clock budget (defaults to settings.job_budget_seconds)

        Returns:
            Dict with ``job``, ``status`` (completed, skipped, timed_out) and ``result``
        """
        lease = lease_seconds or self.settings.job_lease_seconds
        budget = budget_seconds or self.settings.job_budget_seconds
        if not self.db.acquire_job_lock(job_name, self.owner, self.clock(), lease):
            logger.info("Job %s is already running elsewhere; skipping", job_name)
            return {"job": job_name, "status": STATUS_SKIPPED, "result": {}}

        deadline = Deadline(budget, self.monotonic)
        try:
            result = func(deadline)
            status = STATUS_COMPLETED
        except JobBudgetExceeded as e:
            logger.warning("Job %s stopped early: %s", job_name, e)
            result = {}
            status = STATUS_TIMED_OUT
        finally:
            self.db.release_job_lock(job_name, self.owner)

        logger.info("Job %s %s", job_name, status)
        return {"job": job_name, "status": status, "result": result}


class SyncJobs:
    """The periodic jobs that keep billing data current.

    The adapter is anything with the CostSourceAdapter interface
    (fetch_open_events, list_source_invoices, fetch_closed_events).
    """

    def __init__(
        self,
        db: Database,
        adapter,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ):
        self.db = db
        self.adapter = adapter
        self.settings = settings or Settings()
        self.clock = clock
        self.reconciliation = ReconciliationService(db, self.settings, clock)

    def sync_open(self, deadline: Optional[Deadline] = None) -> dict[str, Any]:
        """Pull not-yet-invoiced charges and upsert them."""
        events = self.adapter.fetch_open_events()
        stats = self.reconciliation.ingest(events, deadline=deadline)
        stats["errors"] = self.adapter.drain_errors() + stats["errors"]
        return stats

    def refresh_references(self, reference_ids: list[str], deadline: Optional[Deadline] = None) -> dict[str, Any]:
        """Re-fetch the transactions of specific references and upsert them.

        References left over when the rate budget runs low are reported
        under ``deferred``.
        """
        events, deferred = self.adapter.lookup_references(reference_ids)
        stats = self.reconciliation.ingest(events, deadline=deadline)
        stats["errors"] = self.adapter.drain_errors() + stats["errors"]
        stats["deferred"] = deferred
        return stats

    def reconcile_closed(self, deadline: Optional[Deadline] = None, today: Optional[date] = None) -> dict[str, Any]:
        """Process every closed source invoice not yet reconciled.

        Invoices whose detail has aged out are still backfilled and checked
        against their totals, and a data-gap review flag is opened.
        """
        today = today or self.clock().date()
        window_start = today - timedelta(days=self.settings.retention_days)
        for source_invoice in self.adapter.list_source_invoices(window_start, today):
            self.db.upsert_source_invoice(source_invoice)

        pending = self.db.list_source_invoices(unreconciled_only=True)
        stats: dict[str, Any] = {"invoices": len(pending), "reconciled": 0, "gaps": 0, "errors": []}
        for source_invoice in pending:
            if deadline is not None:
                deadline.check()
            try:
                events = self.adapter.fetch_closed_events(source_invoice, today=today)
            except PermanentDataGapError as e:
                logger.warning("Source invoice %s: %s", source_invoice.id, e)
                self.db.create_review_flag(FLAG_DATA_GAP, str(source_invoice.id), str(e), source_invoice.id)
                stats["gaps"] += 1
                events = []
            except TransientSourceError as e:
                logger.warning("Source invoice %s deferred: %s", source_invoice.id, e)
                stats["errors"].append(f"Source invoice {source_invoice.id}: {e}")
                continue
            except SourceError as e:
                # Left unreconciled; later invoices still run
                logger.error("Source invoice %s failed: %s", source_invoice.id, e)
                stats["errors"].append(f"Source invoice {source_invoice.id}: {e}")
                continue

            result = self.reconciliation.reconcile_source_invoice(source_invoice, events, deadline=deadline)
            stats["reconciled"] += 1
            stats["errors"].extend(result["errors"])
        stats["errors"] = self.adapter.drain_errors() + stats["errors"]
        return stats

    def reattribute(self, deadline: Optional[Deadline] = None) -> dict[str, Any]:
        """Retry attribution for transactions that still have no client."""
        return self.reconciliation.reattribute(deadline=deadline)

    def price_preview(self, deadline: Optional[Deadline] = None) -> dict[str, Any]:
        """Refresh preview markup on unfinalized transactions."""
        return self.reconciliation.apply_preview_markups(deadline=deadline)
