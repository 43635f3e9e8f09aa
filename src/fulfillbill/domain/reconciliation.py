"""Deduplication and reconciliation of cost events against local storage."""

import logging
from collections import defaultdict
from dataclasses import replace
from datetime import datetime, UTC
from decimal import Decimal
from typing import Any, Callable, Iterable, Optional

from fulfillbill.config import Settings
from fulfillbill.database.base import Database
from fulfillbill.domain.attribution import AttributionResolver
from fulfillbill.domain.entities import (
    CATEGORY_CREDITS,
    CATEGORY_SHIPPING,
    DISPUTE_VOIDED,
    FLAG_FINALIZED_DUPLICATE,
    FLAG_MISMATCH,
    FLAG_RAW_COST_DRIFT,
    RAW_COST_FIELDS,
    CostBreakdownRow,
    CostEvent,
    PricingContext,
    SourceInvoice,
    Transaction,
    TransactionPatch,
)
from fulfillbill.domain.errors import DomainError, PricingAmbiguityError
from fulfillbill.domain.markup import MarkupEngine

logger = logging.getLogger(__name__)

AMOUNT_TOLERANCE = Decimal("0.01")


def _chunked(items: list, size: int):
    for start in range(0, len(items), size):
        yield items[start:start + size]


class ReconciliationService:
    """Keeps the local transaction store in step with the cost source.

    Everything here is idempotent: running the same input twice leaves the
    store exactly as one run did.
    """

    def __init__(
        self,
        db: Database,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ):
        """Initialize reconciliation service.

        Args:
            db: Database instance
            settings: Application settings (defaults used when None)
            clock: Returns the current time; injectable for tests
        """
        self.db = db
        self.settings = settings or Settings()
        self.clock = clock

    def _resolver(self) -> AttributionResolver:
        return AttributionResolver(self.db, self.settings.internal_fee_routes)

    def _flag_raw_drift(self, current: Transaction, drifted: dict[str, Any]) -> None:
        described = ", ".join(
            f"{name} {getattr(current, name)!r} -> {value!r}" for name, value in sorted(drifted.items())
        )
        logger.warning(
            "Cost source changed raw fields of transaction %s after invoice %s closed: %s",
            current.source_id,
            current.source_invoice_id,
            described,
        )
        self.db.create_review_flag(
            FLAG_RAW_COST_DRIFT,
            current.source_id,
            f"Raw cost fields changed after source invoice {current.source_invoice_id} closed: {described}",
            current.source_invoice_id,
        )

    def build_patch(
        self,
        event: CostEvent,
        current: Optional[Transaction],
        resolver: AttributionResolver,
    ) -> TransactionPatch:
        """Work out what an incoming event changes.

        Finalized transactions never change. Raw cost fields of a transaction
        already linked to a closed source invoice are kept as first seen; a
        differing value is flagged for review instead of overwritten.
        Attribution only ever fills a missing client.

        Returns:
            Patch of changed fields only (empty when nothing changes)
        """
        patch = event.to_patch()
        drifted = {}
        if current is not None:
            if current.is_finalized:
                return TransactionPatch()
            if current.source_invoice_id is not None:
                raw = TransactionPatch(**{k: v for k, v in patch.values().items() if k in RAW_COST_FIELDS})
                drifted = raw.changes(current).values()
                if drifted:
                    self._flag_raw_drift(current, drifted)
                patch = patch.without(RAW_COST_FIELDS + ("source_invoice_id", "source_invoice_date"))

        if current is None or current.client_id is None:
            patch = patch.merge(resolver.resolve(event).to_patch())
        if drifted:
            patch = patch.merge(TransactionPatch(needs_review=True))

        if current is None:
            return patch
        return patch.changes(current)

    def ingest(
        self,
        events: Iterable[CostEvent],
        deadline=None,
        batch_size: Optional[int] = None,
    ) -> dict[str, Any]:
        """Upsert cost events keyed by source transaction ID.

        Args:
            events: Normalized cost events
            deadline: Optional jobs.Deadline checked between batches
            batch_size: Records per batch (defaults to settings.batch_size)

        Returns:
            Dict with ingestion statistics:
            - fetched, inserted, updated, unchanged
            - attributed: newly attributed this run
            - unattributed: still without a client
            - voided: duplicates voided afterwards
            - errors: list of per-record error messages

        Raises:
            JobBudgetExceeded: If the deadline passes between batches
        """
        events = list(events)
        stats: dict[str, Any] = {
            "fetched": len(events),
            "inserted": 0,
            "updated": 0,
            "unchanged": 0,
            "attributed": 0,
            "unattributed": 0,
            "voided": 0,
            "errors": [],
        }
        if not events:
            return stats

        # The source may repeat a record within one response; last one wins
        by_id: dict[str, CostEvent] = {}
        for event in events:
            by_id[event.source_id] = event
        unique = list(by_id.values())

        resolver = self._resolver()
        touched_references: set[str] = set()
        for batch in _chunked(unique, batch_size or self.settings.batch_size):
            if deadline is not None:
                deadline.check()
            existing = self.db.get_transactions_by_source_ids(e.source_id for e in batch)
            resolver.prefetch(batch)
            for event in batch:
                try:
                    current = existing.get(event.source_id)
                    patch = self.build_patch(event, current, resolver)
                    if current is None:
                        self.db.insert_transaction(event.source_id, patch)
                        stats["inserted"] += 1
                    elif patch.is_empty():
                        stats["unchanged"] += 1
                    else:
                        self.db.update_transaction(event.source_id, patch)
                        stats["updated"] += 1

                    if patch.client_id is not None:
                        stats["attributed"] += 1
                    elif current is None or current.client_id is None:
                        stats["unattributed"] += 1
                    touched_references.add(event.reference_id)
                except Exception as e:
                    logger.exception("Failed to ingest transaction %s", event.source_id)
                    stats["errors"].append(f"Transaction {event.source_id}: {e}")

        stats["voided"] = self.detect_voids(touched_references)
        logger.info(
            "Ingested %d events: %d inserted, %d updated, %d unchanged, %d errors",
            stats["fetched"],
            stats["inserted"],
            stats["updated"],
            stats["unchanged"],
            len(stats["errors"]),
        )
        return stats

    def detect_voids(self, reference_ids: Optional[Iterable[str]] = None) -> int:
        """Void repeated charges the cost source never offset.

        Positive charges are grouped by (reference ID, fee type) within the
        configured void categories. A group with more than one charge and no
        offsetting negative (same fee type, or a credit on the same
        reference) keeps only its most recent charge; the rest are voided.
        When an offset exists the source has corrected itself and any
        earlier void is lifted. Invoiced transactions are never voided;
        they are flagged instead.

        Returns:
            Number of transactions voided
        """
        categories = list(self.settings.void_categories)
        if not categories:
            return 0
        refs = list(reference_ids) if reference_ids is not None else None
        if refs is not None and not refs:
            return 0

        candidates = self.db.list_transactions(
            fee_categories=categories + [CATEGORY_CREDITS],
            reference_ids=refs,
        )
        charges: dict[tuple[str, str], list[Transaction]] = defaultdict(list)
        negatives: dict[str, set[str]] = defaultdict(set)
        for txn in candidates:
            if txn.amount < 0:
                negatives[txn.reference_id].add(txn.fee_type)
            elif txn.amount > 0 and txn.fee_category in categories:
                charges[(txn.reference_id, txn.fee_type)].append(txn)

        voided = 0
        for (reference_id, fee_type), group in charges.items():
            if len(group) < 2:
                continue
            offsets = negatives.get(reference_id, set())
            has_offset = fee_type in offsets or "Credit" in offsets
            if has_offset:
                for txn in group:
                    if txn.dispute_status == DISPUTE_VOIDED:
                        self.db.clear_dispute_status(txn.source_id)
                        logger.info("Lifted void on %s: the cost source offset it", txn.source_id)
                continue

            ordered = sorted(group, key=lambda t: (t.charge_date, t.source_id))
            for stale in ordered[:-1]:
                if stale.is_voided:
                    continue
                if stale.is_finalized:
                    logger.warning(
                        "Duplicate charge %s on %s was already invoiced as %s",
                        stale.source_id,
                        reference_id,
                        stale.invoice_number,
                    )
                    self.db.create_review_flag(
                        FLAG_FINALIZED_DUPLICATE,
                        stale.source_id,
                        f"Duplicate {fee_type} charge on {reference_id} already billed on {stale.invoice_number}",
                        stale.source_invoice_id,
                    )
                    continue
                self.db.update_transaction(stale.source_id, TransactionPatch(dispute_status=DISPUTE_VOIDED))
                voided += 1
                logger.info(
                    "Voided duplicate %s charge %s on %s (kept %s)",
                    fee_type,
                    stale.source_id,
                    reference_id,
                    ordered[-1].source_id,
                )
        return voided

    def backfill_invoice_links(self, source_invoice: SourceInvoice) -> int:
        """Link transactions the invoice detail missed but that fall in its period.

        Returns:
            Number of transactions linked
        """
        category = source_invoice.fee_category
        if category is None:
            logger.debug("Source invoice type %s has no fee category to backfill", source_invoice.invoice_type)
            return 0
        linked = self.db.link_unlinked_transactions(source_invoice, category)
        if linked:
            logger.info("Backfilled %d transactions onto source invoice %s", linked, source_invoice.id)
        return linked

    def check_invoice_totals(self, source_invoice: SourceInvoice, detail_count: Optional[int] = None) -> list[str]:
        """Compare local linked transactions with the source invoice.

        A mismatch is logged and opens a review flag; it never blocks
        ingestion, but it does block approval of client invoices that
        summarize this source invoice.

        Returns:
            Mismatch descriptions (empty when reconciled)
        """
        count, total = self.db.summarize_source_invoice(source_invoice.id)
        problems = []
        if abs(total - source_invoice.amount) > AMOUNT_TOLERANCE:
            problems.append(
                f"linked total {total} differs from invoice amount {source_invoice.amount}"
            )
        if detail_count is not None and count < detail_count:
            problems.append(f"only {count} of {detail_count} detail records are stored")

        if problems:
            message = f"Source invoice {source_invoice.id}: " + "; ".join(problems)
            logger.warning(message)
            self.db.create_review_flag(FLAG_MISMATCH, str(source_invoice.id), message, source_invoice.id)
        return problems

    def reconcile_source_invoice(
        self, source_invoice: SourceInvoice, events: Iterable[CostEvent], deadline=None
    ) -> dict[str, Any]:
        """Process a closed source invoice's detail end to end.

        Ingests the detail, backfills unlinked transactions, checks totals
        and marks the source invoice reconciled.

        Returns:
            Ingestion statistics plus ``linked`` and ``mismatches``
        """
        events = [
            e
            if e.source_invoice_id is not None
            else replace(e, source_invoice_id=source_invoice.id, source_invoice_date=source_invoice.invoice_date)
            for e in events
        ]
        self.db.upsert_source_invoice(source_invoice)
        stats = self.ingest(events, deadline=deadline)
        stats["linked"] = self.backfill_invoice_links(source_invoice)
        stats["mismatches"] = self.check_invoice_totals(source_invoice, detail_count=len({e.source_id for e in events}))
        self.db.mark_source_invoice_reconciled(source_invoice.id, self.clock())
        return stats

    def apply_breakdown(self, rows: Iterable[CostBreakdownRow]) -> dict[str, Any]:
        """Write base cost, surcharge and insurance onto shipping transactions.

        Charge rows land on the positive shipping transaction for the
        shipment and refund rows on the negative one.

        Returns:
            Dict with ``updated``, ``unmatched``, ``skipped`` (finalized) and ``errors``
        """
        rows = list(rows)
        stats: dict[str, Any] = {"updated": 0, "unmatched": 0, "skipped": 0, "errors": []}
        if not rows:
            return stats

        transactions = self.db.list_transactions(
            fee_categories=[CATEGORY_SHIPPING],
            reference_ids=sorted({row.reference_id for row in rows}),
            include_voided=False,
        )
        index: dict[tuple[str, bool], Transaction] = {}
        for txn in transactions:
            index[(txn.reference_id, txn.amount < 0)] = txn

        for row in rows:
            txn = index.get((row.reference_id, row.is_refund))
            if txn is None:
                stats["unmatched"] += 1
                continue
            if txn.is_finalized:
                stats["skipped"] += 1
                continue
            try:
                patch = TransactionPatch(
                    base_cost=row.base_cost,
                    surcharge=row.surcharge,
                    insurance_cost=row.insurance_cost,
                ).changes(txn)
                if not patch.is_empty():
                    self.db.update_transaction(txn.source_id, patch)
                    stats["updated"] += 1
            except DomainError as e:
                logger.warning("Failed to apply breakdown for %s: %s", row.reference_id, e)
                stats["errors"].append(f"Shipment {row.reference_id}: {e}")

        logger.info(
            "Applied breakdown to %d transactions (%d unmatched rows)", stats["updated"], stats["unmatched"]
        )
        return stats

    def reattribute(self, limit: Optional[int] = None, deadline=None) -> dict[str, Any]:
        """Retry attribution for every transaction that still has no client.

        Returns:
            Dict with ``checked``, ``attributed``, ``remaining`` and ``errors``
        """
        pending = self.db.list_transactions(unattributed=True, limit=limit)
        resolver = self._resolver()
        stats: dict[str, Any] = {"checked": len(pending), "attributed": 0, "remaining": 0, "errors": []}
        for batch in _chunked(pending, self.settings.batch_size):
            if deadline is not None:
                deadline.check()
            resolver.prefetch(batch)
            for txn in batch:
                try:
                    result = resolver.resolve(txn)
                    if result.resolved:
                        self.db.update_transaction(txn.source_id, result.to_patch())
                        stats["attributed"] += 1
                    else:
                        stats["remaining"] += 1
                except Exception as e:
                    logger.exception("Failed to re-attribute transaction %s", txn.source_id)
                    stats["errors"].append(f"Transaction {txn.source_id}: {e}")
                    stats["remaining"] += 1
        logger.info("Re-attribution: %d of %d attributed", stats["attributed"], stats["checked"])
        return stats

    def apply_preview_markups(self, client_id: Optional[int] = None, deadline=None) -> dict[str, Any]:
        """Price unfinalized transactions so operators can see expected billing.

        Writes rule ID, percentage, markup and billed amount onto each
        attributed, unbilled, non-voided transaction. Invoice approval later
        overwrites these with the reviewed snapshot's values.

        Returns:
            Dict with ``priced``, ``unchanged`` and ``errors``
        """
        stats: dict[str, Any] = {"priced": 0, "unchanged": 0, "errors": []}
        clients = [self.db.get_client(client_id)] if client_id is not None else self.db.list_clients()
        for client in clients:
            if client is None or client.is_internal:
                continue
            if deadline is not None:
                deadline.check()
            transactions = self.db.list_transactions(client_id=client.id, unbilled=True, include_voided=False)
            if not transactions:
                continue
            engine = MarkupEngine(self.db.list_markup_rules(client_id=client.id))
            shipments = self.db.get_shipments(
                t.reference_id for t in transactions if t.fee_category == CATEGORY_SHIPPING
            )
            for txn in transactions:
                try:
                    result = engine.price(txn, client, PricingContext.from_shipment(shipments.get(txn.reference_id)))
                    patch = TransactionPatch(
                        markup_rule_id=result.rule_id,
                        markup_percentage=result.markup_percentage,
                        markup_amount=result.markup_amount,
                        billed_amount=result.billed_amount,
                    ).changes(txn)
                    if patch.is_empty():
                        stats["unchanged"] += 1
                    else:
                        self.db.update_transaction(txn.source_id, patch)
                        stats["priced"] += 1
                except PricingAmbiguityError as e:
                    stats["errors"].append(str(e))
                except Exception as e:
                    logger.exception("Failed to price transaction %s", txn.source_id)
                    stats["errors"].append(f"Transaction {txn.source_id}: {e}")
        if stats["errors"]:
            logger.warning("Markup preview skipped %d transactions", len(stats["errors"]))
        return stats

