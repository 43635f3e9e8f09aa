"""Invoice generation and the draft -> approved -> sent workflow.

Generation only reads transactions and writes an invoice plus an
append-only snapshot of priced lines. Approval is the single place that
writes billing results back onto transactions, and it copies the
reviewed snapshot verbatim.
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import date, datetime, UTC
from typing import Callable, Optional

from fulfillbill.config import Settings
from fulfillbill.database.base import Database
from fulfillbill.domain.entities import (
    CATEGORY_CREDITS,
    CATEGORY_SHIPPING,
    FLAG_MISMATCH,
    INVOICE_APPROVED,
    INVOICE_SENT,
    INVOICE_SUPERSEDED,
    LINE_CATEGORY_LABELS,
    Client,
    Invoice,
    InvoiceLine,
    InvoiceSnapshot,
    InvoiceTotals,
    MarkupResult,
    PricingContext,
    SourceInvoiceRef,
    Transaction,
)
from fulfillbill.domain.client import BILLING_CADENCES
from fulfillbill.domain.errors import (
    AlreadyFinalizedError,
    ConflictError,
    DomainError,
    NotFoundError,
    PricingAmbiguityError,
    ValidationBlockedError,
    ValidationError,
    client_not_found,
    invoice_not_draft,
    invoice_not_found,
)
from fulfillbill.domain.markup import MarkupEngine
from fulfillbill.domain.preflight import PreflightReport, PreflightValidator
from fulfillbill.utils.amount_parser import minor_unit
from fulfillbill.utils.date_parser import period_cadence

logger = logging.getLogger(__name__)

REVISION_PATTERN = re.compile(r"^(?P<base>.+?)(?:-v(?P<revision>\d+))?$")
CATEGORY_ORDER = {label: index for index, label in enumerate(LINE_CATEGORY_LABELS.values())}

ISSUE_BILLED_MATH = "billed_math_error"
ISSUE_MARKUP_MATH = "markup_math_error"
ISSUE_WRONG_RULE = "wrong_markup_rule"
ISSUE_MISSING_MARKUP = "missing_markup"
ISSUE_MISSING_TRANSACTION = "missing_transaction"
ISSUE_AMBIGUOUS = "ambiguous_markup"
ISSUE_TOTAL_MISMATCH = "total_mismatch"

SEVERITY_ERROR = "error"
SEVERITY_WARNING = "warning"


def format_invoice_number(
    prefix: str, client_code: str, sequence: int, invoice_date: date, revision: int = 1
) -> str:
    """Build a human-readable invoice number.

    Examples:
        format_invoice_number("JP", "ACME", 7, date(2025, 3, 3)) -> "JPACME-0007-030325"
        ... with revision=2 -> "JPACME-0007-030325-v2"
    """
    number = f"{prefix}{client_code.upper()}-{sequence:04d}-{invoice_date:%m%d%y}"
    if revision > 1:
        number += f"-v{revision}"
    return number


def parse_invoice_revision(invoice_number: str) -> tuple[str, int]:
    """Split an invoice number into its base and revision (1 when unsuffixed)."""
    match = REVISION_PATTERN.match(invoice_number)
    revision = match.group("revision")
    return match.group("base"), int(revision) if revision else 1


@dataclass(frozen=True)
class ApprovalResult:
    """Outcome of an approval request."""

    invoice: Invoice
    already_approved: bool = False


@dataclass(frozen=True)
class VerificationIssue:
    """One problem found when re-checking an invoice snapshot."""

    kind: str
    severity: str
    message: str
    transaction_id: Optional[str] = None


@dataclass(frozen=True)
class VerificationReport:
    """Result of re-deriving every line of an invoice snapshot."""

    invoice: Invoice
    version: int
    issues: tuple[VerificationIssue, ...]

    @property
    def errors(self) -> list[VerificationIssue]:
        return [i for i in self.issues if i.severity == SEVERITY_ERROR]

    @property
    def warnings(self) -> list[VerificationIssue]:
        return [i for i in self.issues if i.severity == SEVERITY_WARNING]

    @property
    def passed(self) -> bool:
        return not self.errors


@dataclass
class BatchGenerationResult:
    """Per-client outcome of generating drafts for every client on a cadence.

    Skipped, blocked and failed clients are keyed by client code.
    """

    cadence: str
    generated: list[Invoice] = field(default_factory=list)
    skipped: dict[str, str] = field(default_factory=dict)
    blocked: dict[str, list[str]] = field(default_factory=dict)
    errors: dict[str, str] = field(default_factory=dict)


class InvoiceService:
    """Service for generating, reviewing and finalizing client invoices."""

    def __init__(
        self,
        db: Database,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ):
        """Initialize invoice service.

        Args:
            db: Database instance
            settings: Application settings (defaults used when None)
            clock: Returns the current time; injectable for tests
        """
        self.db = db
        self.settings = settings or Settings()
        self.clock = clock
        self.validator = PreflightValidator(self.settings)

    def _require_client(self, client_id: int) -> Client:
        client = self.db.get_client(client_id)
        if client is None:
            raise NotFoundError(client_not_found(client_id))
        return client

    def require_invoice(self, invoice_id: int) -> Invoice:
        """Get invoice by ID or raise NotFoundError."""
        invoice = self.db.get_invoice(invoice_id)
        if invoice is None:
            raise NotFoundError(invoice_not_found(invoice_id))
        return invoice

    def find_invoice(self, reference: str | int) -> Invoice:
        """Find an invoice by ID or invoice number.

        Raises:
            NotFoundError: If nothing matches
        """
        if isinstance(reference, int) or str(reference).isdigit():
            return self.require_invoice(int(reference))
        invoice = self.db.get_invoice_by_number(str(reference))
        if invoice is None:
            raise NotFoundError(invoice_not_found(reference))
        return invoice

    def get_snapshot(self, invoice_id: int, version: Optional[int] = None) -> InvoiceSnapshot:
        """Get an invoice snapshot (latest by default).

        Raises:
            NotFoundError: If the invoice or version doesn't exist
        """
        snapshot = self.db.get_invoice_snapshot(invoice_id, version)
        if snapshot is None:
            label = f"version {version} of invoice {invoice_id}" if version else f"invoice {invoice_id}"
            raise NotFoundError(f"No snapshot for {label}")
        return snapshot

    def list_invoices(self, client_id: Optional[int] = None, status: Optional[str] = None) -> list[Invoice]:
        """List invoices, newest first."""
        return self.db.list_invoices(client_id=client_id, status=status)

    # Generation
    def _closed_source_invoices(self, period_start: date, period_end: date) -> list[SourceInvoiceRef]:
        return [inv.id for inv in self.db.list_source_invoices(start_date=period_start, end_date=period_end)]

    def preflight(
        self,
        client_id: int,
        source_invoice_ids: list[SourceInvoiceRef],
        include_invoice_number: Optional[str] = None,
    ) -> PreflightReport:
        """Run completeness checks over what an invoice would summarize.

        Args:
            client_id: Client to check
            source_invoice_ids: Closed source invoices in scope

        Returns:
            PreflightReport
        """
        self._require_client(client_id)
        transactions = self.db.list_billable_transactions(client_id, source_invoice_ids, include_invoice_number)
        return self.validator.evaluate(transactions)

    def preflight_period(self, client_id: int, period_start: date, period_end: date) -> PreflightReport:
        """Run pre-flight for the closed source invoices dated in a period."""
        return self.preflight(client_id, self._closed_source_invoices(period_start, period_end))

    def _price_transactions(
        self, client: Client, transactions: list[Transaction]
    ) -> tuple[dict[str, MarkupResult], list[str]]:
        """Price transactions as one invoice would.

        Returns:
            Tuple of (results by source transaction ID, pricing problems)
        """
        engine = MarkupEngine(self.db.list_markup_rules(client_id=client.id))
        shipments = self.db.get_shipments(
            t.reference_id for t in transactions if t.fee_category in (CATEGORY_SHIPPING, CATEGORY_CREDITS)
        )

        results: dict[str, MarkupResult] = {}
        problems: list[str] = []
        shipping_by_reference: dict[str, tuple[Transaction, MarkupResult]] = {}
        # Credits last, so they can mirror a shipment priced in this batch
        ordered = sorted(transactions, key=lambda t: t.fee_category == CATEGORY_CREDITS)
        for txn in ordered:
            try:
                if txn.fee_category == CATEGORY_CREDITS and txn.reference_id in shipping_by_reference:
                    shipment, shipment_result = shipping_by_reference[txn.reference_id]
                    if engine.mirrors_shipment(txn, shipment):
                        results[txn.source_id] = engine.mirror(
                            txn, shipment_result, txn.currency or client.currency
                        )
                        continue
                context = PricingContext.from_shipment(shipments.get(txn.reference_id))
                result = engine.price(txn, client, context)
            except PricingAmbiguityError as e:
                problems.append(str(e))
                continue
            results[txn.source_id] = result
            if txn.fee_category == CATEGORY_SHIPPING and txn.amount > 0:
                shipping_by_reference[txn.reference_id] = (txn, result)
        return results, problems

    def _price_lines(self, client: Client, transactions: list[Transaction]) -> tuple[list[InvoiceLine], InvoiceTotals]:
        """Pre-flight and price transactions into invoice lines.

        Raises:
            ValidationBlockedError: With every pre-flight and pricing problem found
        """
        report = self.validator.evaluate(transactions)
        reasons = report.blocking_reasons()
        results, problems = self._price_transactions(client, transactions)
        reasons.extend(problems)
        if reasons:
            raise ValidationBlockedError(reasons, report=report)

        lines = [
            InvoiceLine(
                transaction_id=txn.source_id,
                line_category=LINE_CATEGORY_LABELS[txn.fee_category],
                fee_type=txn.fee_type,
                reference_id=txn.reference_id,
                charge_date=txn.charge_date,
                source_invoice_id=txn.source_invoice_id,
                raw_cost=results[txn.source_id].cost_basis,
                base_cost=txn.base_cost,
                surcharge=txn.surcharge,
                insurance_cost=txn.insurance_cost,
                markup_rule_id=results[txn.source_id].rule_id,
                markup_percentage=results[txn.source_id].markup_percentage,
                markup_amount=results[txn.source_id].markup_amount,
                billed_amount=results[txn.source_id].billed_amount,
            )
            for txn in transactions
        ]
        lines.sort(key=lambda line: (CATEGORY_ORDER[line.line_category], line.charge_date, line.transaction_id))
        return lines, InvoiceTotals.from_lines(lines)

    def _collect(
        self, client: Client, source_invoice_ids: list[SourceInvoiceRef], replaced_number: Optional[str] = None
    ) -> list[Transaction]:
        transactions = self.db.list_billable_transactions(client.id, source_invoice_ids, replaced_number)
        if not transactions:
            raise ValidationBlockedError(
                [f"No billable transactions for client {client.code} on source invoices "
                 f"{', '.join(str(r) for r in source_invoice_ids) or '(none)'}"]
            )
        return transactions

    def generate(
        self,
        client_id: int,
        period_start: date,
        period_end: date,
        invoice_date: Optional[date] = None,
    ) -> Invoice:
        """Generate a draft invoice for a client and period.

        Summarizes the client's unbilled, non-voided transactions linked to
        the closed source invoices dated within the period. If a draft for the
        same period exists it is regenerated instead.

        Args:
            client_id: Client to bill
            period_start: First source invoice date in scope
            period_end: Last source invoice date in scope
            invoice_date: Date printed on the invoice (defaults to today)

        Returns:
            The draft invoice

        Raises:
            NotFoundError: If client doesn't exist
            ValidationError: If the period is inverted or the client is internal
            AlreadyFinalizedError: If the period's invoice is already approved
            ValidationBlockedError: If pre-flight or pricing fails (nothing is written)
        """
        client = self._require_client(client_id)
        if client.is_internal:
            raise ValidationError(f"Client {client.code} is an internal system client and is not invoiced")
        if period_end < period_start:
            raise ValidationError(f"Period end {period_end} is before period start {period_start}")

        existing = self.db.find_invoice_for_period(client_id, period_start, period_end)
        if existing is not None:
            if existing.is_draft:
                logger.info("Draft %s exists for this period; regenerating", existing.invoice_number)
                return self.regenerate(existing.id)
            raise AlreadyFinalizedError(
                f"Invoice {existing.invoice_number} for {period_start} to {period_end} is already {existing.status}"
            )

        refs = self._closed_source_invoices(period_start, period_end)
        if not refs:
            raise ValidationBlockedError([f"No closed source invoices dated {period_start} to {period_end}"])

        transactions = self._collect(client, refs)
        lines, totals = self._price_lines(client, transactions)

        invoice_date = invoice_date or self.clock().date()
        sequence = self.db.reserve_invoice_sequence(client.id)
        number = format_invoice_number(self.settings.invoice_prefix, client.code, sequence, invoice_date)
        invoice_id = self.db.create_invoice(
            client_id=client.id,
            invoice_number=number,
            period_start=period_start,
            period_end=period_end,
            invoice_date=invoice_date,
            source_invoice_ids=refs,
            lines=lines,
            totals=totals,
            generated_at=self.clock(),
        )
        logger.info(
            "Generated draft %s: %d lines, total %s", number, totals.line_count, totals.total_amount
        )
        return self.require_invoice(invoice_id)

    def regenerate(self, invoice_id: int) -> Invoice:
        """Re-price a draft from the source invoice IDs it recorded.

        Appends a new snapshot version. Earlier versions are kept.

        Raises:
            NotFoundError: If invoice doesn't exist
            AlreadyFinalizedError: If the invoice is not a draft
            ValidationBlockedError: If pre-flight or pricing fails
            ConflictError: If another process changed the draft meanwhile
        """
        invoice = self.require_invoice(invoice_id)
        if not invoice.is_draft:
            raise AlreadyFinalizedError(invoice_not_draft(invoice.invoice_number, invoice.status))
        client = self._require_client(invoice.client_id)

        replaced_number = None
        if invoice.replaces_invoice_id is not None:
            replaced_number = self.require_invoice(invoice.replaces_invoice_id).invoice_number

        refs = list(invoice.source_invoice_ids)
        transactions = self._collect(client, refs, replaced_number)
        lines, totals = self._price_lines(client, transactions)

        if not self.db.add_invoice_snapshot(invoice.id, invoice.version, lines, totals, refs, self.clock()):
            raise ConflictError(f"Invoice {invoice.invoice_number} changed while it was being regenerated")
        logger.info(
            "Regenerated %s as version %d, total %s", invoice.invoice_number, invoice.version + 1, totals.total_amount
        )
        return self.require_invoice(invoice.id)

    def generate_all(
        self,
        period_start: date,
        period_end: date,
        invoice_date: Optional[date] = None,
        cadence: Optional[str] = None,
    ) -> BatchGenerationResult:
        """Generate drafts for every active client billed on a cadence.

        One client's blocked or failed generation never stops the others;
        each outcome is recorded against the client code.

        Args:
            period_start: First source invoice date in scope
            period_end: Last source invoice date in scope
            invoice_date: Date printed on the invoices (defaults to today)
            cadence: "weekly" or "monthly" (inferred from the period length when None)

        Returns:
            BatchGenerationResult

        Raises:
            ValidationError: If the period is inverted or the cadence unknown
        """
        if period_end < period_start:
            raise ValidationError(f"Period end {period_end} is before period start {period_start}")
        cadence = cadence or period_cadence(period_start, period_end)
        if cadence not in BILLING_CADENCES:
            raise ValidationError(f"Invalid billing cadence '{cadence}'. Must be one of: {', '.join(BILLING_CADENCES)}")

        refs = self._closed_source_invoices(period_start, period_end)
        batch = BatchGenerationResult(cadence=cadence)
        for client in self.db.list_clients():
            if client.is_internal:
                continue
            if client.billing_cadence != cadence:
                batch.skipped[client.code] = f"billed {client.billing_cadence}"
                continue
            try:
                existing = self.db.find_invoice_for_period(client.id, period_start, period_end)
                if existing is None and not self.db.list_billable_transactions(client.id, refs):
                    batch.skipped[client.code] = "no billable transactions"
                    continue
                batch.generated.append(self.generate(client.id, period_start, period_end, invoice_date))
            except AlreadyFinalizedError as e:
                batch.skipped[client.code] = str(e)
            except ValidationBlockedError as e:
                logger.warning("Generation blocked for %s: %d issue(s)", client.code, len(e.reasons))
                batch.blocked[client.code] = e.reasons
            except DomainError as e:
                logger.error("Generation failed for %s: %s", client.code, e)
                batch.errors[client.code] = str(e)

        logger.info(
            "Batch %s generation for %s to %s: %d generated, %d blocked, %d failed",
            cadence,
            period_start,
            period_end,
            len(batch.generated),
            len(batch.blocked),
            len(batch.errors),
        )
        return batch

    # Approval workflow
    def approval_blockers(self, invoice: Invoice, snapshot: InvoiceSnapshot) -> list[str]:
        """List reasons an invoice cannot be approved as reviewed."""
        reasons = []
        for flag in self.db.list_review_flags(kind=FLAG_MISMATCH, source_invoice_ids=invoice.source_invoice_ids):
            reasons.append(f"Open reconciliation mismatch: {flag.message}")

        replaced_number = None
        if invoice.replaces_invoice_id is not None:
            replaced_number = self.require_invoice(invoice.replaces_invoice_id).invoice_number

        current = self.db.get_transactions_by_source_ids(line.transaction_id for line in snapshot.lines)
        for line in snapshot.lines:
            txn = current.get(line.transaction_id)
            if txn is None:
                reasons.append(f"Transaction {line.transaction_id} no longer exists")
            elif txn.is_voided:
                reasons.append(f"Transaction {line.transaction_id} was {txn.dispute_status} after generation")
            elif txn.client_id != invoice.client_id:
                reasons.append(f"Transaction {line.transaction_id} was re-attributed to another client")
            elif txn.invoice_number is not None and txn.invoice_number != replaced_number:
                reasons.append(f"Transaction {line.transaction_id} was billed on {txn.invoice_number}")
        return reasons

    def verify(self, invoice_id: int, version: Optional[int] = None) -> VerificationReport:
        """Re-derive every line of a snapshot and report what no longer adds up.

        Each line is re-priced through the markup engine from the stored
        transaction and compared with what the snapshot froze. Line
        arithmetic and the totals are checked too. Nothing is written.

        Args:
            invoice_id: Invoice to check
            version: Snapshot version (defaults to the latest)

        Raises:
            NotFoundError: If the invoice or version doesn't exist
        """
        invoice = self.require_invoice(invoice_id)
        snapshot = self.get_snapshot(invoice.id, version or invoice.version)
        client = self._require_client(invoice.client_id)
        quantum = minor_unit(client.currency)

        current = self.db.get_transactions_by_source_ids(line.transaction_id for line in snapshot.lines)
        results, problems = self._price_transactions(client, list(current.values()))
        issues = [VerificationIssue(ISSUE_AMBIGUOUS, SEVERITY_ERROR, problem) for problem in problems]

        for line in snapshot.lines:
            txn_id = line.transaction_id
            if abs(line.raw_cost + line.markup_amount - line.billed_amount) > quantum:
                issues.append(VerificationIssue(
                    ISSUE_BILLED_MATH,
                    SEVERITY_ERROR,
                    f"{txn_id}: cost {line.raw_cost} + markup {line.markup_amount} "
                    f"does not make billed {line.billed_amount}",
                    txn_id,
                ))
            if txn_id not in current:
                issues.append(VerificationIssue(
                    ISSUE_MISSING_TRANSACTION, SEVERITY_ERROR, f"{txn_id}: transaction no longer exists", txn_id
                ))
                continue
            expected = results.get(txn_id)
            if expected is None:
                continue
            if expected.rule_id != line.markup_rule_id:
                if line.markup_rule_id is None:
                    issues.append(VerificationIssue(
                        ISSUE_MISSING_MARKUP,
                        SEVERITY_ERROR,
                        f"{txn_id}: billed at cost but rule {expected.rule_id} applies",
                        txn_id,
                    ))
                else:
                    issues.append(VerificationIssue(
                        ISSUE_WRONG_RULE,
                        SEVERITY_WARNING,
                        f"{txn_id}: priced with rule {line.markup_rule_id} but rule {expected.rule_id} applies now",
                        txn_id,
                    ))
            elif expected.billed_amount != line.billed_amount or expected.markup_amount != line.markup_amount:
                issues.append(VerificationIssue(
                    ISSUE_MARKUP_MATH,
                    SEVERITY_ERROR,
                    f"{txn_id}: markup {line.markup_amount} billed {line.billed_amount}, "
                    f"expected markup {expected.markup_amount} billed {expected.billed_amount}",
                    txn_id,
                ))

        recomputed = InvoiceTotals.from_lines(list(snapshot.lines))
        if recomputed.total_amount != snapshot.totals.total_amount:
            issues.append(VerificationIssue(
                ISSUE_TOTAL_MISMATCH,
                SEVERITY_ERROR,
                f"Lines sum to {recomputed.total_amount} but the snapshot total is {snapshot.totals.total_amount}",
            ))
        if snapshot.version == invoice.version and invoice.total_amount != snapshot.totals.total_amount:
            issues.append(VerificationIssue(
                ISSUE_TOTAL_MISMATCH,
                SEVERITY_ERROR,
                f"Invoice total {invoice.total_amount} differs from snapshot total {snapshot.totals.total_amount}",
            ))

        report = VerificationReport(invoice=invoice, version=snapshot.version, issues=tuple(issues))
        logger.info(
            "Verified %s version %d: %d error(s), %d warning(s)",
            invoice.invoice_number,
            snapshot.version,
            len(report.errors),
            len(report.warnings),
        )
        return report

    def approve(self, invoice_id: int, expected_version: Optional[int] = None) -> ApprovalResult:
        """Approve a draft invoice exactly as last generated.

        Copies the latest snapshot's line items onto the transactions and
        locks the invoice, all in one database transaction guarded by a
        compare-and-set on status. Approving an approved invoice is a no-op.

        Args:
            invoice_id: Invoice to approve
            expected_version: Snapshot version the reviewer saw; approval fails
                if the draft has been regenerated since

        Returns:
            ApprovalResult (``already_approved`` True for the no-op case)

        Raises:
            NotFoundError: If invoice doesn't exist
            ConflictError: If expected_version is stale or another approver raced
            ValidationBlockedError: If mismatches or changed transactions block approval
        """
        invoice = self.require_invoice(invoice_id)
        if invoice.status in (INVOICE_APPROVED, INVOICE_SENT, INVOICE_SUPERSEDED):
            logger.info("Invoice %s is already %s", invoice.invoice_number, invoice.status)
            return ApprovalResult(invoice=invoice, already_approved=True)
        if expected_version is not None and expected_version != invoice.version:
            raise ConflictError(
                f"Invoice {invoice.invoice_number} is at version {invoice.version}, "
                f"not the reviewed version {expected_version}"
            )

        snapshot = self.get_snapshot(invoice.id, invoice.version)
        reasons = self.approval_blockers(invoice, snapshot)
        if reasons:
            raise ValidationBlockedError(reasons)

        if not self.db.finalize_invoice(invoice.id, snapshot.version, self.clock()):
            latest = self.require_invoice(invoice.id)
            if latest.status in (INVOICE_APPROVED, INVOICE_SENT):
                return ApprovalResult(invoice=latest, already_approved=True)
            raise ConflictError(f"Invoice {invoice.invoice_number} changed while it was being approved")

        approved = self.require_invoice(invoice.id)
        logger.info(
            "Approved %s version %d: %d lines, total %s",
            approved.invoice_number,
            snapshot.version,
            snapshot.totals.line_count,
            snapshot.totals.total_amount,
        )
        return ApprovalResult(invoice=approved)

    def send(self, invoice_id: int) -> Invoice:
        """Mark an approved invoice as sent. Sending a sent invoice is a no-op.

        Raises:
            NotFoundError: If invoice doesn't exist
            ValidationError: If the invoice has not been approved
        """
        invoice = self.require_invoice(invoice_id)
        if invoice.status == INVOICE_SENT:
            return invoice
        if invoice.status != INVOICE_APPROVED:
            raise ValidationError(f"Invoice {invoice.invoice_number} is {invoice.status}; approve it before sending")
        if not self.db.mark_invoice_sent(invoice.id, self.clock()):
            raise ConflictError(f"Invoice {invoice.invoice_number} changed while it was being sent")
        return self.require_invoice(invoice.id)

    def reissue(self, invoice_id: int) -> Invoice:
        """Open a corrected draft replacing an approved or sent invoice.

        The new draft is numbered with a ``-vN`` suffix and re-prices the
        same source invoices, including transactions billed on the invoice
        being replaced. The original stays in force until the reissue is
        approved, at which point it becomes superseded.

        Raises:
            NotFoundError: If invoice doesn't exist
            ValidationError: If the invoice is still a draft or already superseded
            ConflictError: If a reissue is already open
            ValidationBlockedError: If pre-flight or pricing fails
        """
        invoice = self.require_invoice(invoice_id)
        if invoice.is_draft:
            raise ValidationError(f"Invoice {invoice.invoice_number} is a draft; regenerate it instead")
        if invoice.status == INVOICE_SUPERSEDED:
            raise ValidationError(f"Invoice {invoice.invoice_number} has already been superseded")
        pending = self.db.find_reissue_of(invoice.id)
        if pending is not None:
            raise ConflictError(f"Invoice {invoice.invoice_number} already has reissue {pending.invoice_number}")

        client = self._require_client(invoice.client_id)
        refs = list(invoice.source_invoice_ids)
        transactions = self._collect(client, refs, invoice.invoice_number)
        lines, totals = self._price_lines(client, transactions)

        base, revision = parse_invoice_revision(invoice.invoice_number)
        number = f"{base}-v{revision + 1}"
        new_id = self.db.create_invoice(
            client_id=client.id,
            invoice_number=number,
            period_start=invoice.period_start,
            period_end=invoice.period_end,
            invoice_date=invoice.invoice_date,
            source_invoice_ids=refs,
            lines=lines,
            totals=totals,
            generated_at=self.clock(),
            replaces_invoice_id=invoice.id,
        )
        logger.info("Opened reissue %s replacing %s", number, invoice.invoice_number)
        return self.require_invoice(new_id)
