"""Tests for invoice generation and the approval workflow."""

import hashlib

import pytest
from datetime import date
from decimal import Decimal

from fulfillbill.domain.entities import (
    DISPUTE_VOIDED,
    FLAG_MISMATCH,
    INVOICE_APPROVED,
    INVOICE_DRAFT,
    INVOICE_SENT,
    INVOICE_SUPERSEDED,
    CostBreakdownRow,
    TransactionPatch,
)
from fulfillbill.domain.errors import (
    AlreadyFinalizedError,
    ConflictError,
    NotFoundError,
    ValidationBlockedError,
    ValidationError,
)
from fulfillbill.domain.invoice import (
    ISSUE_MARKUP_MATH,
    ISSUE_MISSING_MARKUP,
    ISSUE_WRONG_RULE,
    SEVERITY_WARNING,
    format_invoice_number,
    parse_invoice_revision,
)
from fulfillbill.domain.review import ReviewService
from conftest import SOURCE_INVOICE_DATE, SOURCE_INVOICE_ID

WEEK = (SOURCE_INVOICE_DATE, SOURCE_INVOICE_DATE)


def breakdown(reference_id: str, base: str) -> CostBreakdownRow:
    return CostBreakdownRow(
        reference_id=reference_id,
        source_invoice_id=SOURCE_INVOICE_ID,
        base_cost=Decimal(base),
        surcharge=Decimal("0"),
        insurance_cost=Decimal("0"),
        total=Decimal(base),
    )


@pytest.fixture
def billed_week(
    temp_db,
    sample_clients,
    sample_shipment,
    rule_service,
    reconciliation_service,
    make_event,
    make_source_invoice,
):
    """One closed source invoice with a single ACME shipment at 15% markup."""
    rule_service.create_rule("Shipping 15%", "shipping", "percentage", Decimal("15"), date(2025, 1, 1))
    temp_db.upsert_source_invoice(make_source_invoice())
    reconciliation_service.ingest([make_event("T1")])
    reconciliation_service.apply_breakdown([breakdown("SH1001", "8.50")])
    return sample_clients["ACME"]


def generate_week(invoice_service, client):
    return invoice_service.generate(client.id, *WEEK, invoice_date=SOURCE_INVOICE_DATE)


def transaction_digest(db, client_id: int) -> str:
    """Fingerprint every stored field of a client's transactions."""
    rows = db.list_transactions(client_id=client_id)
    return hashlib.sha256(repr(rows).encode()).hexdigest()


@pytest.fixture
def two_shipment_week(billed_week, lookup_service, reconciliation_service, make_event):
    """The billed week plus a second shipment and a credit refunding the first."""
    lookup_service.record_shipment("SH1002", billed_week.id)
    credit = make_event("C1", fee_type="Credit", reference_type="Default", amount="-8.50")
    reconciliation_service.ingest([make_event("T2", reference_id="SH1002", amount="4.00"), credit])
    reconciliation_service.apply_breakdown([breakdown("SH1002", "4.00")])
    return billed_week


class TestGenerate:
    """Tests for draft generation."""

    def test_generate_draft(self, invoice_service, temp_db, billed_week):
        """Test generation prices lines and numbers the draft."""
        invoice = generate_week(invoice_service, billed_week)

        assert invoice.invoice_number == "JPACME-0001-030325"
        assert invoice.status == INVOICE_DRAFT
        assert invoice.version == 1
        assert invoice.source_invoice_ids == (SOURCE_INVOICE_ID,)
        assert invoice.subtotal == Decimal("8.50")
        assert invoice.total_markup == Decimal("1.28")
        assert invoice.total_amount == Decimal("9.78")

        snapshot = invoice_service.get_snapshot(invoice.id)
        assert [line.transaction_id for line in snapshot.lines] == ["T1"]
        assert snapshot.lines[0].line_category == "Shipping"
        assert snapshot.lines[0].markup_percentage == Decimal("15")

    def test_generate_does_not_touch_transactions(self, invoice_service, temp_db, billed_week):
        """Test generation leaves billing fields on transactions unset."""
        generate_week(invoice_service, billed_week)

        txn = temp_db.get_transaction("T1")
        assert txn.invoice_number is None
        assert txn.billed_amount is None

    def test_regenerate_appends_version(self, invoice_service, temp_db, billed_week):
        """Test regenerating keeps earlier snapshots."""
        invoice = generate_week(invoice_service, billed_week)

        regenerated = invoice_service.regenerate(invoice.id)

        assert regenerated.id == invoice.id
        assert regenerated.version == 2
        assert [s.version for s in temp_db.list_invoice_snapshots(invoice.id)] == [1, 2]

    def test_generate_same_period_regenerates_draft(self, invoice_service, billed_week):
        """Test generating an existing draft's period regenerates that draft."""
        first = generate_week(invoice_service, billed_week)

        second = generate_week(invoice_service, billed_week)

        assert second.id == first.id
        assert second.invoice_number == first.invoice_number
        assert second.version == 2

    def test_regenerate_is_stable(self, invoice_service, temp_db, two_shipment_week):
        """Test regenerating unchanged data repeats the totals and writes nothing to transactions."""
        first = generate_week(invoice_service, two_shipment_week)
        digest = transaction_digest(temp_db, two_shipment_week.id)

        second = invoice_service.regenerate(first.id)
        third = invoice_service.regenerate(first.id)

        for invoice in (second, third):
            assert invoice.subtotal == first.subtotal
            assert invoice.total_markup == first.total_markup
            assert invoice.total_amount == first.total_amount
        snapshots = temp_db.list_invoice_snapshots(first.id)
        assert all(s.totals == snapshots[0].totals for s in snapshots)
        assert [s.lines for s in snapshots[1:]] == [snapshots[0].lines] * 2
        assert transaction_digest(temp_db, two_shipment_week.id) == digest

    def test_generate_internal_client(self, invoice_service, sample_clients):
        """Test internal clients are never invoiced."""
        with pytest.raises(ValidationError, match="internal"):
            invoice_service.generate(sample_clients["PAYMENTS"].id, *WEEK)

    def test_generate_inverted_period(self, invoice_service, sample_clients):
        """Test a period ending before it starts is rejected."""
        with pytest.raises(ValidationError):
            invoice_service.generate(sample_clients["ACME"].id, date(2025, 3, 10), date(2025, 3, 3))

    def test_generate_unknown_client(self, invoice_service):
        """Test an unknown client is not found."""
        with pytest.raises(NotFoundError):
            invoice_service.generate(999, *WEEK)

    def test_generate_without_source_invoices(self, invoice_service, billed_week):
        """Test a period with no closed source invoices is blocked."""
        with pytest.raises(ValidationBlockedError, match="No closed source invoices"):
            invoice_service.generate(billed_week.id, date(2025, 4, 1), date(2025, 4, 7))

    def test_generate_without_transactions(self, invoice_service, billed_week, sample_clients):
        """Test a client with nothing billable is blocked."""
        with pytest.raises(ValidationBlockedError, match="No billable transactions"):
            invoice_service.generate(sample_clients["BETA"].id, *WEEK)

    def test_preflight_block_consumes_no_number(
        self, invoice_service, client_service, reconciliation_service, billed_week, make_event, lookup_service
    ):
        """Test a blocked generation leaves the invoice sequence alone."""
        lookup_service.record_shipment("SH1002", billed_week.id)
        reconciliation_service.ingest([make_event("T2", reference_id="SH1002")])

        with pytest.raises(ValidationBlockedError) as exc_info:
            generate_week(invoice_service, billed_week)

        assert any("missing base_cost" in reason for reason in exc_info.value.reasons)
        assert client_service.get_client(billed_week.id).next_invoice_number == 1

        reconciliation_service.apply_breakdown([breakdown("SH1002", "4.00")])
        invoice = generate_week(invoice_service, billed_week)
        assert invoice.invoice_number == "JPACME-0001-030325"
        assert invoice.line_count == 2

    def test_ambiguous_rules_block_generation(self, invoice_service, rule_service, billed_week):
        """Test tied rules are reported instead of picked."""
        rule_service.create_rule("Shipping 20%", "shipping", "percentage", Decimal("20"), date(2025, 1, 1))

        with pytest.raises(ValidationBlockedError, match="tie on specificity"):
            generate_week(invoice_service, billed_week)

    def test_credit_mirrors_shipment_markup(
        self, invoice_service, reconciliation_service, billed_week, make_event
    ):
        """Test a credit refunding a shipment is billed at the shipment's markup."""
        credit = make_event(
            "C1",
            fee_type="Credit",
            reference_type="Default",
            amount="-8.50",
            details={"Comment": "Lost in transit"},
        )
        reconciliation_service.ingest([credit])

        invoice = generate_week(invoice_service, billed_week)

        lines = {line.transaction_id: line for line in invoice_service.get_snapshot(invoice.id).lines}
        assert lines["C1"].line_category == "Credits"
        assert lines["C1"].markup_amount == Decimal("-1.28")
        assert lines["C1"].billed_amount == Decimal("-9.78")
        assert invoice.total_amount == Decimal("0.00")


class TestGenerateAll:
    """Tests for batch generation across clients."""

    def test_generates_clients_with_billable_work(self, invoice_service, billed_week):
        """Test clients on the cadence with transactions get drafts and the rest are skipped."""
        batch = invoice_service.generate_all(*WEEK, invoice_date=SOURCE_INVOICE_DATE)

        assert batch.cadence == "weekly"
        assert [invoice.invoice_number for invoice in batch.generated] == ["JPACME-0001-030325"]
        assert batch.skipped == {"BETA": "no billable transactions"}
        assert batch.blocked == {}
        assert batch.errors == {}

    def test_other_cadence_is_skipped(self, invoice_service, client_service, billed_week, sample_clients):
        """Test a client billed monthly is left out of a weekly run."""
        client_service.update_client(sample_clients["BETA"].id, billing_cadence="monthly")

        batch = invoice_service.generate_all(*WEEK, cadence="weekly")

        assert batch.skipped == {"BETA": "billed monthly"}
        assert len(batch.generated) == 1

    def test_blocked_client_does_not_stop_others(
        self, invoice_service, lookup_service, reconciliation_service, billed_week, sample_clients, make_event
    ):
        """Test one client's blocked generation is reported while others still generate."""
        lookup_service.record_shipment("SH2001", sample_clients["BETA"].id)
        reconciliation_service.ingest([make_event("T2", reference_id="SH2001")])

        batch = invoice_service.generate_all(*WEEK, invoice_date=SOURCE_INVOICE_DATE)

        assert [invoice.client_id for invoice in batch.generated] == [billed_week.id]
        assert list(batch.blocked) == ["BETA"]
        assert any("missing base_cost" in reason for reason in batch.blocked["BETA"])

    def test_approved_period_is_skipped(self, invoice_service, billed_week):
        """Test a client whose period is already approved is skipped, not regenerated."""
        invoice = generate_week(invoice_service, billed_week)
        invoice_service.approve(invoice.id)

        batch = invoice_service.generate_all(*WEEK)

        assert batch.generated == []
        assert "ACME" in batch.skipped

    def test_invalid_cadence(self, invoice_service, billed_week):
        """Test an unknown cadence is rejected."""
        with pytest.raises(ValidationError, match="cadence"):
            invoice_service.generate_all(*WEEK, cadence="daily")


class TestVerify:
    """Tests for re-deriving a snapshot's pricing."""

    def test_clean_draft_passes(self, invoice_service, billed_week):
        """Test a freshly generated draft has nothing to report."""
        invoice = generate_week(invoice_service, billed_week)

        report = invoice_service.verify(invoice.id)

        assert report.passed is True
        assert report.issues == ()
        assert report.version == 1

    def test_newer_rule_is_a_warning(self, invoice_service, rule_service, billed_week):
        """Test a more specific rule added after generation is reported as a warning."""
        invoice = generate_week(invoice_service, billed_week)
        rule_service.create_rule(
            "ACME shipping", "shipping", "percentage", Decimal("12"), date(2025, 1, 1), client_id=billed_week.id
        )

        report = invoice_service.verify(invoice.id)

        assert report.passed is True
        assert [issue.kind for issue in report.warnings] == [ISSUE_WRONG_RULE]
        assert report.warnings[0].severity == SEVERITY_WARNING
        assert report.warnings[0].transaction_id == "T1"

    def test_changed_rule_value_is_an_error(self, invoice_service, rule_service, billed_week):
        """Test a snapshot priced with an old rule value no longer adds up."""
        invoice = generate_week(invoice_service, billed_week)
        rule_id = rule_service.list_rules()[0].id
        rule_service.update_rule(rule_id, value=Decimal("20"))

        report = invoice_service.verify(invoice.id)

        assert report.passed is False
        assert [issue.kind for issue in report.errors] == [ISSUE_MARKUP_MATH]

    def test_line_billed_at_cost(self, invoice_service, rule_service, billed_week):
        """Test a line billed at cost is an error once a rule covers it."""
        rule_service.deactivate_rule(rule_service.list_rules()[0].id)
        invoice = generate_week(invoice_service, billed_week)
        assert invoice.total_markup == Decimal("0.00")
        rule_service.create_rule("Shipping 10%", "shipping", "percentage", Decimal("10"), date(2025, 1, 1))

        report = invoice_service.verify(invoice.id)

        assert report.passed is False
        assert [issue.kind for issue in report.errors] == [ISSUE_MISSING_MARKUP]

    def test_earlier_version(self, invoice_service, billed_week):
        """Test an earlier snapshot version can be checked."""
        invoice = generate_week(invoice_service, billed_week)
        invoice_service.regenerate(invoice.id)

        report = invoice_service.verify(invoice.id, version=1)

        assert report.version == 1
        assert report.passed is True

    def test_unknown_invoice(self, invoice_service):
        """Test verifying an unknown invoice is not found."""
        with pytest.raises(NotFoundError):
            invoice_service.verify(999)


class TestApprove:
    """Tests for approval and finalization."""

    def test_approve_writes_snapshot_to_transactions(self, invoice_service, temp_db, billed_week):
        """Test approval copies the reviewed prices onto transactions."""
        invoice = generate_week(invoice_service, billed_week)

        result = invoice_service.approve(invoice.id, expected_version=1)

        assert result.already_approved is False
        assert result.invoice.status == INVOICE_APPROVED
        assert result.invoice.approved_version == 1
        txn = temp_db.get_transaction("T1")
        assert txn.invoice_number == "JPACME-0001-030325"
        assert txn.billed_amount == Decimal("9.78")
        assert txn.markup_amount == Decimal("1.28")

    def test_approve_twice_is_noop(self, invoice_service, billed_week):
        """Test approving an approved invoice reports it and changes nothing."""
        invoice = generate_week(invoice_service, billed_week)
        invoice_service.approve(invoice.id)

        result = invoice_service.approve(invoice.id)

        assert result.already_approved is True
        assert result.invoice.status == INVOICE_APPROVED

    def test_approve_stale_version(self, invoice_service, billed_week):
        """Test approving a version that has since been regenerated conflicts."""
        invoice = generate_week(invoice_service, billed_week)
        invoice_service.regenerate(invoice.id)

        with pytest.raises(ConflictError):
            invoice_service.approve(invoice.id, expected_version=1)

    def test_billed_amounts_sum_to_snapshot_total(self, invoice_service, temp_db, two_shipment_week):
        """Test the amounts written at approval add up to the approved total."""
        invoice = generate_week(invoice_service, two_shipment_week)

        result = invoice_service.approve(invoice.id)

        snapshot = invoice_service.get_snapshot(invoice.id)
        billed = [
            t.billed_amount
            for t in temp_db.list_transactions(client_id=two_shipment_week.id)
            if t.invoice_number == invoice.invoice_number
        ]
        assert len(billed) == 3
        assert sum(billed) == snapshot.totals.total_amount
        assert sum(billed) == result.invoice.total_amount == Decimal("4.60")

    def test_mismatch_blocks_until_resolved(
        self, invoice_service, reconciliation_service, temp_db, billed_week, make_source_invoice, clock
    ):
        """Test an open reconciliation mismatch blocks approval until resolved."""
        invoice = generate_week(invoice_service, billed_week)
        reconciliation_service.check_invoice_totals(make_source_invoice(amount="20.00"))

        with pytest.raises(ValidationBlockedError, match="Open reconciliation mismatch"):
            invoice_service.approve(invoice.id)

        review = ReviewService(temp_db, clock)
        flag = review.list_flags(kind=FLAG_MISMATCH)[0]
        review.resolve(flag.id)

        assert invoice_service.approve(invoice.id).invoice.status == INVOICE_APPROVED

    def test_voided_transaction_blocks(self, invoice_service, temp_db, billed_week):
        """Test a transaction voided after generation blocks approval."""
        invoice = generate_week(invoice_service, billed_week)
        temp_db.update_transaction("T1", TransactionPatch(dispute_status=DISPUTE_VOIDED))

        with pytest.raises(ValidationBlockedError, match="T1 was voided"):
            invoice_service.approve(invoice.id)

        assert temp_db.get_transaction("T1").invoice_number is None

    def test_reattributed_transaction_blocks(self, invoice_service, temp_db, billed_week, sample_clients):
        """Test a transaction moved to another client blocks approval."""
        invoice = generate_week(invoice_service, billed_week)
        temp_db.update_transaction("T1", TransactionPatch(client_id=sample_clients["BETA"].id))

        with pytest.raises(ValidationBlockedError, match="re-attributed"):
            invoice_service.approve(invoice.id)

    def test_already_approved_period(self, invoice_service, billed_week):
        """Test generating an approved period is refused."""
        invoice = generate_week(invoice_service, billed_week)
        invoice_service.approve(invoice.id)

        with pytest.raises(AlreadyFinalizedError):
            generate_week(invoice_service, billed_week)
        with pytest.raises(AlreadyFinalizedError):
            invoice_service.regenerate(invoice.id)

    def test_finalized_transaction_ignores_source_changes(
        self, invoice_service, reconciliation_service, temp_db, billed_week, make_event
    ):
        """Test a re-ingested billed transaction stays as invoiced."""
        invoice = generate_week(invoice_service, billed_week)
        invoice_service.approve(invoice.id)
        before = temp_db.get_transaction("T1")

        stats = reconciliation_service.ingest([make_event("T1", amount="9.99")])

        assert stats["unchanged"] == 1
        assert temp_db.get_transaction("T1") == before


class TestSendAndReissue:
    """Tests for sending and reissuing."""

    def test_send(self, invoice_service, billed_week):
        """Test an approved invoice can be sent, and sending again is a no-op."""
        invoice = generate_week(invoice_service, billed_week)
        invoice_service.approve(invoice.id)

        sent = invoice_service.send(invoice.id)

        assert sent.status == INVOICE_SENT
        assert sent.sent_at is not None
        assert invoice_service.send(invoice.id).status == INVOICE_SENT

    def test_send_draft_refused(self, invoice_service, billed_week):
        """Test a draft cannot be sent."""
        invoice = generate_week(invoice_service, billed_week)

        with pytest.raises(ValidationError, match="approve it before sending"):
            invoice_service.send(invoice.id)

    def test_reissue_supersedes_on_approval(self, invoice_service, temp_db, billed_week):
        """Test a reissue re-bills the same transactions and supersedes the original."""
        original = generate_week(invoice_service, billed_week)
        invoice_service.approve(original.id)

        reissue = invoice_service.reissue(original.id)

        assert reissue.invoice_number == "JPACME-0001-030325-v2"
        assert reissue.status == INVOICE_DRAFT
        assert reissue.replaces_invoice_id == original.id
        assert reissue.line_count == 1
        assert invoice_service.require_invoice(original.id).status == INVOICE_APPROVED

        invoice_service.approve(reissue.id)

        assert invoice_service.require_invoice(original.id).status == INVOICE_SUPERSEDED
        assert temp_db.get_transaction("T1").invoice_number == "JPACME-0001-030325-v2"

    def test_reissue_refusals(self, invoice_service, billed_week):
        """Test drafts, open reissues and superseded invoices cannot be reissued."""
        original = generate_week(invoice_service, billed_week)
        with pytest.raises(ValidationError, match="draft"):
            invoice_service.reissue(original.id)

        invoice_service.approve(original.id)
        reissue = invoice_service.reissue(original.id)
        with pytest.raises(ConflictError):
            invoice_service.reissue(original.id)

        invoice_service.approve(reissue.id)
        with pytest.raises(ValidationError, match="superseded"):
            invoice_service.reissue(original.id)

    def test_find_invoice_by_number(self, invoice_service, billed_week):
        """Test invoices can be found by ID or number."""
        invoice = generate_week(invoice_service, billed_week)

        assert invoice_service.find_invoice("JPACME-0001-030325").id == invoice.id
        assert invoice_service.find_invoice(str(invoice.id)).id == invoice.id
        with pytest.raises(NotFoundError):
            invoice_service.find_invoice("JPNOPE-0001-030325")


def test_format_invoice_number():
    """Test invoice numbers carry prefix, code, sequence and date."""
    assert format_invoice_number("JP", "acme", 7, date(2025, 3, 3)) == "JPACME-0007-030325"
    assert format_invoice_number("JP", "ACME", 7, date(2025, 3, 3), revision=3) == "JPACME-0007-030325-v3"


def test_parse_invoice_revision():
    """Test revision suffixes are split from the base number."""
    assert parse_invoice_revision("JPACME-0007-030325") == ("JPACME-0007-030325", 1)
    assert parse_invoice_revision("JPACME-0007-030325-v2") == ("JPACME-0007-030325", 2)
