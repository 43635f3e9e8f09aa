"""Tests for the command line interface."""

import pytest
from datetime import date
from decimal import Decimal

from fulfillbill.cli.main import cli
from fulfillbill.config import Settings
from fulfillbill.domain.entities import FLAG_MISMATCH, CostBreakdownRow
from fulfillbill.domain.errors import TransientSourceError
from conftest import SOURCE_INVOICE_ID

WEEK_ARGS = ["--from", "2025-03-03", "--to", "2025-03-03", "--invoice-date", "2025-03-03"]


class StubAdapter:
    """Cost source that serves a fixed list of open events."""

    def __init__(self, events=(), error=None):
        self.events = list(events)
        self.error = error

    def drain_errors(self):
        return []

    def fetch_open_events(self):
        if self.error is not None:
            raise self.error
        return list(self.events)


def run(cli_runner, temp_db, args, adapter=None):
    """Invoke the CLI against the test database.

    The fixture's session is closed first so it reads fresh state afterwards.
    """
    temp_db.disconnect()
    obj = {"settings": Settings()}
    if adapter is not None:
        obj["adapter"] = adapter
    result = cli_runner.invoke(cli, ["--db-path", temp_db.database_path, *args], obj=obj)
    temp_db.disconnect()
    return result


@pytest.fixture
def priced_week(temp_db, sample_clients, sample_shipment, rule_service, reconciliation_service, make_event, make_source_invoice):
    """A closed source invoice with one ACME shipment awaiting its breakdown."""
    rule_service.create_rule("Shipping 15%", "shipping", "percentage", Decimal("15"), date(2025, 1, 1))
    temp_db.upsert_source_invoice(make_source_invoice())
    reconciliation_service.ingest([make_event("T1")])
    return sample_clients["ACME"]


@pytest.fixture
def billed_week(priced_week, reconciliation_service):
    """The same week with its cost breakdown applied."""
    reconciliation_service.apply_breakdown(
        [
            CostBreakdownRow(
                reference_id="SH1001",
                source_invoice_id=SOURCE_INVOICE_ID,
                base_cost=Decimal("8.50"),
                surcharge=Decimal("0"),
                insurance_cost=Decimal("0"),
                total=Decimal("8.50"),
            )
        ]
    )
    return priced_week


class TestClientCommands:
    """Tests for client commands."""

    def test_create_and_list(self, cli_runner, temp_db):
        """Test a created client shows up in the list."""
        result = run(cli_runner, temp_db, ["client", "create", "acme", "Acme Outdoor"])
        assert result.exit_code == 0
        assert "Created client ACME" in result.output

        result = run(cli_runner, temp_db, ["client", "list"])
        assert result.exit_code == 0
        assert "ACME" in result.output
        assert "Acme Outdoor" in result.output

    def test_duplicate_client_fails(self, cli_runner, temp_db, sample_clients):
        """Test a duplicate code exits with an error."""
        result = run(cli_runner, temp_db, ["client", "create", "ACME", "Acme Again"])

        assert result.exit_code == 1
        assert "already exists" in result.output

    def test_deactivate_unknown_client(self, cli_runner, temp_db):
        """Test an unknown client code exits as not found."""
        result = run(cli_runner, temp_db, ["client", "deactivate", "NOPE"])

        assert result.exit_code == 3


class TestRuleCommands:
    """Tests for markup rule commands."""

    def test_create_percentage_rule(self, cli_runner, temp_db, sample_clients):
        """Test a client rule with destination conditions is created."""
        result = run(
            cli_runner,
            temp_db,
            ["rule", "create", "West coast", "--category", "shipping", "--percent", "12.5",
             "--client", "ACME", "--state", "ca", "--from", "2025-01-01"],
        )

        assert result.exit_code == 0
        rules = temp_db.list_markup_rules()
        assert len(rules) == 1
        assert rules[0].value == Decimal("12.5")
        assert rules[0].conditions.states == ("CA",)
        assert rules[0].client_id == sample_clients["ACME"].id

    @pytest.mark.parametrize("markup_args", [[], ["--percent", "10", "--fixed", "1.00"]])
    def test_percent_and_fixed_exclusive(self, cli_runner, temp_db, markup_args):
        """Test exactly one of --percent and --fixed is required."""
        result = run(cli_runner, temp_db, ["rule", "create", "Bad", "--category", "shipping", *markup_args])

        assert result.exit_code == 1
        assert "exactly one of --percent or --fixed" in result.output
        assert temp_db.list_markup_rules() == []


class TestInvoiceCommands:
    """Tests for the invoice workflow commands."""

    def test_generate_and_approve(self, cli_runner, temp_db, billed_week):
        """Test a draft is generated, approved, then refused a second approval."""
        result = run(cli_runner, temp_db, ["invoice", "generate", "ACME", *WEEK_ARGS])
        assert result.exit_code == 0, result.output
        assert "JPACME-0001-030325" in result.output
        assert "total 9.78" in result.output

        result = run(cli_runner, temp_db, ["invoice", "approve", "JPACME-0001-030325"])
        assert result.exit_code == 0, result.output
        assert temp_db.get_transaction("T1").invoice_number == "JPACME-0001-030325"

        result = run(cli_runner, temp_db, ["invoice", "approve", "JPACME-0001-030325"])
        assert result.exit_code == 4
        assert "already approved" in result.output

    def test_show_lists_lines(self, cli_runner, temp_db, billed_week):
        """Test show prints category totals and line items."""
        run(cli_runner, temp_db, ["invoice", "generate", "ACME", *WEEK_ARGS])

        result = run(cli_runner, temp_db, ["invoice", "show", "JPACME-0001-030325", "--lines"])

        assert result.exit_code == 0, result.output
        assert "Shipping" in result.output
        assert "T1" in result.output

    def test_generate_all(self, cli_runner, temp_db, billed_week):
        """Test batch generation reports generated and skipped clients."""
        result = run(cli_runner, temp_db, ["invoice", "generate-all", *WEEK_ARGS])

        assert result.exit_code == 0, result.output
        assert "Generating weekly invoices" in result.output
        assert "Generated draft JPACME-0001-030325" in result.output
        assert "Skipped BETA: no billable transactions" in result.output
        assert "1 generated" in result.output

    def test_generate_all_blocked(self, cli_runner, temp_db, priced_week):
        """Test a blocked client in a batch exits with code 2."""
        result = run(cli_runner, temp_db, ["invoice", "generate-all", *WEEK_ARGS])

        assert result.exit_code == 2
        assert "Blocked ACME:" in result.output

    def test_verify(self, cli_runner, temp_db, billed_week):
        """Test a freshly generated draft verifies cleanly."""
        run(cli_runner, temp_db, ["invoice", "generate", "ACME", *WEEK_ARGS])

        result = run(cli_runner, temp_db, ["invoice", "verify", "JPACME-0001-030325"])

        assert result.exit_code == 0, result.output
        assert "version 1: 0 issue(s)" in result.output
        assert "Verification passed" in result.output

    def test_verify_unknown_invoice(self, cli_runner, temp_db):
        """Test verifying an unknown invoice exits as not found."""
        result = run(cli_runner, temp_db, ["invoice", "verify", "JPNOPE-0001-010125"])

        assert result.exit_code == 3

    def test_preflight_blocked(self, cli_runner, temp_db, priced_week):
        """Test missing breakdown data blocks with exit code 2."""
        result = run(cli_runner, temp_db, ["invoice", "preflight", "ACME", "--from", "2025-03-03", "--to", "2025-03-03"])

        assert result.exit_code == 2
        assert "missing base_cost" in result.output

    def test_generate_blocked(self, cli_runner, temp_db, priced_week):
        """Test generation lists blocking reasons and exits with code 2."""
        result = run(cli_runner, temp_db, ["invoice", "generate", "ACME", *WEEK_ARGS])

        assert result.exit_code == 2
        assert "Blocked:" in result.output
        assert temp_db.list_invoices() == []

    def test_unknown_invoice(self, cli_runner, temp_db):
        """Test an unknown invoice number exits as not found."""
        result = run(cli_runner, temp_db, ["invoice", "approve", "JPNOPE-0001-010125"])

        assert result.exit_code == 3

    def test_period_options_conflict(self, cli_runner, temp_db, sample_clients):
        """Test --period cannot be combined with --from/--to."""
        result = run(
            cli_runner, temp_db, ["invoice", "generate", "ACME", "--period", "last-week", "--from", "2025-03-03"]
        )

        assert result.exit_code == 1
        assert "either --period or --from/--to" in result.output


class TestSyncCommands:
    """Tests for sync commands."""

    def test_sync_open(self, cli_runner, temp_db, sample_shipment, make_event):
        """Test open events are ingested through the job runner."""
        adapter = StubAdapter([make_event("T1", source_invoice_id=None)])

        result = run(cli_runner, temp_db, ["sync", "open"], adapter=adapter)

        assert result.exit_code == 0, result.output
        assert "sync-open: completed" in result.output
        assert temp_db.get_transaction("T1").client_id is not None

    def test_sync_open_source_unavailable(self, cli_runner, temp_db):
        """Test a transient provider failure exits with code 5."""
        adapter = StubAdapter(error=TransientSourceError("Cost source unavailable: HTTP 503"))

        result = run(cli_runner, temp_db, ["sync", "open"], adapter=adapter)

        assert result.exit_code == 5
        assert "HTTP 503" in result.output

    def test_sync_breakdown_file(self, cli_runner, temp_db, priced_week, fixtures_dir):
        """Test a breakdown file fills base cost and reports bad rows."""
        result = run(cli_runner, temp_db, ["sync", "breakdown", str(fixtures_dir / "extras-022725.csv")])

        assert result.exit_code == 0, result.output
        assert "Read 4 breakdown rows" in result.output
        assert "Row 5: Missing OrderID" in result.output
        assert temp_db.get_transaction("T1").base_cost == Decimal("5.97")


class TestReviewCommands:
    """Tests for review flag commands."""

    def test_list_and_resolve(self, cli_runner, temp_db):
        """Test an open flag is listed, then resolved."""
        flag_id = temp_db.create_review_flag(FLAG_MISMATCH, "9001", "Totals differ by 1.00", SOURCE_INVOICE_ID)

        result = run(cli_runner, temp_db, ["review", "list"])
        assert result.exit_code == 0
        assert "Totals differ by 1.00" in result.output

        result = run(cli_runner, temp_db, ["review", "resolve", str(flag_id)])
        assert result.exit_code == 0
        assert temp_db.list_review_flags() == []

    def test_resolve_unknown_flag(self, cli_runner, temp_db):
        """Test resolving a missing flag exits as not found."""
        result = run(cli_runner, temp_db, ["review", "resolve", "42"])

        assert result.exit_code == 3
