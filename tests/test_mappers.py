"""Tests for database mappers."""

from datetime import datetime, date, UTC
from decimal import Decimal

from fulfillbill.database.models import (
    Client as ORMClient,
    Invoice as ORMInvoice,
    InvoiceSnapshot as ORMInvoiceSnapshot,
    MarkupRule as ORMMarkupRule,
    ReviewFlag as ORMReviewFlag,
    Transaction as ORMTransaction,
)
from fulfillbill.database.mappers import (
    client_to_domain,
    invoice_to_domain,
    markup_rule_to_domain,
    review_flag_to_domain,
    snapshot_to_domain,
    transaction_to_domain,
)
from fulfillbill.domain.entities import (
    Client,
    Invoice,
    InvoiceLine,
    MarkupRule,
    RuleConditions,
    Transaction,
)

NOW = datetime(2025, 3, 5, 12, 0, tzinfo=UTC)


class TestClientMapper:
    """Tests for Client mapper."""

    def test_client_to_domain(self):
        """Test converting ORM Client to domain Client."""
        orm_client = ORMClient(
            id=1,
            code="ACME",
            name="Acme Outdoor",
            billing_cadence="weekly",
            currency="USD",
            is_active=True,
            is_internal=False,
            next_invoice_number=4,
            created_at=NOW,
        )
        client = client_to_domain(orm_client)

        assert isinstance(client, Client)
        assert client.code == "ACME"
        assert client.next_invoice_number == 4
        assert client.is_internal is False


class TestTransactionMapper:
    """Tests for Transaction mapper."""

    def test_transaction_to_domain(self):
        """Test converting ORM Transaction to domain Transaction."""
        orm_txn = ORMTransaction(
            id=7,
            source_id="T1",
            reference_id="SH1001",
            reference_type="Shipment",
            fee_type="Shipping",
            fee_category="shipping",
            transaction_type="Charge",
            amount=Decimal("8.50"),
            currency="USD",
            charge_date=date(2025, 2, 26),
            source_invoice_id=9001,
            source_invoice_date=date(2025, 3, 3),
            tracking_id="1Z1",
            details={"TrackingId": "1Z1"},
            base_cost=Decimal("8.00"),
            surcharge=Decimal("0.50"),
            client_id=1,
            attribution_strategy="shipment",
            needs_review=None,
            created_at=NOW,
            updated_at=NOW,
        )
        txn = transaction_to_domain(orm_txn)

        assert isinstance(txn, Transaction)
        assert txn.source_invoice_id == 9001
        assert txn.details == {"TrackingId": "1Z1"}
        assert txn.needs_review is False
        assert txn.has_breakdown
        assert not txn.is_finalized
        assert not txn.is_voided

    def test_unlinked_transaction(self):
        """Test an unlinked transaction maps with no source invoice and empty details."""
        orm_txn = ORMTransaction(
            id=8,
            source_id="T2",
            reference_id="SH1002",
            reference_type="Shipment",
            fee_type="Shipping",
            fee_category="shipping",
            amount=Decimal("4.00"),
            currency="USD",
            charge_date=date(2025, 2, 26),
            details=None,
            needs_review=False,
            created_at=NOW,
            updated_at=NOW,
        )
        txn = transaction_to_domain(orm_txn)

        assert txn.source_invoice_id is None
        assert txn.details == {}


class TestMarkupRuleMapper:
    """Tests for MarkupRule mapper."""

    def test_conditions_decoded(self):
        """Test JSON conditions become RuleConditions."""
        orm_rule = ORMMarkupRule(
            id=3,
            name="Heavy West Coast",
            client_id=None,
            fee_category="shipping",
            conditions={"weight_min_oz": "80", "states": ["ca", "or"]},
            kind="percentage",
            value=Decimal("12.5000"),
            priority=0,
            is_additive=False,
            effective_from=date(2025, 1, 1),
            is_active=True,
            created_at=NOW,
        )
        rule = markup_rule_to_domain(orm_rule)

        assert isinstance(rule, MarkupRule)
        assert rule.conditions == RuleConditions(weight_min_oz=Decimal("80"), states=("CA", "OR"))
        assert rule.conditions.has_weight
        assert rule.conditions.has_destination

    def test_no_conditions(self):
        """Test empty conditions map to None."""
        orm_rule = ORMMarkupRule(
            id=4,
            name="Flat",
            fee_category="storage",
            conditions={},
            kind="fixed",
            value=Decimal("2"),
            priority=0,
            is_additive=False,
            effective_from=date(2025, 1, 1),
            is_active=True,
            created_at=NOW,
        )

        assert markup_rule_to_domain(orm_rule).conditions is None


class TestInvoiceMappers:
    """Tests for Invoice and InvoiceSnapshot mappers."""

    def test_invoice_to_domain(self):
        """Test source invoice IDs come back as a tuple of refs."""
        orm_invoice = ORMInvoice(
            id=1,
            client_id=1,
            invoice_number="JPACME-0001-030325",
            status="draft",
            version=1,
            period_start=date(2025, 3, 3),
            period_end=date(2025, 3, 3),
            invoice_date=date(2025, 3, 3),
            source_invoice_ids=[9001, 9002],
            line_count=1,
            subtotal=Decimal("8.50"),
            total_markup=Decimal("1.28"),
            total_amount=Decimal("9.78"),
            generated_at=NOW,
            created_at=NOW,
        )
        invoice = invoice_to_domain(orm_invoice)

        assert isinstance(invoice, Invoice)
        assert invoice.source_invoice_ids == (9001, 9002)
        assert invoice.is_draft

    def test_snapshot_to_domain(self):
        """Test frozen line items and category totals are decoded."""
        line = InvoiceLine(
            transaction_id="T1",
            line_category="Shipping",
            fee_type="Shipping",
            reference_id="SH1001",
            charge_date=date(2025, 2, 26),
            source_invoice_id=9001,
            raw_cost=Decimal("8.50"),
            base_cost=Decimal("8.50"),
            surcharge=None,
            insurance_cost=None,
            markup_rule_id=1,
            markup_percentage=Decimal("15"),
            markup_amount=Decimal("1.28"),
            billed_amount=Decimal("9.78"),
        )
        orm_snapshot = ORMInvoiceSnapshot(
            id=1,
            invoice_id=1,
            version=2,
            line_items=[line.to_dict()],
            category_totals={"Shipping": {"line_count": 1, "cost": "8.50", "markup": "1.28", "billed": "9.78"}},
            source_invoice_ids=[9001],
            line_count=1,
            subtotal=Decimal("8.50"),
            total_markup=Decimal("1.28"),
            total_amount=Decimal("9.78"),
            generated_at=NOW,
        )
        snapshot = snapshot_to_domain(orm_snapshot)

        assert snapshot.version == 2
        assert snapshot.lines == (line,)
        assert snapshot.totals.by_category["Shipping"].billed == Decimal("9.78")


def test_review_flag_to_domain():
    """Test converting ORM ReviewFlag to domain ReviewFlag."""
    orm_flag = ORMReviewFlag(
        id=1,
        kind="reconciliation_mismatch",
        subject="9001",
        message="Source invoice 9001: totals differ",
        source_invoice_id=9001,
        is_resolved=False,
        created_at=NOW,
    )
    flag = review_flag_to_domain(orm_flag)

    assert flag.source_invoice_id == 9001
    assert flag.resolved_at is None
