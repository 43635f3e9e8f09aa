"""Tests for pre-flight completeness checks."""

from dataclasses import replace
from decimal import Decimal

from fulfillbill.config import Settings
from fulfillbill.domain.preflight import SEVERITY_BLOCKING, SEVERITY_WARNING, PreflightValidator
from conftest import make_transaction


def shipments(count: int, **overrides):
    """Shipping transactions that carry a full breakdown."""
    return [
        make_transaction(
            id=i,
            source_id=f"T{i}",
            reference_id=f"SH{i}",
            tracking_id=f"1Z{i}",
            base_cost=Decimal("8.00"),
            **overrides,
        )
        for i in range(1, count + 1)
    ]


def without_tracking(transactions, count: int):
    return [replace(t, tracking_id=None) if i < count else t for i, t in enumerate(transactions)]


def test_complete_data_passes():
    """Test complete shipping data passes with no issues."""
    report = PreflightValidator().evaluate(shipments(10))

    assert report.passed
    assert report.issues == []
    assert report.transaction_count == 10


def test_missing_base_cost_blocks():
    """Test a single shipment without a breakdown blocks the invoice."""
    transactions = shipments(199) + [make_transaction(id=200, source_id="T200", base_cost=None)]

    report = PreflightValidator().evaluate(transactions)

    assert not report.passed
    issue = report.blocking[0]
    assert issue.field == "base_cost"
    assert issue.missing == 1
    assert issue.sample_ids == ("T200",)
    assert report.blocking_reasons() == ["shipping: 1 of 200 transactions (0.5%) missing base_cost (e.g. T200)"]


def test_small_gap_is_ignored():
    """Test a gap at or below the warning ratio raises nothing."""
    report = PreflightValidator().evaluate(without_tracking(shipments(200), 1))

    assert report.passed
    assert report.issues == []


def test_moderate_gap_warns():
    """Test a gap between the ratios is a warning."""
    report = PreflightValidator().evaluate(without_tracking(shipments(50), 1))

    assert report.passed
    assert [(i.severity, i.field) for i in report.issues] == [(SEVERITY_WARNING, "tracking_id")]


def test_large_gap_blocks():
    """Test a gap above the blocking ratio blocks."""
    report = PreflightValidator().evaluate(without_tracking(shipments(10), 1))

    assert not report.passed
    assert report.blocking[0].severity == SEVERITY_BLOCKING
    assert report.blocking[0].field == "tracking_id"


def test_thresholds_come_from_settings():
    """Test the ratios are configurable."""
    validator = PreflightValidator(Settings(warn_missing_ratio=Decimal("0"), block_missing_ratio=Decimal("0.5")))

    report = validator.evaluate(without_tracking(shipments(10), 1))

    assert report.passed
    assert len(report.warnings) == 1


def test_credit_needs_reason():
    """Test credits without a comment or reason are reported."""
    credits = [
        make_transaction(
            id=1,
            source_id="C1",
            fee_type="Credit",
            fee_category="credits",
            reference_type="Default",
            amount=Decimal("-5.00"),
            details={"Comment": "Damaged"},
        ),
        make_transaction(
            id=2,
            source_id="C2",
            fee_type="Credit",
            fee_category="credits",
            reference_type="Default",
            amount=Decimal("-5.00"),
            details={"CreditReason": "Late"},
        ),
        make_transaction(
            id=3,
            source_id="C3",
            fee_type="Credit",
            fee_category="credits",
            reference_type="Default",
            amount=Decimal("-5.00"),
            details={},
        ),
    ]

    report = PreflightValidator().evaluate(credits)

    assert [(i.field, i.missing, i.total) for i in report.blocking] == [("credit_reason", 1, 3)]


def test_storage_fields_from_reference():
    """Test storage references supply facility, item and location."""
    storage = make_transaction(
        source_id="S1",
        reference_id="Wind-Gap-PA-20777279-Shelf",
        reference_type="FC",
        fee_type="Warehousing Fee",
        fee_category="storage",
    )

    report = PreflightValidator().evaluate([storage])

    assert report.passed
    assert {f.field for f in report.fields} == {"fulfillment_center", "inventory_id", "location_type"}


def test_empty_input_passes():
    """Test nothing to check is not a failure."""
    report = PreflightValidator().evaluate([])

    assert report.passed
    assert report.fields == []
