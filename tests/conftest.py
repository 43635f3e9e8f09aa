"""Shared pytest fixtures for fulfillbill tests."""

import tempfile
import os
from datetime import date, datetime, timedelta, UTC
from decimal import Decimal
from pathlib import Path
import pytest

from fulfillbill.config import Settings
from fulfillbill.database.factories import create_sqlite_database
from fulfillbill.domain.client import ClientService
from fulfillbill.domain.entities import CostEvent, SourceInvoice, SourceInvoiceRef, Transaction
from fulfillbill.domain.invoice import InvoiceService
from fulfillbill.domain.lookups import LookupService
from fulfillbill.domain.reconciliation import ReconciliationService
from fulfillbill.domain.rules import MarkupRuleService

FIXED_NOW = datetime(2025, 3, 5, 12, 0, tzinfo=UTC)

# The weekly source invoice most tests bill against
SOURCE_INVOICE_ID = SourceInvoiceRef(9001)
SOURCE_INVOICE_DATE = date(2025, 3, 3)
CHARGE_DATE = date(2025, 2, 26)


def make_transaction(**overrides) -> Transaction:
    """Build a stored-looking Transaction without touching the database."""
    values = dict(
        id=1,
        source_id="T1",
        reference_id="SH1001",
        reference_type="Shipment",
        fee_type="Shipping",
        fee_category="shipping",
        transaction_type="Charge",
        amount=Decimal("8.50"),
        currency="USD",
        charge_date=date(2025, 2, 26),
        source_invoice_id=None,
        source_invoice_date=None,
        fulfillment_center=None,
        tracking_id="1ZT1",
        details={},
        base_cost=None,
        surcharge=None,
        insurance_cost=None,
        client_id=1,
        attribution_strategy="shipment",
        needs_review=False,
        markup_rule_id=None,
        markup_percentage=None,
        markup_amount=None,
        billed_amount=None,
        dispute_status=None,
        invoice_number=None,
        invoiced_at=None,
        created_at=FIXED_NOW,
        updated_at=FIXED_NOW,
    )
    values.update(overrides)
    return Transaction(**values)


@pytest.fixture
def temp_db():
    """Create a temporary database for testing."""
    # Create a temporary file for the database
    fd, db_path = tempfile.mkstemp(suffix=".db")
    os.close(fd)

    # Create database
    db = create_sqlite_database(database_path=db_path)
    # Store the path for tests that need it
    db.database_path = db_path
    db.connect()
    db.initialize_schema()

    yield db

    # Cleanup
    db.disconnect()
    if os.path.exists(db_path):
        os.unlink(db_path)


@pytest.fixture
def settings():
    """Default application settings."""
    return Settings()


@pytest.fixture
def clock():
    """A clock frozen at FIXED_NOW."""
    return lambda: FIXED_NOW


@pytest.fixture
def client_service(temp_db):
    """Create a ClientService with a temporary database."""
    return ClientService(temp_db)


@pytest.fixture
def rule_service(temp_db):
    """Create a MarkupRuleService with a temporary database."""
    return MarkupRuleService(temp_db)


@pytest.fixture
def lookup_service(temp_db):
    """Create a LookupService with a temporary database."""
    return LookupService(temp_db)


@pytest.fixture
def reconciliation_service(temp_db, settings, clock):
    """Create a ReconciliationService with a temporary database."""
    return ReconciliationService(temp_db, settings, clock)


@pytest.fixture
def invoice_service(temp_db, settings, clock):
    """Create an InvoiceService with a temporary database."""
    return InvoiceService(temp_db, settings, clock)


@pytest.fixture
def sample_clients(client_service):
    """Create a billed client, a second billed client and an internal client."""
    return {
        "ACME": client_service.get_client(client_service.create_client("ACME", "Acme Outdoor")),
        "BETA": client_service.get_client(client_service.create_client("BETA", "Beta Brands")),
        "PAYMENTS": client_service.get_client(
            client_service.create_client("PAYMENTS", "Payments", is_internal=True)
        ),
    }


@pytest.fixture
def sample_shipment(lookup_service, sample_clients):
    """Record shipment SH1001 for ACME: ground service, 24oz, to California."""
    lookup_service.record_shipment(
        shipment_id="SH1001",
        client_id=sample_clients["ACME"].id,
        order_number="123456",
        ship_option_id=3,
        weight_oz=Decimal("24"),
        destination_state="CA",
        destination_country="US",
    )
    return "SH1001"


@pytest.fixture
def make_event():
    """Factory for normalized cost events.

    Shipping events get a tracking id by default so pre-flight passes.
    """

    def _make(
        source_id: str,
        reference_id: str = "SH1001",
        fee_type: str = "Shipping",
        amount: str = "8.50",
        reference_type: str = "Shipment",
        charge_date: date = CHARGE_DATE,
        source_invoice_id=SOURCE_INVOICE_ID,
        details=None,
        currency: str = "USD",
    ) -> CostEvent:
        if details is None:
            details = {"TrackingId": f"1Z{source_id}"} if reference_type == "Shipment" else {}
        return CostEvent(
            source_id=source_id,
            reference_id=reference_id,
            reference_type=reference_type,
            fee_type=fee_type,
            amount=Decimal(amount),
            currency=currency,
            charge_date=charge_date,
            transaction_type="Refund" if Decimal(amount) < 0 else "Charge",
            source_invoice_id=source_invoice_id,
            source_invoice_date=SOURCE_INVOICE_DATE if source_invoice_id is not None else None,
            details=details,
        )

    return _make


@pytest.fixture
def make_source_invoice():
    """Factory for closed source invoices."""

    def _make(
        invoice_id: int = SOURCE_INVOICE_ID,
        amount: str = "8.50",
        invoice_type: str = "Shipping",
        invoice_date: date = SOURCE_INVOICE_DATE,
    ) -> SourceInvoice:
        return SourceInvoice(
            id=SourceInvoiceRef(invoice_id),
            invoice_type=invoice_type,
            invoice_date=invoice_date,
            amount=Decimal(amount),
            currency="USD",
            period_start=invoice_date - timedelta(days=7),
            period_end=invoice_date - timedelta(days=1),
        )

    return _make


@pytest.fixture
def cli_runner():
    """Create a Click CLI test runner."""
    from click.testing import CliRunner

    return CliRunner()


@pytest.fixture
def fixtures_dir():
    """Return the path to the test fixtures directory."""
    return Path(__file__).parent / "fixtures"
