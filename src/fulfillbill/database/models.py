"""SQLAlchemy models for fulfillbill database."""

from datetime import datetime, UTC
from sqlalchemy import (
    Column,
    Integer,
    String,
    ForeignKey,
    DateTime,
    Date,
    Numeric,
    Boolean,
    JSON,
    Text,
    UniqueConstraint,
    Index,
    create_engine,
)
from sqlalchemy.orm import declarative_base, relationship, sessionmaker, Session

Base = declarative_base()


def _utcnow() -> datetime:
    return datetime.now(UTC)


class Client(Base):
    """Client model, including internal system clients."""

    __tablename__ = "clients"

    id = Column(Integer, primary_key=True)
    code = Column(String, unique=True, nullable=False)
    name = Column(String, nullable=False)
    billing_cadence = Column(String, default="weekly", nullable=False)
    currency = Column(String(3), default="USD", nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    is_internal = Column(Boolean, default=False, nullable=False)
    next_invoice_number = Column(Integer, default=1, nullable=False)
    created_at = Column(DateTime, default=_utcnow, nullable=False)

    # Relationships
    invoices = relationship("Invoice", back_populates="client")


class Transaction(Base):
    """Cost line from the cost source, deduplicated on source_id."""

    __tablename__ = "transactions"

    id = Column(Integer, primary_key=True)
    source_id = Column(String, unique=True, nullable=False)
    reference_id = Column(String, nullable=False)
    reference_type = Column(String, nullable=False)
    fee_type = Column(String, nullable=False)
    fee_category = Column(String, nullable=False)
    transaction_type = Column(String, nullable=True)
    # Raw costs keep the source's sub-cent precision
    amount = Column(Numeric(14, 4), nullable=False)
    currency = Column(String(3), default="USD", nullable=False)
    charge_date = Column(Date, nullable=False)
    source_invoice_id = Column(Integer, nullable=True)
    source_invoice_date = Column(Date, nullable=True)
    fulfillment_center = Column(String, nullable=True)
    tracking_id = Column(String, nullable=True)
    details = Column(JSON, nullable=True)

    # Weekly breakdown file components
    base_cost = Column(Numeric(14, 4), nullable=True)
    surcharge = Column(Numeric(14, 4), nullable=True)
    insurance_cost = Column(Numeric(14, 4), nullable=True)

    # Attribution
    client_id = Column(Integer, ForeignKey("clients.id"), nullable=True)
    attribution_strategy = Column(String, nullable=True)
    needs_review = Column(Boolean, default=False, nullable=False)

    # Pricing
    markup_rule_id = Column(Integer, ForeignKey("markup_rules.id"), nullable=True)
    markup_percentage = Column(Numeric(9, 4), nullable=True)
    markup_amount = Column(Numeric(12, 2), nullable=True)
    billed_amount = Column(Numeric(12, 2), nullable=True)

    dispute_status = Column(String, nullable=True)

    # Finalization, written only by invoice approval
    invoice_number = Column(String, nullable=True)
    invoiced_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=_utcnow, nullable=False)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow, nullable=False)

    __table_args__ = (
        Index("ix_transactions_reference", "reference_id", "fee_type"),
        Index("ix_transactions_client_invoice", "client_id", "source_invoice_id"),
        Index("ix_transactions_charge_date", "charge_date"),
    )


class Shipment(Base):
    """Shipment lookup: shipment id to client plus pricing attributes."""

    __tablename__ = "shipments"

    id = Column(Integer, primary_key=True)
    shipment_id = Column(String, unique=True, nullable=False)
    client_id = Column(Integer, ForeignKey("clients.id"), nullable=False)
    order_number = Column(String, nullable=True)
    ship_option_id = Column(Integer, nullable=True)
    weight_oz = Column(Numeric(10, 2), nullable=True)
    destination_state = Column(String, nullable=True)
    destination_country = Column(String, nullable=True)
    created_at = Column(DateTime, default=_utcnow, nullable=False)


class LookupRecord(Base):
    """Provider key to client mapping for inventory, returns, receiving orders and orders."""

    __tablename__ = "lookup_records"

    id = Column(Integer, primary_key=True)
    kind = Column(String, nullable=False)
    key = Column(String, nullable=False)
    client_id = Column(Integer, ForeignKey("clients.id"), nullable=False)
    created_at = Column(DateTime, default=_utcnow, nullable=False)

    __table_args__ = (UniqueConstraint("kind", "key", name="uq_lookup_kind_key"),)


class SourceInvoice(Base):
    """Closed invoice issued by the cost source."""

    __tablename__ = "source_invoices"

    # Provider's invoice id, not autoincremented
    id = Column(Integer, primary_key=True, autoincrement=False)
    invoice_type = Column(String, nullable=False)
    invoice_date = Column(Date, nullable=False)
    amount = Column(Numeric(14, 4), nullable=False)
    currency = Column(String(3), default="USD", nullable=False)
    period_start = Column(Date, nullable=False)
    period_end = Column(Date, nullable=False)
    reconciled_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=_utcnow, nullable=False)


class MarkupRule(Base):
    """Markup rule model."""

    __tablename__ = "markup_rules"

    id = Column(Integer, primary_key=True)
    name = Column(String, nullable=False)
    client_id = Column(Integer, ForeignKey("clients.id"), nullable=True)
    fee_category = Column(String, nullable=False)
    fee_type = Column(String, nullable=True)
    ship_option_id = Column(Integer, nullable=True)
    conditions = Column(JSON, nullable=True)
    kind = Column(String, nullable=False)
    value = Column(Numeric(12, 4), nullable=False)
    priority = Column(Integer, default=0, nullable=False)
    is_additive = Column(Boolean, default=False, nullable=False)
    effective_from = Column(Date, nullable=False)
    effective_to = Column(Date, nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    description = Column(Text, nullable=True)
    created_at = Column(DateTime, default=_utcnow, nullable=False)

    # Relationships
    history = relationship("MarkupRuleHistory", back_populates="rule", cascade="all, delete-orphan")


class MarkupRuleHistory(Base):
    """Audit log of markup rule changes."""

    __tablename__ = "markup_rule_history"

    id = Column(Integer, primary_key=True)
    rule_id = Column(Integer, ForeignKey("markup_rules.id"), nullable=False)
    change_type = Column(String, nullable=False)
    previous_values = Column(JSON, nullable=True)
    new_values = Column(JSON, nullable=True)
    reason = Column(Text, nullable=True)
    changed_at = Column(DateTime, default=_utcnow, nullable=False)

    # Relationships
    rule = relationship("MarkupRule", back_populates="history")


class Invoice(Base):
    """Client invoice model."""

    __tablename__ = "invoices"

    id = Column(Integer, primary_key=True)
    client_id = Column(Integer, ForeignKey("clients.id"), nullable=False)
    invoice_number = Column(String, unique=True, nullable=False)
    status = Column(String, default="draft", nullable=False)
    version = Column(Integer, default=1, nullable=False)
    period_start = Column(Date, nullable=False)
    period_end = Column(Date, nullable=False)
    invoice_date = Column(Date, nullable=False)
    source_invoice_ids = Column(JSON, nullable=False)
    line_count = Column(Integer, default=0, nullable=False)
    subtotal = Column(Numeric(14, 2), nullable=False)
    total_markup = Column(Numeric(14, 2), nullable=False)
    total_amount = Column(Numeric(14, 2), nullable=False)
    generated_at = Column(DateTime, nullable=False)
    approved_version = Column(Integer, nullable=True)
    approved_at = Column(DateTime, nullable=True)
    sent_at = Column(DateTime, nullable=True)
    replaces_invoice_id = Column(Integer, ForeignKey("invoices.id"), nullable=True)
    created_at = Column(DateTime, default=_utcnow, nullable=False)

    # Relationships
    client = relationship("Client", back_populates="invoices")
    snapshots = relationship(
        "InvoiceSnapshot", back_populates="invoice", order_by="InvoiceSnapshot.version"
    )


class InvoiceSnapshot(Base):
    """Append-only frozen line items for one invoice version."""

    __tablename__ = "invoice_snapshots"

    id = Column(Integer, primary_key=True)
    invoice_id = Column(Integer, ForeignKey("invoices.id"), nullable=False)
    version = Column(Integer, nullable=False)
    line_items = Column(JSON, nullable=False)
    category_totals = Column(JSON, nullable=False)
    source_invoice_ids = Column(JSON, nullable=False)
    line_count = Column(Integer, nullable=False)
    subtotal = Column(Numeric(14, 2), nullable=False)
    total_markup = Column(Numeric(14, 2), nullable=False)
    total_amount = Column(Numeric(14, 2), nullable=False)
    generated_at = Column(DateTime, nullable=False)

    __table_args__ = (UniqueConstraint("invoice_id", "version", name="uq_snapshot_invoice_version"),)

    # Relationships
    invoice = relationship("Invoice", back_populates="snapshots")


class ReviewFlag(Base):
    """Item held for manual review."""

    __tablename__ = "review_flags"

    id = Column(Integer, primary_key=True)
    kind = Column(String, nullable=False)
    subject = Column(String, nullable=False)
    message = Column(Text, nullable=False)
    source_invoice_id = Column(Integer, nullable=True)
    is_resolved = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=_utcnow, nullable=False)
    resolved_at = Column(DateTime, nullable=True)


class JobLock(Base):
    """Leased lock for a periodic job."""

    __tablename__ = "job_locks"

    job_name = Column(String, primary_key=True)
    owner = Column(String, nullable=False)
    acquired_at = Column(DateTime, nullable=False)
    expires_at = Column(DateTime, nullable=False)


def create_session_factory(database_url: str) -> sessionmaker[Session]:
    """Create a SQLAlchemy session factory."""
    engine = create_engine(database_url, echo=False)
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine)
