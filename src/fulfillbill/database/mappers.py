"""Mapper functions to convert between SQLAlchemy models and domain entities.

This layer isolates the conversion logic, including the JSON columns that
hold rule conditions and frozen invoice line items.
"""

from decimal import Decimal

from fulfillbill.domain import entities as domain
from fulfillbill.database.models import (
    Client as ORMClient,
    Transaction as ORMTransaction,
    Shipment as ORMShipment,
    SourceInvoice as ORMSourceInvoice,
    MarkupRule as ORMMarkupRule,
    MarkupRuleHistory as ORMMarkupRuleHistory,
    Invoice as ORMInvoice,
    InvoiceSnapshot as ORMInvoiceSnapshot,
    ReviewFlag as ORMReviewFlag,
)


def _refs(values) -> tuple[domain.SourceInvoiceRef, ...]:
    return tuple(domain.SourceInvoiceRef(int(v)) for v in (values or ()))


def client_to_domain(orm_client: ORMClient) -> domain.Client:
    """Convert SQLAlchemy Client model to domain Client entity."""
    return domain.Client(
        id=orm_client.id,
        code=orm_client.code,
        name=orm_client.name,
        billing_cadence=orm_client.billing_cadence,
        currency=orm_client.currency,
        is_active=orm_client.is_active,
        is_internal=orm_client.is_internal,
        next_invoice_number=orm_client.next_invoice_number,
        created_at=orm_client.created_at,
    )


def transaction_to_domain(orm_transaction: ORMTransaction) -> domain.Transaction:
    """Convert SQLAlchemy Transaction model to domain Transaction entity."""
    source_invoice_id = orm_transaction.source_invoice_id
    return domain.Transaction(
        id=orm_transaction.id,
        source_id=orm_transaction.source_id,
        reference_id=orm_transaction.reference_id,
        reference_type=orm_transaction.reference_type,
        fee_type=orm_transaction.fee_type,
        fee_category=orm_transaction.fee_category,
        transaction_type=orm_transaction.transaction_type,
        amount=orm_transaction.amount,
        currency=orm_transaction.currency,
        charge_date=orm_transaction.charge_date,
        source_invoice_id=domain.SourceInvoiceRef(source_invoice_id) if source_invoice_id is not None else None,
        source_invoice_date=orm_transaction.source_invoice_date,
        fulfillment_center=orm_transaction.fulfillment_center,
        tracking_id=orm_transaction.tracking_id,
        details=dict(orm_transaction.details or {}),
        base_cost=orm_transaction.base_cost,
        surcharge=orm_transaction.surcharge,
        insurance_cost=orm_transaction.insurance_cost,
        client_id=orm_transaction.client_id,
        attribution_strategy=orm_transaction.attribution_strategy,
        needs_review=bool(orm_transaction.needs_review),
        markup_rule_id=orm_transaction.markup_rule_id,
        markup_percentage=orm_transaction.markup_percentage,
        markup_amount=orm_transaction.markup_amount,
        billed_amount=orm_transaction.billed_amount,
        dispute_status=orm_transaction.dispute_status,
        invoice_number=orm_transaction.invoice_number,
        invoiced_at=orm_transaction.invoiced_at,
        created_at=orm_transaction.created_at,
        updated_at=orm_transaction.updated_at,
    )


def shipment_to_domain(orm_shipment: ORMShipment) -> domain.ShipmentRecord:
    """Convert SQLAlchemy Shipment model to domain ShipmentRecord."""
    return domain.ShipmentRecord(
        shipment_id=orm_shipment.shipment_id,
        client_id=orm_shipment.client_id,
        order_number=orm_shipment.order_number,
        ship_option_id=orm_shipment.ship_option_id,
        weight_oz=orm_shipment.weight_oz,
        destination_state=orm_shipment.destination_state,
        destination_country=orm_shipment.destination_country,
    )


def source_invoice_to_domain(orm_invoice: ORMSourceInvoice) -> domain.SourceInvoice:
    """Convert SQLAlchemy SourceInvoice model to domain SourceInvoice entity."""
    return domain.SourceInvoice(
        id=domain.SourceInvoiceRef(orm_invoice.id),
        invoice_type=orm_invoice.invoice_type,
        invoice_date=orm_invoice.invoice_date,
        amount=orm_invoice.amount,
        currency=orm_invoice.currency,
        period_start=orm_invoice.period_start,
        period_end=orm_invoice.period_end,
        reconciled_at=orm_invoice.reconciled_at,
        created_at=orm_invoice.created_at,
    )


def markup_rule_to_domain(orm_rule: ORMMarkupRule) -> domain.MarkupRule:
    """Convert SQLAlchemy MarkupRule model to domain MarkupRule entity."""
    return domain.MarkupRule(
        id=orm_rule.id,
        name=orm_rule.name,
        client_id=orm_rule.client_id,
        fee_category=orm_rule.fee_category,
        fee_type=orm_rule.fee_type,
        ship_option_id=orm_rule.ship_option_id,
        conditions=domain.RuleConditions.from_dict(orm_rule.conditions),
        kind=orm_rule.kind,
        value=orm_rule.value,
        priority=orm_rule.priority,
        is_additive=orm_rule.is_additive,
        effective_from=orm_rule.effective_from,
        effective_to=orm_rule.effective_to,
        is_active=orm_rule.is_active,
        description=orm_rule.description,
        created_at=orm_rule.created_at,
    )


def rule_change_to_domain(orm_change: ORMMarkupRuleHistory) -> domain.RuleChange:
    """Convert SQLAlchemy MarkupRuleHistory model to domain RuleChange."""
    return domain.RuleChange(
        id=orm_change.id,
        rule_id=orm_change.rule_id,
        change_type=orm_change.change_type,
        previous=orm_change.previous_values,
        current=orm_change.new_values,
        reason=orm_change.reason,
        changed_at=orm_change.changed_at,
    )


def invoice_to_domain(orm_invoice: ORMInvoice) -> domain.Invoice:
    """Convert SQLAlchemy Invoice model to domain Invoice entity."""
    return domain.Invoice(
        id=orm_invoice.id,
        client_id=orm_invoice.client_id,
        invoice_number=orm_invoice.invoice_number,
        status=orm_invoice.status,
        version=orm_invoice.version,
        period_start=orm_invoice.period_start,
        period_end=orm_invoice.period_end,
        invoice_date=orm_invoice.invoice_date,
        source_invoice_ids=_refs(orm_invoice.source_invoice_ids),
        line_count=orm_invoice.line_count,
        subtotal=orm_invoice.subtotal,
        total_markup=orm_invoice.total_markup,
        total_amount=orm_invoice.total_amount,
        generated_at=orm_invoice.generated_at,
        approved_version=orm_invoice.approved_version,
        approved_at=orm_invoice.approved_at,
        sent_at=orm_invoice.sent_at,
        replaces_invoice_id=orm_invoice.replaces_invoice_id,
        created_at=orm_invoice.created_at,
    )


def snapshot_to_domain(orm_snapshot: ORMInvoiceSnapshot) -> domain.InvoiceSnapshot:
    """Convert SQLAlchemy InvoiceSnapshot model to domain InvoiceSnapshot."""
    by_category = {
        category: domain.CategoryTotals(
            line_count=int(values["line_count"]),
            cost=Decimal(values["cost"]),
            markup=Decimal(values["markup"]),
            billed=Decimal(values["billed"]),
        )
        for category, values in (orm_snapshot.category_totals or {}).items()
    }
    return domain.InvoiceSnapshot(
        id=orm_snapshot.id,
        invoice_id=orm_snapshot.invoice_id,
        version=orm_snapshot.version,
        lines=tuple(domain.InvoiceLine.from_dict(item) for item in orm_snapshot.line_items),
        totals=domain.InvoiceTotals(
            line_count=orm_snapshot.line_count,
            subtotal=orm_snapshot.subtotal,
            total_markup=orm_snapshot.total_markup,
            total_amount=orm_snapshot.total_amount,
            by_category=by_category,
        ),
        source_invoice_ids=_refs(orm_snapshot.source_invoice_ids),
        generated_at=orm_snapshot.generated_at,
    )


def review_flag_to_domain(orm_flag: ORMReviewFlag) -> domain.ReviewFlag:
    """Convert SQLAlchemy ReviewFlag model to domain ReviewFlag entity."""
    source_invoice_id = orm_flag.source_invoice_id
    return domain.ReviewFlag(
        id=orm_flag.id,
        kind=orm_flag.kind,
        subject=orm_flag.subject,
        message=orm_flag.message,
        source_invoice_id=domain.SourceInvoiceRef(source_invoice_id) if source_invoice_id is not None else None,
        is_resolved=orm_flag.is_resolved,
        created_at=orm_flag.created_at,
        resolved_at=orm_flag.resolved_at,
    )
