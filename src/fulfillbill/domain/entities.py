"""Domain model entities for fulfillbill.

These are pure data classes representing billing concepts, independent of
database schema and of the cost source's wire format. Services and the
database layer exchange these; nothing outside ``fulfillbill.database``
sees an ORM row and nothing outside ``fulfillbill.source`` sees raw API
payloads.
"""

from dataclasses import dataclass, field, fields
from datetime import datetime, date
from decimal import Decimal
from typing import Any, NewType, Optional

# Provider invoice ids are a linking key only, never a per-client boundary.
SourceInvoiceRef = NewType("SourceInvoiceRef", int)

# Reference kinds reported by the cost source
REFERENCE_SHIPMENT = "Shipment"
REFERENCE_STORAGE = "FC"
REFERENCE_RETURN = "Return"
REFERENCE_RECEIVING = ("WRO", "URO")
REFERENCE_DEFAULT = "Default"
REFERENCE_TICKET = "TicketNumber"

# Fee categories
CATEGORY_SHIPPING = "shipping"
CATEGORY_ADDITIONAL_SERVICES = "additional_services"
CATEGORY_STORAGE = "storage"
CATEGORY_RETURNS = "returns"
CATEGORY_RECEIVING = "receiving"
CATEGORY_CREDITS = "credits"
CATEGORY_OTHER = "other"

FEE_CATEGORIES = (
    CATEGORY_SHIPPING,
    CATEGORY_ADDITIONAL_SERVICES,
    CATEGORY_STORAGE,
    CATEGORY_RETURNS,
    CATEGORY_RECEIVING,
    CATEGORY_CREDITS,
    CATEGORY_OTHER,
)

# Invoice line grouping labels, in presentation order
LINE_CATEGORY_LABELS = {
    CATEGORY_SHIPPING: "Shipping",
    CATEGORY_ADDITIONAL_SERVICES: "Additional Services",
    CATEGORY_STORAGE: "Storage",
    CATEGORY_RETURNS: "Returns",
    CATEGORY_RECEIVING: "Receiving",
    CATEGORY_CREDITS: "Credits",
    CATEGORY_OTHER: "Other",
}

# Source invoice types and the fee category each one closes
SOURCE_INVOICE_CATEGORIES = {
    "Shipping": CATEGORY_SHIPPING,
    "AdditionalFee": CATEGORY_ADDITIONAL_SERVICES,
    "WarehouseStorage": CATEGORY_STORAGE,
    "WarehouseInboundFee": CATEGORY_RECEIVING,
    "ReturnsFee": CATEGORY_RETURNS,
    "Credits": CATEGORY_CREDITS,
}

# Markup rule kinds
MARKUP_PERCENTAGE = "percentage"
MARKUP_FIXED = "fixed"

# Invoice statuses
INVOICE_DRAFT = "draft"
INVOICE_APPROVED = "approved"
INVOICE_SENT = "sent"
INVOICE_SUPERSEDED = "superseded"

# Transaction dispute statuses
DISPUTE_VOIDED = "voided"
DISPUTE_DISPUTED = "disputed"

# Review flag kinds
FLAG_MISMATCH = "reconciliation_mismatch"
FLAG_RAW_COST_DRIFT = "raw_cost_drift"
FLAG_DATA_GAP = "data_gap"
FLAG_FINALIZED_DUPLICATE = "finalized_duplicate"


def categorize_fee(fee_type: Optional[str], reference_type: Optional[str]) -> str:
    """Derive the fee category from the provider fee name and reference kind.

    Args:
        fee_type: Raw provider fee name (e.g. "Shipping", "Per Pick Fee")
        reference_type: Provider reference kind (e.g. "Shipment", "FC")

    Returns:
        One of FEE_CATEGORIES
    """
    fee = (fee_type or "").strip()
    if fee == "Credit":
        return CATEGORY_CREDITS
    if reference_type == REFERENCE_SHIPMENT:
        return CATEGORY_SHIPPING if fee == "Shipping" else CATEGORY_ADDITIONAL_SERVICES
    if reference_type == REFERENCE_STORAGE:
        return CATEGORY_STORAGE
    if reference_type in REFERENCE_RECEIVING:
        if "inventory placement" in fee.lower():
            return CATEGORY_ADDITIONAL_SERVICES
        return CATEGORY_RECEIVING
    if reference_type == REFERENCE_RETURN:
        return CATEGORY_RETURNS
    return CATEGORY_OTHER


@dataclass(frozen=True)
class Client:
    """Billable client (merchant) or internal system client."""

    id: int
    code: str
    name: str
    billing_cadence: str
    currency: str
    is_active: bool
    is_internal: bool
    next_invoice_number: int
    created_at: datetime


@dataclass(frozen=True)
class Transaction:
    """One cost line from the cost source, keyed by its source transaction id."""

    id: int
    source_id: str
    reference_id: str
    reference_type: str
    fee_type: str
    fee_category: str
    transaction_type: Optional[str]
    amount: Decimal
    currency: str
    charge_date: date
    source_invoice_id: Optional[SourceInvoiceRef]
    source_invoice_date: Optional[date]
    fulfillment_center: Optional[str]
    tracking_id: Optional[str]
    details: dict[str, Any]
    base_cost: Optional[Decimal]
    surcharge: Optional[Decimal]
    insurance_cost: Optional[Decimal]
    client_id: Optional[int]
    attribution_strategy: Optional[str]
    needs_review: bool
    markup_rule_id: Optional[int]
    markup_percentage: Optional[Decimal]
    markup_amount: Optional[Decimal]
    billed_amount: Optional[Decimal]
    dispute_status: Optional[str]
    invoice_number: Optional[str]
    invoiced_at: Optional[datetime]
    created_at: datetime
    updated_at: datetime

    @property
    def is_voided(self) -> bool:
        return self.dispute_status is not None

    @property
    def is_finalized(self) -> bool:
        """True once a client invoice has been approved over this transaction."""
        return self.invoice_number is not None

    @property
    def has_breakdown(self) -> bool:
        return self.base_cost is not None


# Fields that come straight from the cost source and freeze once the
# transaction is linked to a closed source invoice.
RAW_COST_FIELDS = (
    "reference_id",
    "reference_type",
    "fee_type",
    "fee_category",
    "transaction_type",
    "amount",
    "currency",
    "charge_date",
)


@dataclass
class TransactionPatch:
    """Sparse update for a Transaction row.

    A field left as None is omitted from the write, so a patch can never
    clear a value it does not know about.
    """

    reference_id: Optional[str] = None
    reference_type: Optional[str] = None
    fee_type: Optional[str] = None
    fee_category: Optional[str] = None
    transaction_type: Optional[str] = None
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    charge_date: Optional[date] = None
    source_invoice_id: Optional[SourceInvoiceRef] = None
    source_invoice_date: Optional[date] = None
    fulfillment_center: Optional[str] = None
    tracking_id: Optional[str] = None
    details: Optional[dict[str, Any]] = None
    base_cost: Optional[Decimal] = None
    surcharge: Optional[Decimal] = None
    insurance_cost: Optional[Decimal] = None
    client_id: Optional[int] = None
    attribution_strategy: Optional[str] = None
    needs_review: Optional[bool] = None
    markup_rule_id: Optional[int] = None
    markup_percentage: Optional[Decimal] = None
    markup_amount: Optional[Decimal] = None
    billed_amount: Optional[Decimal] = None
    dispute_status: Optional[str] = None

    def values(self) -> dict[str, Any]:
        """Return only the fields this patch sets."""
        result = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if value is not None:
                result[f.name] = value
        return result

    def is_empty(self) -> bool:
        return not self.values()

    def merge(self, other: "TransactionPatch") -> "TransactionPatch":
        """Return a new patch with ``other``'s set fields layered on top."""
        combined = self.values()
        combined.update(other.values())
        return TransactionPatch(**combined)

    def without(self, names: tuple[str, ...]) -> "TransactionPatch":
        """Return a copy with the named fields omitted."""
        return TransactionPatch(**{k: v for k, v in self.values().items() if k not in names})

    def changes(self, current: Transaction) -> "TransactionPatch":
        """Return the subset of this patch that differs from ``current``."""
        return TransactionPatch(
            **{k: v for k, v in self.values().items() if getattr(current, k) != v}
        )


@dataclass(frozen=True)
class CostEvent:
    """A normalized cost record as received from the cost source."""

    source_id: str
    reference_id: str
    reference_type: str
    fee_type: str
    amount: Decimal
    currency: str
    charge_date: date
    transaction_type: Optional[str] = None
    source_invoice_id: Optional[SourceInvoiceRef] = None
    source_invoice_date: Optional[date] = None
    fulfillment_center: Optional[str] = None
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def fee_category(self) -> str:
        return categorize_fee(self.fee_type, self.reference_type)

    @property
    def tracking_id(self) -> Optional[str]:
        return self.details.get("TrackingId") or None

    def to_patch(self) -> TransactionPatch:
        """Build the sparse patch carrying everything the source reported."""
        return TransactionPatch(
            reference_id=self.reference_id,
            reference_type=self.reference_type,
            fee_type=self.fee_type,
            fee_category=self.fee_category,
            transaction_type=self.transaction_type,
            amount=self.amount,
            currency=self.currency,
            charge_date=self.charge_date,
            source_invoice_id=self.source_invoice_id,
            source_invoice_date=self.source_invoice_date,
            fulfillment_center=self.fulfillment_center,
            tracking_id=self.tracking_id,
            details=dict(self.details) if self.details else None,
        )


@dataclass(frozen=True)
class CostBreakdownRow:
    """One row of the weekly cost-breakdown file."""

    reference_id: str
    source_invoice_id: Optional[SourceInvoiceRef]
    base_cost: Optional[Decimal]
    surcharge: Decimal
    insurance_cost: Decimal
    total: Optional[Decimal]

    @property
    def is_refund(self) -> bool:
        """Refund rows carry negative (parenthesized) amounts."""
        amount = self.total if self.total is not None else self.base_cost
        return amount is not None and amount < 0


@dataclass(frozen=True)
class SourceInvoice:
    """A closed invoice issued by the cost source."""

    id: SourceInvoiceRef
    invoice_type: str
    invoice_date: date
    amount: Decimal
    currency: str
    period_start: date
    period_end: date
    reconciled_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @property
    def fee_category(self) -> Optional[str]:
        return SOURCE_INVOICE_CATEGORIES.get(self.invoice_type)


@dataclass(frozen=True)
class ShipmentRecord:
    """Shipment lookup row: who shipped it and how."""

    shipment_id: str
    client_id: int
    order_number: Optional[str]
    ship_option_id: Optional[int]
    weight_oz: Optional[Decimal]
    destination_state: Optional[str]
    destination_country: Optional[str]


@dataclass(frozen=True)
class PricingContext:
    """Shipment attributes markup conditions are evaluated against."""

    ship_option_id: Optional[int] = None
    weight_oz: Optional[Decimal] = None
    state: Optional[str] = None
    country: Optional[str] = None

    @classmethod
    def from_shipment(cls, shipment: Optional[ShipmentRecord]) -> "PricingContext":
        if shipment is None:
            return cls()
        return cls(
            ship_option_id=shipment.ship_option_id,
            weight_oz=shipment.weight_oz,
            state=shipment.destination_state,
            country=shipment.destination_country,
        )


@dataclass(frozen=True)
class RuleConditions:
    """Optional markup rule conditions. The weight maximum is exclusive."""

    weight_min_oz: Optional[Decimal] = None
    weight_max_oz: Optional[Decimal] = None
    states: tuple[str, ...] = ()
    countries: tuple[str, ...] = ()

    @property
    def has_weight(self) -> bool:
        return self.weight_min_oz is not None or self.weight_max_oz is not None

    @property
    def has_destination(self) -> bool:
        return bool(self.states or self.countries)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {}
        if self.weight_min_oz is not None:
            data["weight_min_oz"] = str(self.weight_min_oz)
        if self.weight_max_oz is not None:
            data["weight_max_oz"] = str(self.weight_max_oz)
        if self.states:
            data["states"] = list(self.states)
        if self.countries:
            data["countries"] = list(self.countries)
        return data

    @classmethod
    def from_dict(cls, data: Optional[dict[str, Any]]) -> Optional["RuleConditions"]:
        if not data:
            return None
        weight_min = data.get("weight_min_oz")
        weight_max = data.get("weight_max_oz")
        return cls(
            weight_min_oz=Decimal(str(weight_min)) if weight_min is not None else None,
            weight_max_oz=Decimal(str(weight_max)) if weight_max is not None else None,
            states=tuple(s.upper() for s in data.get("states") or ()),
            countries=tuple(c.upper() for c in data.get("countries") or ()),
        )


@dataclass(frozen=True)
class MarkupRule:
    """Markup rule domain entity."""

    id: int
    name: str
    client_id: Optional[int]
    fee_category: str
    fee_type: Optional[str]
    ship_option_id: Optional[int]
    conditions: Optional[RuleConditions]
    kind: str
    value: Decimal
    priority: int
    is_additive: bool
    effective_from: date
    effective_to: Optional[date]
    is_active: bool
    description: Optional[str]
    created_at: datetime

    def to_dict(self) -> dict[str, Any]:
        """Serializable view used for the rule history log."""
        return {
            "name": self.name,
            "client_id": self.client_id,
            "fee_category": self.fee_category,
            "fee_type": self.fee_type,
            "ship_option_id": self.ship_option_id,
            "conditions": self.conditions.to_dict() if self.conditions else None,
            "kind": self.kind,
            "value": str(self.value),
            "priority": self.priority,
            "is_additive": self.is_additive,
            "effective_from": self.effective_from.isoformat(),
            "effective_to": self.effective_to.isoformat() if self.effective_to else None,
            "is_active": self.is_active,
            "description": self.description,
        }


@dataclass(frozen=True)
class RuleChange:
    """One entry in a markup rule's history."""

    id: int
    rule_id: int
    change_type: str
    previous: Optional[dict[str, Any]]
    current: Optional[dict[str, Any]]
    reason: Optional[str]
    changed_at: datetime


@dataclass(frozen=True)
class MarkupResult:
    """Outcome of pricing one transaction."""

    rule_id: Optional[int]
    additive_rule_ids: tuple[int, ...]
    markup_percentage: Decimal
    markup_amount: Decimal
    billed_amount: Decimal
    cost_basis: Decimal
    base_charge: Optional[Decimal] = None
    insurance_charge: Optional[Decimal] = None
    blended: bool = False


def _decimal_or_none(value: Any) -> Optional[Decimal]:
    return Decimal(str(value)) if value is not None else None


def _str_or_none(value: Optional[Decimal]) -> Optional[str]:
    return str(value) if value is not None else None


@dataclass(frozen=True)
class InvoiceLine:
    """One frozen, priced line of an invoice snapshot."""

    transaction_id: str
    line_category: str
    fee_type: str
    reference_id: str
    charge_date: date
    source_invoice_id: Optional[SourceInvoiceRef]
    raw_cost: Decimal
    base_cost: Optional[Decimal]
    surcharge: Optional[Decimal]
    insurance_cost: Optional[Decimal]
    markup_rule_id: Optional[int]
    markup_percentage: Decimal
    markup_amount: Decimal
    billed_amount: Decimal

    def to_dict(self) -> dict[str, Any]:
        return {
            "transaction_id": self.transaction_id,
            "line_category": self.line_category,
            "fee_type": self.fee_type,
            "reference_id": self.reference_id,
            "charge_date": self.charge_date.isoformat(),
            "source_invoice_id": self.source_invoice_id,
            "raw_cost": str(self.raw_cost),
            "base_cost": _str_or_none(self.base_cost),
            "surcharge": _str_or_none(self.surcharge),
            "insurance_cost": _str_or_none(self.insurance_cost),
            "markup_rule_id": self.markup_rule_id,
            "markup_percentage": str(self.markup_percentage),
            "markup_amount": str(self.markup_amount),
            "billed_amount": str(self.billed_amount),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "InvoiceLine":
        source_invoice_id = data.get("source_invoice_id")
        return cls(
            transaction_id=data["transaction_id"],
            line_category=data["line_category"],
            fee_type=data["fee_type"],
            reference_id=data["reference_id"],
            charge_date=date.fromisoformat(data["charge_date"]),
            source_invoice_id=SourceInvoiceRef(source_invoice_id) if source_invoice_id is not None else None,
            raw_cost=Decimal(data["raw_cost"]),
            base_cost=_decimal_or_none(data.get("base_cost")),
            surcharge=_decimal_or_none(data.get("surcharge")),
            insurance_cost=_decimal_or_none(data.get("insurance_cost")),
            markup_rule_id=data.get("markup_rule_id"),
            markup_percentage=Decimal(data["markup_percentage"]),
            markup_amount=Decimal(data["markup_amount"]),
            billed_amount=Decimal(data["billed_amount"]),
        )


@dataclass(frozen=True)
class CategoryTotals:
    """Per line-category totals on an invoice."""

    line_count: int
    cost: Decimal
    markup: Decimal
    billed: Decimal


@dataclass(frozen=True)
class InvoiceTotals:
    """Invoice-level totals plus the per-category split."""

    line_count: int
    subtotal: Decimal
    total_markup: Decimal
    total_amount: Decimal
    by_category: dict[str, CategoryTotals] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            category: {
                "line_count": totals.line_count,
                "cost": str(totals.cost),
                "markup": str(totals.markup),
                "billed": str(totals.billed),
            }
            for category, totals in self.by_category.items()
        }

    @classmethod
    def from_lines(cls, lines: list[InvoiceLine]) -> "InvoiceTotals":
        """Total a list of lines, grouping by line category in display order."""
        by_category: dict[str, CategoryTotals] = {}
        for category in LINE_CATEGORY_LABELS.values():
            grouped = [line for line in lines if line.line_category == category]
            if not grouped:
                continue
            by_category[category] = CategoryTotals(
                line_count=len(grouped),
                cost=sum((line.raw_cost for line in grouped), Decimal("0")),
                markup=sum((line.markup_amount for line in grouped), Decimal("0")),
                billed=sum((line.billed_amount for line in grouped), Decimal("0")),
            )
        return cls(
            line_count=len(lines),
            subtotal=sum((line.raw_cost for line in lines), Decimal("0")),
            total_markup=sum((line.markup_amount for line in lines), Decimal("0")),
            total_amount=sum((line.billed_amount for line in lines), Decimal("0")),
            by_category=by_category,
        )


@dataclass(frozen=True)
class Invoice:
    """Client invoice domain entity."""

    id: int
    client_id: int
    invoice_number: str
    status: str
    version: int
    period_start: date
    period_end: date
    invoice_date: date
    source_invoice_ids: tuple[SourceInvoiceRef, ...]
    line_count: int
    subtotal: Decimal
    total_markup: Decimal
    total_amount: Decimal
    generated_at: datetime
    approved_version: Optional[int]
    approved_at: Optional[datetime]
    sent_at: Optional[datetime]
    replaces_invoice_id: Optional[int]
    created_at: datetime

    @property
    def is_draft(self) -> bool:
        return self.status == INVOICE_DRAFT


@dataclass(frozen=True)
class InvoiceSnapshot:
    """Append-only frozen copy of one generated invoice version."""

    id: int
    invoice_id: int
    version: int
    lines: tuple[InvoiceLine, ...]
    totals: InvoiceTotals
    source_invoice_ids: tuple[SourceInvoiceRef, ...]
    generated_at: datetime


@dataclass(frozen=True)
class ReviewFlag:
    """Item held for manual review."""

    id: int
    kind: str
    subject: str
    message: str
    source_invoice_id: Optional[SourceInvoiceRef]
    is_resolved: bool
    created_at: datetime
    resolved_at: Optional[datetime]
