"""Pre-flight data completeness checks run before an invoice is generated."""

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Callable, Iterable, Optional

from fulfillbill.config import Settings
from fulfillbill.domain.entities import (
    CATEGORY_ADDITIONAL_SERVICES,
    CATEGORY_CREDITS,
    CATEGORY_RECEIVING,
    CATEGORY_RETURNS,
    CATEGORY_SHIPPING,
    CATEGORY_STORAGE,
    Transaction,
)

logger = logging.getLogger(__name__)

SEVERITY_BLOCKING = "blocking"
SEVERITY_WARNING = "warning"

SAMPLE_SIZE = 5


def _storage_part(index: int) -> Callable[[Transaction], Any]:
    def extract(txn: Transaction) -> Any:
        parts = (txn.reference_id or "").split("-")
        if len(parts) >= 3:
            return parts[index].strip() or None
        return None

    return extract


def _detail(*keys: str) -> Callable[[Transaction], Any]:
    def extract(txn: Transaction) -> Any:
        for key in keys:
            value = txn.details.get(key)
            if value not in (None, ""):
                return value
        return None

    return extract


@dataclass(frozen=True)
class RequiredField:
    """A field an invoice line needs, and how strictly."""

    name: str
    extract: Callable[[Transaction], Any]
    # Mandatory fields block on any gap; others use the ratio thresholds
    mandatory: bool = False


REQUIRED_FIELDS: dict[str, tuple[RequiredField, ...]] = {
    CATEGORY_SHIPPING: (
        RequiredField("base_cost", lambda t: t.base_cost, mandatory=True),
        RequiredField("tracking_id", lambda t: t.tracking_id),
        RequiredField("reference_id", lambda t: t.reference_id),
        RequiredField("charge_date", lambda t: t.charge_date),
    ),
    CATEGORY_ADDITIONAL_SERVICES: (
        RequiredField("reference_id", lambda t: t.reference_id),
        RequiredField("fee_type", lambda t: t.fee_type),
        RequiredField("charge_date", lambda t: t.charge_date),
    ),
    CATEGORY_STORAGE: (
        RequiredField("fulfillment_center", lambda t: t.fulfillment_center or _storage_part(0)(t)),
        RequiredField("inventory_id", lambda t: _storage_part(-2)(t) or _detail("InventoryId")(t)),
        RequiredField("location_type", lambda t: _storage_part(-1)(t) or _detail("LocationType")(t)),
    ),
    CATEGORY_RETURNS: (
        RequiredField("reference_id", lambda t: t.reference_id),
        RequiredField("charge_date", lambda t: t.charge_date),
    ),
    CATEGORY_RECEIVING: (
        RequiredField("reference_id", lambda t: t.reference_id),
        RequiredField("fee_type", lambda t: t.fee_type),
        RequiredField("charge_date", lambda t: t.charge_date),
    ),
    CATEGORY_CREDITS: (
        RequiredField("reference_id", lambda t: t.reference_id),
        RequiredField("charge_date", lambda t: t.charge_date),
        RequiredField("credit_reason", _detail("Comment", "CreditReason")),
    ),
}


@dataclass(frozen=True)
class FieldCompleteness:
    """How many transactions of a category carry a required field."""

    category: str
    field: str
    total: int
    missing: int
    sample_ids: tuple[str, ...] = ()

    @property
    def missing_ratio(self) -> Decimal:
        if self.total == 0:
            return Decimal("0")
        return Decimal(self.missing) / Decimal(self.total)


@dataclass(frozen=True)
class PreflightIssue:
    """One completeness problem."""

    severity: str
    category: str
    field: str
    missing: int
    total: int
    sample_ids: tuple[str, ...] = ()

    @property
    def message(self) -> str:
        percent = (Decimal(self.missing) * 100 / Decimal(self.total)).quantize(Decimal("0.1"))
        text = f"{self.category}: {self.missing} of {self.total} transactions ({percent}%) missing {self.field}"
        if self.sample_ids:
            text += f" (e.g. {', '.join(self.sample_ids)})"
        return text


@dataclass
class PreflightReport:
    """Outcome of a pre-flight run."""

    transaction_count: int = 0
    fields: list[FieldCompleteness] = field(default_factory=list)
    issues: list[PreflightIssue] = field(default_factory=list)

    @property
    def blocking(self) -> list[PreflightIssue]:
        return [i for i in self.issues if i.severity == SEVERITY_BLOCKING]

    @property
    def warnings(self) -> list[PreflightIssue]:
        return [i for i in self.issues if i.severity == SEVERITY_WARNING]

    @property
    def passed(self) -> bool:
        return not self.blocking

    def blocking_reasons(self) -> list[str]:
        return [i.message for i in self.blocking]


class PreflightValidator:
    """Checks that billable transactions carry the fields invoicing needs.

    Shipping base cost must be complete. Other fields block once the
    missing share exceeds ``block_missing_ratio`` and warn above
    ``warn_missing_ratio``.
    """

    def __init__(self, settings: Optional[Settings] = None):
        """Initialize pre-flight validator.

        Args:
            settings: Application settings carrying the thresholds
        """
        settings = settings or Settings()
        self.warn_ratio = Decimal(settings.warn_missing_ratio)
        self.block_ratio = Decimal(settings.block_missing_ratio)

    def _severity(self, required: RequiredField, completeness: FieldCompleteness) -> Optional[str]:
        if completeness.missing == 0:
            return None
        if required.mandatory or completeness.missing_ratio > self.block_ratio:
            return SEVERITY_BLOCKING
        if completeness.missing_ratio > self.warn_ratio:
            return SEVERITY_WARNING
        return None

    def evaluate(self, transactions: Iterable[Transaction]) -> PreflightReport:
        """Measure field completeness per fee category.

        Args:
            transactions: The transactions an invoice would summarize

        Returns:
            PreflightReport; ``passed`` is False when anything blocks
        """
        transactions = list(transactions)
        report = PreflightReport(transaction_count=len(transactions))
        for category, required_fields in REQUIRED_FIELDS.items():
            in_category = [t for t in transactions if t.fee_category == category]
            if not in_category:
                continue
            for required in required_fields:
                missing = [t.source_id for t in in_category if required.extract(t) in (None, "")]
                completeness = FieldCompleteness(
                    category=category,
                    field=required.name,
                    total=len(in_category),
                    missing=len(missing),
                    sample_ids=tuple(missing[:SAMPLE_SIZE]),
                )
                report.fields.append(completeness)
                severity = self._severity(required, completeness)
                if severity is not None:
                    report.issues.append(
                        PreflightIssue(
                            severity=severity,
                            category=category,
                            field=required.name,
                            missing=completeness.missing,
                            total=completeness.total,
                            sample_ids=completeness.sample_ids,
                        )
                    )

        for issue in report.warnings:
            logger.warning("Pre-flight warning: %s", issue.message)
        return report
