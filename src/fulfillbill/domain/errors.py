"""Shared domain error messages and error types."""

from typing import Iterable, Optional


class DomainError(ValueError):
    """Base class for domain-level errors.

    Subclasses provide semantic categories while preserving ValueError
    compatibility for existing error handling.
    """


class ValidationError(DomainError):
    """Invalid input or failed validation in domain logic."""


class NotFoundError(DomainError):
    """Requested domain entity does not exist."""


class ConflictError(DomainError):
    """Domain conflict, such as uniqueness violations or a lost status race."""


class DependencyError(DomainError):
    """Operation blocked due to dependent domain data."""


class ValidationBlockedError(DomainError):
    """Invoice generation or approval refused for itemized reasons.

    Nothing is persisted when this is raised.
    """

    def __init__(self, reasons: Iterable[str], report=None):
        self.reasons = list(reasons)
        self.report = report
        summary = f"{len(self.reasons)} blocking issue{'s' if len(self.reasons) != 1 else ''}"
        super().__init__(summary + "".join(f"\n  - {reason}" for reason in self.reasons))


class PricingAmbiguityError(DomainError):
    """Two or more markup rules tie on specificity and priority."""

    def __init__(self, transaction_id: str, rule_ids: Iterable[int]):
        self.transaction_id = transaction_id
        self.rule_ids = sorted(rule_ids)
        super().__init__(
            f"Ambiguous markup for transaction {transaction_id}: rules "
            f"{', '.join(str(rule_id) for rule_id in self.rule_ids)} tie on specificity and priority"
        )


class AlreadyFinalizedError(DomainError):
    """The invoice is past draft and cannot change."""


class SourceError(DomainError):
    """The external cost source returned something unusable."""


class TransientSourceError(SourceError):
    """The cost source is temporarily unavailable; retrying later may succeed."""


class PermanentDataGapError(SourceError):
    """Requested detail has aged out of the cost source's retention window."""


class JobBudgetExceeded(DomainError):
    """A periodic job ran past its wall-clock budget."""


def client_not_found(client_id: int | str) -> str:
    """Return message for missing client."""
    return f"Client {client_id} not found"


def rule_not_found(rule_id: int) -> str:
    """Return message for missing markup rule."""
    return f"Markup rule {rule_id} not found"


def invoice_not_found(invoice: int | str) -> str:
    """Return message for missing invoice by ID or number."""
    return f"Invoice {invoice} not found"


def invoice_not_draft(invoice_number: str, status: str) -> str:
    """Return message when a finalized invoice is asked to change."""
    return f"Invoice {invoice_number} is {status}; only draft invoices can be regenerated"


def duplicate_client_code(code: str) -> str:
    """Return message for duplicate client billing code."""
    return f"Client with code '{code}' already exists"


def retention_expired(source_invoice_id: int, retention_days: int, age_days: Optional[int] = None) -> str:
    """Return message when invoice detail is older than the retention window."""
    age = f" (invoice is {age_days} days old)" if age_days is not None else ""
    return (
        f"Detail for source invoice {source_invoice_id} is outside the "
        f"{retention_days}-day retention window{age}; use the periodic-close snapshot instead"
    )
