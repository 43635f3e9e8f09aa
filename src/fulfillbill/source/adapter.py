"""Normalizes cost source payloads into domain records."""

import logging
from datetime import date
from typing import Any, Iterable, Mapping, Optional

from fulfillbill.config import Settings
from fulfillbill.domain.entities import CostEvent, SourceInvoice, SourceInvoiceRef
from fulfillbill.domain.errors import PermanentDataGapError, ValidationError, retention_expired
from fulfillbill.source.api_client import CostSourceClient
from fulfillbill.utils.amount_parser import parse_amount, round_raw_cost
from fulfillbill.utils.date_parser import parse_source_date, source_invoice_period

logger = logging.getLogger(__name__)

# Requests kept back from reference lookups for the scheduled syncs
LOOKUP_RESERVE = 5


def _amount(value: Any, field_name: str):
    if value is None or value == "":
        raise ValidationError(f"Missing {field_name}")
    try:
        return parse_amount(str(value))
    except ValueError as e:
        raise ValidationError(f"Invalid {field_name}: {e}") from e


def _date(value: Any, field_name: str) -> Optional[date]:
    try:
        return parse_source_date(value)
    except ValueError as e:
        raise ValidationError(f"Invalid {field_name}: {e}") from e


def _invoice_ref(value: Any) -> Optional[SourceInvoiceRef]:
    if value in (None, "", 0, "0"):
        return None
    try:
        return SourceInvoiceRef(int(value))
    except (TypeError, ValueError) as e:
        raise ValidationError(f"Invalid invoice_id: {value!r}") from e


def normalize_transaction(raw: Mapping[str, Any]) -> CostEvent:
    """Convert one API transaction record to a CostEvent.

    The API is inconsistent about names, so both ``transaction_fee`` and
    ``fee_type`` are accepted for the fee, and ``currency_code`` or
    ``currency`` for the currency.

    Raises:
        ValidationError: If a required field is missing or malformed
    """
    source_id = raw.get("transaction_id")
    if not source_id:
        raise ValidationError("Transaction record has no transaction_id")
    fee_type = raw.get("transaction_fee") or raw.get("fee_type")
    if not fee_type:
        raise ValidationError(f"Transaction {source_id} has no fee type")
    charge_date = _date(raw.get("charge_date"), "charge_date")
    if charge_date is None:
        raise ValidationError(f"Transaction {source_id} has no charge_date")

    details = raw.get("additional_details")
    return CostEvent(
        source_id=str(source_id),
        reference_id=str(raw.get("reference_id") or ""),
        reference_type=raw.get("reference_type") or "Default",
        fee_type=fee_type,
        amount=round_raw_cost(_amount(raw.get("amount"), "amount")),
        currency=(raw.get("currency_code") or raw.get("currency") or "USD").upper(),
        charge_date=charge_date,
        transaction_type=raw.get("transaction_type") or None,
        source_invoice_id=_invoice_ref(raw.get("invoice_id")),
        source_invoice_date=_date(raw.get("invoice_date"), "invoice_date"),
        fulfillment_center=raw.get("fulfillment_center") or None,
        details=dict(details) if isinstance(details, Mapping) else {},
    )


def normalize_invoice(raw: Mapping[str, Any]) -> SourceInvoice:
    """Convert one API invoice record to a SourceInvoice.

    Raises:
        ValidationError: If a required field is missing or malformed
    """
    invoice_id = _invoice_ref(raw.get("invoice_id"))
    if invoice_id is None:
        raise ValidationError("Invoice record has no invoice_id")
    invoice_date = _date(raw.get("invoice_date"), "invoice_date")
    if invoice_date is None:
        raise ValidationError(f"Invoice {invoice_id} has no invoice_date")
    period_start, period_end = source_invoice_period(invoice_date)
    return SourceInvoice(
        id=invoice_id,
        invoice_type=raw.get("invoice_type") or "",
        invoice_date=invoice_date,
        amount=_amount(raw.get("amount"), "amount"),
        currency=(raw.get("currency_code") or "USD").upper(),
        period_start=period_start,
        period_end=period_end,
    )


class CostSourceAdapter:
    """Turns API calls into streams of normalized records.

    Malformed records are skipped and their errors collected; call
    ``drain_errors()`` after a fetch to report them.
    """

    def __init__(self, client: CostSourceClient, settings: Optional[Settings] = None):
        self.client = client
        self.settings = settings or Settings()
        self._errors: list[str] = []

    def drain_errors(self) -> list[str]:
        """Return and clear the errors collected since the last call."""
        errors, self._errors = self._errors, []
        return errors

    def _normalize_all(self, records: Iterable[Mapping[str, Any]]) -> list[CostEvent]:
        events = []
        for raw in records:
            try:
                events.append(normalize_transaction(raw))
            except ValidationError as e:
                logger.warning("Skipping source record: %s", e)
                self._errors.append(str(e))
        return events

    def fetch_open_events(self) -> list[CostEvent]:
        """Fetch transactions the source has not invoiced yet."""
        events = self._normalize_all(self.client.query_open_transactions())
        logger.info("Fetched %d open transactions", len(events))
        return events

    def list_source_invoices(self, start_date: date, end_date: date) -> list[SourceInvoice]:
        """List closed source invoices dated in a range."""
        invoices = []
        for raw in self.client.list_invoices(start_date, end_date):
            try:
                invoices.append(normalize_invoice(raw))
            except ValidationError as e:
                logger.warning("Skipping source invoice record: %s", e)
                self._errors.append(str(e))
        return invoices

    def fetch_closed_events(self, source_invoice: SourceInvoice, today: Optional[date] = None) -> list[CostEvent]:
        """Fetch the detail of one closed source invoice.

        Raises:
            PermanentDataGapError: If the invoice is older than the retention window
                or the provider no longer returns its detail
        """
        today = today or date.today()
        age_days = (today - source_invoice.invoice_date).days
        if age_days > self.settings.retention_days:
            raise PermanentDataGapError(retention_expired(source_invoice.id, self.settings.retention_days, age_days))

        events = self._normalize_all(self.client.get_invoice_transactions(source_invoice.id))
        logger.info("Fetched %d transactions for source invoice %s", len(events), source_invoice.id)
        return events

    def lookup_references(self, reference_ids: Iterable[str]) -> tuple[list[CostEvent], list[str]]:
        """Fetch transactions for reference ids in batches.

        When the rate budget runs low the ids not yet requested are
        returned as deferred instead of waiting for the window to reopen.

        Returns:
            Tuple of (events, deferred reference ids)
        """
        ids = list(dict.fromkeys(str(r) for r in reference_ids))
        batch_size = self.settings.lookup_batch_size
        limiter = self.client.rate_limiter
        events: list[CostEvent] = []
        for start in range(0, len(ids), batch_size):
            if limiter is not None and limiter.remaining() <= LOOKUP_RESERVE:
                deferred = ids[start:]
                logger.info("Rate budget low; deferring %d reference lookups", len(deferred))
                return events, deferred
            batch = ids[start:start + batch_size]
            events.extend(self._normalize_all(self.client.query_transactions_by_reference(batch)))
        return events, []
