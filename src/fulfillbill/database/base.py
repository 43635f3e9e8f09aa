"""Abstract database interface."""

from abc import ABC, abstractmethod
from typing import Any, Iterable, Optional
from datetime import date, datetime
from decimal import Decimal

# Import entities directly to avoid circular import through domain/__init__.py
from fulfillbill.domain.entities import (
    Client,
    Transaction,
    TransactionPatch,
    ShipmentRecord,
    SourceInvoice,
    SourceInvoiceRef,
    MarkupRule,
    RuleChange,
    Invoice,
    InvoiceLine,
    InvoiceSnapshot,
    InvoiceTotals,
    ReviewFlag,
)


class Database(ABC):
    """Abstract database interface for fulfillbill."""

    @abstractmethod
    def connect(self) -> None:
        """Connect to the database."""
        pass

    @abstractmethod
    def disconnect(self) -> None:
        """Disconnect from the database."""
        pass

    @abstractmethod
    def initialize_schema(self) -> None:
        """Initialize database schema (create tables)."""
        pass

    # Client operations
    @abstractmethod
    def create_client(
        self,
        code: str,
        name: str,
        billing_cadence: str = "weekly",
        currency: str = "USD",
        is_internal: bool = False,
    ) -> int:
        """Create a new client. Returns client ID."""
        pass

    @abstractmethod
    def get_client(self, client_id: int) -> Optional[Client]:
        """Get client by ID."""
        pass

    @abstractmethod
    def get_client_by_code(self, code: str) -> Optional[Client]:
        """Get client by billing code (case-insensitive)."""
        pass

    @abstractmethod
    def list_clients(self, include_inactive: bool = False) -> list[Client]:
        """List clients ordered by code."""
        pass

    @abstractmethod
    def update_client(self, client_id: int, **values: Any) -> None:
        """Update client name, cadence, currency or active flag."""
        pass

    @abstractmethod
    def reserve_invoice_sequence(self, client_id: int) -> int:
        """Return the client's next invoice sequence number and advance it."""
        pass

    # Lookup operations
    @abstractmethod
    def upsert_shipment(self, shipment: ShipmentRecord) -> None:
        """Insert or replace a shipment lookup row."""
        pass

    @abstractmethod
    def get_shipments(self, shipment_ids: Iterable[str]) -> dict[str, ShipmentRecord]:
        """Get shipment lookup rows keyed by shipment ID."""
        pass

    @abstractmethod
    def upsert_lookup(self, kind: str, key: str, client_id: int) -> None:
        """Insert or replace a provider-key to client mapping."""
        pass

    @abstractmethod
    def find_lookup_clients(self, kind: str, keys: Iterable[str]) -> dict[str, int]:
        """Map provider keys of one kind to client IDs. Unknown keys are absent."""
        pass

    @abstractmethod
    def find_order_clients(self, order_numbers: Iterable[str]) -> dict[str, int]:
        """Map order numbers to client IDs via order lookups and shipments."""
        pass

    # Transaction operations
    @abstractmethod
    def get_transaction(self, source_id: str) -> Optional[Transaction]:
        """Get transaction by source transaction ID."""
        pass

    @abstractmethod
    def get_transactions_by_source_ids(self, source_ids: Iterable[str]) -> dict[str, Transaction]:
        """Get transactions keyed by source transaction ID."""
        pass

    @abstractmethod
    def insert_transaction(self, source_id: str, patch: TransactionPatch) -> int:
        """Insert a new transaction from a patch. Returns row ID.

        Raises:
            ConflictError: If source_id already exists
        """
        pass

    @abstractmethod
    def update_transaction(self, source_id: str, patch: TransactionPatch) -> None:
        """Write only the fields the patch sets."""
        pass

    @abstractmethod
    def clear_dispute_status(self, source_id: str) -> None:
        """Clear a void/dispute status."""
        pass

    @abstractmethod
    def list_transactions(
        self,
        client_id: Optional[int] = None,
        source_invoice_ids: Optional[Iterable[SourceInvoiceRef]] = None,
        fee_categories: Optional[Iterable[str]] = None,
        reference_ids: Optional[Iterable[str]] = None,
        unattributed: bool = False,
        unbilled: bool = False,
        include_voided: bool = True,
        limit: Optional[int] = None,
    ) -> list[Transaction]:
        """List transactions with optional filters, ordered by charge date then source ID."""
        pass

    @abstractmethod
    def list_billable_transactions(
        self,
        client_id: int,
        source_invoice_ids: Iterable[SourceInvoiceRef],
        include_invoice_number: Optional[str] = None,
    ) -> list[Transaction]:
        """List a client's non-voided transactions linked to the given source invoices.

        Only unbilled transactions are returned, plus those billed under
        ``include_invoice_number`` when a reissue replaces that invoice.
        """
        pass

    @abstractmethod
    def link_unlinked_transactions(
        self,
        source_invoice: SourceInvoice,
        fee_category: str,
    ) -> int:
        """Link unlinked transactions of a category charged within the invoice period.

        Disputed and voided transactions are left alone. Returns the number linked.
        """
        pass

    @abstractmethod
    def summarize_source_invoice(self, source_invoice_id: SourceInvoiceRef) -> tuple[int, Decimal]:
        """Return (count, total amount) of transactions linked to a source invoice."""
        pass

    # Source invoice operations
    @abstractmethod
    def upsert_source_invoice(self, invoice: SourceInvoice) -> None:
        """Insert or update source invoice metadata, keeping reconciliation state."""
        pass

    @abstractmethod
    def get_source_invoice(self, source_invoice_id: SourceInvoiceRef) -> Optional[SourceInvoice]:
        """Get source invoice by provider ID."""
        pass

    @abstractmethod
    def list_source_invoices(
        self,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        unreconciled_only: bool = False,
    ) -> list[SourceInvoice]:
        """List source invoices by invoice date, oldest first."""
        pass

    @abstractmethod
    def mark_source_invoice_reconciled(self, source_invoice_id: SourceInvoiceRef, reconciled_at: datetime) -> None:
        """Record that a source invoice's detail has been processed."""
        pass

    # Markup rule operations
    @abstractmethod
    def create_markup_rule(
        self,
        name: str,
        fee_category: str,
        kind: str,
        value: Decimal,
        effective_from: date,
        client_id: Optional[int] = None,
        fee_type: Optional[str] = None,
        ship_option_id: Optional[int] = None,
        conditions: Optional[dict[str, Any]] = None,
        priority: int = 0,
        is_additive: bool = False,
        effective_to: Optional[date] = None,
        description: Optional[str] = None,
    ) -> int:
        """Create a markup rule. Returns rule ID."""
        pass

    @abstractmethod
    def get_markup_rule(self, rule_id: int) -> Optional[MarkupRule]:
        """Get markup rule by ID."""
        pass

    @abstractmethod
    def list_markup_rules(
        self,
        client_id: Optional[int] = None,
        include_global: bool = True,
        include_inactive: bool = False,
    ) -> list[MarkupRule]:
        """List markup rules.

        With a client_id, returns that client's rules plus global rules
        (unless include_global is False). Without one, returns all rules.
        """
        pass

    @abstractmethod
    def update_markup_rule(self, rule_id: int, **values: Any) -> None:
        """Update markup rule fields."""
        pass

    @abstractmethod
    def add_rule_history(
        self,
        rule_id: int,
        change_type: str,
        previous: Optional[dict[str, Any]],
        current: Optional[dict[str, Any]],
        reason: Optional[str] = None,
    ) -> int:
        """Append a markup rule history entry. Returns entry ID."""
        pass

    @abstractmethod
    def list_rule_history(self, rule_id: int) -> list[RuleChange]:
        """List a rule's history, oldest first."""
        pass

    # Invoice operations
    @abstractmethod
    def create_invoice(
        self,
        client_id: int,
        invoice_number: str,
        period_start: date,
        period_end: date,
        invoice_date: date,
        source_invoice_ids: Iterable[SourceInvoiceRef],
        lines: list[InvoiceLine],
        totals: InvoiceTotals,
        generated_at: datetime,
        replaces_invoice_id: Optional[int] = None,
    ) -> int:
        """Create a draft invoice with its first snapshot in one commit. Returns invoice ID."""
        pass

    @abstractmethod
    def add_invoice_snapshot(
        self,
        invoice_id: int,
        expected_version: int,
        lines: list[InvoiceLine],
        totals: InvoiceTotals,
        source_invoice_ids: Iterable[SourceInvoiceRef],
        generated_at: datetime,
    ) -> bool:
        """Append the next snapshot version to a draft invoice.

        Returns False without writing if the invoice is no longer a draft at
        ``expected_version``.
        """
        pass

    @abstractmethod
    def get_invoice(self, invoice_id: int) -> Optional[Invoice]:
        """Get invoice by ID."""
        pass

    @abstractmethod
    def get_invoice_by_number(self, invoice_number: str) -> Optional[Invoice]:
        """Get invoice by invoice number."""
        pass

    @abstractmethod
    def find_invoice_for_period(self, client_id: int, period_start: date, period_end: date) -> Optional[Invoice]:
        """Get the newest non-superseded invoice for a client and period."""
        pass

    @abstractmethod
    def find_reissue_of(self, invoice_id: int) -> Optional[Invoice]:
        """Get the invoice that replaces the given one, if any."""
        pass

    @abstractmethod
    def list_invoices(self, client_id: Optional[int] = None, status: Optional[str] = None) -> list[Invoice]:
        """List invoices, newest first."""
        pass

    @abstractmethod
    def get_invoice_snapshot(self, invoice_id: int, version: Optional[int] = None) -> Optional[InvoiceSnapshot]:
        """Get one snapshot version (latest when version is None)."""
        pass

    @abstractmethod
    def list_invoice_snapshots(self, invoice_id: int) -> list[InvoiceSnapshot]:
        """List all snapshot versions of an invoice, oldest first."""
        pass

    @abstractmethod
    def finalize_invoice(self, invoice_id: int, version: int, approved_at: datetime) -> bool:
        """Approve a draft invoice and copy its snapshot onto transactions.

        Runs in one database transaction. The status moves from draft to
        approved only if the invoice is still a draft at ``version``;
        otherwise nothing is written and False is returned. If the invoice
        replaces another, that one becomes superseded.
        """
        pass

    @abstractmethod
    def mark_invoice_sent(self, invoice_id: int, sent_at: datetime) -> bool:
        """Move an approved invoice to sent. Returns False if it was not approved."""
        pass

    # Review flag operations
    @abstractmethod
    def create_review_flag(
        self,
        kind: str,
        subject: str,
        message: str,
        source_invoice_id: Optional[SourceInvoiceRef] = None,
    ) -> int:
        """Open a review flag, refreshing the message of an identical open flag. Returns flag ID."""
        pass

    @abstractmethod
    def list_review_flags(
        self,
        kind: Optional[str] = None,
        source_invoice_ids: Optional[Iterable[SourceInvoiceRef]] = None,
        include_resolved: bool = False,
    ) -> list[ReviewFlag]:
        """List review flags, oldest first."""
        pass

    @abstractmethod
    def resolve_review_flag(self, flag_id: int, resolved_at: datetime) -> bool:
        """Resolve an open flag. Returns False if it was missing or already resolved."""
        pass

    # Job lock operations
    @abstractmethod
    def acquire_job_lock(self, job_name: str, owner: str, now: datetime, lease_seconds: int) -> bool:
        """Take or renew a job lease. Expired leases held by others are reclaimed."""
        pass

    @abstractmethod
    def release_job_lock(self, job_name: str, owner: str) -> None:
        """Release a lease held by owner."""
        pass
