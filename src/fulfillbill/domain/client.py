"""Client domain service."""

import re
from typing import Optional

from fulfillbill.database.base import Database
from fulfillbill.domain.entities import Client as ClientEntity
from fulfillbill.domain.errors import (
    ConflictError,
    NotFoundError,
    ValidationError,
    client_not_found,
    duplicate_client_code,
)

BILLING_CADENCES = ("weekly", "monthly")
CODE_PATTERN = re.compile(r"^[A-Z][A-Z0-9]{1,11}$")


class ClientService:
    """Service for managing billable and internal clients."""

    def __init__(self, db: Database):
        """Initialize client service.

        Args:
            db: Database instance
        """
        self.db = db

    def create_client(
        self,
        code: str,
        name: str,
        billing_cadence: str = "weekly",
        currency: str = "USD",
        is_internal: bool = False,
    ) -> int:
        """Create a new client.

        Args:
            code: Short billing code used in invoice numbers (e.g. "ACME")
            name: Client display name, also matched against free-text comments
            billing_cadence: "weekly" or "monthly"
            currency: ISO 4217 billing currency
            is_internal: True for internal system clients (payments, costs)

        Returns:
            Client ID

        Raises:
            ValidationError: If code, cadence or currency is malformed
            ConflictError: If the code is already in use
        """
        code = code.strip().upper()
        if not CODE_PATTERN.match(code):
            raise ValidationError(
                f"Invalid client code '{code}': use 2-12 letters and digits, starting with a letter"
            )
        if not name or not name.strip():
            raise ValidationError("Client name cannot be empty")
        if billing_cadence not in BILLING_CADENCES:
            raise ValidationError(
                f"Invalid billing cadence '{billing_cadence}'. Must be one of: {', '.join(BILLING_CADENCES)}"
            )
        currency = currency.strip().upper()
        if len(currency) != 3 or not currency.isalpha():
            raise ValidationError(f"Invalid currency code '{currency}'")
        if self.db.get_client_by_code(code) is not None:
            raise ConflictError(duplicate_client_code(code))

        return self.db.create_client(
            code=code,
            name=name.strip(),
            billing_cadence=billing_cadence,
            currency=currency,
            is_internal=is_internal,
        )

    def get_client(self, client_id: int) -> Optional[ClientEntity]:
        """Get client by ID."""
        return self.db.get_client(client_id)

    def get_client_by_code(self, code: str) -> Optional[ClientEntity]:
        """Get client by billing code."""
        return self.db.get_client_by_code(code.strip())

    def require_client(self, client_id: int) -> ClientEntity:
        """Get client by ID or raise NotFoundError."""
        client = self.db.get_client(client_id)
        if client is None:
            raise NotFoundError(client_not_found(client_id))
        return client

    def list_clients(self, include_inactive: bool = False) -> list[ClientEntity]:
        """List clients.

        Args:
            include_inactive: Include deactivated clients

        Returns:
            List of client entities ordered by code
        """
        return self.db.list_clients(include_inactive=include_inactive)

    def set_active(self, client_id: int, active: bool) -> None:
        """Activate or deactivate a client.

        Raises:
            NotFoundError: If client doesn't exist
        """
        self.require_client(client_id)
        self.db.update_client(client_id, is_active=active)

    def update_client(
        self,
        client_id: int,
        name: Optional[str] = None,
        billing_cadence: Optional[str] = None,
        currency: Optional[str] = None,
    ) -> None:
        """Update client details. Fields left as None are unchanged.

        Raises:
            NotFoundError: If client doesn't exist
            ValidationError: If a value is malformed
        """
        self.require_client(client_id)
        values = {}
        if name is not None:
            if not name.strip():
                raise ValidationError("Client name cannot be empty")
            values["name"] = name.strip()
        if billing_cadence is not None:
            if billing_cadence not in BILLING_CADENCES:
                raise ValidationError(f"Invalid billing cadence '{billing_cadence}'")
            values["billing_cadence"] = billing_cadence
        if currency is not None:
            values["currency"] = currency.strip().upper()
        if values:
            self.db.update_client(client_id, **values)
