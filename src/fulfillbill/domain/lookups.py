"""Lookup table maintenance: provider keys that identify a client."""

import logging
from decimal import Decimal
from typing import Optional

from fulfillbill.database.base import Database
from fulfillbill.domain.entities import ShipmentRecord
from fulfillbill.domain.errors import NotFoundError, ValidationError, client_not_found

logger = logging.getLogger(__name__)

LOOKUP_INVENTORY = "inventory"
LOOKUP_RETURN = "return"
LOOKUP_RECEIVING_ORDER = "receiving_order"
LOOKUP_ORDER = "order"

LOOKUP_KINDS = (LOOKUP_INVENTORY, LOOKUP_RETURN, LOOKUP_RECEIVING_ORDER, LOOKUP_ORDER)


class LookupService:
    """Service for recording which client owns shipments, inventory, returns and orders."""

    def __init__(self, db: Database):
        """Initialize lookup service.

        Args:
            db: Database instance
        """
        self.db = db

    def _require_client(self, client_id: int) -> None:
        if self.db.get_client(client_id) is None:
            raise NotFoundError(client_not_found(client_id))

    def record_shipment(
        self,
        shipment_id: str,
        client_id: int,
        order_number: Optional[str] = None,
        ship_option_id: Optional[int] = None,
        weight_oz: Optional[Decimal] = None,
        destination_state: Optional[str] = None,
        destination_country: Optional[str] = None,
    ) -> None:
        """Record a shipment and its pricing attributes.

        Raises:
            ValidationError: If shipment_id is blank or weight is negative
            NotFoundError: If client doesn't exist
        """
        if not shipment_id or not str(shipment_id).strip():
            raise ValidationError("Shipment ID cannot be empty")
        if weight_oz is not None and weight_oz < 0:
            raise ValidationError(f"Shipment weight cannot be negative: {weight_oz}")
        self._require_client(client_id)
        self.db.upsert_shipment(
            ShipmentRecord(
                shipment_id=str(shipment_id).strip(),
                client_id=client_id,
                order_number=order_number,
                ship_option_id=ship_option_id,
                weight_oz=weight_oz,
                destination_state=destination_state.upper() if destination_state else None,
                destination_country=destination_country.upper() if destination_country else None,
            )
        )

    def record(self, kind: str, key: str, client_id: int) -> None:
        """Record that a provider key of the given kind belongs to a client.

        Args:
            kind: One of LOOKUP_KINDS
            key: Provider key (inventory item ID, return ID, receiving order ID or order number)
            client_id: Owning client

        Raises:
            ValidationError: If kind is unknown or key is blank
            NotFoundError: If client doesn't exist
        """
        if kind not in LOOKUP_KINDS:
            raise ValidationError(f"Invalid lookup kind '{kind}'. Must be one of: {', '.join(LOOKUP_KINDS)}")
        if not key or not str(key).strip():
            raise ValidationError("Lookup key cannot be empty")
        self._require_client(client_id)
        self.db.upsert_lookup(kind, str(key).strip(), client_id)
        logger.debug("Recorded %s %s for client %s", kind, key, client_id)
