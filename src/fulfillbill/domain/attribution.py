"""Attribution: deciding which client pays for each cost line.

The cost source never says which merchant a charge belongs to, so each
transaction is run through an ordered chain of strategies and the first
one that finds a client wins. Failure is a state, not an error: the result
is explicitly unattributed and the transaction is picked up again by the
re-attribution sweep once lookup tables fill in.
"""

import logging
import re
from dataclasses import dataclass
from typing import Any, Iterable, Mapping, Optional, Protocol

from fulfillbill.database.base import Database
from fulfillbill.domain.entities import (
    CATEGORY_CREDITS,
    REFERENCE_RECEIVING,
    REFERENCE_RETURN,
    REFERENCE_SHIPMENT,
    REFERENCE_STORAGE,
    TransactionPatch,
)
from fulfillbill.domain.lookups import (
    LOOKUP_INVENTORY,
    LOOKUP_RECEIVING_ORDER,
    LOOKUP_RETURN,
)

logger = logging.getLogger(__name__)

STRATEGY_SHIPMENT = "shipment"
STRATEGY_STORAGE = "storage"
STRATEGY_RETURN = "return"
STRATEGY_RECEIVING = "receiving"
STRATEGY_CATEGORY = "category"
STRATEGY_FUZZY = "fuzzy"

ORDER_NUMBER_PATTERN = re.compile(r"order\s*(?:#|number|no\.?)?\s*[:#]?\s*(\d{3,})", re.IGNORECASE)


class CostLine(Protocol):
    """What attribution needs to know about a cost line."""

    reference_id: str
    reference_type: str
    fee_type: str
    details: dict[str, Any]

    @property
    def fee_category(self) -> str: ...


@dataclass(frozen=True)
class AttributionResult:
    """Outcome of attributing one cost line."""

    client_id: Optional[int] = None
    strategy: Optional[str] = None
    needs_review: bool = False

    @property
    def resolved(self) -> bool:
        return self.client_id is not None

    def to_patch(self) -> TransactionPatch:
        """Patch for storage. Unresolved results set nothing, so a known client is never cleared."""
        if not self.resolved:
            return TransactionPatch()
        return TransactionPatch(
            client_id=self.client_id,
            attribution_strategy=self.strategy,
            needs_review=self.needs_review,
        )


UNATTRIBUTED = AttributionResult()


def storage_inventory_id(reference_id: str, details: Mapping[str, Any]) -> Optional[str]:
    """Extract the inventory item ID from a storage reference.

    Storage references look like ``{facility}-{inventoryItem}-{locationType}``.
    Facility names may themselves contain dashes, so the item is the
    second-to-last part. Falls back to ``InventoryId`` in the details.
    """
    parts = (reference_id or "").split("-")
    if len(parts) >= 3 and parts[-2].strip():
        return parts[-2].strip()
    fallback = details.get("InventoryId")
    return str(fallback) if fallback not in (None, "") else None


def _refers_to_shipment(line: CostLine) -> bool:
    """Shipment charges, and credits issued against a shipment."""
    if line.reference_type == REFERENCE_SHIPMENT:
        return True
    return line.fee_category == CATEGORY_CREDITS and line.reference_type != REFERENCE_RETURN


def order_number_from_comment(comment: Optional[str]) -> Optional[str]:
    """Find an order number mentioned in free text, e.g. 'Return for order #123456'."""
    if not comment:
        return None
    match = ORDER_NUMBER_PATTERN.search(comment)
    return match.group(1) if match else None


class AttributionResolver:
    """Runs the strategy chain, caching lookups for the lifetime of one pass."""

    def __init__(self, db: Database, internal_fee_routes: Optional[Mapping[str, str]] = None):
        """Initialize attribution resolver.

        Args:
            db: Database instance
            internal_fee_routes: Fee type to internal client code, for fees that
                are the operator's own cost rather than any client's
        """
        self.db = db
        self.internal_fee_routes = dict(internal_fee_routes or {})
        self._shipments: dict[str, Optional[int]] = {}
        self._lookups: dict[tuple[str, str], Optional[int]] = {}
        self._orders: dict[str, Optional[int]] = {}
        self._internal_clients: Optional[dict[str, int]] = None
        self._named_clients: Optional[list[tuple[int, re.Pattern]]] = None

    # Batched lookups
    def prefetch(self, lines: Iterable[CostLine]) -> None:
        """Warm the caches for many lines with one query per lookup kind."""
        shipments, inventory, returns, receiving, orders = set(), set(), set(), set(), set()
        for line in lines:
            kind = line.reference_type
            if _refers_to_shipment(line):
                shipments.add(line.reference_id)
            elif kind == REFERENCE_STORAGE:
                item = storage_inventory_id(line.reference_id, line.details)
                if item:
                    inventory.add(item)
            elif kind == REFERENCE_RETURN:
                returns.add(line.reference_id)
                order = order_number_from_comment(line.details.get("Comment"))
                if order:
                    orders.add(order)
            elif kind in REFERENCE_RECEIVING:
                receiving.add(line.reference_id)

        self._fetch_shipments(shipments)
        self._fetch_lookups(LOOKUP_INVENTORY, inventory)
        self._fetch_lookups(LOOKUP_RETURN, returns)
        self._fetch_lookups(LOOKUP_RECEIVING_ORDER, receiving)
        self._fetch_orders(orders)

    def _fetch_shipments(self, ids: set[str]) -> None:
        missing = [i for i in ids if i not in self._shipments]
        if not missing:
            return
        found = self.db.get_shipments(missing)
        for shipment_id in missing:
            record = found.get(shipment_id)
            self._shipments[shipment_id] = record.client_id if record else None

    def _fetch_lookups(self, kind: str, keys: set[str]) -> None:
        missing = [k for k in keys if (kind, k) not in self._lookups]
        if not missing:
            return
        found = self.db.find_lookup_clients(kind, missing)
        for key in missing:
            self._lookups[(kind, key)] = found.get(key)

    def _fetch_orders(self, numbers: set[str]) -> None:
        missing = [n for n in numbers if n not in self._orders]
        if not missing:
            return
        found = self.db.find_order_clients(missing)
        for number in missing:
            self._orders[number] = found.get(number)

    def _shipment_client(self, shipment_id: str) -> Optional[int]:
        self._fetch_shipments({shipment_id})
        return self._shipments[shipment_id]

    def _lookup_client(self, kind: str, key: str) -> Optional[int]:
        self._fetch_lookups(kind, {key})
        return self._lookups[(kind, key)]

    def _order_client(self, number: str) -> Optional[int]:
        self._fetch_orders({number})
        return self._orders[number]

    # Strategies, in chain order
    def _by_shipment(self, line: CostLine) -> Optional[AttributionResult]:
        if not _refers_to_shipment(line):
            return None
        client_id = self._shipment_client(line.reference_id)
        return AttributionResult(client_id, STRATEGY_SHIPMENT) if client_id else None

    def _by_storage(self, line: CostLine) -> Optional[AttributionResult]:
        if line.reference_type != REFERENCE_STORAGE:
            return None
        item = storage_inventory_id(line.reference_id, line.details)
        if item is None:
            return None
        client_id = self._lookup_client(LOOKUP_INVENTORY, item)
        return AttributionResult(client_id, STRATEGY_STORAGE) if client_id else None

    def _by_return(self, line: CostLine) -> Optional[AttributionResult]:
        if line.reference_type != REFERENCE_RETURN:
            return None
        client_id = self._lookup_client(LOOKUP_RETURN, line.reference_id)
        if client_id is None:
            order = order_number_from_comment(line.details.get("Comment"))
            if order is not None:
                client_id = self._order_client(order)
        return AttributionResult(client_id, STRATEGY_RETURN) if client_id else None

    def _by_receiving(self, line: CostLine) -> Optional[AttributionResult]:
        if line.reference_type not in REFERENCE_RECEIVING:
            return None
        client_id = self._lookup_client(LOOKUP_RECEIVING_ORDER, line.reference_id)
        return AttributionResult(client_id, STRATEGY_RECEIVING) if client_id else None

    def _by_category(self, line: CostLine) -> Optional[AttributionResult]:
        code = self.internal_fee_routes.get(line.fee_type)
        if code is None:
            return None
        if self._internal_clients is None:
            self._internal_clients = {
                c.code.upper(): c.id for c in self.db.list_clients(include_inactive=True) if c.is_internal
            }
        client_id = self._internal_clients.get(code.upper())
        if client_id is None:
            logger.warning(
                "Fee type '%s' routes to internal client '%s', which does not exist", line.fee_type, code
            )
            return None
        return AttributionResult(client_id, STRATEGY_CATEGORY)

    def _by_fuzzy(self, line: CostLine) -> Optional[AttributionResult]:
        text = " ".join(
            str(line.details.get(key) or "") for key in ("Comment", "CreditReason", "Description")
        ).strip()
        if not text:
            return None
        if self._named_clients is None:
            self._named_clients = [
                (c.id, re.compile(rf"(?<!\w){re.escape(c.name)}(?!\w)", re.IGNORECASE))
                for c in self.db.list_clients()
                if not c.is_internal
            ]
        matches = {client_id for client_id, pattern in self._named_clients if pattern.search(text)}
        if len(matches) == 1:
            return AttributionResult(matches.pop(), STRATEGY_FUZZY, needs_review=True)
        if len(matches) > 1:
            logger.info(
                "Transaction reference %s mentions %d clients; leaving unattributed",
                line.reference_id,
                len(matches),
            )
        return None

    def resolve(self, line: CostLine) -> AttributionResult:
        """Attribute one cost line.

        Returns:
            The first strategy's result, or UNATTRIBUTED
        """
        strategies = (
            self._by_shipment,
            self._by_storage,
            self._by_return,
            self._by_receiving,
            self._by_category,
            self._by_fuzzy,
        )
        for strategy in strategies:
            result = strategy(line)
            if result is not None:
                return result
        return UNATTRIBUTED
