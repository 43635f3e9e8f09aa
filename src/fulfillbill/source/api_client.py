"""HTTP client for the cost source's billing API.

The billing API has three endpoint shapes:

- ``POST /{version}/transactions:query`` for open (not yet invoiced)
  transactions and batched reference lookups. Its cursor pagination is
  unreliable, so open queries post a single request at the maximum page
  size and never follow the cursor.
- ``GET /{version}/invoices`` for closed invoice metadata, filterable by
  date, with a cursor that is followed.
- ``GET /{version}/invoices/{id}/transactions`` for the detail of one
  closed invoice, available only inside the retention window. Its cursor
  is followed until a page yields no new transaction ids.

Transport errors, 429 and 5xx responses are retried with exponential
backoff. Once retries are exhausted a TransientSourceError is raised.
"""

import logging
import time
from datetime import date
from typing import Any, Callable, Iterable, Optional

import httpx

from fulfillbill.domain.errors import PermanentDataGapError, SourceError, TransientSourceError
from fulfillbill.source.rate_limit import RateLimiter

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 1000
RETRYABLE_STATUS = frozenset({429, 500, 502, 503, 504})
GONE_STATUS = frozenset({404, 410})


def _items(payload: Any) -> list[dict[str, Any]]:
    """Extract records from either a bare list or an ``{"items": [...]}`` page."""
    if isinstance(payload, list):
        return payload
    if isinstance(payload, dict):
        return payload.get("items") or []
    return []


def _next_cursor(payload: Any) -> Optional[str]:
    if isinstance(payload, dict):
        return payload.get("next") or None
    return None


class CostSourceClient:
    """Synchronous client for the cost source billing API."""

    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        api_version: str = "2025-07",
        timeout: float = 30.0,
        max_retries: int = 3,
        retry_delay: float = 1.0,
        rate_limiter: Optional[RateLimiter] = None,
        transport: Optional[httpx.BaseTransport] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """Initialize the client.

        Args:
            base_url: API root, e.g. https://api.shipbob.com
            token: Bearer token
            api_version: Version segment prefixed to every path
            timeout: Request timeout in seconds
            max_retries: Attempts per request before giving up
            retry_delay: Initial delay between retries in seconds
            rate_limiter: Request budget shared by every call
            transport: httpx transport override (tests use MockTransport)
            sleep: Sleep function used between retries
        """
        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self.api_version = api_version
        self.max_retries = max(1, max_retries)
        self.retry_delay = retry_delay
        self.rate_limiter = rate_limiter
        self.sleep = sleep
        self._client = httpx.Client(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    def close(self) -> None:
        """Close the underlying HTTP connection pool."""
        self._client.close()

    def __enter__(self) -> "CostSourceClient":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def _path(self, endpoint: str) -> str:
        return f"/{self.api_version}/{endpoint.lstrip('/')}"

    def _request(
        self,
        method: str,
        endpoint: str,
        params: Optional[dict[str, Any]] = None,
        json: Optional[dict[str, Any]] = None,
        gone_is_gap: bool = False,
    ) -> Any:
        """Make a request with retry logic.

        Args:
            method: HTTP method
            endpoint: Path below the version segment
            params: Query parameters
            json: JSON body
            gone_is_gap: Treat 404/410 as data that no longer exists

        Returns:
            Decoded JSON body ({} for an empty body)

        Raises:
            TransientSourceError: If retries are exhausted
            PermanentDataGapError: On 404/410 when ``gone_is_gap`` is set
            SourceError: On any other error response
        """
        path = self._path(endpoint)
        last_error = "no attempt made"
        for attempt in range(self.max_retries):
            if self.rate_limiter is not None:
                self.rate_limiter.acquire()
            retry_after = 0.0
            try:
                response = self._client.request(method, path, params=params, json=json)
            except httpx.TransportError as e:
                last_error = f"{type(e).__name__}: {e}"
            else:
                status = response.status_code
                if status in RETRYABLE_STATUS:
                    last_error = f"HTTP {status}"
                    retry_after = _retry_after_seconds(response)
                elif gone_is_gap and status in GONE_STATUS:
                    raise PermanentDataGapError(
                        f"{method} {path} returned HTTP {status}; the data is no longer available"
                    )
                elif response.is_error:
                    raise SourceError(f"{method} {path} returned HTTP {status}: {response.text[:200]}")
                else:
                    if not response.content:
                        return {}
                    try:
                        return response.json()
                    except ValueError as e:
                        raise SourceError(f"{method} {path} returned invalid JSON: {e}") from e

            if attempt < self.max_retries - 1:
                delay = max(self.retry_delay * (2**attempt), retry_after)
                logger.warning(
                    "Request %s %s failed (attempt %d/%d): %s. Retrying in %.1fs",
                    method, path, attempt + 1, self.max_retries, last_error, delay,
                )
                self.sleep(delay)
            else:
                logger.error("Request %s %s failed after %d attempts: %s", method, path, self.max_retries, last_error)

        raise TransientSourceError(f"Cost source unavailable ({method} {path}): {last_error}")

    def query_open_transactions(self) -> list[dict[str, Any]]:
        """Fetch not-yet-invoiced transactions in a single maximum-size page.

        Date filters are ignored by the provider and its cursor repeats
        pages, so the cursor is not followed.
        """
        payload = self._request("POST", "transactions:query", json={"page_size": MAX_PAGE_SIZE})
        items = _items(payload)
        if len(items) >= MAX_PAGE_SIZE:
            logger.warning("Open transaction query returned a full page of %d; some may be missing", len(items))
        return items

    def query_transactions_by_reference(self, reference_ids: Iterable[str]) -> list[dict[str, Any]]:
        """Fetch transactions for a batch of reference ids."""
        ids = [str(r) for r in reference_ids]
        if not ids:
            return []
        payload = self._request(
            "POST",
            "transactions:query",
            json={"reference_ids": ids, "page_size": MAX_PAGE_SIZE},
        )
        return _items(payload)

    def list_invoices(self, start_date: date, end_date: date) -> list[dict[str, Any]]:
        """List closed invoices dated within a range, following the cursor."""
        base_params = {
            "startDate": start_date.isoformat(),
            "endDate": end_date.isoformat(),
            "pageSize": MAX_PAGE_SIZE,
        }
        return self._follow(
            lambda cursor: self._request(
                "GET", "invoices", params={**base_params, **({"cursor": cursor} if cursor else {})}
            ),
            key="invoice_id",
        )

    def get_invoice_transactions(self, invoice_id: int) -> list[dict[str, Any]]:
        """Fetch every transaction of one closed invoice.

        Raises:
            PermanentDataGapError: If the provider no longer holds the detail
        """
        return self._follow(
            lambda cursor: self._request(
                "GET",
                f"invoices/{invoice_id}/transactions",
                params={"pageSize": MAX_PAGE_SIZE, **({"cursor": cursor} if cursor else {})},
                gone_is_gap=True,
            ),
            key="transaction_id",
        )

    def _follow(self, fetch_page: Callable[[Optional[str]], Any], key: str) -> list[dict[str, Any]]:
        records: list[dict[str, Any]] = []
        seen: set[Any] = set()
        cursor: Optional[str] = None
        while True:
            payload = fetch_page(cursor)
            new = 0
            for item in _items(payload):
                item_key = item.get(key)
                if item_key is not None:
                    if item_key in seen:
                        continue
                    seen.add(item_key)
                records.append(item)
                new += 1
            # Repeated pages mean the cursor is broken
            if new == 0:
                break
            cursor = _next_cursor(payload)
            if not cursor:
                break
        return records


def _retry_after_seconds(response: httpx.Response) -> float:
    value = response.headers.get("Retry-After")
    if not value:
        return 0.0
    try:
        return max(0.0, float(value))
    except ValueError:
        return 0.0
