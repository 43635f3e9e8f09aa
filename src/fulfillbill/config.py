"""Runtime settings, read from environment variables."""

import json
import os
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Mapping, Optional

from fulfillbill.domain.entities import CATEGORY_SHIPPING

ENV_PREFIX = "FULFILLBILL_"

DEFAULT_INTERNAL_FEE_ROUTES = {
    "Payment": "PAYMENTS",
    "Credit Card Processing Fee": "COSTS",
}


@dataclass(frozen=True)
class Settings:
    """Application settings.

    Defaults match the cost source's documented limits; every value can be
    overridden with a ``FULFILLBILL_*`` environment variable.
    """

    db_path: Optional[str] = None
    api_base_url: str = "https://api.shipbob.com"
    api_token: Optional[str] = None
    api_version: str = "2025-07"
    api_timeout: float = 30.0
    max_retries: int = 3
    retry_delay: float = 1.0
    retention_days: int = 7
    page_size: int = 1000
    requests_per_minute: int = 150
    rate_margin: float = 0.8
    lookup_batch_size: int = 50
    batch_size: int = 200
    warn_missing_ratio: Decimal = Decimal("0.01")
    block_missing_ratio: Decimal = Decimal("0.05")
    invoice_prefix: str = "JP"
    internal_fee_routes: Mapping[str, str] = field(
        default_factory=lambda: dict(DEFAULT_INTERNAL_FEE_ROUTES)
    )
    void_categories: tuple[str, ...] = (CATEGORY_SHIPPING,)
    job_lease_seconds: int = 900
    job_budget_seconds: int = 600


def _get(environ: Mapping[str, str], name: str) -> Optional[str]:
    value = environ.get(ENV_PREFIX + name)
    if value is None or not value.strip():
        return None
    return value.strip()


def load_settings(environ: Optional[Mapping[str, str]] = None) -> Settings:
    """Build Settings from the environment.

    Args:
        environ: Mapping to read from (defaults to os.environ)

    Returns:
        Settings instance

    Raises:
        ValueError: If a variable is set but cannot be parsed
    """
    if environ is None:
        environ = os.environ

    overrides: dict = {}
    converters = {
        "DB_PATH": ("db_path", str),
        "API_BASE_URL": ("api_base_url", str),
        "API_TOKEN": ("api_token", str),
        "API_VERSION": ("api_version", str),
        "API_TIMEOUT": ("api_timeout", float),
        "MAX_RETRIES": ("max_retries", int),
        "RETRY_DELAY": ("retry_delay", float),
        "RETENTION_DAYS": ("retention_days", int),
        "PAGE_SIZE": ("page_size", int),
        "REQUESTS_PER_MINUTE": ("requests_per_minute", int),
        "RATE_MARGIN": ("rate_margin", float),
        "LOOKUP_BATCH_SIZE": ("lookup_batch_size", int),
        "BATCH_SIZE": ("batch_size", int),
        "WARN_MISSING_RATIO": ("warn_missing_ratio", Decimal),
        "BLOCK_MISSING_RATIO": ("block_missing_ratio", Decimal),
        "INVOICE_PREFIX": ("invoice_prefix", str),
        "JOB_LEASE_SECONDS": ("job_lease_seconds", int),
        "JOB_BUDGET_SECONDS": ("job_budget_seconds", int),
    }
    for env_name, (attr, convert) in converters.items():
        raw = _get(environ, env_name)
        if raw is None:
            continue
        try:
            overrides[attr] = convert(raw)
        except (ValueError, ArithmeticError) as e:
            raise ValueError(f"Invalid value for {ENV_PREFIX}{env_name}: {raw!r}") from e

    routes = _get(environ, "INTERNAL_FEE_ROUTES")
    if routes is not None:
        try:
            parsed = json.loads(routes)
        except json.JSONDecodeError as e:
            raise ValueError(f"{ENV_PREFIX}INTERNAL_FEE_ROUTES must be a JSON object: {e}") from e
        if not isinstance(parsed, dict):
            raise ValueError(f"{ENV_PREFIX}INTERNAL_FEE_ROUTES must be a JSON object")
        overrides["internal_fee_routes"] = {str(k): str(v) for k, v in parsed.items()}

    categories = _get(environ, "VOID_CATEGORIES")
    if categories is not None:
        overrides["void_categories"] = tuple(c.strip() for c in categories.split(",") if c.strip())

    return Settings(**overrides)
