"""Factory functions for cost source access."""

from typing import Optional

import httpx

from fulfillbill.config import Settings
from fulfillbill.domain.errors import DependencyError
from fulfillbill.source.adapter import CostSourceAdapter
from fulfillbill.source.api_client import CostSourceClient
from fulfillbill.source.rate_limit import RateLimiter


def create_cost_source_adapter(
    settings: Settings,
    transport: Optional[httpx.BaseTransport] = None,
) -> CostSourceAdapter:
    """Create an adapter wired to the configured billing API.

    Args:
        settings: Application settings
        transport: Optional httpx transport (tests pass a MockTransport)

    Returns:
        CostSourceAdapter instance

    Raises:
        DependencyError: If no API token is configured
    """
    if not settings.api_token and transport is None:
        raise DependencyError("No cost source API token configured; set FULFILLBILL_API_TOKEN")

    client = CostSourceClient(
        base_url=settings.api_base_url,
        token=settings.api_token,
        api_version=settings.api_version,
        timeout=settings.api_timeout,
        max_retries=settings.max_retries,
        retry_delay=settings.retry_delay,
        rate_limiter=RateLimiter(settings.requests_per_minute, settings.rate_margin),
        transport=transport,
    )
    return CostSourceAdapter(client, settings)
