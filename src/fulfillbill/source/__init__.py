"""Cost source access: billing API client, adapter and breakdown file reader."""

from fulfillbill.source.adapter import CostSourceAdapter
from fulfillbill.source.api_client import CostSourceClient
from fulfillbill.source.factories import create_cost_source_adapter

__all__ = ["CostSourceAdapter", "CostSourceClient", "create_cost_source_adapter"]
