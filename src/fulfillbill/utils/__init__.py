"""Utility functions for fulfillbill."""

from fulfillbill.utils.date_parser import parse_date, parse_source_date
from fulfillbill.utils.amount_parser import parse_amount, round_money

__all__ = ["parse_date", "parse_source_date", "parse_amount", "round_money"]
