"""Fulfillbill: 3PL client billing from provider cost data."""

__version__ = "0.1.0"
