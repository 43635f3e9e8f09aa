"""CLI package for fulfillbill."""
