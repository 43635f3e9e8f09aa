"""Domain layer for fulfillbill: billing rules, reconciliation and invoicing."""
