"""Markup rule selection and pricing.

The engine is pure: it reads rules and transactions and returns
MarkupResult values. Persisting a price is left to the caller (the
reconciliation preview pass or invoice approval).

Selection ranks matching base rules by specificity, one point each for a
client-specific scope, a fee type, a ship option, a weight condition and a
destination condition. The highest score wins, then the highest priority.
A remaining tie is an error rather than a coin toss.
"""

from datetime import date
from decimal import Decimal
from typing import Iterable, Optional

from fulfillbill.domain.entities import (
    CATEGORY_SHIPPING,
    MARKUP_PERCENTAGE,
    Client,
    MarkupResult,
    MarkupRule,
    PricingContext,
    Transaction,
)
from fulfillbill.domain.errors import PricingAmbiguityError
from fulfillbill.utils.amount_parser import minor_unit, round_money

HUNDRED = Decimal("100")
ZERO = Decimal("0")

# Named weight brackets in ounces, maximum exclusive
WEIGHT_BRACKETS = {
    "<8oz": (Decimal("0"), Decimal("8")),
    "8-16oz": (Decimal("8"), Decimal("16")),
    "1-5lbs": (Decimal("16"), Decimal("80")),
    "5-10lbs": (Decimal("80"), Decimal("160")),
    "10-15lbs": (Decimal("160"), Decimal("240")),
    "15-20lbs": (Decimal("240"), Decimal("320")),
    "20+lbs": (Decimal("320"), None),
}


def rule_is_effective(rule: MarkupRule, on: date) -> bool:
    """True if the rule is active and its effective range covers the date."""
    if not rule.is_active:
        return False
    if on < rule.effective_from:
        return False
    return rule.effective_to is None or on <= rule.effective_to


def specificity(rule: MarkupRule) -> int:
    """Count the dimensions a rule pins down."""
    score = 0
    if rule.client_id is not None:
        score += 1
    if rule.fee_type is not None:
        score += 1
    if rule.ship_option_id is not None:
        score += 1
    if rule.conditions is not None:
        if rule.conditions.has_weight:
            score += 1
        if rule.conditions.has_destination:
            score += 1
    return score


def rule_matches(
    rule: MarkupRule,
    transaction: Transaction,
    client_id: int,
    context: PricingContext,
) -> bool:
    """True if every constraint the rule sets holds for this transaction.

    A condition on data the context lacks (no weight, no destination) does
    not match.
    """
    if not rule_is_effective(rule, transaction.charge_date):
        return False
    if rule.client_id is not None and rule.client_id != client_id:
        return False
    if rule.fee_category != transaction.fee_category:
        return False
    if rule.fee_type is not None and rule.fee_type != transaction.fee_type:
        return False
    if rule.ship_option_id is not None and rule.ship_option_id != context.ship_option_id:
        return False

    conditions = rule.conditions
    if conditions is None:
        return True
    if conditions.has_weight:
        weight = context.weight_oz
        if weight is None:
            return False
        if conditions.weight_min_oz is not None and weight < conditions.weight_min_oz:
            return False
        if conditions.weight_max_oz is not None and weight >= conditions.weight_max_oz:
            return False
    if conditions.states and (context.state or "").upper() not in conditions.states:
        return False
    if conditions.countries and (context.country or "").upper() not in conditions.countries:
        return False
    return True


def markup_on(rule: Optional[MarkupRule], amount: Decimal, currency: str) -> Decimal:
    """Markup a single rule adds to an amount, rounded to the currency.

    Fixed amounts follow the sign of the amount so refunds mirror charges.
    """
    if rule is None:
        return ZERO
    if rule.kind == MARKUP_PERCENTAGE:
        return round_money(amount * rule.value / HUNDRED, currency)
    fixed = rule.value if amount >= 0 else -rule.value
    return round_money(fixed, currency)


class MarkupEngine:
    """Selects and applies markup rules for one set of candidate rules."""

    def __init__(self, rules: Iterable[MarkupRule]):
        """Initialize markup engine.

        Args:
            rules: Candidate rules (typically a client's rules plus global rules)
        """
        rules = list(rules)
        self.base_rules = [r for r in rules if not r.is_additive]
        self.additive_rules = [r for r in rules if r.is_additive]

    @staticmethod
    def _rank(rule: MarkupRule) -> tuple[int, int]:
        return (specificity(rule), rule.priority)

    def select(
        self,
        transaction: Transaction,
        client: Client,
        context: Optional[PricingContext] = None,
    ) -> Optional[MarkupRule]:
        """Pick the base rule for a transaction.

        Returns:
            The winning rule, or None when no rule applies (billed at cost)

        Raises:
            PricingAmbiguityError: If the best candidates tie on specificity and priority
        """
        context = context or PricingContext()
        candidates = [
            r for r in self.base_rules if rule_matches(r, transaction, client.id, context)
        ]
        if not candidates:
            return None

        best_rank = max(self._rank(r) for r in candidates)
        best = [r for r in candidates if self._rank(r) == best_rank]
        if len(best) > 1:
            raise PricingAmbiguityError(transaction.source_id, [r.id for r in best])
        return best[0]

    def select_additive(
        self,
        transaction: Transaction,
        client: Client,
        context: Optional[PricingContext] = None,
    ) -> list[MarkupRule]:
        """All matching additive rules, most specific first, then by priority and ID."""
        context = context or PricingContext()
        matching = [
            r for r in self.additive_rules if rule_matches(r, transaction, client.id, context)
        ]
        return sorted(matching, key=lambda r: (-specificity(r), -r.priority, r.id))

    def price(
        self,
        transaction: Transaction,
        client: Client,
        context: Optional[PricingContext] = None,
    ) -> MarkupResult:
        """Price one transaction.

        Shipping charges with a cost breakdown are marked up on base cost and
        insurance only; the surcharge passes through at cost. Everything else,
        including shipping without a breakdown, is marked up on the whole
        amount. Additive rules are applied afterwards on the same basis as the
        base rule.

        Raises:
            PricingAmbiguityError: If base rule selection is ambiguous
        """
        currency = transaction.currency or client.currency
        rule = self.select(transaction, client, context)
        extras = self.select_additive(transaction, client, context)

        base_charge = None
        insurance_charge = None
        if transaction.fee_category == CATEGORY_SHIPPING and transaction.has_breakdown:
            base = transaction.base_cost
            surcharge = transaction.surcharge or ZERO
            insurance = transaction.insurance_cost or ZERO
            base_charge = base + markup_on(rule, base, currency)
            insurance_charge = insurance
            if rule is not None and rule.kind == MARKUP_PERCENTAGE:
                insurance_charge = insurance + markup_on(rule, insurance, currency)
            cost_basis = base + surcharge + insurance
            billed = base_charge + surcharge + insurance_charge
            additive_basis = base
            blended = False
        else:
            cost_basis = transaction.amount
            billed = cost_basis + markup_on(rule, cost_basis, currency)
            additive_basis = cost_basis
            blended = transaction.fee_category == CATEGORY_SHIPPING

        for extra in extras:
            billed += markup_on(extra, additive_basis, currency)

        markup_amount = billed - cost_basis
        if rule is not None and rule.kind == MARKUP_PERCENTAGE and not extras:
            percentage = rule.value
        elif cost_basis:
            percentage = (markup_amount / cost_basis * HUNDRED).quantize(Decimal("0.0001"))
        else:
            percentage = ZERO

        quantum = minor_unit(currency)
        return MarkupResult(
            rule_id=rule.id if rule is not None else None,
            additive_rule_ids=tuple(r.id for r in extras),
            markup_percentage=percentage,
            markup_amount=markup_amount.quantize(quantum),
            billed_amount=billed.quantize(quantum),
            cost_basis=cost_basis,
            base_charge=base_charge,
            insurance_charge=insurance_charge,
            blended=blended,
        )

    @staticmethod
    def mirrors_shipment(credit: Transaction, shipment: Transaction) -> bool:
        """True if a credit refunds exactly a shipment's base cost (to the cent)."""
        if credit.reference_id != shipment.reference_id:
            return False
        basis = shipment.base_cost if shipment.base_cost is not None else shipment.amount
        return abs(abs(credit.amount) - abs(basis)) < Decimal("0.01")

    @staticmethod
    def mirror(credit: Transaction, shipment_result: MarkupResult, currency: str) -> MarkupResult:
        """Price a credit at the markup percentage its shipment was billed at."""
        percentage = shipment_result.markup_percentage
        markup_amount = round_money(credit.amount * percentage / HUNDRED, currency)
        return MarkupResult(
            rule_id=shipment_result.rule_id,
            additive_rule_ids=(),
            markup_percentage=percentage,
            markup_amount=markup_amount,
            billed_amount=(credit.amount + markup_amount).quantize(minor_unit(currency)),
            cost_basis=credit.amount,
        )
