"""Markup rule administration with an audited change history."""

import logging
from datetime import date
from decimal import Decimal
from typing import Any, Optional

from fulfillbill.database.base import Database
from fulfillbill.domain.entities import (
    FEE_CATEGORIES,
    MARKUP_FIXED,
    MARKUP_PERCENTAGE,
    MarkupRule,
    RuleChange,
    RuleConditions,
)
from fulfillbill.domain.errors import (
    NotFoundError,
    ValidationError,
    client_not_found,
    rule_not_found,
)

logger = logging.getLogger(__name__)

MARKUP_KINDS = (MARKUP_PERCENTAGE, MARKUP_FIXED)


class MarkupRuleService:
    """Service for creating, changing and retiring markup rules.

    Every change is recorded in the rule history so a past invoice's pricing
    can be explained after the rule has moved on.
    """

    def __init__(self, db: Database):
        """Initialize markup rule service.

        Args:
            db: Database instance
        """
        self.db = db

    def _validate(
        self,
        fee_category: str,
        kind: str,
        value: Decimal,
        effective_from: date,
        effective_to: Optional[date],
        conditions: Optional[RuleConditions],
    ) -> None:
        if fee_category not in FEE_CATEGORIES:
            raise ValidationError(
                f"Invalid fee category '{fee_category}'. Must be one of: {', '.join(FEE_CATEGORIES)}"
            )
        if kind not in MARKUP_KINDS:
            raise ValidationError(f"Invalid markup kind '{kind}'. Must be one of: {', '.join(MARKUP_KINDS)}")
        if not Decimal(value).is_finite():
            raise ValidationError(f"Invalid markup value: {value}")
        if kind == MARKUP_PERCENTAGE and value <= Decimal("-100"):
            raise ValidationError("Percentage markup must be greater than -100")
        if effective_to is not None and effective_to < effective_from:
            raise ValidationError("effective_to cannot be before effective_from")
        if conditions is not None:
            if conditions.weight_min_oz is not None and conditions.weight_min_oz < 0:
                raise ValidationError("Minimum weight cannot be negative")
            if (
                conditions.weight_min_oz is not None
                and conditions.weight_max_oz is not None
                and conditions.weight_max_oz <= conditions.weight_min_oz
            ):
                raise ValidationError("Maximum weight must be greater than minimum weight")

    def create_rule(
        self,
        name: str,
        fee_category: str,
        kind: str,
        value: Decimal,
        effective_from: date,
        client_id: Optional[int] = None,
        fee_type: Optional[str] = None,
        ship_option_id: Optional[int] = None,
        conditions: Optional[RuleConditions] = None,
        priority: int = 0,
        is_additive: bool = False,
        effective_to: Optional[date] = None,
        description: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> int:
        """Create a markup rule.

        Args:
            name: Rule name
            fee_category: Fee category the rule prices
            kind: "percentage" or "fixed"
            value: Percent (e.g. 15 for 15%) or fixed amount in billing currency
            effective_from: First charge date the rule applies to
            client_id: Owning client, or None for a global rule
            fee_type: Optional raw fee type the rule is limited to
            ship_option_id: Optional service level the rule is limited to
            conditions: Optional weight and destination conditions
            priority: Tie-breaker among equally specific rules (higher wins)
            is_additive: Apply on top of the selected base rule
            effective_to: Last charge date the rule applies to (inclusive)
            description: Free-text description
            reason: Why the rule was created, kept in history

        Returns:
            Rule ID

        Raises:
            ValidationError: If any field is invalid
            NotFoundError: If client doesn't exist
        """
        if not name or not name.strip():
            raise ValidationError("Rule name cannot be empty")
        value = Decimal(value)
        self._validate(fee_category, kind, value, effective_from, effective_to, conditions)
        if client_id is not None and self.db.get_client(client_id) is None:
            raise NotFoundError(client_not_found(client_id))

        rule_id = self.db.create_markup_rule(
            name=name.strip(),
            fee_category=fee_category,
            kind=kind,
            value=value,
            effective_from=effective_from,
            client_id=client_id,
            fee_type=fee_type,
            ship_option_id=ship_option_id,
            conditions=conditions.to_dict() if conditions else None,
            priority=priority,
            is_additive=is_additive,
            effective_to=effective_to,
            description=description,
        )
        rule = self.require_rule(rule_id)
        self.db.add_rule_history(rule_id, "created", None, rule.to_dict(), reason)
        logger.info("Created markup rule %s '%s'", rule_id, rule.name)
        return rule_id

    def get_rule(self, rule_id: int) -> Optional[MarkupRule]:
        """Get markup rule by ID."""
        return self.db.get_markup_rule(rule_id)

    def require_rule(self, rule_id: int) -> MarkupRule:
        """Get markup rule by ID or raise NotFoundError."""
        rule = self.db.get_markup_rule(rule_id)
        if rule is None:
            raise NotFoundError(rule_not_found(rule_id))
        return rule

    def list_rules(
        self, client_id: Optional[int] = None, include_inactive: bool = False
    ) -> list[MarkupRule]:
        """List rules visible to a client (its own plus global), or all rules."""
        return self.db.list_markup_rules(client_id=client_id, include_inactive=include_inactive)

    def update_rule(self, rule_id: int, reason: Optional[str] = None, **changes: Any) -> MarkupRule:
        """Change a rule and record the before and after values.

        Args:
            rule_id: Rule to change
            reason: Why the rule changed, kept in history
            **changes: Fields to change (value, priority, effective_to, conditions, ...)

        Returns:
            The updated rule

        Raises:
            NotFoundError: If rule doesn't exist
            ValidationError: If the resulting rule is invalid
        """
        current = self.require_rule(rule_id)
        if not changes:
            return current

        conditions = changes.get("conditions", current.conditions)
        if "value" in changes:
            changes["value"] = Decimal(changes["value"])
        self._validate(
            changes.get("fee_category", current.fee_category),
            changes.get("kind", current.kind),
            changes.get("value", current.value),
            changes.get("effective_from", current.effective_from),
            changes.get("effective_to", current.effective_to),
            conditions,
        )
        if "conditions" in changes:
            changes["conditions"] = conditions.to_dict() if conditions else None

        self.db.update_markup_rule(rule_id, **changes)
        updated = self.require_rule(rule_id)
        self.db.add_rule_history(rule_id, "updated", current.to_dict(), updated.to_dict(), reason)
        logger.info("Updated markup rule %s: %s", rule_id, ", ".join(sorted(changes)))
        return updated

    def deactivate_rule(self, rule_id: int, reason: Optional[str] = None) -> None:
        """Retire a rule. It stays in history and on already-priced transactions.

        Raises:
            NotFoundError: If rule doesn't exist
        """
        current = self.require_rule(rule_id)
        if not current.is_active:
            return
        self.db.update_markup_rule(rule_id, is_active=False)
        self.db.add_rule_history(
            rule_id, "deactivated", current.to_dict(), self.require_rule(rule_id).to_dict(), reason
        )
        logger.info("Deactivated markup rule %s", rule_id)

    def get_history(self, rule_id: int) -> list[RuleChange]:
        """List a rule's changes, oldest first."""
        self.require_rule(rule_id)
        return self.db.list_rule_history(rule_id)
