"""Markup rule commands."""

from datetime import date
from decimal import Decimal

import click

from fulfillbill.cli.client_resolution import resolve_client_or_exit
from fulfillbill.cli.error_handling import handle_domain_error
from fulfillbill.domain.client import ClientService
from fulfillbill.domain.entities import FEE_CATEGORIES, MARKUP_FIXED, MARKUP_PERCENTAGE, RuleConditions
from fulfillbill.domain.errors import DomainError
from fulfillbill.domain.markup import WEIGHT_BRACKETS
from fulfillbill.domain.rules import MarkupRuleService
from fulfillbill.utils.amount_parser import parse_amount
from fulfillbill.utils.date_parser import parse_date


def _parse_date_or_exit(ctx: click.Context, value: str | None, label: str) -> date | None:
    if value is None:
        return None
    try:
        return parse_date(value)
    except ValueError as e:
        click.echo(f"Error: Invalid {label}: {e}", err=True)
        ctx.exit(1)


def _parse_decimal_or_exit(ctx: click.Context, value: str | None, label: str) -> Decimal | None:
    if value is None:
        return None
    try:
        return parse_amount(value)
    except ValueError as e:
        click.echo(f"Error: Invalid {label}: {e}", err=True)
        ctx.exit(1)


def _build_conditions(
    ctx: click.Context,
    bracket: str | None,
    weight_min: str | None,
    weight_max: str | None,
    states: tuple[str, ...],
    countries: tuple[str, ...],
) -> RuleConditions | None:
    minimum = _parse_decimal_or_exit(ctx, weight_min, "minimum weight")
    maximum = _parse_decimal_or_exit(ctx, weight_max, "maximum weight")
    if bracket is not None:
        minimum, maximum = WEIGHT_BRACKETS[bracket]
    if minimum is None and maximum is None and not states and not countries:
        return None
    return RuleConditions(
        weight_min_oz=minimum,
        weight_max_oz=maximum,
        states=tuple(s.upper() for s in states),
        countries=tuple(c.upper() for c in countries),
    )


def _describe(rule) -> str:
    amount = f"{rule.value}%" if rule.kind == MARKUP_PERCENTAGE else f"+{rule.value}"
    scope = f"client {rule.client_id}" if rule.client_id is not None else "global"
    parts = [f"ID: {rule.id:3d}", f"{rule.name:24s}", f"{rule.fee_category:20s}", f"{amount:>8s}", scope]
    if rule.fee_type:
        parts.append(f"fee '{rule.fee_type}'")
    if rule.ship_option_id is not None:
        parts.append(f"ship option {rule.ship_option_id}")
    if rule.conditions is not None:
        parts.append(f"conditions {rule.conditions.to_dict()}")
    if rule.priority:
        parts.append(f"priority {rule.priority}")
    if rule.is_additive:
        parts.append("additive")
    window = f"from {rule.effective_from}"
    if rule.effective_to:
        window += f" to {rule.effective_to}"
    parts.append(window)
    if not rule.is_active:
        parts.append("[inactive]")
    return " | ".join(parts)


@click.group()
def rule_group():
    """Manage markup rules."""
    pass


@rule_group.command("create")
@click.argument("name")
@click.option("--category", "fee_category", type=click.Choice(FEE_CATEGORIES), required=True, help="Fee category")
@click.option("--percent", "percent", help="Percentage markup, e.g. 15 for 15%")
@click.option("--fixed", "fixed", help="Fixed markup per transaction")
@click.option("--client", help="Client code or ID (omit for a global rule)")
@click.option("--fee-type", help="Limit to one raw fee type, e.g. 'Per Pick Fee'")
@click.option("--ship-option", type=int, help="Limit to one service level (ship option ID)")
@click.option("--bracket", type=click.Choice(list(WEIGHT_BRACKETS)), help="Named weight bracket")
@click.option("--weight-min", help="Minimum weight in ounces (inclusive)")
@click.option("--weight-max", help="Maximum weight in ounces (exclusive)")
@click.option("--state", "states", multiple=True, help="Destination state (repeatable)")
@click.option("--country", "countries", multiple=True, help="Destination country (repeatable)")
@click.option("--priority", type=int, default=0, show_default=True, help="Tie-breaker among equally specific rules")
@click.option("--additive", is_flag=True, help="Apply on top of the selected base rule")
@click.option("--from", "effective_from", default="today", show_default=True, help="Effective from date")
@click.option("--to", "effective_to", help="Effective to date (inclusive)")
@click.option("--description", help="Free-text description")
@click.option("--reason", help="Why the rule is being added (kept in history)")
@click.pass_context
def create_rule(
    ctx,
    name: str,
    fee_category: str,
    percent: str | None,
    fixed: str | None,
    client: str | None,
    fee_type: str | None,
    ship_option: int | None,
    bracket: str | None,
    weight_min: str | None,
    weight_max: str | None,
    states: tuple[str, ...],
    countries: tuple[str, ...],
    priority: int,
    additive: bool,
    effective_from: str,
    effective_to: str | None,
    description: str | None,
    reason: str | None,
):
    """Create a markup rule.

    Exactly one of --percent or --fixed is required.

    Examples:
        fulfillbill rule create "Standard shipping" --category shipping --percent 15
        fulfillbill rule create "Heavy parcel" --category shipping --fixed 2.00 --bracket 5-10lbs --additive
        fulfillbill rule create "ACME picks" --client ACME --category additional_services --fee-type "Per Pick Fee" --fixed 0.10
    """
    if (percent is None) == (fixed is None):
        click.echo("Error: Provide exactly one of --percent or --fixed", err=True)
        ctx.exit(1)

    db = ctx.obj["db"]
    client_id = resolve_client_or_exit(ctx, ClientService(db), client) if client else None
    kind = MARKUP_PERCENTAGE if percent is not None else MARKUP_FIXED
    value = _parse_decimal_or_exit(ctx, percent if percent is not None else fixed, "markup value")
    conditions = _build_conditions(ctx, bracket, weight_min, weight_max, states, countries)

    service = MarkupRuleService(db)
    try:
        rule_id = service.create_rule(
            name=name,
            fee_category=fee_category,
            kind=kind,
            value=value,
            effective_from=_parse_date_or_exit(ctx, effective_from, "--from date"),
            effective_to=_parse_date_or_exit(ctx, effective_to, "--to date"),
            client_id=client_id,
            fee_type=fee_type,
            ship_option_id=ship_option,
            conditions=conditions,
            priority=priority,
            is_additive=additive,
            description=description,
            reason=reason,
        )
    except DomainError as e:
        handle_domain_error(ctx, e)
    click.echo(f"Created markup rule '{name}' (ID: {rule_id})")


@rule_group.command("list")
@click.option("--client", help="Show rules visible to this client (its own plus global)")
@click.option("--all", "include_inactive", is_flag=True, help="Include inactive rules")
@click.pass_context
def list_rules(ctx, client: str | None, include_inactive: bool):
    """List markup rules."""
    db = ctx.obj["db"]
    client_id = resolve_client_or_exit(ctx, ClientService(db), client) if client else None
    rules = MarkupRuleService(db).list_rules(client_id=client_id, include_inactive=include_inactive)
    if not rules:
        click.echo("No markup rules found.")
        return

    click.echo("\nMarkup rules:")
    click.echo("-" * 100)
    for r in rules:
        click.echo(_describe(r))


@rule_group.command("show")
@click.argument("rule_id", type=int)
@click.pass_context
def show_rule(ctx, rule_id: int):
    """Show a rule and its change history."""
    service = MarkupRuleService(ctx.obj["db"])
    try:
        rule = service.require_rule(rule_id)
        history = service.get_history(rule_id)
    except DomainError as e:
        handle_domain_error(ctx, e)

    click.echo(_describe(rule))
    if rule.description:
        click.echo(f"  {rule.description}")
    click.echo("\nHistory:")
    for change in history:
        line = f"  {change.changed_at:%Y-%m-%d %H:%M} {change.change_type}"
        if change.reason:
            line += f": {change.reason}"
        click.echo(line)
        if change.previous and change.current:
            for key in sorted(change.current):
                if change.previous.get(key) != change.current.get(key):
                    click.echo(f"      {key}: {change.previous.get(key)} -> {change.current.get(key)}")


@rule_group.command("update")
@click.argument("rule_id", type=int)
@click.option("--name", help="New name")
@click.option("--value", help="New percentage or fixed amount")
@click.option("--priority", type=int, help="New priority")
@click.option("--to", "effective_to", help="New effective-to date")
@click.option("--description", help="New description")
@click.option("--reason", help="Why the rule is changing (kept in history)")
@click.pass_context
def update_rule(
    ctx,
    rule_id: int,
    name: str | None,
    value: str | None,
    priority: int | None,
    effective_to: str | None,
    description: str | None,
    reason: str | None,
):
    """Change a markup rule. Every change is recorded in its history."""
    changes = {}
    if name is not None:
        changes["name"] = name
    if value is not None:
        changes["value"] = _parse_decimal_or_exit(ctx, value, "markup value")
    if priority is not None:
        changes["priority"] = priority
    if effective_to is not None:
        changes["effective_to"] = _parse_date_or_exit(ctx, effective_to, "--to date")
    if description is not None:
        changes["description"] = description
    if not changes:
        click.echo("Nothing to update.")
        return

    try:
        MarkupRuleService(ctx.obj["db"]).update_rule(rule_id, reason=reason, **changes)
    except DomainError as e:
        handle_domain_error(ctx, e)
    click.echo(f"Updated markup rule {rule_id}")


@rule_group.command("deactivate")
@click.argument("rule_id", type=int)
@click.option("--reason", help="Why the rule is retired (kept in history)")
@click.pass_context
def deactivate_rule(ctx, rule_id: int, reason: str | None):
    """Retire a markup rule."""
    try:
        MarkupRuleService(ctx.obj["db"]).deactivate_rule(rule_id, reason=reason)
    except DomainError as e:
        handle_domain_error(ctx, e)
    click.echo(f"Deactivated markup rule {rule_id}")


def register_commands(cli):
    """Register rule commands with the main CLI."""
    cli.add_command(rule_group, name="rule")
