"""Lookup record commands used for attribution."""

import click

from fulfillbill.cli.client_resolution import resolve_client_or_exit
from fulfillbill.cli.error_handling import handle_domain_error
from fulfillbill.domain.client import ClientService
from fulfillbill.domain.errors import DomainError
from fulfillbill.domain.lookups import LOOKUP_KINDS, LookupService
from fulfillbill.utils.amount_parser import parse_amount


@click.group()
def lookup_group():
    """Record which client owns provider shipments, inventory, returns and orders."""
    pass


@lookup_group.command("shipment")
@click.argument("shipment_id")
@click.argument("client")
@click.option("--order", "order_number", help="Order number")
@click.option("--ship-option", type=int, help="Service level (ship option ID)")
@click.option("--weight", help="Billable weight in ounces")
@click.option("--state", help="Destination state")
@click.option("--country", help="Destination country")
@click.pass_context
def record_shipment(
    ctx,
    shipment_id: str,
    client: str,
    order_number: str | None,
    ship_option: int | None,
    weight: str | None,
    state: str | None,
    country: str | None,
):
    """Record a shipment and the attributes markup rules match on.

    Examples:
        fulfillbill lookup shipment 312345678 ACME --ship-option 3 --weight 24 --state CA --country US
    """
    db = ctx.obj["db"]
    client_id = resolve_client_or_exit(ctx, ClientService(db), client)
    try:
        weight_oz = parse_amount(weight) if weight is not None else None
    except ValueError as e:
        click.echo(f"Error: Invalid weight: {e}", err=True)
        ctx.exit(1)

    try:
        LookupService(db).record_shipment(
            shipment_id=shipment_id,
            client_id=client_id,
            order_number=order_number,
            ship_option_id=ship_option,
            weight_oz=weight_oz,
            destination_state=state,
            destination_country=country,
        )
    except DomainError as e:
        handle_domain_error(ctx, e)
    click.echo(f"Recorded shipment {shipment_id} for {client}")


@lookup_group.command("add")
@click.argument("kind", type=click.Choice(LOOKUP_KINDS))
@click.argument("key")
@click.argument("client")
@click.pass_context
def add_lookup(ctx, kind: str, key: str, client: str):
    """Record that a provider key belongs to a client.

    Examples:
        fulfillbill lookup add inventory 20777279 ACME
        fulfillbill lookup add receiving_order 872067 ACME
    """
    db = ctx.obj["db"]
    client_id = resolve_client_or_exit(ctx, ClientService(db), client)
    try:
        LookupService(db).record(kind, key, client_id)
    except DomainError as e:
        handle_domain_error(ctx, e)
    click.echo(f"Recorded {kind} {key} for {client}")


def register_commands(cli):
    """Register lookup commands with the main CLI."""
    cli.add_command(lookup_group, name="lookup")
