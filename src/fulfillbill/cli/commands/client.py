"""Client management commands."""

import click

from fulfillbill.cli.client_resolution import resolve_client_or_exit
from fulfillbill.cli.error_handling import handle_domain_error
from fulfillbill.domain.client import BILLING_CADENCES, ClientService
from fulfillbill.domain.errors import DomainError


@click.group()
def client_group():
    """Manage billed clients."""
    pass


@client_group.command("create")
@click.argument("code")
@click.argument("name")
@click.option(
    "--cadence",
    type=click.Choice(BILLING_CADENCES),
    default="weekly",
    show_default=True,
    help="How often the client is invoiced",
)
@click.option("--currency", default="USD", show_default=True, help="Billing currency")
@click.option("--internal", is_flag=True, help="Internal system client (payments, costs); never invoiced")
@click.pass_context
def create_client(ctx, code: str, name: str, cadence: str, currency: str, internal: bool):
    """Create a client.

    CODE is the short billing code used in invoice numbers.

    Examples:
        fulfillbill client create ACME "Acme Outdoor Co"
        fulfillbill client create PAYMENTS "Payments" --internal
    """
    service = ClientService(ctx.obj["db"])
    try:
        client_id = service.create_client(
            code=code, name=name, billing_cadence=cadence, currency=currency, is_internal=internal
        )
    except DomainError as e:
        handle_domain_error(ctx, e)
    click.echo(f"Created client {code.upper()} '{name}' (ID: {client_id})")


@client_group.command("list")
@click.option("--all", "include_inactive", is_flag=True, help="Include inactive clients")
@click.pass_context
def list_clients(ctx, include_inactive: bool):
    """List clients."""
    service = ClientService(ctx.obj["db"])
    clients = service.list_clients(include_inactive=include_inactive)
    if not clients:
        click.echo("No clients found.")
        return

    click.echo("\nClients:")
    click.echo("-" * 72)
    for c in clients:
        flags = []
        if c.is_internal:
            flags.append("internal")
        if not c.is_active:
            flags.append("inactive")
        suffix = f" [{', '.join(flags)}]" if flags else ""
        click.echo(f"ID: {c.id:3d} | {c.code:12s} | {c.name:28s} | {c.billing_cadence:7s} | {c.currency}{suffix}")


@client_group.command("update")
@click.argument("client")
@click.option("--name", help="New display name")
@click.option("--cadence", type=click.Choice(BILLING_CADENCES), help="New billing cadence")
@click.option("--currency", help="New billing currency")
@click.pass_context
def update_client(ctx, client: str, name: str | None, cadence: str | None, currency: str | None):
    """Update a client.

    CLIENT can be a billing code or ID.
    """
    service = ClientService(ctx.obj["db"])
    client_id = resolve_client_or_exit(ctx, service, client)
    try:
        service.update_client(client_id, name=name, billing_cadence=cadence, currency=currency)
    except DomainError as e:
        handle_domain_error(ctx, e)
    click.echo(f"Updated client {client}")


@client_group.command("deactivate")
@click.argument("client")
@click.pass_context
def deactivate_client(ctx, client: str):
    """Deactivate a client. Its history is kept."""
    service = ClientService(ctx.obj["db"])
    client_id = resolve_client_or_exit(ctx, service, client)
    service.set_active(client_id, False)
    click.echo(f"Deactivated client {client}")


@client_group.command("activate")
@click.argument("client")
@click.pass_context
def activate_client(ctx, client: str):
    """Reactivate a client."""
    service = ClientService(ctx.obj["db"])
    client_id = resolve_client_or_exit(ctx, service, client)
    service.set_active(client_id, True)
    click.echo(f"Activated client {client}")


def register_commands(cli):
    """Register client commands with the main CLI."""
    cli.add_command(client_group, name="client")
