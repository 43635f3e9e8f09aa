"""Main CLI entry point."""

import click

from fulfillbill.config import load_settings
from fulfillbill.database.factories import create_database, create_sqlite_database
from fulfillbill.logging_config import setup_logging

# Import and register all commands at module level
from fulfillbill.cli.commands import (
    client,
    invoice,
    lookup,
    review,
    rule,
    sync,
)


@click.group()
@click.option(
    "--db-path",
    type=click.Path(),
    help="Database file or SQLAlchemy URL (overrides FULFILLBILL_DB_PATH environment variable)",
    envvar="FULFILLBILL_DB_PATH",
)
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.pass_context
def cli(ctx, db_path: str | None, verbose: bool):
    """Fulfillbill - 3PL client billing.

    Pull provider costs, attribute them to clients, price them with markup
    rules and produce invoices through a generate, review and approve
    workflow.
    """
    ctx.ensure_object(dict)

    # Initialize database connection only when actually running a command
    # (not when showing help)
    if ctx.invoked_subcommand is not None:
        setup_logging(verbose)
        if "settings" not in ctx.obj:
            try:
                ctx.obj["settings"] = load_settings()
            except ValueError as e:
                click.echo(f"Error: {e}", err=True)
                ctx.exit(1)

        db = create_database(db_path) if db_path else create_sqlite_database()
        db.connect()
        db.initialize_schema()
        ctx.call_on_close(db.disconnect)
        ctx.obj["db"] = db


# Register all commands
client.register_commands(cli)
rule.register_commands(cli)
lookup.register_commands(cli)
sync.register_commands(cli)
invoice.register_commands(cli)
review.register_commands(cli)


def main():
    """Main entry point for CLI."""
    cli()


if __name__ == "__main__":
    main()
