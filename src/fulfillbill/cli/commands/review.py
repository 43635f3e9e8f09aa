"""Review flag commands."""

import click

from fulfillbill.cli.error_handling import handle_domain_error
from fulfillbill.domain.errors import DomainError
from fulfillbill.domain.review import ReviewService


@click.group()
def review_group():
    """Inspect and resolve items held for manual review."""
    pass


@review_group.command("list")
@click.option("--kind", help="Only flags of this kind (e.g. reconciliation_mismatch)")
@click.option("--all", "include_resolved", is_flag=True, help="Include resolved flags")
@click.pass_context
def list_flags(ctx, kind: str | None, include_resolved: bool):
    """List review flags."""
    flags = ReviewService(ctx.obj["db"]).list_flags(kind=kind, include_resolved=include_resolved)
    if not flags:
        click.echo("No review flags.")
        return
    for flag in flags:
        state = "resolved" if flag.is_resolved else "open"
        click.echo(f"ID: {flag.id:4d} | {flag.kind:26s} | {state:8s} | {flag.subject:14s} | {flag.message}")


@review_group.command("resolve")
@click.argument("flag_id", type=int)
@click.pass_context
def resolve_flag(ctx, flag_id: int):
    """Resolve a review flag.

    Resolving a reconciliation mismatch releases approval of invoices that
    summarize the affected source invoice.
    """
    try:
        ReviewService(ctx.obj["db"]).resolve(flag_id)
    except DomainError as e:
        handle_domain_error(ctx, e)
    click.echo(f"Resolved review flag {flag_id}")


def register_commands(cli):
    """Register review commands with the main CLI."""
    cli.add_command(review_group, name="review")
