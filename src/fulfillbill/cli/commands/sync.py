"""Cost source sync commands."""

from typing import Any

import click

from fulfillbill.cli.error_handling import handle_domain_error
from fulfillbill.domain.errors import DomainError
from fulfillbill.domain.jobs import (
    JOB_PRICE_PREVIEW,
    JOB_REATTRIBUTE,
    JOB_RECONCILE_CLOSED,
    JOB_SYNC_OPEN,
    STATUS_SKIPPED,
    STATUS_TIMED_OUT,
    JobRunner,
    SyncJobs,
)
from fulfillbill.domain.reconciliation import ReconciliationService
from fulfillbill.source.breakdown_file import read_breakdown_file
from fulfillbill.source.factories import create_cost_source_adapter

MAX_ERRORS_SHOWN = 10


def _adapter(ctx: click.Context):
    adapter = ctx.obj.get("adapter")
    if adapter is None:
        try:
            adapter = create_cost_source_adapter(ctx.obj["settings"])
        except DomainError as e:
            handle_domain_error(ctx, e)
        ctx.obj["adapter"] = adapter
    return adapter


def _print_stats(stats: dict[str, Any]) -> None:
    for key, value in stats.items():
        if key == "errors":
            continue
        if isinstance(value, list):
            value = len(value)
        click.echo(f"  {key}: {value}")
    errors = stats.get("errors") or []
    if errors:
        click.echo(f"\nErrors ({len(errors)}):")
        for error in errors[:MAX_ERRORS_SHOWN]:
            click.echo(f"  {error}")
        if len(errors) > MAX_ERRORS_SHOWN:
            click.echo(f"  ... and {len(errors) - MAX_ERRORS_SHOWN} more")


def _run_job(ctx: click.Context, job_name: str, func, budget: int | None) -> None:
    runner = JobRunner(ctx.obj["db"], ctx.obj["settings"])
    try:
        outcome = runner.run(job_name, func, budget_seconds=budget)
    except DomainError as e:
        handle_domain_error(ctx, e)

    if outcome["status"] == STATUS_SKIPPED:
        click.echo(f"{job_name}: already running elsewhere, skipped")
        return
    if outcome["status"] == STATUS_TIMED_OUT:
        click.echo(f"{job_name}: stopped at its time budget; completed work was kept")
        return
    click.echo(f"{job_name}: completed")
    _print_stats(outcome["result"])


budget_option = click.option(
    "--budget", type=int, help="Wall-clock budget in seconds (defaults to FULFILLBILL_JOB_BUDGET_SECONDS)"
)


@click.group()
def sync_group():
    """Pull costs from the provider and keep billing data current."""
    pass


@sync_group.command("open")
@budget_option
@click.pass_context
def sync_open(ctx, budget: int | None):
    """Pull charges the provider has not invoiced yet."""
    jobs = SyncJobs(ctx.obj["db"], _adapter(ctx), ctx.obj["settings"])
    _run_job(ctx, JOB_SYNC_OPEN, jobs.sync_open, budget)


@sync_group.command("reconcile")
@budget_option
@click.pass_context
def sync_reconcile(ctx, budget: int | None):
    """Process closed provider invoices not yet reconciled."""
    jobs = SyncJobs(ctx.obj["db"], _adapter(ctx), ctx.obj["settings"])
    _run_job(ctx, JOB_RECONCILE_CLOSED, jobs.reconcile_closed, budget)


@sync_group.command("reattribute")
@budget_option
@click.pass_context
def sync_reattribute(ctx, budget: int | None):
    """Retry attribution for transactions without a client."""
    reconciliation = ReconciliationService(ctx.obj["db"], ctx.obj["settings"])
    _run_job(ctx, JOB_REATTRIBUTE, lambda deadline: reconciliation.reattribute(deadline=deadline), budget)


@sync_group.command("price")
@budget_option
@click.pass_context
def sync_price(ctx, budget: int | None):
    """Refresh preview markup on unfinalized transactions."""
    reconciliation = ReconciliationService(ctx.obj["db"], ctx.obj["settings"])
    _run_job(ctx, JOB_PRICE_PREVIEW, lambda deadline: reconciliation.apply_preview_markups(deadline=deadline), budget)


@sync_group.command("refs")
@click.argument("reference_ids", nargs=-1, required=True)
@click.pass_context
def sync_refs(ctx, reference_ids: tuple[str, ...]):
    """Re-fetch the transactions of specific references.

    Examples:
        fulfillbill sync refs 312345678 312345679
    """
    jobs = SyncJobs(ctx.obj["db"], _adapter(ctx), ctx.obj["settings"])
    try:
        stats = jobs.refresh_references(list(reference_ids))
    except DomainError as e:
        handle_domain_error(ctx, e)
    _print_stats(stats)
    if stats["deferred"]:
        click.echo(f"Deferred (rate budget): {', '.join(stats['deferred'])}")


@sync_group.command("breakdown")
@click.argument("file_path", type=click.Path(exists=True))
@click.pass_context
def sync_breakdown(ctx, file_path: str):
    """Apply a shipping cost-breakdown file (extras-MMDDYY.csv).

    Fills base cost, surcharge and insurance on matching shipping charges
    and refunds.
    """
    try:
        parsed = read_breakdown_file(file_path)
    except (FileNotFoundError, ValueError) as e:
        click.echo(f"Error: {e}", err=True)
        ctx.exit(1)

    stats = ReconciliationService(ctx.obj["db"], ctx.obj["settings"]).apply_breakdown(parsed["rows"])
    stats["errors"] = parsed["errors"] + stats["errors"]
    click.echo(f"Read {len(parsed['rows'])} breakdown rows")
    _print_stats(stats)


@sync_group.command("all")
@click.pass_context
def sync_all(ctx):
    """Run every periodic job once, each under its own lock."""
    jobs = SyncJobs(ctx.obj["db"], _adapter(ctx), ctx.obj["settings"])
    for job_name, func in (
        (JOB_SYNC_OPEN, jobs.sync_open),
        (JOB_RECONCILE_CLOSED, jobs.reconcile_closed),
        (JOB_REATTRIBUTE, jobs.reattribute),
        (JOB_PRICE_PREVIEW, jobs.price_preview),
    ):
        _run_job(ctx, job_name, func, None)


def register_commands(cli):
    """Register sync commands with the main CLI."""
    cli.add_command(sync_group, name="sync")
