"""Invoice generation and approval commands."""

from datetime import date

import click

from fulfillbill.cli.client_resolution import resolve_client_or_exit
from fulfillbill.cli.error_handling import EXIT_ALREADY_FINALIZED, EXIT_BLOCKED, EXIT_ERROR, handle_domain_error
from fulfillbill.domain.client import BILLING_CADENCES, ClientService
from fulfillbill.domain.entities import INVOICE_APPROVED, INVOICE_DRAFT, INVOICE_SENT, INVOICE_SUPERSEDED, Invoice
from fulfillbill.domain.errors import DomainError
from fulfillbill.domain.invoice import InvoiceService
from fulfillbill.utils.date_parser import BILLING_PERIODS, get_date_range, parse_date

INVOICE_STATUSES = (INVOICE_DRAFT, INVOICE_APPROVED, INVOICE_SENT, INVOICE_SUPERSEDED)


def _service(ctx: click.Context) -> InvoiceService:
    return InvoiceService(ctx.obj["db"], ctx.obj["settings"])


def _resolve_period(
    ctx: click.Context, start_date: str | None, end_date: str | None, period: str | None
) -> tuple[date, date]:
    """Resolve --from/--to or --period into a date range, or exit."""
    if period is not None:
        if start_date is not None or end_date is not None:
            click.echo("Error: Use either --period or --from/--to, not both", err=True)
            ctx.exit(1)
        return get_date_range(period)
    if start_date is None or end_date is None:
        click.echo("Error: Provide --period or both --from and --to", err=True)
        ctx.exit(1)
    try:
        return parse_date(start_date), parse_date(end_date)
    except ValueError as e:
        click.echo(f"Error: {e}", err=True)
        ctx.exit(1)


def _find_or_exit(ctx: click.Context, service: InvoiceService, reference: str) -> Invoice:
    try:
        return service.find_invoice(reference)
    except DomainError as e:
        handle_domain_error(ctx, e)


def _summary(invoice: Invoice) -> str:
    return (
        f"{invoice.invoice_number} [{invoice.status}] v{invoice.version} | "
        f"{invoice.period_start} to {invoice.period_end} | "
        f"{invoice.line_count} lines | cost {invoice.subtotal} | "
        f"markup {invoice.total_markup} | total {invoice.total_amount}"
    )


period_options = [
    click.option("--from", "start_date", help="First source invoice date (e.g. 2025-03-03, 'last monday')"),
    click.option("--to", "end_date", help="Last source invoice date"),
    click.option("--period", type=click.Choice(BILLING_PERIODS), help="Named period instead of --from/--to"),
]


def with_period_options(func):
    for option in reversed(period_options):
        func = option(func)
    return func


@click.group()
def invoice_group():
    """Generate, review and finalize client invoices."""
    pass


@invoice_group.command("preflight")
@click.argument("client")
@with_period_options
@click.pass_context
def preflight_invoice(ctx, client: str, start_date: str | None, end_date: str | None, period: str | None):
    """Check data completeness before generating an invoice.

    Exits with code 2 when generation would be blocked.

    Examples:
        fulfillbill invoice preflight ACME --period last-week
    """
    period_start, period_end = _resolve_period(ctx, start_date, end_date, period)
    client_id = resolve_client_or_exit(ctx, ClientService(ctx.obj["db"]), client)
    try:
        report = _service(ctx).preflight_period(client_id, period_start, period_end)
    except DomainError as e:
        handle_domain_error(ctx, e)

    click.echo(f"Pre-flight for {client} ({period_start} to {period_end}): {report.transaction_count} transactions")
    for completeness in report.fields:
        percent = 100 - completeness.missing_ratio * 100
        click.echo(f"  {completeness.category:20s} {completeness.field:20s} {percent:6.1f}% complete")
    for issue in report.warnings:
        click.echo(f"Warning: {issue.message}")
    if not report.passed:
        for issue in report.blocking:
            click.echo(f"Blocking: {issue.message}", err=True)
        ctx.exit(EXIT_BLOCKED)
    click.echo("Pre-flight passed")


@invoice_group.command("generate")
@click.argument("client")
@with_period_options
@click.option("--invoice-date", help="Date printed on the invoice (defaults to today)")
@click.pass_context
def generate_invoice(
    ctx, client: str, start_date: str | None, end_date: str | None, period: str | None, invoice_date: str | None
):
    """Generate a draft invoice for a client.

    Summarizes the client's unbilled transactions on closed source
    invoices dated within the period. An existing draft for the same
    period is regenerated.

    Examples:
        fulfillbill invoice generate ACME --from 2025-03-03 --to 2025-03-03
        fulfillbill invoice generate ACME --period last-week
    """
    period_start, period_end = _resolve_period(ctx, start_date, end_date, period)
    client_id = resolve_client_or_exit(ctx, ClientService(ctx.obj["db"]), client)
    try:
        printed_date = parse_date(invoice_date) if invoice_date else None
    except ValueError as e:
        click.echo(f"Error: {e}", err=True)
        ctx.exit(1)

    try:
        invoice = _service(ctx).generate(client_id, period_start, period_end, invoice_date=printed_date)
    except DomainError as e:
        handle_domain_error(ctx, e)
    click.echo(f"Generated draft {_summary(invoice)}")


@invoice_group.command("generate-all")
@with_period_options
@click.option(
    "--cadence",
    type=click.Choice(BILLING_CADENCES),
    help="Clients to bill (defaults to monthly for periods longer than a week, else weekly)",
)
@click.option("--invoice-date", help="Date printed on the invoices (defaults to today)")
@click.pass_context
def generate_all_invoices(
    ctx,
    start_date: str | None,
    end_date: str | None,
    period: str | None,
    cadence: str | None,
    invoice_date: str | None,
):
    """Generate drafts for every active client on a billing cadence.

    Blocked clients are listed with their reasons and do not stop the
    rest. Exits with code 2 when any client was blocked.

    Examples:
        fulfillbill invoice generate-all --period last-week
        fulfillbill invoice generate-all --period last-month --cadence monthly
    """
    period_start, period_end = _resolve_period(ctx, start_date, end_date, period)
    try:
        printed_date = parse_date(invoice_date) if invoice_date else None
    except ValueError as e:
        click.echo(f"Error: {e}", err=True)
        ctx.exit(1)

    try:
        batch = _service(ctx).generate_all(period_start, period_end, invoice_date=printed_date, cadence=cadence)
    except DomainError as e:
        handle_domain_error(ctx, e)

    click.echo(f"Generating {batch.cadence} invoices for {period_start} to {period_end}")
    for invoice in batch.generated:
        click.echo(f"Generated draft {_summary(invoice)}")
    for code, reason in batch.skipped.items():
        click.echo(f"Skipped {code}: {reason}")
    for code, reasons in batch.blocked.items():
        click.echo(f"Blocked {code}:", err=True)
        for reason in reasons:
            click.echo(f"  - {reason}", err=True)
    for code, error in batch.errors.items():
        click.echo(f"Failed {code}: {error}", err=True)

    click.echo(
        f"\n{len(batch.generated)} generated, {len(batch.skipped)} skipped, "
        f"{len(batch.blocked)} blocked, {len(batch.errors)} failed"
    )
    if batch.errors:
        ctx.exit(EXIT_ERROR)
    if batch.blocked:
        ctx.exit(EXIT_BLOCKED)


@invoice_group.command("regenerate")
@click.argument("invoice")
@click.pass_context
def regenerate_invoice(ctx, invoice: str):
    """Re-price a draft invoice as a new version.

    INVOICE can be an invoice number or ID.
    """
    service = _service(ctx)
    found = _find_or_exit(ctx, service, invoice)
    try:
        updated = service.regenerate(found.id)
    except DomainError as e:
        handle_domain_error(ctx, e)
    click.echo(f"Regenerated {_summary(updated)}")


@invoice_group.command("verify")
@click.argument("invoice")
@click.option("--version", type=int, help="Snapshot version (defaults to latest)")
@click.pass_context
def verify_invoice(ctx, invoice: str, version: int | None):
    """Re-check an invoice's lines against the current markup rules.

    Reports arithmetic errors, lines priced with the wrong or no rule, and
    totals that do not add up. Exits with code 2 when errors are found.
    """
    service = _service(ctx)
    found = _find_or_exit(ctx, service, invoice)
    try:
        report = service.verify(found.id, version)
    except DomainError as e:
        handle_domain_error(ctx, e)

    click.echo(f"Verifying {found.invoice_number} version {report.version}: {len(report.issues)} issue(s)")
    for issue in report.warnings:
        click.echo(f"Warning [{issue.kind}]: {issue.message}")
    for issue in report.errors:
        click.echo(f"Error [{issue.kind}]: {issue.message}", err=True)
    if not report.passed:
        ctx.exit(EXIT_BLOCKED)
    click.echo("Verification passed")


@invoice_group.command("approve")
@click.argument("invoice")
@click.option("--version", "expected_version", type=int, help="Version you reviewed; refuses if the draft changed since")
@click.pass_context
def approve_invoice(ctx, invoice: str, expected_version: int | None):
    """Approve a draft invoice exactly as last generated.

    Approving an already approved invoice changes nothing and exits with
    code 4.
    """
    service = _service(ctx)
    found = _find_or_exit(ctx, service, invoice)
    try:
        result = service.approve(found.id, expected_version=expected_version)
    except DomainError as e:
        handle_domain_error(ctx, e)

    if result.already_approved:
        click.echo(f"Invoice {result.invoice.invoice_number} is already {result.invoice.status}; nothing to do")
        ctx.exit(EXIT_ALREADY_FINALIZED)
    click.echo(f"Approved {_summary(result.invoice)}")


@invoice_group.command("send")
@click.argument("invoice")
@click.pass_context
def send_invoice(ctx, invoice: str):
    """Mark an approved invoice as sent."""
    service = _service(ctx)
    found = _find_or_exit(ctx, service, invoice)
    try:
        sent = service.send(found.id)
    except DomainError as e:
        handle_domain_error(ctx, e)
    click.echo(f"Sent {sent.invoice_number}")


@invoice_group.command("reissue")
@click.argument("invoice")
@click.pass_context
def reissue_invoice(ctx, invoice: str):
    """Open a corrected draft replacing an approved invoice.

    The original is superseded once the correction is approved.
    """
    service = _service(ctx)
    found = _find_or_exit(ctx, service, invoice)
    try:
        draft = service.reissue(found.id)
    except DomainError as e:
        handle_domain_error(ctx, e)
    click.echo(f"Opened reissue {_summary(draft)}")


@invoice_group.command("show")
@click.argument("invoice")
@click.option("--version", type=int, help="Snapshot version (defaults to latest)")
@click.option("--lines", "show_lines", is_flag=True, help="List every line item")
@click.pass_context
def show_invoice(ctx, invoice: str, version: int | None, show_lines: bool):
    """Show an invoice and its category totals."""
    service = _service(ctx)
    found = _find_or_exit(ctx, service, invoice)
    try:
        snapshot = service.get_snapshot(found.id, version)
    except DomainError as e:
        handle_domain_error(ctx, e)

    client = ClientService(ctx.obj["db"]).get_client(found.client_id)
    click.echo(_summary(found))
    click.echo(f"Client: {client.code} ({client.name})" if client else f"Client: {found.client_id}")
    click.echo(f"Invoice date: {found.invoice_date}")
    click.echo(f"Source invoices: {', '.join(str(r) for r in snapshot.source_invoice_ids)}")
    click.echo(f"Snapshot: version {snapshot.version}, generated {snapshot.generated_at:%Y-%m-%d %H:%M}")
    if found.approved_version is not None:
        click.echo(f"Approved version: {found.approved_version}")

    click.echo("\nBy category:")
    click.echo("-" * 70)
    for category, totals in snapshot.totals.by_category.items():
        click.echo(
            f"{category:20s} {totals.line_count:6d} lines  cost {totals.cost:>10}  "
            f"markup {totals.markup:>9}  billed {totals.billed:>10}"
        )
    click.echo("-" * 70)
    click.echo(f"{'Total':20s} {snapshot.totals.line_count:6d} lines  billed {snapshot.totals.total_amount:>10}")

    if show_lines:
        click.echo("\nLines:")
        for line in snapshot.lines:
            click.echo(
                f"  {line.charge_date} {line.transaction_id:14s} {line.line_category:20s} "
                f"{line.fee_type:28s} {line.reference_id:14s} {line.raw_cost:>9} -> {line.billed_amount:>9}"
            )


@invoice_group.command("list")
@click.option("--client", help="Only invoices for this client")
@click.option("--status", type=click.Choice(INVOICE_STATUSES), help="Only invoices in this status")
@click.pass_context
def list_invoices(ctx, client: str | None, status: str | None):
    """List invoices, newest first."""
    client_id = resolve_client_or_exit(ctx, ClientService(ctx.obj["db"]), client) if client else None
    invoices = _service(ctx).list_invoices(client_id=client_id, status=status)
    if not invoices:
        click.echo("No invoices found.")
        return
    for inv in invoices:
        click.echo(_summary(inv))


def register_commands(cli):
    """Register invoice commands with the main CLI."""
    cli.add_command(invoice_group, name="invoice")
