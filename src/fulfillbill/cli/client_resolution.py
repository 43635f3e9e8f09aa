"""CLI helpers for client resolution."""

from __future__ import annotations

import click

from fulfillbill.cli.error_handling import handle_domain_error
from fulfillbill.domain.client import ClientService
from fulfillbill.domain.errors import DomainError
from fulfillbill.utils.client_resolver import resolve_client


def resolve_client_or_exit(ctx: click.Context, client_service: ClientService, client: str | int) -> int:
    """Resolve client code or ID, or exit with a CLI error.

    This keeps error messaging and exit behavior consistent across commands.
    """
    try:
        return resolve_client(client_service, client)
    except DomainError as exc:
        handle_domain_error(ctx, exc)
