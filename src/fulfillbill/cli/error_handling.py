"""CLI error handling helpers."""

import click

from fulfillbill.domain.errors import (
    AlreadyFinalizedError,
    NotFoundError,
    PermanentDataGapError,
    TransientSourceError,
    ValidationBlockedError,
)

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_BLOCKED = 2
EXIT_NOT_FOUND = 3
EXIT_ALREADY_FINALIZED = 4
EXIT_SOURCE_UNAVAILABLE = 5
EXIT_DATA_GAP = 6

_EXIT_CODES = (
    (ValidationBlockedError, EXIT_BLOCKED),
    (NotFoundError, EXIT_NOT_FOUND),
    (AlreadyFinalizedError, EXIT_ALREADY_FINALIZED),
    (TransientSourceError, EXIT_SOURCE_UNAVAILABLE),
    (PermanentDataGapError, EXIT_DATA_GAP),
)


def exit_code_for(error: Exception) -> int:
    """Map an exception to the process exit code."""
    for error_type, code in _EXIT_CODES:
        if isinstance(error, error_type):
            return code
    return EXIT_ERROR


def handle_domain_error(ctx: click.Context, error: Exception) -> None:
    """Render a domain error and exit with its code.

    Blocked operations list every reason on its own line.
    """
    if isinstance(error, ValidationBlockedError):
        click.echo(f"Blocked: {len(error.reasons)} issue(s) must be fixed first:", err=True)
        for reason in error.reasons:
            click.echo(f"  - {reason}", err=True)
    else:
        click.echo(f"Error: {error}", err=True)
    ctx.exit(exit_code_for(error))
