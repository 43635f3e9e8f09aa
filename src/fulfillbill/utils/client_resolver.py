"""Utility for resolving client codes to IDs."""

from fulfillbill.domain.client import ClientService
from fulfillbill.domain.errors import NotFoundError, client_not_found


def resolve_client(client_service: ClientService, client: str | int) -> int:
    """Resolve a client billing code or ID to a client ID.

    Args:
        client_service: ClientService instance
        client: Client code (e.g. "ACME") or ID (int or numeric string)

    Returns:
        Client ID

    Raises:
        NotFoundError: If no client matches
    """
    if isinstance(client, int):
        if client_service.get_client(client) is None:
            raise NotFoundError(client_not_found(client))
        return client

    # Codes are never purely numeric, so a numeric string is an ID
    if client.strip().isdigit():
        client_id = int(client)
        if client_service.get_client(client_id) is None:
            raise NotFoundError(client_not_found(client_id))
        return client_id

    found = client_service.get_client_by_code(client)
    if found is None:
        raise NotFoundError(client_not_found(f"'{client}'"))
    return found.id
