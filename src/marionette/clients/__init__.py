"""Client registry and heartbeat monitoring."""

from marionette.clients.registry import (
    INVALID_CREDENTIALS,
    ClientRegistration,
    ClientRegistry,
    generate_api_token,
    generate_client_id,
    hash_api_token,
)

__all__ = [
    "INVALID_CREDENTIALS",
    "ClientRegistration",
    "ClientRegistry",
    "generate_api_token",
    "generate_client_id",
    "hash_api_token",
]
