"""Credential encryption."""

from marionette.crypto.broker import CredentialBroker
from marionette.crypto.envelope import (
    decrypt_secret,
    derive_session_key,
    encrypt_secret,
    generate_client_key,
    session_fingerprint,
    unwrap_client_key,
    wrap_client_key,
)

__all__ = [
    "CredentialBroker",
    "decrypt_secret",
    "derive_session_key",
    "encrypt_secret",
    "generate_client_key",
    "session_fingerprint",
    "unwrap_client_key",
    "wrap_client_key",
]
