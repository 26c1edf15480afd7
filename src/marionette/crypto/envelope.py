"""AES-GCM helpers for client keys and account secrets.

Two layers of encryption are involved:

- The *client key* is a random 256-bit key generated at install time and held
  by the remote client. Account secrets are encrypted under it, so only the
  client can decrypt them.
- For handoff to a trusted UI session, the client key is *wrapped* under a
  session key derived as ``SHA-256(session_token || owner_id)``.

All ciphertexts are ``base64(nonce || ciphertext_with_tag)``.
"""

from __future__ import annotations

import base64
import hashlib
import os
from uuid import UUID

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from marionette.errors import UnauthorizedError, ValidationError

NONCE_SIZE = 12
KEY_SIZE = 32


def generate_client_key() -> str:
    """Generate a fresh base64-encoded 256-bit client key."""
    return base64.b64encode(os.urandom(KEY_SIZE)).decode("ascii")


def _decode_key(client_key: str) -> bytes:
    try:
        raw = base64.b64decode(client_key, validate=True)
    except ValueError as e:
        raise ValidationError("Client key is not valid base64") from e
    if len(raw) != KEY_SIZE:
        raise ValidationError("Client key must be 256 bits")
    return raw


def derive_session_key(session_token: str, owner_id: UUID | str) -> bytes:
    """Derive the per-session wrapping key."""
    return hashlib.sha256(f"{session_token}{owner_id}".encode()).digest()


def session_fingerprint(session_token: str) -> str:
    """Stable non-reversible identifier of a session, used to key the wrap cache."""
    return hashlib.sha256(f"session:{session_token}".encode()).hexdigest()


def _seal(key: bytes, plaintext: bytes) -> str:
    nonce = os.urandom(NONCE_SIZE)
    ciphertext = AESGCM(key).encrypt(nonce, plaintext, None)
    return base64.b64encode(nonce + ciphertext).decode("ascii")


def _open(key: bytes, sealed: str) -> bytes:
    try:
        blob = base64.b64decode(sealed, validate=True)
    except ValueError as e:
        raise ValidationError("Ciphertext is not valid base64") from e
    if len(blob) <= NONCE_SIZE:
        raise ValidationError("Ciphertext is truncated")
    try:
        return AESGCM(key).decrypt(blob[:NONCE_SIZE], blob[NONCE_SIZE:], None)
    except InvalidTag as e:
        raise UnauthorizedError("Ciphertext does not match the supplied key") from e


def wrap_client_key(client_key: str, session_token: str, owner_id: UUID | str) -> str:
    """Wrap a client key for handoff to the session identified by ``session_token``."""
    raw = _decode_key(client_key)
    return _seal(derive_session_key(session_token, owner_id), raw)


def unwrap_client_key(wrapped: str, session_token: str, owner_id: UUID | str) -> str:
    """Recover the client key from its wrapped form (trusted UI side only)."""
    raw = _open(derive_session_key(session_token, owner_id), wrapped)
    return base64.b64encode(raw).decode("ascii")


def encrypt_secret(plaintext: str, client_key: str) -> str:
    """Encrypt an account secret under a client key."""
    return _seal(_decode_key(client_key), plaintext.encode("utf-8"))


def decrypt_secret(ciphertext: str, client_key: str) -> str:
    """Decrypt an account secret with a client key (remote client side only)."""
    return _open(_decode_key(client_key), ciphertext).decode("utf-8")
