"""Tests for client-key wrapping and account-secret encryption."""

from __future__ import annotations

import base64
from uuid import uuid4

import pytest

from marionette.crypto import (
    decrypt_secret,
    derive_session_key,
    encrypt_secret,
    generate_client_key,
    unwrap_client_key,
    wrap_client_key,
)
from marionette.errors import NotFoundError, UnauthorizedError, ValidationError


class TestSecrets:
    """Account secrets under a client key."""

    def test_only_matching_key_decrypts(self) -> None:
        key = generate_client_key()
        ciphertext = encrypt_secret("hunter2", key)

        assert "hunter2" not in ciphertext
        assert decrypt_secret(ciphertext, key) == "hunter2"
        with pytest.raises(UnauthorizedError):
            decrypt_secret(ciphertext, generate_client_key())

    def test_nonce_is_fresh(self) -> None:
        key = generate_client_key()
        assert encrypt_secret("same", key) != encrypt_secret("same", key)

    def test_tampered_ciphertext(self) -> None:
        key = generate_client_key()
        blob = bytearray(base64.b64decode(encrypt_secret("secret", key)))
        blob[-1] ^= 0x01
        with pytest.raises(UnauthorizedError):
            decrypt_secret(base64.b64encode(bytes(blob)).decode(), key)

    def test_malformed_inputs(self) -> None:
        key = generate_client_key()
        with pytest.raises(ValidationError):
            decrypt_secret("not base64!!", key)
        with pytest.raises(ValidationError):
            decrypt_secret(base64.b64encode(b"short").decode(), key)
        with pytest.raises(ValidationError):
            encrypt_secret("x", base64.b64encode(b"too-short-key").decode())


class TestKeyWrapping:
    """Client key handoff to a UI session."""

    def test_session_key_is_sha256(self) -> None:
        assert len(derive_session_key("token", uuid4())) == 32

    def test_unwrap_with_same_session(self) -> None:
        owner = uuid4()
        key = generate_client_key()
        wrapped = wrap_client_key(key, "session-a", owner)

        assert unwrap_client_key(wrapped, "session-a", owner) == key

    def test_other_session_cannot_unwrap(self) -> None:
        owner = uuid4()
        wrapped = wrap_client_key(generate_client_key(), "session-a", owner)

        with pytest.raises(UnauthorizedError):
            unwrap_client_key(wrapped, "session-b", owner)
        with pytest.raises(UnauthorizedError):
            unwrap_client_key(wrapped, "session-a", uuid4())


class TestCredentialBroker:
    """Wrapped-key cache keyed by session."""

    async def test_wrap_is_cached_per_session(self, services, owner_id, register_client) -> None:
        runner = await register_client(owner_id)

        first = await services.broker.get_wrapped_client_key(owner_id, runner.client.id, "tok-1")
        again = await services.broker.get_wrapped_client_key(owner_id, runner.client.id, "tok-1")
        other = await services.broker.get_wrapped_client_key(owner_id, runner.client.id, "tok-2")

        assert first == again
        assert other != first
        assert unwrap_client_key(first, "tok-1", owner_id) == runner.encryption_key
        assert unwrap_client_key(other, "tok-2", owner_id) == runner.encryption_key

    async def test_foreign_client(self, services, owner_id, register_client) -> None:
        runner = await register_client(owner_id)
        with pytest.raises(NotFoundError):
            await services.broker.get_wrapped_client_key(uuid4(), runner.client.id, "tok")
