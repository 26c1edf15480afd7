"""Tests for the client registry: registration, authentication, heartbeats."""

from __future__ import annotations

from datetime import timedelta
from types import SimpleNamespace

import pytest
import sqlalchemy as sa

from marionette.clients.registry import (
    INVALID_CREDENTIALS,
    ClientRegistry,
    generate_api_token,
    generate_client_id,
    hash_api_token,
)
from marionette.db.models import Client, ClientStatus, utcnow_naive
from marionette.errors import TokenExpiredError, UnauthorizedError, ValidationError


class TestIdentifiers:
    """Token and ID formats."""

    def test_client_id_format(self) -> None:
        client_id = generate_client_id()
        assert client_id.startswith("client_")
        assert len(client_id) == len("client_") + 32

    def test_api_token_format(self) -> None:
        token = generate_api_token()
        prefix, random_part, stamp = token.split("_")
        assert prefix == "sk"
        assert len(random_part) == 32
        assert stamp.isalnum()

    def test_tokens_unique(self) -> None:
        assert len({generate_api_token() for _ in range(50)}) == 50

    def test_hash_is_stable(self) -> None:
        assert hash_api_token("sk_a") == hash_api_token("sk_a")
        assert hash_api_token("sk_a") != hash_api_token("sk_b")


class TestLiveness:
    """Heartbeat freshness against the staleness threshold."""

    def test_never_seen_is_stale(self) -> None:
        registry = ClientRegistry(None)  # type: ignore[arg-type]
        assert not registry.is_live(SimpleNamespace(last_heartbeat=None))  # type: ignore[arg-type]

    def test_threshold(self) -> None:
        registry = ClientRegistry(None, staleness_threshold=timedelta(seconds=90))  # type: ignore[arg-type]
        now = utcnow_naive()
        fresh = SimpleNamespace(last_heartbeat=now - timedelta(seconds=30))
        stale = SimpleNamespace(last_heartbeat=now - timedelta(seconds=91))
        assert registry.is_live(fresh, now)  # type: ignore[arg-type]
        assert not registry.is_live(stale, now)  # type: ignore[arg-type]


class TestRegistration:
    async def test_register(self, services, owner_id) -> None:
        registration = await services.registry.register(
            owner_id, client_name="Desk", platform="windows", os_version="11"
        )

        client = registration.client
        assert client.owner_id == owner_id
        assert client.status == ClientStatus.OFFLINE.value
        assert client.total_jobs == 0
        assert client.api_token_hash == hash_api_token(registration.api_token)
        assert client.token_expires_at > utcnow_naive() + timedelta(days=89)
        assert registration.encryption_key

    async def test_register_requires_name(self, services, owner_id) -> None:
        with pytest.raises(ValidationError):
            await services.registry.register(owner_id, client_name="  ", platform="linux")

    async def test_list_filters(self, services, owner_id, register_client) -> None:
        await register_client(owner_id, name="one")
        await register_client(owner_id, name="two", live=False)

        assert len(await services.registry.list_clients(owner_id)) == 2
        online = await services.registry.list_clients(owner_id, status="online")
        assert [c.client_name for c in online] == ["one"]

    async def test_regenerate_invalidates_old_token(self, services, owner_id, register_client) -> None:
        runner = await register_client(owner_id)

        client, new_token = await services.registry.regenerate_token(owner_id, runner.client.id)

        assert new_token != runner.api_token
        with pytest.raises(UnauthorizedError):
            await services.registry.authenticate(client.client_id, runner.api_token)
        authed = await services.registry.authenticate(client.client_id, new_token)
        assert authed.id == client.id


class TestClientAuthentication:
    async def test_wrong_token(self, services, owner_id, register_client) -> None:
        runner = await register_client(owner_id)
        with pytest.raises(UnauthorizedError, match=INVALID_CREDENTIALS):
            await services.registry.authenticate(runner.client.client_id, "sk_wrong")

    async def test_unknown_client(self, services) -> None:
        with pytest.raises(UnauthorizedError):
            await services.registry.authenticate("client_missing", "sk_x")

    async def test_heartbeat_updates_liveness(self, services, owner_id, register_client) -> None:
        runner = await register_client(owner_id, live=False)

        client = await services.registry.heartbeat(
            runner.client.client_id, runner.api_token, status="busy", agent_version="1.2.0"
        )

        assert client.status == ClientStatus.BUSY.value
        assert client.agent_version == "1.2.0"
        assert client.last_heartbeat is not None
        assert services.registry.is_live(client)

    async def test_heartbeat_invalid_status(self, services, owner_id, register_client) -> None:
        runner = await register_client(owner_id)
        with pytest.raises(ValidationError):
            await services.registry.heartbeat(
                runner.client.client_id, runner.api_token, status="sleeping"
            )

    async def test_expired_token_heartbeat_changes_nothing(
        self, services, session_factory, owner_id, register_client
    ) -> None:
        """An expired token is rejected and last_seen stays untouched."""
        runner = await register_client(owner_id, live=False)
        async with session_factory() as session:
            await session.execute(
                sa.update(Client)
                .where(Client.id == runner.client.id)
                .values(token_expires_at=utcnow_naive() - timedelta(seconds=1))
            )
            await session.commit()

        with pytest.raises(TokenExpiredError):
            await services.registry.heartbeat(runner.client.client_id, runner.api_token)

        client = await services.registry.get(owner_id, runner.client.id)
        assert client.last_seen is None
        assert client.last_heartbeat is None

    async def test_deregister(self, services, owner_id, register_client) -> None:
        runner = await register_client(owner_id)

        with pytest.raises(UnauthorizedError):
            await services.registry.deregister(runner.client.client_id, "sk_wrong")

        await services.registry.deregister(runner.client.client_id, runner.api_token)
        with pytest.raises(UnauthorizedError):
            await services.registry.authenticate(runner.client.client_id, runner.api_token)
