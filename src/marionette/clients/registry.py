"""Client registry and heartbeat monitor.

Tracks remote agent processes, authenticates them by (client_id, api_token)
and decides liveness from heartbeat freshness. Liveness only gates new
claims; jobs already in flight are never touched by staleness.
"""

from __future__ import annotations

import hashlib
import hmac
import secrets
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from uuid import UUID

import structlog
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import col, select

from marionette.crypto.envelope import generate_client_key
from marionette.db.connection import SessionFactory
from marionette.db.models import Client, ClientStatus, InstallerDownload, utcnow_naive
from marionette.errors import NotFoundError, TokenExpiredError, UnauthorizedError, ValidationError

log = structlog.get_logger()

INVALID_CREDENTIALS = "Invalid client ID or API token"

_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


def _base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


def generate_client_id() -> str:
    return f"client_{uuid.uuid4().hex}"


def generate_api_token() -> str:
    return f"sk_{secrets.token_hex(16)}_{_base36(int(time.time() * 1000))}"


def hash_api_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class ClientRegistration:
    """Result of registering a client. The token and key are only returned here."""

    client: Client
    api_token: str
    encryption_key: str


class ClientRegistry:
    """DB-backed registry of remote clients."""

    def __init__(
        self,
        session_factory: SessionFactory,
        *,
        staleness_threshold: timedelta = timedelta(seconds=90),
        token_ttl: timedelta = timedelta(days=90),
    ) -> None:
        self._session_factory = session_factory
        self.staleness_threshold = staleness_threshold
        self.token_ttl = token_ttl

    # =========================================================================
    # Liveness
    # =========================================================================

    def is_live(self, client: Client, now: datetime | None = None) -> bool:
        """True when the client's last heartbeat is within the staleness threshold."""
        if client.last_heartbeat is None:
            return False
        now = now or utcnow_naive()
        return now - client.last_heartbeat < self.staleness_threshold

    # =========================================================================
    # Registration (user side)
    # =========================================================================

    async def register(
        self,
        owner_id: UUID,
        *,
        client_name: str,
        platform: str,
        os_version: str | None = None,
        agent_version: str | None = None,
    ) -> ClientRegistration:
        """Register a new client and mint its API token and key material."""
        if not client_name.strip():
            raise ValidationError("client_name is required")
        if not platform.strip():
            raise ValidationError("platform is required")

        api_token = generate_api_token()
        encryption_key = generate_client_key()
        now = utcnow_naive()

        client = Client(
            owner_id=owner_id,
            client_id=generate_client_id(),
            client_name=client_name.strip(),
            platform=platform.strip(),
            os_version=os_version,
            agent_version=agent_version,
            api_token_hash=hash_api_token(api_token),
            token_expires_at=now + self.token_ttl,
            status=ClientStatus.OFFLINE.value,
        )
        download = InstallerDownload(
            owner_id=owner_id,
            client_id=client.client_id,
            platform=client.platform,
            meta={"encryption_key": encryption_key},
        )

        async with self._session_factory() as session:
            session.add(client)
            session.add(download)
            await session.commit()
            await session.refresh(client)

        log.info(
            "client_registered",
            client_id=client.client_id,
            owner_id=str(owner_id),
            platform=client.platform,
        )
        return ClientRegistration(client=client, api_token=api_token, encryption_key=encryption_key)

    async def regenerate_token(self, owner_id: UUID, client_pk: UUID) -> tuple[Client, str]:
        """Issue a new API token, invalidating the previous one."""
        api_token = generate_api_token()
        async with self._session_factory() as session:
            client = await self._get_owned(session, owner_id, client_pk)
            client.api_token_hash = hash_api_token(api_token)
            client.token_expires_at = utcnow_naive() + self.token_ttl
            session.add(client)
            await session.commit()
            await session.refresh(client)

        log.info("client_token_regenerated", client_id=client.client_id)
        return client, api_token

    async def get(self, owner_id: UUID, client_pk: UUID) -> Client:
        async with self._session_factory() as session:
            return await self._get_owned(session, owner_id, client_pk)

    async def get_by_client_id(self, owner_id: UUID, client_id: str) -> Client:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Client).where(Client.client_id == client_id, Client.owner_id == owner_id)
            )
            client = result.scalar_one_or_none()
            if client is None:
                raise NotFoundError("Client", client_id)
            return client

    async def list_clients(
        self,
        owner_id: UUID,
        *,
        status: str | None = None,
        platform: str | None = None,
    ) -> list[Client]:
        async with self._session_factory() as session:
            query = select(Client).where(Client.owner_id == owner_id)
            if status:
                query = query.where(Client.status == status)
            if platform:
                query = query.where(Client.platform == platform)
            result = await session.execute(query.order_by(col(Client.created_at).desc()))
            return list(result.scalars().all())

    # =========================================================================
    # Client-authenticated operations
    # =========================================================================

    async def authenticate(self, client_id: str, api_token: str) -> Client:
        """Resolve a client from its credential pair.

        Raises:
            UnauthorizedError: Unknown client or token mismatch
            TokenExpiredError: Token matches but is past its expiry
        """
        async with self._session_factory() as session:
            return await self._authenticate(session, client_id, api_token)

    async def heartbeat(
        self,
        client_id: str,
        api_token: str,
        *,
        status: str = ClientStatus.ONLINE.value,
        agent_version: str | None = None,
    ) -> Client:
        """Record a heartbeat. Nothing is written when authentication fails."""
        if status not in {s.value for s in ClientStatus}:
            raise ValidationError(f"Invalid client status: {status}")

        async with self._session_factory() as session:
            client = await self._authenticate(session, client_id, api_token)
            now = utcnow_naive()
            client.status = status
            client.last_seen = now
            client.last_heartbeat = now
            if agent_version:
                client.agent_version = agent_version
            session.add(client)
            await session.commit()
            await session.refresh(client)

        log.debug("client_heartbeat", client_id=client_id, status=status)
        return client

    async def deregister(self, client_id: str, api_token: str) -> None:
        """Delete a client. Both credentials must match the same record."""
        async with self._session_factory() as session:
            result = await session.execute(select(Client).where(Client.client_id == client_id))
            client = result.scalar_one_or_none()
            if client is None or not hmac.compare_digest(
                client.api_token_hash, hash_api_token(api_token)
            ):
                raise UnauthorizedError("Invalid client credentials")
            await session.delete(client)
            await session.commit()

        log.info("client_deregistered", client_id=client_id)

    # =========================================================================
    # Helpers
    # =========================================================================

    async def _authenticate(
        self, session: AsyncSession, client_id: str, api_token: str
    ) -> Client:
        if not client_id or not api_token:
            raise UnauthorizedError(INVALID_CREDENTIALS)
        result = await session.execute(select(Client).where(Client.client_id == client_id))
        client = result.scalar_one_or_none()
        if client is None or not hmac.compare_digest(
            client.api_token_hash, hash_api_token(api_token)
        ):
            log.warning("client_auth_failed", client_id=client_id)
            raise UnauthorizedError(INVALID_CREDENTIALS)
        if client.token_expires_at <= utcnow_naive():
            log.warning("client_token_expired", client_id=client_id)
            raise TokenExpiredError()
        return client

    async def _get_owned(
        self, session: AsyncSession, owner_id: UUID, client_pk: UUID
    ) -> Client:
        result = await session.execute(
            select(Client).where(Client.id == client_pk, Client.owner_id == owner_id)
        )
        client = result.scalar_one_or_none()
        if client is None:
            raise NotFoundError("Client", client_pk)
        return client
