"""Credential encryption broker.

Hands a client's key to a trusted UI session without ever exposing it in
plaintext over the wire. The server never decrypts account secrets.
"""

from __future__ import annotations

from uuid import UUID

import structlog
from sqlmodel import col, select

from marionette.crypto.envelope import session_fingerprint, wrap_client_key
from marionette.db.connection import SessionFactory
from marionette.db.models import Client, InstallerDownload
from marionette.errors import InternalError, NotFoundError

log = structlog.get_logger()


class CredentialBroker:
    """Wraps client keys for UI sessions and caches the wrapped form per session."""

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    async def get_wrapped_client_key(
        self, owner_id: UUID, client_pk: UUID, session_token: str
    ) -> str:
        """Return the client key wrapped under this session's key.

        The wrapped form is cached on the client row together with the
        session fingerprint; a different session always gets a fresh wrap.
        """
        fingerprint = session_fingerprint(session_token)

        async with self._session_factory() as session:
            result = await session.execute(
                select(Client).where(Client.id == client_pk, Client.owner_id == owner_id)
            )
            client = result.scalar_one_or_none()
            if client is None:
                raise NotFoundError("Client", client_pk)

            if client.wrapped_encryption_key and client.wrapped_key_session == fingerprint:
                log.debug("client_key_wrap_cache_hit", client_id=client.client_id)
                return client.wrapped_encryption_key

            download_result = await session.execute(
                select(InstallerDownload)
                .where(
                    InstallerDownload.owner_id == owner_id,
                    InstallerDownload.client_id == client.client_id,
                )
                .order_by(col(InstallerDownload.created_at).desc())
                .limit(1)
            )
            download = download_result.scalar_one_or_none()
            client_key = (download.meta or {}).get("encryption_key") if download else None
            if not client_key:
                raise InternalError(
                    "Encryption key not found for client",
                    details={"client_id": client.client_id},
                )

            wrapped = wrap_client_key(str(client_key), session_token, owner_id)
            client.wrapped_encryption_key = wrapped
            client.wrapped_key_session = fingerprint
            session.add(client)
            await session.commit()

            log.info("client_key_wrapped", client_id=client.client_id, owner_id=str(owner_id))
            return wrapped
