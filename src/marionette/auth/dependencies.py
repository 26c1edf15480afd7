"""FastAPI dependencies resolving the caller identity."""

from __future__ import annotations

from dataclasses import dataclass
from uuid import UUID

import structlog
from fastapi import Depends, Header, Request

from marionette import config as config_module
from marionette.auth.http import extract_bearer_token
from marionette.auth.jwt import JwtError, verify_access_token
from marionette.db.models import Client
from marionette.errors import UnauthorizedError
from marionette.services import Services

log = structlog.get_logger()


@dataclass(frozen=True)
class UserContext:
    """Authenticated end user."""

    user_id: UUID
    is_admin: bool
    token: str


def get_services(request: Request) -> Services:
    return request.app.state.services


async def require_user(authorization: str | None = Header(default=None)) -> UserContext:
    token = extract_bearer_token(authorization)
    if not token:
        raise UnauthorizedError("Authentication required")
    try:
        claims = verify_access_token(token)
        user_id = UUID(str(claims["sub"]))
    except (JwtError, ValueError) as e:
        log.info("user_token_rejected", reason=str(e))
        raise UnauthorizedError("Invalid or expired token") from e
    return UserContext(
        user_id=user_id,
        is_admin=bool(claims.get(config_module.settings.admin_claim, False)),
        token=token,
    )


async def require_admin(user: UserContext = Depends(require_user)) -> UserContext:
    if not user.is_admin:
        raise UnauthorizedError("Admin access required")
    return user


async def require_client(
    authorization: str | None = Header(default=None),
    x_client_id: str | None = Header(default=None),
    services: Services = Depends(get_services),
) -> Client:
    """Authenticate a remote client by Bearer API token plus X-Client-ID."""
    token = extract_bearer_token(authorization)
    if not token or not x_client_id:
        raise UnauthorizedError("Invalid client credentials")
    return await services.registry.authenticate(x_client_id, token)
