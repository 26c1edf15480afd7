"""Verification of identity-provider access tokens.

Login, registration and password reset live with the identity provider; this
module only verifies the bearer tokens it issues. ``create_access_token``
exists for local development and tests.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import Any
from uuid import UUID

from jose import JWTError, jwt

from marionette import config as config_module


class JwtError(ValueError):
    """Raised when a token cannot be verified."""


def _secret() -> str:
    secret = config_module.settings.jwt_secret.get_secret_value()
    if not secret:
        raise JwtError("JWT secret is not configured")
    return secret


def create_access_token(
    *,
    user_id: UUID,
    is_admin: bool = False,
    expires_in: timedelta = timedelta(hours=1),
    extra_claims: dict[str, Any] | None = None,
) -> str:
    now = datetime.now(UTC)
    claims: dict[str, Any] = {
        "sub": str(user_id),
        "typ": "access",
        "iat": int(now.timestamp()),
        "exp": int((now + expires_in).timestamp()),
        config_module.settings.admin_claim: is_admin,
    }
    if extra_claims:
        claims.update(extra_claims)
    return jwt.encode(claims, _secret(), algorithm=config_module.settings.jwt_algorithm)


def verify_access_token(token: str) -> dict[str, Any]:
    """Verify signature and expiry and return the claims."""
    try:
        claims = jwt.decode(
            token, _secret(), algorithms=[config_module.settings.jwt_algorithm]
        )
    except JWTError as e:
        raise JwtError(str(e)) from e
    if claims.get("typ", "access") != "access" or not claims.get("sub"):
        raise JwtError("Not an access token")
    return claims
