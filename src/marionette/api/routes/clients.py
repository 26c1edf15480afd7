"""Client management endpoints for end users."""

from datetime import datetime
from uuid import UUID

import structlog
from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from marionette.auth.dependencies import UserContext, get_services, require_user
from marionette.services import Services

log = structlog.get_logger()

router = APIRouter(prefix="/clients", tags=["clients"])


# =============================================================================
# Request/Response Models
# =============================================================================


class ClientRegisterRequest(BaseModel):
    """Request to register a new remote client."""

    client_name: str = Field(..., min_length=1, max_length=255)
    platform: str = Field(..., min_length=1, max_length=32, description="OS family")
    os_version: str | None = Field(default=None, max_length=64)
    agent_version: str | None = Field(default=None, max_length=32)


class ClientResponse(BaseModel):
    """Client details. Never includes token material."""

    id: UUID
    client_id: str
    client_name: str
    platform: str
    os_version: str | None
    agent_version: str | None
    status: str
    last_seen: datetime | None
    last_heartbeat: datetime | None
    token_expires_at: datetime
    total_jobs: int
    created_at: datetime

    class Config:
        from_attributes = True


class ClientRegisterResponse(BaseModel):
    """Registration result. api_token and encryption_key are shown only once."""

    client: ClientResponse
    api_token: str
    encryption_key: str


class ClientListResponse(BaseModel):
    clients: list[ClientResponse]
    total: int


class TokenResponse(BaseModel):
    client_id: str
    api_token: str
    token_expires_at: datetime


class EncryptionKeyResponse(BaseModel):
    encryptedKey: str = Field(..., description="Client key wrapped for the calling session")


# =============================================================================
# Endpoints
# =============================================================================


@router.post("", response_model=ClientRegisterResponse, status_code=201)
async def register_client(
    request: ClientRegisterRequest,
    user: UserContext = Depends(require_user),
    services: Services = Depends(get_services),
) -> ClientRegisterResponse:
    registration = await services.registry.register(
        user.user_id,
        client_name=request.client_name,
        platform=request.platform,
        os_version=request.os_version,
        agent_version=request.agent_version,
    )
    return ClientRegisterResponse(
        client=ClientResponse.model_validate(registration.client),
        api_token=registration.api_token,
        encryption_key=registration.encryption_key,
    )


@router.get("", response_model=ClientListResponse)
async def list_clients(
    status: str | None = Query(default=None),
    platform: str | None = Query(default=None),
    user: UserContext = Depends(require_user),
    services: Services = Depends(get_services),
) -> ClientListResponse:
    clients = await services.registry.list_clients(user.user_id, status=status, platform=platform)
    return ClientListResponse(
        clients=[ClientResponse.model_validate(c) for c in clients],
        total=len(clients),
    )


@router.post("/{client_pk}/regenerate-token", response_model=TokenResponse)
async def regenerate_token(
    client_pk: UUID,
    user: UserContext = Depends(require_user),
    services: Services = Depends(get_services),
) -> TokenResponse:
    client, api_token = await services.registry.regenerate_token(user.user_id, client_pk)
    return TokenResponse(
        client_id=client.client_id,
        api_token=api_token,
        token_expires_at=client.token_expires_at,
    )


@router.get("/{client_pk}/encryption-key", response_model=EncryptionKeyResponse)
async def get_encryption_key(
    client_pk: UUID,
    user: UserContext = Depends(require_user),
    services: Services = Depends(get_services),
) -> EncryptionKeyResponse:
    """Return the client key wrapped under SHA-256(session token || user id)."""
    wrapped = await services.broker.get_wrapped_client_key(user.user_id, client_pk, user.token)
    return EncryptionKeyResponse(encryptedKey=wrapped)
