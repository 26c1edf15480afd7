"""Linked account endpoints for end users."""

from datetime import datetime
from uuid import UUID

import structlog
from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from marionette.auth.dependencies import UserContext, get_services, require_user
from marionette.db.models import Platform
from marionette.errors import NotFoundError, ValidationError
from marionette.services import Services

log = structlog.get_logger()

router = APIRouter(prefix="/accounts", tags=["accounts"])


# =============================================================================
# Request/Response Models
# =============================================================================


class AccountCreateRequest(BaseModel):
    """Link a platform account. The secret is already encrypted under the client key."""

    platform: Platform
    username: str = Field(..., min_length=1, max_length=255)
    encrypted_secret: str = Field(..., min_length=1)
    client_id: str = Field(..., min_length=1, max_length=64)


class AccountResponse(BaseModel):
    """Account details. The encrypted secret is never echoed back."""

    id: UUID
    platform: str
    username: str
    client_id: str
    status: str
    last_verified_at: datetime | None
    created_at: datetime

    class Config:
        from_attributes = True


class AccountWithJobResponse(BaseModel):
    account: AccountResponse
    job_id: UUID


class AccountListResponse(BaseModel):
    accounts: list[AccountResponse]
    total: int


class VerifyRequest(BaseModel):
    account_id: UUID


# =============================================================================
# Endpoints
# =============================================================================


@router.post("", response_model=AccountWithJobResponse, status_code=201)
async def add_account(
    request: AccountCreateRequest,
    user: UserContext = Depends(require_user),
    services: Services = Depends(get_services),
) -> AccountWithJobResponse:
    account, job = await services.accounts.link(
        user.user_id,
        platform=request.platform.value,
        username=request.username,
        encrypted_secret=request.encrypted_secret,
        client_id=request.client_id,
    )
    return AccountWithJobResponse(account=AccountResponse.model_validate(account), job_id=job.id)


@router.get("", response_model=AccountListResponse)
async def list_accounts(
    platform: Platform | None = Query(default=None),
    user: UserContext = Depends(require_user),
    services: Services = Depends(get_services),
) -> AccountListResponse:
    accounts = await services.accounts.list_accounts(
        user.user_id, platform=platform.value if platform else None
    )
    return AccountListResponse(
        accounts=[AccountResponse.model_validate(a) for a in accounts],
        total=len(accounts),
    )


@router.post("/verify", response_model=AccountWithJobResponse)
async def verify_account(
    request: VerifyRequest,
    user: UserContext = Depends(require_user),
    services: Services = Depends(get_services),
) -> AccountWithJobResponse:
    """Queue a verification job. An absent or foreign account is a 400, not a 404."""
    try:
        account, job = await services.accounts.verify(user.user_id, request.account_id)
    except NotFoundError as e:
        if e.entity_type != "Account":
            raise
        raise ValidationError("Account not found") from e
    return AccountWithJobResponse(account=AccountResponse.model_validate(account), job_id=job.id)
