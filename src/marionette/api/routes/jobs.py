"""Job endpoints for end users."""

from datetime import UTC, datetime
from typing import Any
from uuid import UUID

import structlog
from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from marionette.auth.dependencies import UserContext, get_services, require_user
from marionette.db.models import JobType
from marionette.services import Services

log = structlog.get_logger()

router = APIRouter(prefix="/jobs", tags=["jobs"])


# =============================================================================
# Request/Response Models
# =============================================================================


class JobCreateRequest(BaseModel):
    """Request to enqueue a job."""

    workflow_id: UUID = Field(..., description="Workflow to execute")
    account_id: UUID | None = Field(default=None, description="Account to act as")
    client_id: str | None = Field(
        default=None, max_length=64, description="Pin to a client (defaults to the account's)"
    )
    job_type: JobType = Field(default=JobType.ACTION)
    params: dict[str, Any] = Field(default_factory=dict, description="Workflow variables")
    scheduled_for: datetime | None = Field(default=None, description="Earliest claim time (UTC)")
    expires_at: datetime | None = Field(default=None, description="Expiry (UTC)")
    max_retries: int | None = Field(default=None, ge=0, le=10)


class JobResponse(BaseModel):
    """Job status response."""

    id: UUID
    status: str
    job_type: str
    created_at: datetime
    processed_at: datetime | None
    scheduled_for: datetime | None
    expires_at: datetime | None
    retry_count: int
    max_retries: int
    error_kind: str | None = None
    error_message: str | None = None
    retry_of: UUID | None = None

    class Config:
        from_attributes = True


class JobListResponse(BaseModel):
    jobs: list[JobResponse]
    total: int
    page: int
    limit: int


def _naive_utc(value: datetime | None) -> datetime | None:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(UTC).replace(tzinfo=None)


# =============================================================================
# Endpoints
# =============================================================================


@router.post("", response_model=JobResponse, status_code=201)
async def create_job(
    request: JobCreateRequest,
    user: UserContext = Depends(require_user),
    services: Services = Depends(get_services),
) -> JobResponse:
    job = await services.queue.enqueue(
        user.user_id,
        job_type=request.job_type.value,
        payload={
            "workflow_id": str(request.workflow_id),
            "account_id": str(request.account_id) if request.account_id else None,
            "client_id": request.client_id,
            "params": request.params,
        },
        scheduled_for=_naive_utc(request.scheduled_for),
        expires_at=_naive_utc(request.expires_at),
        max_retries=request.max_retries,
    )
    return JobResponse.model_validate(job)


@router.get("", response_model=JobListResponse)
async def list_jobs(
    status: str | None = Query(default=None),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    user: UserContext = Depends(require_user),
    services: Services = Depends(get_services),
) -> JobListResponse:
    jobs, total = await services.queue.history(user.user_id, status=status, page=page, limit=limit)
    return JobListResponse(
        jobs=[JobResponse.model_validate(j) for j in jobs],
        total=total,
        page=page,
        limit=limit,
    )


@router.get("/{job_id}", response_model=JobResponse)
async def get_job(
    job_id: UUID,
    user: UserContext = Depends(require_user),
    services: Services = Depends(get_services),
) -> JobResponse:
    job = await services.queue.get(user.user_id, job_id)
    return JobResponse.model_validate(job)


@router.post("/{job_id}/cancel", response_model=JobResponse)
async def cancel_job(
    job_id: UUID,
    user: UserContext = Depends(require_user),
    services: Services = Depends(get_services),
) -> JobResponse:
    job = await services.queue.cancel(user.user_id, job_id)
    return JobResponse.model_validate(job)


@router.post("/{job_id}/retry", response_model=JobResponse, status_code=201)
async def retry_job(
    job_id: UUID,
    user: UserContext = Depends(require_user),
    services: Services = Depends(get_services),
) -> JobResponse:
    """Re-run a failed or cancelled job; returns the new job."""
    job = await services.queue.retry(user.user_id, job_id)
    return JobResponse.model_validate(job)
