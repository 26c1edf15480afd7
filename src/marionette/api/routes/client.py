"""Endpoints called by remote clients (API token + X-Client-ID)."""

from datetime import datetime
from typing import Any
from uuid import UUID

import structlog
from fastapi import APIRouter, Depends, Header, Response
from pydantic import BaseModel, Field

from marionette.auth.dependencies import get_services, require_client
from marionette.auth.http import extract_bearer_token
from marionette.db.models import Client, ClientStatus
from marionette.errors import ErrorKind, UnauthorizedError
from marionette.jobs.assignment import claim_assignment
from marionette.services import Services

log = structlog.get_logger()

router = APIRouter(prefix="/client", tags=["client"])


# =============================================================================
# Request/Response Models
# =============================================================================


class HeartbeatRequest(BaseModel):
    clientId: str = Field(..., min_length=1, max_length=64)
    status: ClientStatus = Field(default=ClientStatus.ONLINE)
    agentVersion: str | None = Field(default=None, max_length=32)


class HeartbeatResponse(BaseModel):
    clientId: str
    status: str
    lastHeartbeat: datetime | None


class ClaimResponse(BaseModel):
    """A claimed job envelope, or ``job: null`` when nothing is eligible."""

    job: dict[str, Any] | None


class CompleteRequest(BaseModel):
    result: dict[str, Any] = Field(default_factory=dict)


class FailRequest(BaseModel):
    kind: ErrorKind = Field(..., description="Failure category")
    message: str = Field(..., max_length=2000)
    code: str | None = Field(default=None, max_length=64)
    details: dict[str, Any] = Field(default_factory=dict)


class StepReport(BaseModel):
    phase: str = Field(default="workflow", max_length=32)
    index: int = Field(..., ge=0)
    name: str | None = Field(default=None, max_length=255)
    type: str = Field(..., max_length=32)
    duration_ms: float = Field(default=0.0, ge=0)
    success: bool
    code: str | None = Field(default=None, max_length=64)
    error: str | None = Field(default=None, max_length=2000)


class ReportRequest(BaseModel):
    """Per-run execution report. Raw page content never belongs here."""

    started_at: datetime
    finished_at: datetime
    success: bool
    steps: list[StepReport] = Field(default_factory=list, max_length=500)
    error: dict[str, Any] | None = None
    agent_version: str | None = Field(default=None, max_length=32)


class ReportSubmittedResponse(BaseModel):
    id: UUID
    job_id: UUID
    total_steps: int
    duration_ms: float

    class Config:
        from_attributes = True


class JobStateResponse(BaseModel):
    id: UUID
    status: str
    retry_count: int
    max_retries: int

    class Config:
        from_attributes = True


# =============================================================================
# Endpoints
# =============================================================================


@router.post("/heartbeat", response_model=HeartbeatResponse)
async def heartbeat(
    request: HeartbeatRequest,
    authorization: str | None = Header(default=None),
    services: Services = Depends(get_services),
) -> HeartbeatResponse:
    token = extract_bearer_token(authorization)
    if not token:
        raise UnauthorizedError("Missing or invalid authorization header")
    client = await services.registry.heartbeat(
        request.clientId,
        token,
        status=request.status.value,
        agent_version=request.agentVersion,
    )
    return HeartbeatResponse(
        clientId=client.client_id,
        status=client.status,
        lastHeartbeat=client.last_heartbeat,
    )


@router.delete("/delete", status_code=204)
async def delete_client(
    authorization: str | None = Header(default=None),
    x_client_id: str | None = Header(default=None),
    services: Services = Depends(get_services),
) -> Response:
    token = extract_bearer_token(authorization)
    if not token or not x_client_id:
        raise UnauthorizedError("Invalid client credentials")
    await services.registry.deregister(x_client_id, token)
    return Response(status_code=204)


@router.post("/jobs/claim", response_model=ClaimResponse)
async def claim_job(
    client: Client = Depends(require_client),
    services: Services = Depends(get_services),
) -> ClaimResponse:
    envelope = await claim_assignment(
        client,
        queue=services.queue,
        resolver=services.resolver,
        accounts=services.accounts,
    )
    return ClaimResponse(job=envelope)


@router.post("/jobs/{job_id}/complete", response_model=JobStateResponse)
async def complete_job(
    job_id: UUID,
    request: CompleteRequest,
    client: Client = Depends(require_client),
    services: Services = Depends(get_services),
) -> JobStateResponse:
    job = await services.queue.complete(job_id, client, request.result)
    return JobStateResponse.model_validate(job)


@router.post("/jobs/{job_id}/fail", response_model=JobStateResponse)
async def fail_job(
    job_id: UUID,
    request: FailRequest,
    client: Client = Depends(require_client),
    services: Services = Depends(get_services),
) -> JobStateResponse:
    job = await services.queue.fail(
        job_id,
        client,
        kind=request.kind,
        message=request.message,
        code=request.code,
        details=request.details,
    )
    return JobStateResponse.model_validate(job)


@router.get("/jobs/{job_id}/status", response_model=JobStateResponse)
async def job_status(
    job_id: UUID,
    client: Client = Depends(require_client),
    services: Services = Depends(get_services),
) -> JobStateResponse:
    job = await services.queue.status(job_id, client)
    return JobStateResponse.model_validate(job)


@router.post("/jobs/{job_id}/report", response_model=ReportSubmittedResponse, status_code=201)
async def submit_report(
    job_id: UUID,
    request: ReportRequest,
    client: Client = Depends(require_client),
    services: Services = Depends(get_services),
) -> ReportSubmittedResponse:
    report = await services.reports.submit(
        job_id,
        client,
        started_at=request.started_at,
        finished_at=request.finished_at,
        success=request.success,
        steps=[step.model_dump() for step in request.steps],
        error=request.error,
        agent_version=request.agent_version,
    )
    return ReportSubmittedResponse.model_validate(report)
