"""Execution report endpoints for end users."""

from datetime import datetime
from typing import Any
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from marionette.auth.dependencies import UserContext, get_services, require_user
from marionette.services import Services

router = APIRouter(prefix="/execution-reports", tags=["execution-reports"])


# =============================================================================
# Response Models
# =============================================================================


class ReportSummary(BaseModel):
    id: UUID
    job_id: UUID
    client_id: str
    workflow_id: UUID | None
    platform: str | None
    workflow_type: str | None
    success: bool
    started_at: datetime
    finished_at: datetime
    duration_ms: float
    total_steps: int
    successful_steps: int
    failed_steps: int
    success_rate: float

    class Config:
        from_attributes = True


class ReportDetail(ReportSummary):
    agent_version: str | None
    steps: list[dict[str, Any]]
    error: dict[str, Any] | None


class ReportListResponse(BaseModel):
    reports: list[ReportSummary]
    total: int
    page: int
    limit: int


class ReportStatistics(BaseModel):
    total_runs: int
    successful_runs: int
    failed_runs: int
    success_rate: float
    average_duration_ms: float | None
    failures_by_code: dict[str, int]


# =============================================================================
# Endpoints
# =============================================================================


@router.get("", response_model=ReportListResponse)
async def list_reports(
    job_id: UUID | None = Query(default=None),
    platform: str | None = Query(default=None),
    success: bool | None = Query(default=None),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    user: UserContext = Depends(require_user),
    services: Services = Depends(get_services),
) -> ReportListResponse:
    reports, total = await services.reports.list_reports(
        user.user_id, job_id=job_id, platform=platform, success=success, page=page, limit=limit
    )
    return ReportListResponse(
        reports=[ReportSummary.model_validate(r) for r in reports],
        total=total,
        page=page,
        limit=limit,
    )


@router.get("/statistics", response_model=ReportStatistics)
async def report_statistics(
    user: UserContext = Depends(require_user),
    services: Services = Depends(get_services),
) -> ReportStatistics:
    return ReportStatistics(**await services.reports.statistics(user.user_id))


@router.get("/{report_id}", response_model=ReportDetail)
async def get_report(
    report_id: UUID,
    user: UserContext = Depends(require_user),
    services: Services = Depends(get_services),
) -> ReportDetail:
    report = await services.reports.get(user.user_id, report_id)
    return ReportDetail.model_validate(report)
