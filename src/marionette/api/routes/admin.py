"""Admin endpoints for the workflow and micro action catalogue."""

from datetime import datetime
from typing import Any
from uuid import UUID

import structlog
from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from marionette.auth.dependencies import get_services, require_admin
from marionette.db.models import MicroActionType, Platform, WorkflowType
from marionette.services import Services

log = structlog.get_logger()

router = APIRouter(
    prefix="/admin",
    tags=["admin"],
    dependencies=[Depends(require_admin)],
)


# =============================================================================
# Request/Response Models
# =============================================================================


class WorkflowStep(BaseModel):
    micro_action_id: UUID
    params_override: dict[str, Any] = Field(default_factory=dict)


class WorkflowCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    description: str | None = None
    platform: Platform
    type: WorkflowType
    steps: list[WorkflowStep] = Field(..., min_length=1)
    requires_auth: bool = False
    auth_workflow_id: UUID | None = None


class WorkflowUpdateRequest(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=255)
    description: str | None = None
    platform: Platform | None = None
    type: WorkflowType | None = None
    steps: list[WorkflowStep] | None = None
    requires_auth: bool | None = None
    auth_workflow_id: UUID | None = None
    is_active: bool | None = None


class WorkflowListResponse(BaseModel):
    workflows: list[dict[str, Any]]
    total: int
    page: int
    limit: int


class MicroActionCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    description: str | None = None
    type: MicroActionType
    platform: Platform | None = None
    params: dict[str, Any] = Field(default_factory=dict)


class MicroActionUpdateRequest(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=255)
    description: str | None = None
    type: MicroActionType | None = None
    platform: Platform | None = None
    params: dict[str, Any] | None = None
    is_active: bool | None = None


class MicroActionResponse(BaseModel):
    id: UUID
    name: str
    description: str | None
    type: str
    platform: str | None
    params: dict[str, Any]
    version: int
    is_active: bool
    created_at: datetime

    class Config:
        from_attributes = True


def _steps(steps: list[WorkflowStep]) -> list[dict[str, Any]]:
    return [
        {"micro_action_id": str(s.micro_action_id), "params_override": s.params_override}
        for s in steps
    ]


# =============================================================================
# Workflows
# =============================================================================


@router.get("/workflows", response_model=WorkflowListResponse)
async def list_workflows(
    platform: Platform | None = Query(default=None),
    type: WorkflowType | None = Query(default=None),
    include_inactive: bool = Query(default=False),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    services: Services = Depends(get_services),
) -> WorkflowListResponse:
    items, total = await services.resolver.list_workflows(
        platform=platform.value if platform else None,
        workflow_type=type.value if type else None,
        include_inactive=include_inactive,
        page=page,
        limit=limit,
    )
    return WorkflowListResponse(workflows=items, total=total, page=page, limit=limit)


@router.post("/workflows", status_code=201)
async def create_workflow(
    request: WorkflowCreateRequest,
    services: Services = Depends(get_services),
) -> dict[str, Any]:
    workflow = await services.resolver.create(
        name=request.name,
        description=request.description,
        platform=request.platform.value,
        type=request.type.value,
        steps=_steps(request.steps),
        requires_auth=request.requires_auth,
        auth_workflow_id=request.auth_workflow_id,
    )
    return await services.resolver.get_enriched(workflow.id)


@router.get("/workflows/{workflow_id}")
async def get_workflow(
    workflow_id: UUID,
    services: Services = Depends(get_services),
) -> dict[str, Any]:
    return await services.resolver.get_enriched(workflow_id)


@router.put("/workflows/{workflow_id}")
async def update_workflow(
    workflow_id: UUID,
    request: WorkflowUpdateRequest,
    services: Services = Depends(get_services),
) -> dict[str, Any]:
    changes: dict[str, Any] = request.model_dump(exclude_unset=True, exclude={"steps"})
    for key in ("platform", "type"):
        if changes.get(key) is not None:
            changes[key] = changes[key].value
    if request.steps is not None:
        changes["steps"] = _steps(request.steps)
    elif "steps" in request.model_fields_set:
        changes["steps"] = []
    await services.resolver.update(workflow_id, **changes)
    return await services.resolver.get_enriched(workflow_id)


@router.delete("/workflows/{workflow_id}")
async def deactivate_workflow(
    workflow_id: UUID,
    services: Services = Depends(get_services),
) -> dict[str, Any]:
    """Soft delete: the workflow is marked inactive and kept for history."""
    await services.resolver.deactivate(workflow_id)
    return {"success": True, "id": str(workflow_id), "is_active": False}


# =============================================================================
# Micro actions
# =============================================================================


@router.get("/micro-actions", response_model=list[MicroActionResponse])
async def list_micro_actions(
    platform: Platform | None = Query(default=None),
    type: MicroActionType | None = Query(default=None),
    services: Services = Depends(get_services),
) -> list[MicroActionResponse]:
    actions = await services.resolver.list_micro_actions(
        platform=platform.value if platform else None,
        action_type=type.value if type else None,
    )
    return [MicroActionResponse.model_validate(a) for a in actions]


@router.post("/micro-actions", response_model=MicroActionResponse, status_code=201)
async def create_micro_action(
    request: MicroActionCreateRequest,
    services: Services = Depends(get_services),
) -> MicroActionResponse:
    action = await services.resolver.create_micro_action(
        name=request.name,
        description=request.description,
        type=request.type.value,
        platform=request.platform.value if request.platform else None,
        params=request.params,
    )
    return MicroActionResponse.model_validate(action)


@router.put("/micro-actions/{action_id}", response_model=MicroActionResponse)
async def update_micro_action(
    action_id: UUID,
    request: MicroActionUpdateRequest,
    services: Services = Depends(get_services),
) -> MicroActionResponse:
    changes: dict[str, Any] = request.model_dump(exclude_unset=True)
    for key in ("platform", "type"):
        if changes.get(key) is not None:
            changes[key] = changes[key].value
    action = await services.resolver.update_micro_action(action_id, **changes)
    return MicroActionResponse.model_validate(action)
