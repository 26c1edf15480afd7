"""Workflow and step resolver.

Workflows are ordered lists of references to reusable micro actions. Resolving
a workflow inlines each micro action and overlays the step's params_override,
producing a self-contained ExecutionPlan the agent runtime can execute without
further lookups.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any
from uuid import UUID

import structlog
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import col, func, select

from marionette.db.connection import SessionFactory
from marionette.db.models import (
    Job,
    MicroAction,
    MicroActionType,
    Platform,
    Workflow,
    WorkflowType,
)
from marionette.errors import InvalidStateError, NotFoundError, ValidationError

log = structlog.get_logger()

_IMMUTABLE_ACTION_FIELDS = ("type", "params")
_MUTABLE_WORKFLOW_FIELDS = (
    "name",
    "description",
    "platform",
    "type",
    "requires_auth",
    "auth_workflow_id",
    "is_active",
)


# =============================================================================
# Execution plan
# =============================================================================


@dataclass(frozen=True)
class ResolvedStep:
    """A workflow step with its micro action inlined."""

    index: int
    micro_action_id: str
    name: str
    type: str
    params: dict[str, Any]

    def to_dict(self) -> dict[str, Any]:
        return {
            "index": self.index,
            "micro_action_id": self.micro_action_id,
            "name": self.name,
            "type": self.type,
            "params": self.params,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ResolvedStep:
        return cls(
            index=int(data["index"]),
            micro_action_id=str(data.get("micro_action_id", "")),
            name=str(data.get("name", "")),
            type=str(data["type"]),
            params=dict(data.get("params") or {}),
        )


@dataclass(frozen=True)
class ExecutionPlan:
    """Fully resolved, ordered steps for one workflow."""

    workflow_id: str
    name: str
    platform: str
    type: str
    steps: list[ResolvedStep] = field(default_factory=list)
    auth_plan: ExecutionPlan | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "workflow_id": self.workflow_id,
            "name": self.name,
            "platform": self.platform,
            "type": self.type,
            "steps": [step.to_dict() for step in self.steps],
            "auth_plan": self.auth_plan.to_dict() if self.auth_plan else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ExecutionPlan:
        auth = data.get("auth_plan")
        return cls(
            workflow_id=str(data["workflow_id"]),
            name=str(data.get("name", "")),
            platform=str(data["platform"]),
            type=str(data["type"]),
            steps=[ResolvedStep.from_dict(s) for s in data.get("steps") or []],
            auth_plan=cls.from_dict(auth) if auth else None,
        )


def merge_step_params(
    action_params: dict[str, Any] | None, override: dict[str, Any] | None
) -> dict[str, Any]:
    """Overlay a step's params_override on the micro action's params (shallow)."""
    return {**(action_params or {}), **(override or {})}


def _validate_enum(value: str, enum_cls: type, label: str) -> str:
    allowed = {member.value for member in enum_cls}
    if value not in allowed:
        raise ValidationError(
            f"Invalid {label}: {value}", details={"allowed": sorted(allowed)}
        )
    return value


# =============================================================================
# Resolver
# =============================================================================


class WorkflowResolver:
    """Admin-owned catalogue of workflows and micro actions."""

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    # -------------------------------------------------------------------------
    # Resolution
    # -------------------------------------------------------------------------

    async def resolve(self, workflow_id: UUID) -> ExecutionPlan:
        """Resolve a workflow (and its auth prelude) into an ExecutionPlan.

        Raises:
            NotFoundError: Workflow missing, or a step references a missing action
            InvalidStateError: Workflow has been deactivated
        """
        async with self._session_factory() as session:
            workflow = await self._get_workflow(session, workflow_id)
            if not workflow.is_active:
                raise InvalidStateError(
                    "Workflow is not active", details={"workflow_id": str(workflow_id)}
                )
            plan = await self._build_plan(session, workflow)

            auth_plan = None
            if workflow.requires_auth and workflow.auth_workflow_id:
                auth_workflow = await self._get_workflow(session, workflow.auth_workflow_id)
                auth_plan = await self._build_plan(session, auth_workflow)

        log.debug(
            "workflow_resolved",
            workflow_id=str(workflow_id),
            steps=len(plan.steps),
            has_auth_prelude=auth_plan is not None,
        )
        if auth_plan is None:
            return plan
        return ExecutionPlan(
            workflow_id=plan.workflow_id,
            name=plan.name,
            platform=plan.platform,
            type=plan.type,
            steps=plan.steps,
            auth_plan=auth_plan,
        )

    async def find_active(self, platform: str, workflow_type: str) -> Workflow | None:
        """Newest active workflow of a given platform and type."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(Workflow)
                .where(
                    Workflow.platform == platform,
                    Workflow.type == workflow_type,
                    col(Workflow.is_active).is_(True),
                )
                .order_by(col(Workflow.created_at).desc())
                .limit(1)
            )
            return result.scalars().first()

    async def get(self, workflow_id: UUID) -> Workflow:
        async with self._session_factory() as session:
            return await self._get_workflow(session, workflow_id)

    # -------------------------------------------------------------------------
    # Workflow CRUD (admin)
    # -------------------------------------------------------------------------

    async def create(
        self,
        *,
        name: str,
        platform: str,
        type: str,
        steps: list[dict[str, Any]],
        description: str | None = None,
        requires_auth: bool = False,
        auth_workflow_id: UUID | None = None,
    ) -> Workflow:
        if not name.strip():
            raise ValidationError("Workflow name is required")
        _validate_enum(platform, Platform, "platform")
        _validate_enum(type, WorkflowType, "workflow type")

        async with self._session_factory() as session:
            normalized = await self._validate_steps(session, steps)
            if auth_workflow_id is not None:
                await self._get_workflow(session, auth_workflow_id)

            workflow = Workflow(
                name=name.strip(),
                description=description,
                platform=platform,
                type=type,
                steps=normalized,
                requires_auth=requires_auth,
                auth_workflow_id=auth_workflow_id,
            )
            session.add(workflow)
            await session.commit()
            await session.refresh(workflow)

        log.info("workflow_created", workflow_id=str(workflow.id), name=workflow.name)
        return workflow

    async def update(self, workflow_id: UUID, **changes: Any) -> Workflow:
        """Update a workflow. Steps, when given, are fully revalidated."""
        async with self._session_factory() as session:
            workflow = await self._get_workflow(session, workflow_id)

            if "steps" in changes and changes["steps"] is not None:
                workflow.steps = await self._validate_steps(session, changes.pop("steps"))
            changes.pop("steps", None)

            for key, value in changes.items():
                if key not in _MUTABLE_WORKFLOW_FIELDS:
                    raise ValidationError(f"Unknown workflow field: {key}")
                if value is None and key not in ("description", "auth_workflow_id"):
                    continue
                if key == "platform":
                    _validate_enum(value, Platform, "platform")
                if key == "type":
                    _validate_enum(value, WorkflowType, "workflow type")
                if key == "auth_workflow_id" and value is not None:
                    if value == workflow.id:
                        raise ValidationError("A workflow cannot be its own auth prelude")
                    await self._get_workflow(session, value)
                setattr(workflow, key, value)

            session.add(workflow)
            await session.commit()
            await session.refresh(workflow)

        log.info("workflow_updated", workflow_id=str(workflow_id))
        return workflow

    async def deactivate(self, workflow_id: UUID) -> Workflow:
        """Soft delete: workflows are never physically removed."""
        async with self._session_factory() as session:
            workflow = await self._get_workflow(session, workflow_id)
            workflow.is_active = False
            session.add(workflow)
            await session.commit()
            await session.refresh(workflow)

        log.info("workflow_deactivated", workflow_id=str(workflow_id))
        return workflow

    async def list_workflows(
        self,
        *,
        platform: str | None = None,
        workflow_type: str | None = None,
        include_inactive: bool = False,
        page: int = 1,
        limit: int = 20,
    ) -> tuple[list[dict[str, Any]], int]:
        """List workflows with steps enriched by their micro action details.

        Returns:
            (items, total) where each item is a dict ready for serialization
        """
        page = max(page, 1)
        limit = min(max(limit, 1), 100)

        async with self._session_factory() as session:
            query = select(Workflow)
            count_query = select(func.count()).select_from(Workflow)
            filters = []
            if platform:
                filters.append(Workflow.platform == platform)
            if workflow_type:
                filters.append(Workflow.type == workflow_type)
            if not include_inactive:
                filters.append(col(Workflow.is_active).is_(True))
            for clause in filters:
                query = query.where(clause)
                count_query = count_query.where(clause)

            total = (await session.execute(count_query)).scalar_one()
            result = await session.execute(
                query.order_by(col(Workflow.created_at).desc())
                .offset((page - 1) * limit)
                .limit(limit)
            )
            workflows = list(result.scalars().all())

            action_ids = {
                UUID(str(step["micro_action_id"]))
                for wf in workflows
                for step in wf.steps
                if step.get("micro_action_id")
            }
            actions: dict[str, MicroAction] = {}
            if action_ids:
                action_result = await session.execute(
                    select(MicroAction).where(col(MicroAction.id).in_(action_ids))
                )
                actions = {str(a.id): a for a in action_result.scalars().all()}

        items = [self._enrich(wf, actions) for wf in workflows]
        return items, int(total)

    async def get_enriched(self, workflow_id: UUID) -> dict[str, Any]:
        async with self._session_factory() as session:
            workflow = await self._get_workflow(session, workflow_id)
            actions = await self._load_actions(session, workflow.steps)
        return self._enrich(workflow, actions)

    # -------------------------------------------------------------------------
    # Micro action catalogue (admin)
    # -------------------------------------------------------------------------

    async def create_micro_action(
        self,
        *,
        name: str,
        type: str,
        params: dict[str, Any] | None = None,
        platform: str | None = None,
        description: str | None = None,
    ) -> MicroAction:
        if not name.strip():
            raise ValidationError("Micro action name is required")
        _validate_enum(type, MicroActionType, "micro action type")
        if platform is not None:
            _validate_enum(platform, Platform, "platform")

        action = MicroAction(
            name=name.strip(),
            type=type,
            params=params or {},
            platform=platform,
            description=description,
        )
        async with self._session_factory() as session:
            session.add(action)
            await session.commit()
            await session.refresh(action)

        log.info("micro_action_created", micro_action_id=str(action.id), type=type)
        return action

    async def list_micro_actions(
        self, *, platform: str | None = None, action_type: str | None = None
    ) -> list[MicroAction]:
        async with self._session_factory() as session:
            query = select(MicroAction).where(col(MicroAction.is_active).is_(True))
            if platform:
                query = query.where(MicroAction.platform == platform)
            if action_type:
                query = query.where(MicroAction.type == action_type)
            result = await session.execute(query.order_by(col(MicroAction.name)))
            return list(result.scalars().all())

    async def update_micro_action(self, action_id: UUID, **changes: Any) -> MicroAction:
        """Update a micro action.

        Type and params become immutable once any job references a workflow
        that uses the action.
        """
        async with self._session_factory() as session:
            result = await session.execute(select(MicroAction).where(MicroAction.id == action_id))
            action = result.scalar_one_or_none()
            if action is None:
                raise NotFoundError("MicroAction", action_id)

            shape_changes = {
                key: value
                for key, value in changes.items()
                if key in _IMMUTABLE_ACTION_FIELDS
                and value is not None
                and value != getattr(action, key)
            }
            if shape_changes and await self._is_referenced_by_job(session, action_id):
                raise InvalidStateError(
                    "Micro action is referenced by existing jobs; create a new action instead",
                    details={"micro_action_id": str(action_id), "fields": sorted(shape_changes)},
                )

            for key, value in changes.items():
                if value is None:
                    continue
                if key == "type":
                    _validate_enum(value, MicroActionType, "micro action type")
                elif key == "platform":
                    _validate_enum(value, Platform, "platform")
                elif key not in ("name", "description", "params", "is_active"):
                    raise ValidationError(f"Unknown micro action field: {key}")
                setattr(action, key, value)
            action.version += 1

            session.add(action)
            await session.commit()
            await session.refresh(action)

        log.info("micro_action_updated", micro_action_id=str(action_id), version=action.version)
        return action

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    async def _get_workflow(self, session: AsyncSession, workflow_id: UUID) -> Workflow:
        result = await session.execute(select(Workflow).where(Workflow.id == workflow_id))
        workflow = result.scalar_one_or_none()
        if workflow is None:
            raise NotFoundError("Workflow", workflow_id)
        return workflow

    async def _load_actions(
        self, session: AsyncSession, steps: list[dict[str, Any]]
    ) -> dict[str, MicroAction]:
        ids = {UUID(str(s["micro_action_id"])) for s in steps if s.get("micro_action_id")}
        if not ids:
            return {}
        result = await session.execute(select(MicroAction).where(col(MicroAction.id).in_(ids)))
        return {str(a.id): a for a in result.scalars().all()}

    async def _validate_steps(
        self, session: AsyncSession, steps: list[dict[str, Any]] | None
    ) -> list[dict[str, Any]]:
        if not steps:
            raise ValidationError("Workflow must contain at least one step")

        normalized: list[dict[str, Any]] = []
        for index, step in enumerate(steps):
            if not isinstance(step, dict) or not step.get("micro_action_id"):
                raise ValidationError(
                    f"Step {index} must reference a micro_action_id",
                    details={"step_index": index},
                )
            try:
                action_id = UUID(str(step["micro_action_id"]))
            except ValueError as e:
                raise ValidationError(
                    f"Step {index} has an invalid micro_action_id",
                    details={"step_index": index},
                ) from e
            override = step.get("params_override") or {}
            if not isinstance(override, dict):
                raise ValidationError(
                    f"Step {index} params_override must be an object",
                    details={"step_index": index},
                )
            normalized.append({"micro_action_id": str(action_id), "params_override": override})

        actions = await self._load_actions(session, normalized)
        missing = [s["micro_action_id"] for s in normalized if s["micro_action_id"] not in actions]
        if missing:
            raise ValidationError(
                "Steps reference unknown micro actions", details={"micro_action_ids": missing}
            )
        return normalized

    async def _build_plan(self, session: AsyncSession, workflow: Workflow) -> ExecutionPlan:
        actions = await self._load_actions(session, workflow.steps)
        steps: list[ResolvedStep] = []
        for index, step in enumerate(workflow.steps):
            action = actions.get(str(step["micro_action_id"]))
            if action is None:
                raise NotFoundError("MicroAction", step["micro_action_id"])
            steps.append(
                ResolvedStep(
                    index=index,
                    micro_action_id=str(action.id),
                    name=action.name,
                    type=action.type,
                    params=merge_step_params(action.params, step.get("params_override")),
                )
            )
        return ExecutionPlan(
            workflow_id=str(workflow.id),
            name=workflow.name,
            platform=workflow.platform,
            type=workflow.type,
            steps=steps,
        )

    async def _is_referenced_by_job(self, session: AsyncSession, action_id: UUID) -> bool:
        result = await session.execute(select(Workflow.id, Workflow.steps))
        workflow_ids = [
            wf_id
            for wf_id, steps in result.all()
            if any(str(s.get("micro_action_id")) == str(action_id) for s in steps or [])
        ]
        if not workflow_ids:
            return False
        job_result = await session.execute(
            select(func.count())
            .select_from(Job)
            .where(col(Job.workflow_id).in_(workflow_ids))
        )
        return job_result.scalar_one() > 0

    @staticmethod
    def _enrich(workflow: Workflow, actions: dict[str, MicroAction]) -> dict[str, Any]:
        steps = []
        for step in workflow.steps:
            action = actions.get(str(step.get("micro_action_id")))
            steps.append(
                {
                    **step,
                    "micro_action": {
                        "id": str(action.id),
                        "name": action.name,
                        "type": action.type,
                        "platform": action.platform,
                        "params": action.params,
                    }
                    if action
                    else None,
                }
            )
        return {
            "id": str(workflow.id),
            "name": workflow.name,
            "description": workflow.description,
            "platform": workflow.platform,
            "type": workflow.type,
            "steps": steps,
            "requires_auth": workflow.requires_auth,
            "auth_workflow_id": str(workflow.auth_workflow_id)
            if workflow.auth_workflow_id
            else None,
            "is_active": workflow.is_active,
            "created_at": workflow.created_at.isoformat(),
            "updated_at": workflow.updated_at.isoformat(),
        }
