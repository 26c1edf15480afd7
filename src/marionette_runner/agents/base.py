"""Platform agent base class.

An agent owns the domain rules of one platform (text limits, required
parameters) and runs canonical workflows by name. Validation always happens
before a browser is opened, so a rejected job never touches the platform.
"""

from __future__ import annotations

import random
from collections.abc import Callable
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass
from typing import Any, ClassVar

import structlog

from marionette.db.models import WorkflowType
from marionette.errors import ValidationError
from marionette.workflows.resolver import ExecutionPlan
from marionette_runner.config import RunnerConfig
from marionette_runner.executor import (
    CancelCheck,
    ExecutionResult,
    StepExecutor,
    missing_variables,
)
from marionette_runner.human import HumanBehavior, Sleep

log = structlog.get_logger()

SessionOpener = Callable[[], AbstractAsyncContextManager[Any]]


@dataclass(frozen=True)
class Credentials:
    """Decrypted account credentials; held in memory for one job only."""

    username: str
    password: str

    def __repr__(self) -> str:
        return f"Credentials(username={self.username!r}, password=***)"


def _default_opener(config: RunnerConfig) -> SessionOpener:
    from marionette_runner.browser import BrowserSession

    return lambda: BrowserSession(config)


class BaseAgent:
    """Runs a platform's workflows with domain validation up front."""

    platform: ClassVar[str] = ""
    # param name -> maximum length, applied to every workflow that carries it
    TEXT_LIMITS: ClassVar[dict[str, int]] = {}
    # workflow type -> params that must be present and non-empty
    REQUIRED_PARAMS: ClassVar[dict[str, tuple[str, ...]]] = {}

    def __init__(
        self,
        config: RunnerConfig,
        *,
        open_session: SessionOpener | None = None,
        credentials: Credentials | None = None,
        rng: random.Random | None = None,
        sleep: Sleep | None = None,
        should_continue: CancelCheck | None = None,
    ) -> None:
        self.config = config
        self.credentials = credentials
        self._open_session = open_session or _default_opener(config)
        self._rng = rng
        self._sleep = sleep
        self._should_continue = should_continue
        self._plans: dict[str, ExecutionPlan] = {}

    def register_plan(self, plan: ExecutionPlan) -> None:
        """Make a resolved workflow runnable under its type name."""
        if plan.platform != self.platform:
            raise ValidationError(
                f"Workflow is for {plan.platform}, not {self.platform}",
                details={"workflow_id": plan.workflow_id},
            )
        self._plans[plan.type] = plan

    # =========================================================================
    # Validation
    # =========================================================================

    def validate(self, workflow_type: str, params: dict[str, Any]) -> None:
        """Reject work the platform would refuse. Raises ValidationError."""
        for name in self.REQUIRED_PARAMS.get(workflow_type, ()):
            value = params.get(name)
            if value is None or (isinstance(value, str) and not value.strip()):
                raise ValidationError(
                    f"'{name}' is required for {self.platform} {workflow_type}",
                    details={"param": name},
                )
        for name, limit in self.TEXT_LIMITS.items():
            value = params.get(name)
            if isinstance(value, str) and len(value) > limit:
                raise ValidationError(
                    f"{self.platform} {name} exceeds {limit} characters",
                    details={"param": name, "length": len(value), "limit": limit},
                )
        self.validate_extra(workflow_type, params)

    def validate_extra(self, workflow_type: str, params: dict[str, Any]) -> None:
        """Platform-specific checks beyond lengths and required params."""

    def _needs_credentials(self, plan: ExecutionPlan) -> bool:
        return plan.type == WorkflowType.AUTH or plan.auth_plan is not None

    def _variables(self, params: dict[str, Any]) -> dict[str, Any]:
        variables = dict(params)
        if self.credentials is not None:
            variables.setdefault("username", self.credentials.username)
            variables["password"] = self.credentials.password
        return variables

    def prepare(self, name: str, params: dict[str, Any] | None = None) -> tuple[ExecutionPlan, dict[str, Any]]:
        """Validate a run without opening a browser; return the plan and its variables."""
        plan = self._plans.get(name)
        if plan is None:
            raise ValidationError(
                f"No {self.platform} workflow registered for '{name}'", details={"workflow": name}
            )
        params = dict(params or {})
        self.validate(plan.type, params)
        if self._needs_credentials(plan) and self.credentials is None:
            raise ValidationError("Account credentials are required for this workflow")

        variables = self._variables(params)
        missing = missing_variables(plan, variables)
        if missing:
            raise ValidationError(
                f"Missing workflow variables: {', '.join(missing)}",
                details={"missing": missing},
            )
        return plan, variables

    # =========================================================================
    # Execution
    # =========================================================================

    async def run_workflow(
        self,
        name: str,
        params: dict[str, Any] | None = None,
        *,
        result: ExecutionResult | None = None,
    ) -> ExecutionResult:
        """Run a registered workflow by canonical name (its workflow type).

        Pass ``result`` to keep the per-step record when the run fails.
        """
        plan, variables = self.prepare(name, params)

        log.info(
            "agent_workflow_started",
            platform=self.platform,
            workflow=name,
            workflow_id=plan.workflow_id,
            has_auth_prelude=plan.auth_plan is not None,
        )
        result = result if result is not None else ExecutionResult()
        async with self._open_session() as session:
            human = HumanBehavior(
                session.page,
                rng=self._rng,
                sleep=self._sleep,
                min_action_delay_ms=self.config.min_action_delay_ms,
                max_action_delay_ms=self.config.max_action_delay_ms,
            )
            executor = StepExecutor(
                human,
                step_timeout_ms=self.config.step_timeout_ms,
                screenshot_dir=self.config.log_dir / "screenshots",
                should_continue=self._should_continue,
            )
            if plan.auth_plan is not None:
                await executor.run(plan.auth_plan.steps, variables, result, phase="auth")
            await executor.run(plan.steps, variables, result)

        log.info(
            "agent_workflow_completed",
            platform=self.platform,
            workflow=name,
            steps=result.steps_completed,
        )
        return result

    async def authenticate(self) -> ExecutionResult:
        return await self.run_workflow(WorkflowType.AUTH.value)
