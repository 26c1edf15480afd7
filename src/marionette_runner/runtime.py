"""Agent runtime: turns a claimed job envelope into a run outcome."""

from __future__ import annotations

import dataclasses
import random
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

import structlog

from marionette.crypto.envelope import decrypt_secret
from marionette.errors import ErrorKind, MarionetteError, ValidationError
from marionette.workflows.resolver import ExecutionPlan
from marionette_runner import __version__
from marionette_runner.agents import Credentials, get_agent_class
from marionette_runner.agents.base import SessionOpener
from marionette_runner.config import RunnerConfig
from marionette_runner.executor import CancelCheck, ExecutionResult, JobCancelledError
from marionette_runner.human import Sleep

log = structlog.get_logger()


@dataclass(frozen=True)
class RunOutcome:
    """Result reported back to the server for one job."""

    success: bool
    kind: ErrorKind | None = None
    code: str | None = None
    message: str | None = None
    result: dict[str, Any] = field(default_factory=dict)
    details: dict[str, Any] = field(default_factory=dict)
    cancelled: bool = False
    # execution report: timings and errors per attempted step
    report: dict[str, Any] | None = None


def build_report(
    outcome: RunOutcome, progress: ExecutionResult, started_at: datetime
) -> dict[str, Any]:
    error = None
    if not outcome.success:
        error = {
            "kind": outcome.kind.value if outcome.kind else ErrorKind.INTERNAL.value,
            "code": "cancelled" if outcome.cancelled else outcome.code,
            "message": outcome.message,
        }
    return {
        "started_at": started_at.isoformat(),
        "finished_at": datetime.now(UTC).isoformat(),
        "success": outcome.success,
        "steps": list(progress.step_reports),
        "error": error,
        "agent_version": __version__,
    }


class AgentRuntime:
    """Executes job envelopes with the platform agent they call for."""

    def __init__(
        self,
        config: RunnerConfig,
        *,
        open_session: SessionOpener | None = None,
        rng: random.Random | None = None,
        sleep: Sleep | None = None,
    ) -> None:
        self.config = config
        self._open_session = open_session
        self._rng = rng
        self._sleep = sleep

    async def execute(
        self, envelope: dict[str, Any], *, should_continue: CancelCheck | None = None
    ) -> RunOutcome:
        """Validate, decrypt credentials, then run the plan.

        Never raises for job-level failures; they come back as a failed outcome.
        The outcome always carries an execution report.
        """
        started_at = datetime.now(UTC)
        progress = ExecutionResult()
        outcome = await self._guarded(envelope, should_continue, progress)
        return dataclasses.replace(outcome, report=build_report(outcome, progress, started_at))

    async def _guarded(
        self,
        envelope: dict[str, Any],
        should_continue: CancelCheck | None,
        progress: ExecutionResult,
    ) -> RunOutcome:
        job_id = envelope.get("job_id")
        try:
            return await self._execute(envelope, should_continue, progress)
        except JobCancelledError:
            log.info("job_cancelled_during_run", job_id=job_id)
            return RunOutcome(
                success=False,
                cancelled=True,
                kind=ErrorKind.INVALID_STATE,
                message="Job was cancelled",
            )
        except MarionetteError as e:
            log.warning(
                "job_run_failed",
                job_id=job_id,
                kind=e.kind.value,
                code=e.code,
                error=e.message,
            )
            return RunOutcome(
                success=False,
                kind=e.kind,
                code=e.code,
                message=e.message,
                details={k: v for k, v in e.details.items() if k in ("step_index", "step_type", "param")},
            )
        except Exception as e:
            log.exception("job_run_crashed", job_id=job_id)
            return RunOutcome(
                success=False,
                kind=ErrorKind.INTERNAL,
                message=f"Agent crashed: {type(e).__name__}",
            )

    async def _execute(
        self,
        envelope: dict[str, Any],
        should_continue: CancelCheck | None,
        progress: ExecutionResult,
    ) -> RunOutcome:
        try:
            plan = ExecutionPlan.from_dict(envelope["plan"])
        except (KeyError, TypeError, ValueError) as e:
            raise ValidationError("Malformed job envelope") from e
        params = dict(envelope.get("params") or {})

        agent_cls = get_agent_class(plan.platform)
        agent = agent_cls(
            self.config,
            open_session=self._open_session,
            rng=self._rng,
            sleep=self._sleep,
            should_continue=should_continue,
        )
        agent.register_plan(plan)
        agent.validate(plan.type, dict(params))

        account = envelope.get("account")
        if account:
            if not self.config.encryption_key:
                raise ValidationError("Runner has no client encryption key configured")
            password = decrypt_secret(account["encrypted_secret"], self.config.encryption_key)
            agent.credentials = Credentials(username=account["username"], password=password)

        result = await agent.run_workflow(plan.type, params, result=progress)
        return RunOutcome(success=True, result=result.to_dict())
