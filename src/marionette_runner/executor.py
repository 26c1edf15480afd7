"""Sequential execution of resolved workflow steps.

Steps run strictly in order. The first failure aborts the run; nothing is
rolled back, so a partially executed job has an unknown outcome on the
platform side.
"""

from __future__ import annotations

import re
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import structlog
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from marionette.db.models import MicroActionType
from marionette.errors import (
    FailureCode,
    InvalidStateError,
    MarionetteError,
    UpstreamPlatformError,
    ValidationError,
)
from marionette.workflows.resolver import ExecutionPlan, ResolvedStep
from marionette_runner.human import HumanBehavior

log = structlog.get_logger()

TEMPLATE_PATTERN = re.compile(r"\{\{\s*([A-Za-z_][A-Za-z0-9_]*)\s*\}\}")

CancelCheck = Callable[[], Awaitable[bool]]


class JobCancelledError(InvalidStateError):
    """Raised between steps when the server reports the job was cancelled."""


# =============================================================================
# Templates
# =============================================================================


def template_variables(value: Any) -> set[str]:
    """Collect ``{{name}}`` references in a params structure."""
    if isinstance(value, str):
        return set(TEMPLATE_PATTERN.findall(value))
    if isinstance(value, dict):
        return set().union(*(template_variables(v) for v in value.values())) if value else set()
    if isinstance(value, list):
        return set().union(*(template_variables(v) for v in value)) if value else set()
    return set()


def render_params(value: Any, variables: dict[str, Any]) -> Any:
    """Substitute ``{{name}}`` references. A string that is exactly one reference keeps the value's type."""
    if isinstance(value, str):
        whole = TEMPLATE_PATTERN.fullmatch(value.strip())
        if whole:
            return variables[whole.group(1)]
        return TEMPLATE_PATTERN.sub(lambda m: str(variables[m.group(1)]), value)
    if isinstance(value, dict):
        return {k: render_params(v, variables) for k, v in value.items()}
    if isinstance(value, list):
        return [render_params(v, variables) for v in value]
    return value


def missing_variables(plan: ExecutionPlan, variables: dict[str, Any]) -> list[str]:
    """Template variables referenced by the plan (and its auth prelude) with no value."""
    referenced: set[str] = set()
    for current in (plan.auth_plan, plan):
        if current is None:
            continue
        for step in current.steps:
            referenced |= template_variables(step.params)
    return sorted(referenced - set(variables))


# =============================================================================
# Executor
# =============================================================================


@dataclass
class ExecutionResult:
    """What a run produced; partial when a step failed."""

    steps_completed: int = 0
    extracted: dict[str, Any] = field(default_factory=dict)
    screenshots: list[str] = field(default_factory=list)
    final_url: str | None = None
    duration_ms: float = 0.0
    # one entry per attempted step, including the one that failed
    step_reports: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "steps_completed": self.steps_completed,
            "extracted": self.extracted,
            "screenshots": self.screenshots,
            "final_url": self.final_url,
            "duration_ms": self.duration_ms,
        }

    def record_step(
        self,
        step: ResolvedStep,
        phase: str,
        started: float,
        error: MarionetteError | None = None,
    ) -> None:
        self.step_reports.append(
            {
                "phase": phase,
                "index": step.index,
                "name": step.name,
                "type": step.type,
                "duration_ms": round((time.monotonic() - started) * 1000, 2),
                "success": error is None,
                "code": error.code if error is not None else None,
                "error": error.message if error is not None else None,
            }
        )


class StepExecutor:
    """Runs resolved steps against a page through the human-behaviour layer."""

    def __init__(
        self,
        human: HumanBehavior,
        *,
        step_timeout_ms: float = 30000,
        screenshot_dir: Path | None = None,
        should_continue: CancelCheck | None = None,
    ) -> None:
        self.human = human
        self.page = human.page
        self.step_timeout_ms = step_timeout_ms
        self.screenshot_dir = screenshot_dir or Path.cwd()
        self._should_continue = should_continue
        self._handlers: dict[str, Callable[[dict[str, Any], ExecutionResult], Awaitable[None]]] = {
            MicroActionType.NAVIGATE: self._navigate,
            MicroActionType.CLICK: self._click,
            MicroActionType.TYPE: self._type,
            MicroActionType.WAIT: self._wait,
            MicroActionType.SCROLL: self._scroll,
            MicroActionType.UPLOAD: self._upload,
            MicroActionType.EXTRACT: self._extract,
            MicroActionType.SCREENSHOT: self._screenshot,
            MicroActionType.SUBMIT: self._submit,
            MicroActionType.ASSERT: self._assert,
        }

    async def run(
        self,
        steps: list[ResolvedStep],
        variables: dict[str, Any],
        result: ExecutionResult | None = None,
        *,
        phase: str = "workflow",
    ) -> ExecutionResult:
        """Execute ``steps`` in order; raise on the first failure."""
        result = result or ExecutionResult()
        start = time.monotonic()
        for step in steps:
            if self._should_continue is not None and not await self._should_continue():
                raise JobCancelledError(
                    "Job was cancelled", details={"step_index": step.index}
                )
            step_start = time.monotonic()
            try:
                await self.run_step(step, variables, result)
            except MarionetteError as e:
                result.record_step(step, phase, step_start, e)
                raise
            result.record_step(step, phase, step_start)
            result.steps_completed += 1
        result.final_url = getattr(self.page, "url", None)
        result.duration_ms += round((time.monotonic() - start) * 1000, 2)
        return result

    async def run_step(
        self, step: ResolvedStep, variables: dict[str, Any], result: ExecutionResult
    ) -> None:
        handler = self._handlers.get(step.type)
        if handler is None:
            raise ValidationError(
                f"Unsupported step type: {step.type}",
                details={"step_index": step.index, "step_type": step.type},
            )
        try:
            params = render_params(step.params, variables)
        except KeyError as e:
            raise ValidationError(
                f"Unresolved template variable: {e.args[0]}",
                details={"step_index": step.index},
            ) from e

        log.debug("step_started", step_index=step.index, step_type=step.type, name=step.name)
        try:
            await handler(params, result)
        except MarionetteError as e:
            e.details.setdefault("step_index", step.index)
            e.details.setdefault("step_type", step.type)
            raise
        except PlaywrightTimeoutError as e:
            code = FailureCode.TARGET_MISSING if params.get("selector") else FailureCode.STEP_TIMEOUT
            raise UpstreamPlatformError(
                f"Step {step.index} ({step.type}) timed out",
                code=code.value,
                details={"step_index": step.index, "step_type": step.type},
            ) from e
        except PlaywrightError as e:
            raise UpstreamPlatformError(
                f"Step {step.index} ({step.type}) failed in the browser",
                details={"step_index": step.index, "step_type": step.type, "reason": str(e)[:200]},
            ) from e

    # -------------------------------------------------------------------------
    # Step handlers
    # -------------------------------------------------------------------------

    def _require(self, params: dict[str, Any], key: str) -> Any:
        value = params.get(key)
        if value in (None, ""):
            raise ValidationError(f"Step parameter '{key}' is required")
        return value

    def _timeout(self, params: dict[str, Any]) -> float:
        return float(params.get("timeout_ms", self.step_timeout_ms))

    async def _navigate(self, params: dict[str, Any], result: ExecutionResult) -> None:
        url = self._require(params, "url")
        await self.page.goto(
            url,
            wait_until=params.get("wait_until", "domcontentloaded"),
            timeout=self._timeout(params),
        )
        await self.human.random_delay(1000, 2000)
        expected = params.get("expect_url_contains")
        if expected and expected not in (self.page.url or ""):
            raise UpstreamPlatformError(
                "Navigation landed on an unexpected page",
                code=FailureCode.UNEXPECTED_NAVIGATION.value,
            )

    async def _click(self, params: dict[str, Any], result: ExecutionResult) -> None:
        await self.human.human_click(self._require(params, "selector"), timeout_ms=self._timeout(params))

    async def _type(self, params: dict[str, Any], result: ExecutionResult) -> None:
        text = params.get("text")
        if text is None:
            raise ValidationError("Step parameter 'text' is required")
        await self.human.human_type(
            self._require(params, "selector"), str(text), timeout_ms=self._timeout(params)
        )

    async def _wait(self, params: dict[str, Any], result: ExecutionResult) -> None:
        selector = params.get("selector")
        if selector:
            await self.page.wait_for_selector(
                selector, state=params.get("state", "visible"), timeout=self._timeout(params)
            )
            return
        duration = float(params.get("duration_ms", 1000))
        await self.human.random_delay(duration * 0.8, duration * 1.2)

    async def _scroll(self, params: dict[str, Any], result: ExecutionResult) -> None:
        amount = params.get("amount")
        await self.human.human_scroll(
            params.get("direction", "down"), float(amount) if amount is not None else None
        )

    async def _upload(self, params: dict[str, Any], result: ExecutionResult) -> None:
        file_path = Path(str(self._require(params, "file_path"))).expanduser()
        if not file_path.exists():
            raise ValidationError("Upload file does not exist", details={"file": file_path.name})
        await self.page.set_input_files(
            self._require(params, "selector"), str(file_path), timeout=self._timeout(params)
        )
        await self.human.random_delay(1000, 2500)

    async def _extract(self, params: dict[str, Any], result: ExecutionResult) -> None:
        selector = self._require(params, "selector")
        element = await self.page.wait_for_selector(selector, timeout=self._timeout(params))
        attribute = params.get("attribute")
        if attribute:
            value = await element.get_attribute(attribute)
        else:
            value = await element.text_content()
        result.extracted[str(params.get("name", f"value_{len(result.extracted)}"))] = value

    async def _screenshot(self, params: dict[str, Any], result: ExecutionResult) -> None:
        name = params.get("name") or f"screenshot_{int(time.time() * 1000)}"
        path = self.screenshot_dir / f"{name}.png"
        path.parent.mkdir(parents=True, exist_ok=True)
        await self.page.screenshot(path=str(path), full_page=bool(params.get("full_page", False)))
        result.screenshots.append(str(path))

    async def _submit(self, params: dict[str, Any], result: ExecutionResult) -> None:
        selector = params.get("selector")
        if selector:
            await self.human.human_click(selector, timeout_ms=self._timeout(params))
        else:
            await self.page.keyboard.press("Enter")
        if params.get("wait_for_navigation", True):
            await self.page.wait_for_load_state("domcontentloaded", timeout=self._timeout(params))
        await self.human.random_delay(1000, 2000)

    async def _assert(self, params: dict[str, Any], result: ExecutionResult) -> None:
        """Check page state; ``code`` names the failure reported when the check fails.

        ``expect: absent`` fails when the selector shows up (e.g. a login error banner).
        """
        code = str(params.get("code") or FailureCode.ASSERTION_FAILED.value)
        message = str(params.get("message") or "Page state check failed")

        url_contains = params.get("url_contains")
        if url_contains and url_contains not in (self.page.url or ""):
            raise UpstreamPlatformError(message, code=code)

        selector = params.get("selector")
        if not selector:
            return
        expect = params.get("expect", "present")
        timeout = self._timeout(params)
        if expect == "absent":
            element = await self.page.query_selector(selector)
            if element is not None and await element.is_visible():
                raise UpstreamPlatformError(message, code=code)
            return
        try:
            await self.page.wait_for_selector(selector, state="visible", timeout=timeout)
        except PlaywrightTimeoutError as e:
            raise UpstreamPlatformError(message, code=code) from e
