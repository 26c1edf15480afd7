"""Runner daemon - heartbeat and job polling against the Marionette server."""

import asyncio
import contextlib
from typing import Any

import httpx
import structlog

from marionette.errors import InvalidStateError, MarionetteError, NotFoundError, TokenExpiredError
from marionette_runner.config import RunnerConfig
from marionette_runner.connection import ServerClient
from marionette_runner.runtime import AgentRuntime, RunOutcome

log = structlog.get_logger()


class RunnerDaemon:
    """Main runner daemon.

    Responsibilities:
    - Send heartbeats on a fixed interval (independent of job execution)
    - Poll for and claim jobs, running them one at a time
    - Report completion or failure
    - Stop a run between steps when the server reports it cancelled
    """

    def __init__(
        self,
        config: RunnerConfig,
        *,
        server: ServerClient | None = None,
        runtime: AgentRuntime | None = None,
    ) -> None:
        self.config = config
        self.server = server or ServerClient(config)
        self.runtime = runtime or AgentRuntime(config)
        self._shutdown = asyncio.Event()
        self._busy = False
        self._tasks: set[asyncio.Task[None]] = set()
        self.jobs_processed = 0

    def request_shutdown(self) -> None:
        """Request graceful shutdown; the current job finishes first."""
        if self._shutdown.is_set():
            return
        log.info("shutdown_requested")
        self._shutdown.set()

    async def run(self) -> None:
        """Run both loops until shutdown."""
        log.info(
            "daemon_starting",
            client_id=self.config.client_id,
            server_url=self.config.server_url,
            polling_interval=self.config.polling_interval,
        )
        for coro in (self._heartbeat_loop(), self._claim_loop()):
            task = asyncio.create_task(coro)
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

        await self._shutdown.wait()
        await self._cleanup()
        log.info("daemon_stopped", jobs_processed=self.jobs_processed)

    async def _cleanup(self) -> None:
        current = asyncio.current_task()
        pending = [t for t in self._tasks if t is not current and not t.done()]
        for task in pending:
            task.cancel()
        for task in pending:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        with contextlib.suppress(httpx.HTTPError, MarionetteError):
            await self.server.heartbeat(status="offline")
        await self.server.close()

    async def _sleep(self, seconds: float) -> None:
        with contextlib.suppress(asyncio.TimeoutError):
            await asyncio.wait_for(self._shutdown.wait(), timeout=seconds)

    # =========================================================================
    # Loops
    # =========================================================================

    async def _heartbeat_loop(self) -> None:
        while not self._shutdown.is_set():
            await self.send_heartbeat()
            await self._sleep(self.config.heartbeat_interval)

    async def send_heartbeat(self) -> bool:
        try:
            await self.server.heartbeat(status="busy" if self._busy else "online")
            return True
        except TokenExpiredError:
            log.error("api_token_expired", client_id=self.config.client_id)
            self.request_shutdown()
        except (httpx.HTTPError, MarionetteError) as e:
            log.warning("heartbeat_failed", error=str(e))
        return False

    async def _claim_loop(self) -> None:
        while not self._shutdown.is_set():
            await self.poll_once()
            await self._sleep(self.config.polling_interval)

    async def poll_once(self) -> int:
        """Claim and run up to max_jobs_per_cycle jobs. Returns how many ran."""
        processed = 0
        while processed < self.config.max_jobs_per_cycle and not self._shutdown.is_set():
            try:
                envelope = await self.server.claim()
            except TokenExpiredError:
                log.error("api_token_expired", client_id=self.config.client_id)
                self.request_shutdown()
                break
            except (httpx.HTTPError, MarionetteError) as e:
                log.warning("claim_failed", error=str(e))
                break
            if envelope is None:
                break
            await self.process(envelope)
            processed += 1
        return processed

    # =========================================================================
    # Job processing
    # =========================================================================

    async def process(self, envelope: dict[str, Any]) -> RunOutcome:
        job_id = str(envelope["job_id"])
        log.info("job_started", job_id=job_id, job_type=envelope.get("job_type"))
        self._busy = True
        try:
            outcome = await self.runtime.execute(
                envelope, should_continue=lambda: self._still_processing(job_id)
            )
        finally:
            self._busy = False

        await self._report(job_id, outcome)
        self.jobs_processed += 1
        return outcome

    async def _still_processing(self, job_id: str) -> bool:
        try:
            return await self.server.job_status(job_id) == "processing"
        except (httpx.HTTPError, MarionetteError) as e:
            log.debug("job_status_check_failed", job_id=job_id, error=str(e))
            return True

    async def _report(self, job_id: str, outcome: RunOutcome) -> None:
        await self._report_outcome(job_id, outcome)
        if outcome.report is not None:
            await self._submit_execution_report(job_id, outcome.report)

    async def _report_outcome(self, job_id: str, outcome: RunOutcome) -> None:
        if outcome.cancelled:
            log.info("job_cancelled", job_id=job_id)
            return
        try:
            if outcome.success:
                await self.server.complete(job_id, outcome.result)
                log.info("job_completed", job_id=job_id)
            else:
                await self.server.fail(
                    job_id,
                    kind=outcome.kind or "internal",
                    message=outcome.message or "Job failed",
                    code=outcome.code,
                    details=outcome.details,
                )
                log.warning("job_failed", job_id=job_id, kind=str(outcome.kind), code=outcome.code)
        except (InvalidStateError, NotFoundError):
            log.info("job_report_rejected", job_id=job_id, reason="job no longer processing")
        except (httpx.HTTPError, MarionetteError) as e:
            log.error("job_report_failed", job_id=job_id, error=str(e))

    async def _submit_execution_report(self, job_id: str, report: dict[str, Any]) -> None:
        try:
            await self.server.submit_report(job_id, report)
        except (httpx.HTTPError, MarionetteError) as e:
            log.warning("execution_report_failed", job_id=job_id, error=str(e))
