"""Durable job queue.

Manages the DB-backed job lifecycle:
- enqueue
- claim (exactly-once, conditional status update)
- complete / retry / fail
- cancel
- expiry (lazy on read and claim, plus a periodic sweep)

State machine::

    queued -> processing -> completed
                         -> failed (retryable, budget left) -> queued
                         -> failed (terminal)
    {queued, processing} -> cancelled
    {queued, processing} -> failed (expired)

Nothing leaves completed, failed or cancelled.
"""

from __future__ import annotations

import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any
from uuid import UUID

import sqlalchemy as sa
import structlog
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import col, func, or_, select

from marionette.clients.registry import ClientRegistry
from marionette.db.connection import SessionFactory
from marionette.db.models import (
    CANCELLABLE_STATUSES,
    Account,
    Client,
    Job,
    JobStatus,
    JobType,
    Workflow,
    utcnow_naive,
)
from marionette.errors import (
    ErrorKind,
    FailureCode,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)

log = structlog.get_logger()

CANNOT_CANCEL = "Cannot cancel job in current status"
CANNOT_RETRY = "Cannot retry job in current status"

RETRYABLE_STATUSES = frozenset({JobStatus.FAILED.value, JobStatus.CANCELLED.value})

NON_RETRYABLE_KINDS = frozenset(
    {
        ErrorKind.VALIDATION,
        ErrorKind.UNAUTHORIZED,
        ErrorKind.NOT_FOUND,
        ErrorKind.INVALID_STATE,
    }
)
NON_RETRYABLE_CODES = frozenset(
    {
        FailureCode.CREDENTIALS_REJECTED,
        FailureCode.REVERIFICATION_REQUIRED,
    }
)

_CLAIM_CANDIDATES = 20


def is_retryable(kind: ErrorKind | str, code: str | None = None) -> bool:
    """Whether a failure may be retried.

    Validation failures, credential rejections and forced reverification are
    never retried; the same input would fail the same way.
    """
    try:
        resolved = ErrorKind(kind)
    except ValueError:
        resolved = ErrorKind.INTERNAL
    if resolved in NON_RETRYABLE_KINDS:
        return False
    return code not in NON_RETRYABLE_CODES


@dataclass(frozen=True)
class JobOutcome:
    """Terminal result of a job, delivered to outcome listeners."""

    success: bool
    kind: ErrorKind | None = None
    code: str | None = None
    message: str | None = None
    result: dict[str, Any] = field(default_factory=dict)


OutcomeListener = Callable[[Job, JobOutcome], Awaitable[None]]

_EXPIRED_OUTCOME = JobOutcome(
    success=False,
    kind=ErrorKind.INVALID_STATE,
    code=FailureCode.EXPIRED.value,
    message="Job expired before completion",
)


class JobQueue:
    """DB-backed job queue with exactly-once claim and retry/fail semantics."""

    def __init__(
        self,
        session_factory: SessionFactory,
        registry: ClientRegistry,
        *,
        default_ttl: timedelta = timedelta(days=7),
        default_max_retries: int = 3,
    ) -> None:
        self._session_factory = session_factory
        self.registry = registry
        self.default_ttl = default_ttl
        self.default_max_retries = default_max_retries
        self._listeners: list[OutcomeListener] = []

    def add_outcome_listener(self, listener: OutcomeListener) -> None:
        """Register a coroutine called once per job on its terminal outcome."""
        self._listeners.append(listener)

    # =========================================================================
    # Owner operations
    # =========================================================================

    async def enqueue(
        self,
        owner_id: UUID,
        *,
        job_type: str = JobType.ACTION.value,
        payload: dict[str, Any],
        scheduled_for: datetime | None = None,
        expires_at: datetime | None = None,
        max_retries: int | None = None,
    ) -> Job:
        """Enqueue a job after validating its payload references.

        Raises:
            ValidationError: Malformed payload or unknown job type
            NotFoundError: Workflow, account or client missing or not owned
            InvalidStateError: Workflow is deactivated
        """
        start = time.monotonic()
        if job_type not in {t.value for t in JobType}:
            raise ValidationError(f"Invalid job type: {job_type}")
        workflow_id = self._parse_uuid(payload.get("workflow_id"), "workflow_id")
        params = payload.get("params") or {}
        if not isinstance(params, dict):
            raise ValidationError("params must be an object")

        now = utcnow_naive()
        if expires_at is None:
            expires_at = now + self.default_ttl
        if scheduled_for is not None and scheduled_for >= expires_at:
            raise ValidationError("scheduled_for must be before expires_at")

        async with self._session_factory() as session:
            workflow = (
                await session.execute(select(Workflow).where(Workflow.id == workflow_id))
            ).scalar_one_or_none()
            if workflow is None:
                raise NotFoundError("Workflow", workflow_id)
            if not workflow.is_active:
                raise InvalidStateError(
                    "Workflow is not active", details={"workflow_id": str(workflow_id)}
                )

            account_id = payload.get("account_id")
            client_id = payload.get("client_id")
            if account_id:
                account = await self._get_owned_account(
                    session, owner_id, self._parse_uuid(account_id, "account_id")
                )
                if account.platform != workflow.platform:
                    raise ValidationError(
                        "Account platform does not match workflow platform",
                        details={"account": account.platform, "workflow": workflow.platform},
                    )
                client_id = client_id or account.client_id
            if client_id:
                await self._get_owned_client(session, owner_id, str(client_id))

            job = Job(
                owner_id=owner_id,
                job_type=job_type,
                status=JobStatus.QUEUED.value,
                payload={
                    "workflow_id": str(workflow_id),
                    "account_id": str(account_id) if account_id else None,
                    "client_id": str(client_id) if client_id else None,
                    "params": params,
                },
                workflow_id=workflow_id,
                client_id=str(client_id) if client_id else None,
                max_retries=self.default_max_retries if max_retries is None else max_retries,
                scheduled_for=scheduled_for,
                expires_at=expires_at,
            )
            session.add(job)
            await session.commit()
            await session.refresh(job)

        log.info(
            "job_enqueued",
            job_id=str(job.id),
            job_type=job_type,
            owner_id=str(owner_id),
            workflow_id=str(workflow_id),
            duration_ms=round((time.monotonic() - start) * 1000, 2),
        )
        return job

    async def get(self, owner_id: UUID, job_id: UUID) -> Job:
        """Fetch an owned job, applying the lazy expiry check."""
        expired = False
        async with self._session_factory() as session:
            job = await self._get_owned_job(session, owner_id, job_id)
            if self._is_overdue(job, utcnow_naive()):
                expired = await self._expire(session, job.id)
                await session.refresh(job)

        if expired:
            await self._notify(job, _EXPIRED_OUTCOME)
        return job

    async def history(
        self,
        owner_id: UUID,
        *,
        status: str | None = None,
        page: int = 1,
        limit: int = 20,
    ) -> tuple[list[Job], int]:
        page = max(page, 1)
        limit = min(max(limit, 1), 100)
        async with self._session_factory() as session:
            query = select(Job).where(Job.owner_id == owner_id)
            count_query = select(func.count()).select_from(Job).where(Job.owner_id == owner_id)
            if status:
                query = query.where(Job.status == status)
                count_query = count_query.where(Job.status == status)
            total = (await session.execute(count_query)).scalar_one()
            result = await session.execute(
                query.order_by(col(Job.created_at).desc()).offset((page - 1) * limit).limit(limit)
            )
            return list(result.scalars().all()), int(total)

    async def cancel(self, owner_id: UUID, job_id: UUID) -> Job:
        """Cancel a queued or processing job.

        Raises:
            NotFoundError: Job missing or not owned
            InvalidStateError: Job already completed, failed or cancelled
        """
        async with self._session_factory() as session:
            job = await self._get_owned_job(session, owner_id, job_id)
            if job.status not in CANCELLABLE_STATUSES:
                raise InvalidStateError(CANNOT_CANCEL, details={"status": job.status})

            now = utcnow_naive()
            result = await session.execute(
                sa.update(Job)
                .where(
                    col(Job.id) == job.id,
                    col(Job.status).in_([s.value for s in CANCELLABLE_STATUSES]),
                )
                .values(status=JobStatus.CANCELLED.value, processed_at=now, updated_at=now)
            )
            if result.rowcount != 1:
                await session.rollback()
                raise InvalidStateError(CANNOT_CANCEL, details={"job_id": str(job_id)})
            await session.commit()
            await session.refresh(job)

        log.info("job_cancelled", job_id=str(job_id), owner_id=str(owner_id))
        return job

    async def retry(self, owner_id: UUID, job_id: UUID) -> Job:
        """Re-run a failed or cancelled job as a new queued job.

        The original job is left untouched. The new job copies its type,
        payload and retry budget, starts with a fresh expiry and no schedule.

        Raises:
            NotFoundError: Job missing or not owned
            InvalidStateError: Job is not failed or cancelled
        """
        async with self._session_factory() as session:
            original = await self._get_owned_job(session, owner_id, job_id)
            if original.status not in RETRYABLE_STATUSES:
                raise InvalidStateError(CANNOT_RETRY, details={"status": original.status})

            job = Job(
                owner_id=owner_id,
                job_type=original.job_type,
                status=JobStatus.QUEUED.value,
                payload=dict(original.payload),
                workflow_id=original.workflow_id,
                client_id=original.client_id,
                max_retries=original.max_retries,
                expires_at=utcnow_naive() + self.default_ttl,
                retry_of=original.id,
            )
            session.add(job)
            await session.commit()
            await session.refresh(job)

        log.info("job_retried", job_id=str(job.id), retry_of=str(job_id), owner_id=str(owner_id))
        return job

    # =========================================================================
    # Client operations
    # =========================================================================

    async def claim(self, client: Client) -> Job | None:
        """Claim the oldest eligible queued job for a live client.

        Each candidate is claimed with ``UPDATE ... WHERE status = 'queued'``;
        only the caller whose update affects exactly one row wins it.
        """
        start = time.monotonic()
        now = utcnow_naive()
        if not self.registry.is_live(client, now):
            log.info("job_claim_skipped_stale_client", client_id=client.client_id)
            return None

        async with self._session_factory() as session:
            result = await session.execute(
                select(Job)
                .where(
                    Job.owner_id == client.owner_id,
                    Job.status == JobStatus.QUEUED.value,
                    or_(col(Job.scheduled_for).is_(None), col(Job.scheduled_for) <= now),
                    or_(col(Job.expires_at).is_(None), col(Job.expires_at) > now),
                    or_(col(Job.client_id).is_(None), col(Job.client_id) == client.client_id),
                )
                .order_by(col(Job.created_at).asc())
                .limit(_CLAIM_CANDIDATES)
            )
            candidate_ids = [job.id for job in result.scalars().all()]

            for candidate_id in candidate_ids:
                update_result = await session.execute(
                    sa.update(Job)
                    .where(
                        col(Job.id) == candidate_id,
                        col(Job.status) == JobStatus.QUEUED.value,
                    )
                    .values(
                        status=JobStatus.PROCESSING.value,
                        claimed_by=client.client_id,
                        claimed_at=now,
                        updated_at=now,
                    )
                )
                if update_result.rowcount == 1:
                    await session.commit()
                    claimed = (
                        await session.execute(select(Job).where(Job.id == candidate_id))
                    ).scalar_one()
                    await session.refresh(claimed)
                    log.info(
                        "job_claimed",
                        job_id=str(candidate_id),
                        client_id=client.client_id,
                        retry_count=claimed.retry_count,
                        duration_ms=round((time.monotonic() - start) * 1000, 2),
                    )
                    return claimed
                log.debug("job_claim_lost", job_id=str(candidate_id), client_id=client.client_id)

        return None

    async def complete(
        self, job_id: UUID, client: Client, result: dict[str, Any] | None = None
    ) -> Job:
        """Mark a processing job completed by the client that claimed it."""
        now = utcnow_naive()
        async with self._session_factory() as session:
            job = await self._get_claimed_job(session, job_id, client)
            update_result = await session.execute(
                sa.update(Job)
                .where(
                    col(Job.id) == job.id,
                    col(Job.status) == JobStatus.PROCESSING.value,
                    col(Job.claimed_by) == client.client_id,
                )
                .values(
                    status=JobStatus.COMPLETED.value,
                    result=result or {},
                    processed_at=now,
                    updated_at=now,
                )
            )
            if update_result.rowcount != 1:
                await session.rollback()
                raise InvalidStateError(
                    "Job is not processing", details={"job_id": str(job_id)}
                )
            await session.execute(
                sa.update(Client)
                .where(col(Client.id) == client.id)
                .values(total_jobs=Client.total_jobs + 1)
            )
            await session.commit()
            await session.refresh(job)

        log.info("job_completed", job_id=str(job_id), client_id=client.client_id)
        await self._notify(job, JobOutcome(success=True, result=job.result))
        return job

    async def fail(
        self,
        job_id: UUID,
        client: Client,
        *,
        kind: ErrorKind | str,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> Job:
        """Record a failure; requeue when retryable and budget remains, else fail."""
        now = utcnow_naive()
        try:
            error_kind = ErrorKind(kind)
        except ValueError:
            error_kind = ErrorKind.INTERNAL

        async with self._session_factory() as session:
            job = await self._get_claimed_job(session, job_id, client)
            retry = is_retryable(error_kind, code) and job.retry_count < job.max_retries

            if retry:
                values: dict[str, Any] = {
                    "status": JobStatus.QUEUED.value,
                    "retry_count": job.retry_count + 1,
                    "claimed_by": None,
                    "claimed_at": None,
                    "error_kind": error_kind.value,
                    "error_message": message,
                    "updated_at": now,
                }
            else:
                values = {
                    "status": JobStatus.FAILED.value,
                    "error_kind": error_kind.value,
                    "error_message": message,
                    "result": {"code": code, **(details or {})},
                    "processed_at": now,
                    "updated_at": now,
                }

            update_result = await session.execute(
                sa.update(Job)
                .where(
                    col(Job.id) == job.id,
                    col(Job.status) == JobStatus.PROCESSING.value,
                    col(Job.claimed_by) == client.client_id,
                    col(Job.retry_count) == job.retry_count,
                )
                .values(**values)
            )
            if update_result.rowcount != 1:
                await session.rollback()
                raise InvalidStateError(
                    "Job is not processing", details={"job_id": str(job_id)}
                )
            await session.commit()
            await session.refresh(job)

        if retry:
            log.warning(
                "job_retry_scheduled",
                job_id=str(job_id),
                retry_count=job.retry_count,
                max_retries=job.max_retries,
                error_kind=error_kind.value,
                code=code,
            )
            return job

        log.warning(
            "job_failed",
            job_id=str(job_id),
            client_id=client.client_id,
            error_kind=error_kind.value,
            code=code,
            retry_count=job.retry_count,
        )
        await self._notify(
            job, JobOutcome(success=False, kind=error_kind, code=code, message=message)
        )
        return job

    async def status(self, job_id: UUID, client: Client) -> Job:
        """Current state of a job the client claimed (used to observe cancellation)."""
        async with self._session_factory() as session:
            result = await session.execute(select(Job).where(Job.id == job_id))
            job = result.scalar_one_or_none()
            if job is None or job.owner_id != client.owner_id or (
                job.claimed_by != client.client_id and job.client_id != client.client_id
            ):
                raise NotFoundError("Job", job_id)
            return job

    # =========================================================================
    # Maintenance
    # =========================================================================

    async def expire_overdue(self) -> int:
        """Fail every queued or processing job past its expires_at.

        Returns:
            Number of jobs expired
        """
        now = utcnow_naive()
        async with self._session_factory() as session:
            result = await session.execute(
                select(Job).where(
                    col(Job.status).in_([s.value for s in CANCELLABLE_STATUSES]),
                    col(Job.expires_at).is_not(None),
                    col(Job.expires_at) <= now,
                )
            )
            overdue = list(result.scalars().all())
            expired: list[Job] = []
            for job in overdue:
                if await self._expire(session, job.id):
                    expired.append(job)

        for job in expired:
            await self._notify(job, _EXPIRED_OUTCOME)
        if expired:
            log.info("jobs_expired", count=len(expired))
        return len(expired)

    # =========================================================================
    # Helpers
    # =========================================================================

    @staticmethod
    def _parse_uuid(value: Any, label: str) -> UUID:
        if isinstance(value, UUID):
            return value
        try:
            return UUID(str(value))
        except (TypeError, ValueError) as e:
            raise ValidationError(f"{label} must be a valid UUID") from e

    @staticmethod
    def _is_overdue(job: Job, now: datetime) -> bool:
        return (
            job.status in CANCELLABLE_STATUSES
            and job.expires_at is not None
            and job.expires_at <= now
        )

    async def _expire(self, session: AsyncSession, job_id: UUID) -> bool:
        now = utcnow_naive()
        result = await session.execute(
            sa.update(Job)
            .where(
                col(Job.id) == job_id,
                col(Job.status).in_([s.value for s in CANCELLABLE_STATUSES]),
                col(Job.expires_at) <= now,
            )
            .values(
                status=JobStatus.FAILED.value,
                error_kind=ErrorKind.INVALID_STATE.value,
                error_message="Job expired before completion",
                result={"code": FailureCode.EXPIRED.value},
                processed_at=now,
                updated_at=now,
            )
        )
        await session.commit()
        if result.rowcount == 1:
            log.info("job_expired", job_id=str(job_id))
            return True
        return False

    async def _notify(self, job: Job, outcome: JobOutcome) -> None:
        for listener in self._listeners:
            await listener(job, outcome)

    async def _get_owned_job(self, session: AsyncSession, owner_id: UUID, job_id: UUID) -> Job:
        result = await session.execute(
            select(Job).where(Job.id == job_id, Job.owner_id == owner_id)
        )
        job = result.scalar_one_or_none()
        if job is None:
            raise NotFoundError("Job", job_id)
        return job

    async def _get_claimed_job(self, session: AsyncSession, job_id: UUID, client: Client) -> Job:
        result = await session.execute(select(Job).where(Job.id == job_id))
        job = result.scalar_one_or_none()
        if job is None or job.owner_id != client.owner_id or job.claimed_by != client.client_id:
            raise NotFoundError("Job", job_id)
        if job.status != JobStatus.PROCESSING.value:
            raise InvalidStateError(
                "Job is not processing", details={"job_id": str(job_id), "status": job.status}
            )
        return job

    async def _get_owned_account(
        self, session: AsyncSession, owner_id: UUID, account_id: UUID
    ) -> Account:
        result = await session.execute(
            select(Account).where(Account.id == account_id, Account.owner_id == owner_id)
        )
        account = result.scalar_one_or_none()
        if account is None:
            raise NotFoundError("Account", account_id)
        return account

    async def _get_owned_client(self, session: AsyncSession, owner_id: UUID, client_id: str) -> Client:
        result = await session.execute(
            select(Client).where(Client.client_id == client_id, Client.owner_id == owner_id)
        )
        client = result.scalar_one_or_none()
        if client is None:
            raise NotFoundError("Client", client_id)
        return client
