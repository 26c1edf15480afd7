"""Execution reports: per-run step timings and errors submitted by clients.

A report describes one run of a job on one client. Retries produce one
report per attempt; the job row keeps only the final outcome.
"""

from __future__ import annotations

from collections import Counter
from datetime import UTC, datetime
from typing import Any
from uuid import UUID

import sqlalchemy as sa
import structlog
from sqlmodel import col, func, select

from marionette.db.connection import SessionFactory
from marionette.db.models import Client, ExecutionReport, Job, Workflow
from marionette.errors import NotFoundError, ValidationError

log = structlog.get_logger()


def _naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(UTC).replace(tzinfo=None)


class ExecutionReportService:
    """Stores client run reports and serves them back to their owner."""

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    async def submit(
        self,
        job_id: UUID,
        client: Client,
        *,
        started_at: datetime,
        finished_at: datetime,
        success: bool,
        steps: list[dict[str, Any]],
        error: dict[str, Any] | None = None,
        agent_version: str | None = None,
    ) -> ExecutionReport:
        """Record a run of a job the client claimed.

        Accepted whatever the job's current status, so a run that ended in
        cancellation or expiry still leaves its trace.

        Raises:
            NotFoundError: Job missing, foreign, or never claimed by this client
            ValidationError: finished_at precedes started_at
        """
        started_at = _naive_utc(started_at)
        finished_at = _naive_utc(finished_at)
        if finished_at < started_at:
            raise ValidationError("finished_at must not precede started_at")

        successful = sum(1 for step in steps if step.get("success"))
        async with self._session_factory() as session:
            job = (await session.execute(select(Job).where(Job.id == job_id))).scalar_one_or_none()
            if job is None or job.owner_id != client.owner_id or job.claimed_by != client.client_id:
                raise NotFoundError("Job", job_id)

            workflow = None
            if job.workflow_id is not None:
                workflow = (
                    await session.execute(select(Workflow).where(Workflow.id == job.workflow_id))
                ).scalar_one_or_none()

            report = ExecutionReport(
                job_id=job.id,
                owner_id=job.owner_id,
                client_id=client.client_id,
                workflow_id=job.workflow_id,
                platform=workflow.platform if workflow else None,
                workflow_type=workflow.type if workflow else None,
                agent_version=agent_version or client.agent_version,
                success=success,
                started_at=started_at,
                finished_at=finished_at,
                duration_ms=round((finished_at - started_at).total_seconds() * 1000, 2),
                total_steps=len(steps),
                successful_steps=successful,
                failed_steps=len(steps) - successful,
                steps=steps,
                error=error,
            )
            session.add(report)
            await session.commit()
            await session.refresh(report)

        log.info(
            "execution_report_submitted",
            report_id=str(report.id),
            job_id=str(job_id),
            client_id=client.client_id,
            success=success,
            steps=len(steps),
            duration_ms=report.duration_ms,
        )
        return report

    async def list_reports(
        self,
        owner_id: UUID,
        *,
        job_id: UUID | None = None,
        platform: str | None = None,
        success: bool | None = None,
        page: int = 1,
        limit: int = 20,
    ) -> tuple[list[ExecutionReport], int]:
        page = max(page, 1)
        limit = min(max(limit, 1), 100)
        conditions = [ExecutionReport.owner_id == owner_id]
        if job_id is not None:
            conditions.append(ExecutionReport.job_id == job_id)
        if platform:
            conditions.append(ExecutionReport.platform == platform)
        if success is not None:
            conditions.append(ExecutionReport.success == success)

        async with self._session_factory() as session:
            total = (
                await session.execute(
                    select(func.count()).select_from(ExecutionReport).where(*conditions)
                )
            ).scalar_one()
            result = await session.execute(
                select(ExecutionReport)
                .where(*conditions)
                .order_by(col(ExecutionReport.started_at).desc())
                .offset((page - 1) * limit)
                .limit(limit)
            )
            return list(result.scalars().all()), int(total)

    async def get(self, owner_id: UUID, report_id: UUID) -> ExecutionReport:
        async with self._session_factory() as session:
            result = await session.execute(
                select(ExecutionReport).where(
                    ExecutionReport.id == report_id, ExecutionReport.owner_id == owner_id
                )
            )
            report = result.scalar_one_or_none()
            if report is None:
                raise NotFoundError("Execution report", report_id)
            return report

    async def statistics(self, owner_id: UUID) -> dict[str, Any]:
        """Run counts, success rate, mean duration and failure codes for an owner."""
        async with self._session_factory() as session:
            row = (
                await session.execute(
                    select(
                        func.count(),
                        func.sum(sa.case((col(ExecutionReport.success).is_(True), 1), else_=0)),
                        func.avg(ExecutionReport.duration_ms),
                    )
                    .select_from(ExecutionReport)
                    .where(ExecutionReport.owner_id == owner_id)
                )
            ).one()
            errors = (
                await session.execute(
                    select(ExecutionReport.error).where(
                        ExecutionReport.owner_id == owner_id,
                        col(ExecutionReport.success).is_(False),
                    )
                )
            ).scalars().all()

        total = int(row[0] or 0)
        successful = int(row[1] or 0)
        codes = Counter((error or {}).get("code") or "unknown" for error in errors)
        return {
            "total_runs": total,
            "successful_runs": successful,
            "failed_runs": total - successful,
            "success_rate": round(successful / total * 100, 2) if total else 0.0,
            "average_duration_ms": round(float(row[2]), 2) if row[2] is not None else None,
            "failures_by_code": dict(codes.most_common()),
        }
