"""Work envelope handed to a client when it claims a job."""

from __future__ import annotations

from typing import Any
from uuid import UUID

import structlog

from marionette.accounts.service import AccountService
from marionette.db.models import Client, Job
from marionette.errors import MarionetteError
from marionette.jobs.queue import JobQueue
from marionette.workflows.resolver import WorkflowResolver

log = structlog.get_logger()


async def build_assignment(
    job: Job, *, resolver: WorkflowResolver, accounts: AccountService
) -> dict[str, Any]:
    """Resolve everything a client needs to run a claimed job.

    The account secret is forwarded as ciphertext; only the client holds the
    key that decrypts it.
    """
    plan = await resolver.resolve(UUID(str(job.payload["workflow_id"])))

    account: dict[str, Any] | None = None
    if job.account_id:
        record = await accounts.get(job.owner_id, UUID(job.account_id))
        account = {
            "id": str(record.id),
            "platform": record.platform,
            "username": record.username,
            "encrypted_secret": record.encrypted_secret,
        }

    return {
        "job_id": str(job.id),
        "job_type": job.job_type,
        "retry_count": job.retry_count,
        "expires_at": job.expires_at.isoformat() if job.expires_at else None,
        "params": job.payload.get("params") or {},
        "plan": plan.to_dict(),
        "account": account,
    }


async def claim_assignment(
    client: Client,
    *,
    queue: JobQueue,
    resolver: WorkflowResolver,
    accounts: AccountService,
) -> dict[str, Any] | None:
    """Claim the next job and build its envelope.

    A job whose references went stale between enqueue and claim (workflow
    deactivated, account removed) is failed immediately instead of handed out.
    """
    job = await queue.claim(client)
    if job is None:
        return None
    try:
        return await build_assignment(job, resolver=resolver, accounts=accounts)
    except MarionetteError as e:
        log.warning(
            "job_assignment_unresolvable",
            job_id=str(job.id),
            error_kind=e.kind.value,
            error=e.message,
        )
        await queue.fail(job.id, client, kind=e.kind, message=e.message, code=e.code)
        return None
