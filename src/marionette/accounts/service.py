"""Linked platform accounts and their verification state machine.

Transitions::

    pending_verification -> active          (auth job completed)
    pending_verification -> login_failed    (credentials rejected, or auth job failed for good)
    active               -> needs_reauth    (platform forced reverification on any job)
    {login_failed, needs_reauth} -> pending_verification   (verify request)

Account secrets arrive already encrypted under the owning client's key; this
service stores and forwards ciphertext only.
"""

from __future__ import annotations

from datetime import timedelta
from uuid import UUID

import structlog
from sqlmodel import col, select

from marionette.db.connection import SessionFactory
from marionette.db.models import (
    Account,
    AccountStatus,
    Client,
    Job,
    JobType,
    Platform,
    Workflow,
    WorkflowType,
    utcnow_naive,
)
from marionette.errors import (
    FailureCode,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from marionette.jobs.queue import JobOutcome, JobQueue
from marionette.workflows.resolver import WorkflowResolver

log = structlog.get_logger()

AUTH_JOB_TYPES = frozenset({JobType.AUTH, JobType.VERIFY_ACCOUNT})
VERIFIABLE_STATUSES = frozenset(
    {
        AccountStatus.PENDING_VERIFICATION,
        AccountStatus.LOGIN_FAILED,
        AccountStatus.NEEDS_REAUTH,
    }
)


class AccountService:
    """Owner-scoped account management plus outcome-driven status updates."""

    def __init__(
        self,
        session_factory: SessionFactory,
        queue: JobQueue,
        resolver: WorkflowResolver,
        *,
        verification_ttl: timedelta = timedelta(days=7),
    ) -> None:
        self._session_factory = session_factory
        self.queue = queue
        self.resolver = resolver
        self.verification_ttl = verification_ttl
        queue.add_outcome_listener(self.apply_outcome)

    # =========================================================================
    # Owner operations
    # =========================================================================

    async def link(
        self,
        owner_id: UUID,
        *,
        platform: str,
        username: str,
        encrypted_secret: str,
        client_id: str,
    ) -> tuple[Account, Job]:
        """Link a platform account and enqueue its first verification."""
        if platform not in {p.value for p in Platform}:
            raise ValidationError(f"Invalid platform: {platform}")
        if not username.strip():
            raise ValidationError("username is required")
        if not encrypted_secret:
            raise ValidationError("encrypted_secret is required")

        workflow = await self._auth_workflow(platform)

        async with self._session_factory() as session:
            client = (
                await session.execute(
                    select(Client).where(Client.client_id == client_id, Client.owner_id == owner_id)
                )
            ).scalar_one_or_none()
            if client is None:
                raise NotFoundError("Client", client_id)

            existing = (
                await session.execute(
                    select(Account).where(
                        Account.owner_id == owner_id,
                        Account.platform == platform,
                        Account.username == username.strip(),
                    )
                )
            ).scalar_one_or_none()
            if existing is not None:
                raise InvalidStateError(
                    "Account is already linked", details={"account_id": str(existing.id)}
                )

            account = Account(
                owner_id=owner_id,
                platform=platform,
                username=username.strip(),
                encrypted_secret=encrypted_secret,
                client_id=client_id,
                status=AccountStatus.PENDING_VERIFICATION.value,
            )
            session.add(account)
            await session.commit()
            await session.refresh(account)

        log.info(
            "account_linked",
            account_id=str(account.id),
            platform=platform,
            owner_id=str(owner_id),
        )
        job = await self._enqueue_verification(owner_id, account, workflow, JobType.AUTH)
        return account, job

    async def list_accounts(self, owner_id: UUID, *, platform: str | None = None) -> list[Account]:
        async with self._session_factory() as session:
            query = select(Account).where(Account.owner_id == owner_id)
            if platform:
                query = query.where(Account.platform == platform)
            result = await session.execute(query.order_by(col(Account.created_at).desc()))
            return list(result.scalars().all())

    async def get(self, owner_id: UUID, account_id: UUID) -> Account:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Account).where(Account.id == account_id, Account.owner_id == owner_id)
            )
            account = result.scalar_one_or_none()
            if account is None:
                raise NotFoundError("Account", account_id)
            return account

    async def verify(self, owner_id: UUID, account_id: UUID) -> tuple[Account, Job]:
        """Request re-verification: account goes back to pending and an auth job is queued.

        Raises:
            NotFoundError: Account absent or not owned
            InvalidStateError: Account is already active
        """
        async with self._session_factory() as session:
            result = await session.execute(
                select(Account).where(Account.id == account_id, Account.owner_id == owner_id)
            )
            account = result.scalar_one_or_none()
            if account is None:
                raise NotFoundError("Account", account_id)
            workflow = await self._auth_workflow(account.platform)
            if account.status not in VERIFIABLE_STATUSES:
                raise InvalidStateError(
                    "Account is already verified", details={"status": account.status}
                )
            account.status = AccountStatus.PENDING_VERIFICATION.value
            session.add(account)
            await session.commit()
            await session.refresh(account)

        job = await self._enqueue_verification(
            owner_id, account, workflow, JobType.VERIFY_ACCOUNT
        )
        log.info("account_verification_requested", account_id=str(account_id), job_id=str(job.id))
        return account, job

    # =========================================================================
    # Outcome handling
    # =========================================================================

    async def apply_outcome(self, job: Job, outcome: JobOutcome) -> None:
        """Advance the account state machine from a job's terminal outcome."""
        account_id = job.account_id
        if account_id is None:
            return

        is_auth_job = job.job_type in AUTH_JOB_TYPES
        new_status: AccountStatus | None = None
        if outcome.success:
            if is_auth_job:
                new_status = AccountStatus.ACTIVE
        elif outcome.code == FailureCode.CREDENTIALS_REJECTED:
            new_status = AccountStatus.LOGIN_FAILED
        elif outcome.code == FailureCode.REVERIFICATION_REQUIRED:
            new_status = AccountStatus.NEEDS_REAUTH
        elif is_auth_job:
            new_status = AccountStatus.LOGIN_FAILED

        if new_status is None:
            return

        async with self._session_factory() as session:
            result = await session.execute(
                select(Account).where(
                    Account.id == UUID(account_id), Account.owner_id == job.owner_id
                )
            )
            account = result.scalar_one_or_none()
            if account is None:
                log.warning("account_outcome_orphaned", account_id=account_id, job_id=str(job.id))
                return

            previous = account.status
            account.status = new_status.value
            if new_status is AccountStatus.ACTIVE:
                account.last_verified_at = utcnow_naive()
            session.add(account)
            await session.commit()

        log.info(
            "account_status_changed",
            account_id=account_id,
            job_id=str(job.id),
            previous=previous,
            status=new_status.value,
            code=outcome.code,
        )

    # =========================================================================
    # Helpers
    # =========================================================================

    async def _auth_workflow(self, platform: str) -> Workflow:
        workflow = await self.resolver.find_active(platform, WorkflowType.AUTH.value)
        if workflow is None:
            raise NotFoundError("Workflow", f"{platform}/{WorkflowType.AUTH.value}")
        return workflow

    async def _enqueue_verification(
        self, owner_id: UUID, account: Account, workflow: Workflow, job_type: JobType
    ) -> Job:
        return await self.queue.enqueue(
            owner_id,
            job_type=job_type.value,
            payload={
                "workflow_id": str(workflow.id),
                "account_id": str(account.id),
                "client_id": account.client_id,
                "params": {},
            },
            expires_at=utcnow_naive() + self.verification_ttl,
        )
