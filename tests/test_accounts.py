"""Tests for account linking and the verification state machine."""

from __future__ import annotations

from datetime import timedelta
from uuid import uuid4

import pytest
import sqlalchemy as sa

from marionette.crypto import encrypt_secret
from marionette.db.models import AccountStatus, Job, JobStatus, JobType, utcnow_naive
from marionette.errors import ErrorKind, FailureCode, InvalidStateError, NotFoundError


@pytest.fixture
async def auth_workflow(make_workflow):
    return await make_workflow(
        type="auth",
        actions=[
            ("navigate", {"url": "https://x.com/login"}),
            ("type", {"selector": "input[name=text]", "text": "{{username}}"}),
        ],
    )


@pytest.fixture
async def linked(services, owner_id, auth_workflow, register_client):
    runner = await register_client(owner_id)
    account, job = await services.accounts.link(
        owner_id,
        platform="twitter",
        username="marionette_bot",
        encrypted_secret=encrypt_secret("pw", runner.encryption_key),
        client_id=runner.client.client_id,
    )
    return runner, account, job


class TestLink:
    async def test_link_enqueues_auth_job(self, linked) -> None:
        runner, account, job = linked

        assert account.status == AccountStatus.PENDING_VERIFICATION.value
        assert job.job_type == JobType.AUTH.value
        assert job.account_id == str(account.id)
        assert job.client_id == runner.client.client_id

    async def test_duplicate_rejected(self, services, owner_id, linked) -> None:
        runner, account, _ = linked
        with pytest.raises(InvalidStateError):
            await services.accounts.link(
                owner_id,
                platform="twitter",
                username="marionette_bot",
                encrypted_secret="x",
                client_id=runner.client.client_id,
            )

    async def test_requires_auth_workflow(self, services, owner_id, register_client) -> None:
        """Without an auth workflow nothing is created."""
        runner = await register_client(owner_id)
        with pytest.raises(NotFoundError):
            await services.accounts.link(
                owner_id,
                platform="facebook",
                username="someone",
                encrypted_secret="x",
                client_id=runner.client.client_id,
            )
        assert await services.accounts.list_accounts(owner_id) == []

    async def test_requires_owned_client(self, services, owner_id, auth_workflow, register_client) -> None:
        foreign = await register_client(uuid4())
        with pytest.raises(NotFoundError):
            await services.accounts.link(
                owner_id,
                platform="twitter",
                username="someone",
                encrypted_secret="x",
                client_id=foreign.client.client_id,
            )


class TestVerificationOutcomes:
    """Terminal job outcomes drive the account status."""

    async def test_success_activates(self, services, owner_id, linked) -> None:
        runner, account, job = linked
        await services.queue.claim(runner.client)
        await services.queue.complete(job.id, runner.client, {})

        refreshed = await services.accounts.get(owner_id, account.id)
        assert refreshed.status == AccountStatus.ACTIVE.value
        assert refreshed.last_verified_at is not None

    async def test_credentials_rejected(self, services, owner_id, linked) -> None:
        runner, account, job = linked
        await services.queue.claim(runner.client)
        failed = await services.queue.fail(
            job.id,
            runner.client,
            kind=ErrorKind.UPSTREAM_PLATFORM,
            message="Wrong password",
            code=FailureCode.CREDENTIALS_REJECTED.value,
        )

        assert failed.status == JobStatus.FAILED.value
        refreshed = await services.accounts.get(owner_id, account.id)
        assert refreshed.status == AccountStatus.LOGIN_FAILED.value

    async def test_reverification_required(self, services, owner_id, linked) -> None:
        runner, account, job = linked
        await services.queue.claim(runner.client)
        await services.queue.fail(
            job.id,
            runner.client,
            kind=ErrorKind.UPSTREAM_PLATFORM,
            message="Checkpoint",
            code=FailureCode.REVERIFICATION_REQUIRED.value,
        )

        refreshed = await services.accounts.get(owner_id, account.id)
        assert refreshed.status == AccountStatus.NEEDS_REAUTH.value

    async def test_retryable_failure_keeps_pending(self, services, owner_id, linked) -> None:
        runner, account, job = linked
        await services.queue.claim(runner.client)
        await services.queue.fail(job.id, runner.client, kind=ErrorKind.INTERNAL, message="crash")

        refreshed = await services.accounts.get(owner_id, account.id)
        assert refreshed.status == AccountStatus.PENDING_VERIFICATION.value

    @pytest.mark.parametrize("path", ["read", "sweep"])
    async def test_expired_auth_job_fails_login(
        self, services, session_factory, owner_id, linked, path
    ) -> None:
        """An auth job that expires leaves the account login_failed, however it is noticed."""
        runner, account, job = linked
        async with session_factory() as session:
            await session.execute(
                sa.update(Job)
                .where(Job.id == job.id)
                .values(expires_at=utcnow_naive() - timedelta(minutes=1))
            )
            await session.commit()

        if path == "read":
            expired = await services.queue.get(owner_id, job.id)
            assert expired.status == JobStatus.FAILED.value
        else:
            assert await services.queue.expire_overdue() == 1

        refreshed = await services.accounts.get(owner_id, account.id)
        assert refreshed.status == AccountStatus.LOGIN_FAILED.value


class TestVerify:
    async def test_verify_after_login_failure(self, services, owner_id, linked) -> None:
        runner, account, job = linked
        await services.queue.claim(runner.client)
        await services.queue.fail(
            job.id,
            runner.client,
            kind=ErrorKind.UPSTREAM_PLATFORM,
            message="Wrong password",
            code=FailureCode.CREDENTIALS_REJECTED.value,
        )

        account, verify_job = await services.accounts.verify(owner_id, account.id)

        assert account.status == AccountStatus.PENDING_VERIFICATION.value
        assert verify_job.job_type == JobType.VERIFY_ACCOUNT.value
        assert verify_job.status == JobStatus.QUEUED.value

    async def test_verify_active_rejected(self, services, owner_id, linked) -> None:
        runner, account, job = linked
        await services.queue.claim(runner.client)
        await services.queue.complete(job.id, runner.client, {})

        with pytest.raises(InvalidStateError):
            await services.accounts.verify(owner_id, account.id)

    async def test_verify_unknown(self, services, owner_id) -> None:
        with pytest.raises(NotFoundError):
            await services.accounts.verify(owner_id, uuid4())
