"""HTTP surface tests: status mapping, auth, and the client job protocol."""

from __future__ import annotations

from collections.abc import AsyncIterator
from uuid import uuid4

import httpx
import pytest

from marionette.auth.jwt import create_access_token
from marionette.crypto import unwrap_client_key
from marionette.jobs.queue import CANNOT_CANCEL, CANNOT_RETRY
from marionette.main import create_app


@pytest.fixture
async def api(services) -> AsyncIterator[httpx.AsyncClient]:
    app = create_app(services)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest.fixture
def user_token(settings, owner_id) -> str:
    return create_access_token(user_id=owner_id)


@pytest.fixture
def auth(user_token) -> dict[str, str]:
    return {"Authorization": f"Bearer {user_token}"}


@pytest.fixture
def admin(settings) -> dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token(user_id=uuid4(), is_admin=True)}"}


def client_headers(runner) -> dict[str, str]:
    return {
        "Authorization": f"Bearer {runner.api_token}",
        "X-Client-ID": runner.client.client_id,
    }


class TestHealthAndAuth:
    async def test_health(self, api) -> None:
        response = await api.get("/api/health")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    async def test_missing_token(self, api) -> None:
        response = await api.get("/api/jobs")
        assert response.status_code == 401
        assert response.json()["error"] == "unauthorized"

    async def test_garbage_token(self, api) -> None:
        response = await api.get("/api/jobs", headers={"Authorization": "Bearer nope"})
        assert response.status_code == 401

    async def test_admin_required(self, api, auth) -> None:
        response = await api.get("/api/admin/workflows", headers=auth)
        assert response.status_code == 401


class TestClientsApi:
    async def test_register_and_heartbeat(self, api, auth) -> None:
        response = await api.post(
            "/api/clients", json={"client_name": "Laptop", "platform": "macos"}, headers=auth
        )
        assert response.status_code == 201
        body = response.json()
        assert body["api_token"].startswith("sk_")
        assert body["client"]["status"] == "offline"

        heartbeat = await api.post(
            "/api/client/heartbeat",
            json={"clientId": body["client"]["client_id"], "status": "online"},
            headers={"Authorization": f"Bearer {body['api_token']}"},
        )
        assert heartbeat.status_code == 200
        assert heartbeat.json()["status"] == "online"
        assert heartbeat.json()["lastHeartbeat"] is not None

    async def test_heartbeat_wrong_token(self, api, owner_id, register_client) -> None:
        runner = await register_client(owner_id)
        response = await api.post(
            "/api/client/heartbeat",
            json={"clientId": runner.client.client_id},
            headers={"Authorization": "Bearer sk_wrong"},
        )
        assert response.status_code == 401

    async def test_encryption_key_wrapped_for_session(
        self, api, auth, user_token, owner_id, register_client
    ) -> None:
        runner = await register_client(owner_id)

        response = await api.get(f"/api/clients/{runner.client.id}/encryption-key", headers=auth)

        assert response.status_code == 200
        wrapped = response.json()["encryptedKey"]
        assert unwrap_client_key(wrapped, user_token, owner_id) == runner.encryption_key

    async def test_unknown_client_is_404(self, api, auth) -> None:
        response = await api.post(f"/api/clients/{uuid4()}/regenerate-token", headers=auth)
        assert response.status_code == 404

    async def test_delete_client(self, api, owner_id, register_client) -> None:
        runner = await register_client(owner_id)
        response = await api.delete("/api/client/delete", headers=client_headers(runner))
        assert response.status_code == 204

        again = await api.delete("/api/client/delete", headers=client_headers(runner))
        assert again.status_code == 401


class TestJobsApi:
    async def test_create_get_cancel(self, api, auth, make_workflow) -> None:
        workflow = await make_workflow()

        created = await api.post(
            "/api/jobs",
            json={"workflow_id": str(workflow.id), "params": {"text": "hello"}},
            headers=auth,
        )
        assert created.status_code == 201
        job_id = created.json()["id"]
        assert created.json()["status"] == "queued"

        fetched = await api.get(f"/api/jobs/{job_id}", headers=auth)
        assert fetched.json()["id"] == job_id

        cancelled = await api.post(f"/api/jobs/{job_id}/cancel", headers=auth)
        assert cancelled.status_code == 200
        assert cancelled.json()["status"] == "cancelled"

        again = await api.post(f"/api/jobs/{job_id}/cancel", headers=auth)
        assert again.status_code == 400
        assert again.json() == {"error": "invalid_state", "detail": CANNOT_CANCEL}

    async def test_unknown_workflow_is_404(self, api, auth) -> None:
        response = await api.post("/api/jobs", json={"workflow_id": str(uuid4())}, headers=auth)
        assert response.status_code == 404
        assert response.json()["error"] == "not_found"

    async def test_other_users_job_is_404(self, api, auth, services, make_workflow) -> None:
        workflow = await make_workflow()
        job = await services.queue.enqueue(uuid4(), payload={"workflow_id": str(workflow.id)})

        response = await api.get(f"/api/jobs/{job.id}", headers=auth)
        assert response.status_code == 404

    async def test_list(self, api, auth, make_workflow) -> None:
        workflow = await make_workflow()
        for _ in range(2):
            await api.post("/api/jobs", json={"workflow_id": str(workflow.id)}, headers=auth)

        response = await api.get("/api/jobs", params={"limit": 1}, headers=auth)
        assert response.json()["total"] == 2
        assert len(response.json()["jobs"]) == 1

    async def test_retry_cancelled_job(self, api, auth, make_workflow) -> None:
        workflow = await make_workflow()
        created = await api.post(
            "/api/jobs", json={"workflow_id": str(workflow.id), "params": {"text": "gm"}}, headers=auth
        )
        job_id = created.json()["id"]

        queued = await api.post(f"/api/jobs/{job_id}/retry", headers=auth)
        assert queued.status_code == 400
        assert queued.json() == {"error": "invalid_state", "detail": CANNOT_RETRY}

        await api.post(f"/api/jobs/{job_id}/cancel", headers=auth)
        retried = await api.post(f"/api/jobs/{job_id}/retry", headers=auth)

        assert retried.status_code == 201
        assert retried.json()["status"] == "queued"
        assert retried.json()["retry_of"] == job_id
        assert retried.json()["id"] != job_id

    async def test_retry_other_users_job_is_404(self, api, auth, services, make_workflow) -> None:
        workflow = await make_workflow()
        owner = uuid4()
        job = await services.queue.enqueue(owner, payload={"workflow_id": str(workflow.id)})
        await services.queue.cancel(owner, job.id)

        response = await api.post(f"/api/jobs/{job.id}/retry", headers=auth)
        assert response.status_code == 404


class TestClientJobProtocol:
    async def test_claim_complete(self, api, auth, owner_id, make_workflow, register_client) -> None:
        runner = await register_client(owner_id)
        workflow = await make_workflow()
        created = await api.post(
            "/api/jobs", json={"workflow_id": str(workflow.id), "params": {"x": 1}}, headers=auth
        )
        job_id = created.json()["id"]

        claimed = await api.post("/api/client/jobs/claim", headers=client_headers(runner))
        envelope = claimed.json()["job"]
        assert envelope["job_id"] == job_id
        assert envelope["params"] == {"x": 1}
        assert envelope["plan"]["steps"][0]["type"] == "navigate"
        assert envelope["account"] is None

        status = await api.get(f"/api/client/jobs/{job_id}/status", headers=client_headers(runner))
        assert status.json()["status"] == "processing"

        done = await api.post(
            f"/api/client/jobs/{job_id}/complete",
            json={"result": {"steps_completed": 1}},
            headers=client_headers(runner),
        )
        assert done.status_code == 200
        assert done.json()["status"] == "completed"

        empty = await api.post("/api/client/jobs/claim", headers=client_headers(runner))
        assert empty.json() == {"job": None}

    async def test_fail_reports_upstream_code(
        self, api, owner_id, services, make_workflow, register_client
    ) -> None:
        runner = await register_client(owner_id)
        workflow = await make_workflow()
        job = await services.queue.enqueue(
            owner_id, payload={"workflow_id": str(workflow.id)}, max_retries=0
        )
        await api.post("/api/client/jobs/claim", headers=client_headers(runner))

        response = await api.post(
            f"/api/client/jobs/{job.id}/fail",
            json={"kind": "upstream_platform", "message": "selector gone", "code": "target_missing"},
            headers=client_headers(runner),
        )
        assert response.status_code == 200
        assert response.json()["status"] == "failed"

    async def test_complete_unclaimed_is_404(self, api, owner_id, register_client) -> None:
        runner = await register_client(owner_id)
        response = await api.post(
            f"/api/client/jobs/{uuid4()}/complete", json={}, headers=client_headers(runner)
        )
        assert response.status_code == 404

    async def test_client_headers_required(self, api) -> None:
        response = await api.post("/api/client/jobs/claim")
        assert response.status_code == 401


REPORT = {
    "started_at": "2026-01-05T10:00:00Z",
    "finished_at": "2026-01-05T10:00:02.5Z",
    "success": False,
    "steps": [
        {"index": 0, "name": "open", "type": "navigate", "duration_ms": 900, "success": True},
        {
            "index": 1,
            "name": "post",
            "type": "click",
            "duration_ms": 1600,
            "success": False,
            "code": "target_missing",
            "error": "Step 1 (click) timed out",
        },
    ],
    "error": {"kind": "upstream_platform", "code": "target_missing", "message": "Step 1 (click) timed out"},
    "agent_version": "0.1.0",
}


class TestExecutionReportsApi:
    async def _claimed_job(self, api, services, owner_id, make_workflow, runner) -> str:
        workflow = await make_workflow()
        job = await services.queue.enqueue(owner_id, payload={"workflow_id": str(workflow.id)})
        await api.post("/api/client/jobs/claim", headers=client_headers(runner))
        return str(job.id)

    async def test_submit_list_get(
        self, api, auth, owner_id, services, make_workflow, register_client
    ) -> None:
        runner = await register_client(owner_id)
        job_id = await self._claimed_job(api, services, owner_id, make_workflow, runner)

        submitted = await api.post(
            f"/api/client/jobs/{job_id}/report", json=REPORT, headers=client_headers(runner)
        )
        assert submitted.status_code == 201
        assert submitted.json()["total_steps"] == 2
        assert submitted.json()["duration_ms"] == 2500

        listed = await api.get("/api/execution-reports", params={"job_id": job_id}, headers=auth)
        assert listed.json()["total"] == 1
        summary = listed.json()["reports"][0]
        assert summary["platform"] == "twitter"
        assert summary["failed_steps"] == 1
        assert summary["success_rate"] == 50.0

        detail = await api.get(f"/api/execution-reports/{summary['id']}", headers=auth)
        assert detail.status_code == 200
        assert detail.json()["steps"][1]["code"] == "target_missing"
        assert detail.json()["error"]["code"] == "target_missing"

    async def test_statistics(
        self, api, auth, owner_id, services, make_workflow, register_client
    ) -> None:
        runner = await register_client(owner_id)
        job_id = await self._claimed_job(api, services, owner_id, make_workflow, runner)
        await api.post(
            f"/api/client/jobs/{job_id}/report", json=REPORT, headers=client_headers(runner)
        )
        await api.post(
            f"/api/client/jobs/{job_id}/report",
            json={**REPORT, "success": True, "error": None, "steps": REPORT["steps"][:1]},
            headers=client_headers(runner),
        )

        stats = (await api.get("/api/execution-reports/statistics", headers=auth)).json()

        assert stats["total_runs"] == 2
        assert stats["successful_runs"] == 1
        assert stats["success_rate"] == 50.0
        assert stats["failures_by_code"] == {"target_missing": 1}

    async def test_report_for_unclaimed_job_is_404(
        self, api, owner_id, services, make_workflow, register_client
    ) -> None:
        runner = await register_client(owner_id)
        workflow = await make_workflow()
        job = await services.queue.enqueue(owner_id, payload={"workflow_id": str(workflow.id)})

        response = await api.post(
            f"/api/client/jobs/{job.id}/report", json=REPORT, headers=client_headers(runner)
        )
        assert response.status_code == 404

    async def test_finish_before_start_rejected(
        self, api, owner_id, services, make_workflow, register_client
    ) -> None:
        runner = await register_client(owner_id)
        job_id = await self._claimed_job(api, services, owner_id, make_workflow, runner)

        response = await api.post(
            f"/api/client/jobs/{job_id}/report",
            json={**REPORT, "finished_at": "2026-01-05T09:59:00Z"},
            headers=client_headers(runner),
        )
        assert response.status_code == 400

    async def test_other_users_report_is_404(
        self, api, owner_id, services, make_workflow, register_client
    ) -> None:
        runner = await register_client(owner_id)
        job_id = await self._claimed_job(api, services, owner_id, make_workflow, runner)
        submitted = await api.post(
            f"/api/client/jobs/{job_id}/report", json=REPORT, headers=client_headers(runner)
        )
        stranger = {"Authorization": f"Bearer {create_access_token(user_id=uuid4())}"}

        response = await api.get(
            f"/api/execution-reports/{submitted.json()['id']}", headers=stranger
        )
        assert response.status_code == 404
        listed = await api.get("/api/execution-reports", headers=stranger)
        assert listed.json()["total"] == 0


class TestAccountsApi:
    async def test_verify_unknown_account_is_400(self, api, auth) -> None:
        response = await api.post(
            "/api/accounts/verify", json={"account_id": str(uuid4())}, headers=auth
        )
        assert response.status_code == 400
        assert response.json()["detail"] == "Account not found"

    async def test_link(self, api, auth, owner_id, make_workflow, register_client) -> None:
        runner = await register_client(owner_id)
        await make_workflow(type="auth")

        response = await api.post(
            "/api/accounts",
            json={
                "platform": "twitter",
                "username": "bot",
                "encrypted_secret": "ciphertext",
                "client_id": runner.client.client_id,
            },
            headers=auth,
        )

        assert response.status_code == 201
        assert response.json()["account"]["status"] == "pending_verification"
        listed = await api.get("/api/accounts", headers=auth)
        assert listed.json()["total"] == 1


class TestAdminApi:
    async def test_catalogue_round(self, api, admin) -> None:
        action = await api.post(
            "/api/admin/micro-actions",
            json={"name": "Open home", "type": "navigate", "params": {"url": "https://x.com"}},
            headers=admin,
        )
        assert action.status_code == 201
        action_id = action.json()["id"]

        workflow = await api.post(
            "/api/admin/workflows",
            json={
                "name": "Like",
                "platform": "twitter",
                "type": "like",
                "steps": [{"micro_action_id": action_id, "params_override": {"url": "{{tweet_url}}"}}],
            },
            headers=admin,
        )
        assert workflow.status_code == 201
        workflow_id = workflow.json()["id"]
        assert workflow.json()["steps"][0]["micro_action"]["type"] == "navigate"

        deleted = await api.delete(f"/api/admin/workflows/{workflow_id}", headers=admin)
        assert deleted.json()["is_active"] is False

        listed = await api.get("/api/admin/workflows", headers=admin)
        assert listed.json()["total"] == 0

    async def test_workflow_without_steps_rejected(self, api, admin) -> None:
        response = await api.post(
            "/api/admin/workflows",
            json={"name": "Empty", "platform": "twitter", "type": "post", "steps": []},
            headers=admin,
        )
        assert response.status_code in (400, 422)
