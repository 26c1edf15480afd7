"""HTTP client for the Marionette server's client API."""

from __future__ import annotations

from typing import Any

import httpx
import structlog

from marionette.errors import (
    ErrorKind,
    InternalError,
    InvalidStateError,
    NotFoundError,
    TokenExpiredError,
    UnauthorizedError,
)
from marionette_runner import __version__
from marionette_runner.config import RunnerConfig

log = structlog.get_logger()


class ServerClient:
    """Authenticated client API calls (Bearer API token + X-Client-ID)."""

    def __init__(
        self,
        config: RunnerConfig,
        *,
        http: httpx.AsyncClient | None = None,
    ) -> None:
        self.config = config
        self._owns_http = http is None
        self._http = http or httpx.AsyncClient(
            base_url=config.server_url.rstrip("/"),
            timeout=config.request_timeout,
        )

    @property
    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.config.api_token}",
            "X-Client-ID": self.config.client_id,
            "User-Agent": f"marionette-runner/{__version__}",
        }

    async def close(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    async def __aenter__(self) -> ServerClient:
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        response = await self._http.request(method, path, headers=self._headers, **kwargs)
        if response.status_code < 400:
            return response

        detail = ""
        try:
            detail = str(response.json().get("detail", ""))
        except ValueError:
            detail = response.text[:200]

        log.warning("server_request_failed", path=path, status=response.status_code, detail=detail)
        if response.status_code == 401:
            if "expired" in detail.lower():
                raise TokenExpiredError(detail or "API token has expired")
            raise UnauthorizedError(detail or "Unauthorized")
        if response.status_code == 404:
            raise NotFoundError("Resource", path)
        if response.status_code == 400:
            raise InvalidStateError(detail or "Request rejected")
        raise InternalError(
            f"Server error {response.status_code}", details={"path": path, "detail": detail}
        )

    async def heartbeat(self, status: str = "online") -> dict[str, Any]:
        response = await self._request(
            "POST",
            "/api/client/heartbeat",
            json={
                "clientId": self.config.client_id,
                "status": status,
                "agentVersion": __version__,
            },
        )
        return response.json()

    async def claim(self) -> dict[str, Any] | None:
        response = await self._request("POST", "/api/client/jobs/claim")
        return response.json().get("job")

    async def complete(self, job_id: str, result: dict[str, Any]) -> dict[str, Any]:
        response = await self._request(
            "POST", f"/api/client/jobs/{job_id}/complete", json={"result": result}
        )
        return response.json()

    async def fail(
        self,
        job_id: str,
        *,
        kind: ErrorKind | str,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        response = await self._request(
            "POST",
            f"/api/client/jobs/{job_id}/fail",
            json={
                "kind": str(kind),
                "message": message,
                "code": code,
                "details": details or {},
            },
        )
        return response.json()

    async def submit_report(self, job_id: str, report: dict[str, Any]) -> dict[str, Any]:
        response = await self._request(
            "POST", f"/api/client/jobs/{job_id}/report", json=report
        )
        return response.json()

    async def job_status(self, job_id: str) -> str:
        response = await self._request("GET", f"/api/client/jobs/{job_id}/status")
        return str(response.json()["status"])

    async def deregister(self) -> None:
        await self._request("DELETE", "/api/client/delete")
