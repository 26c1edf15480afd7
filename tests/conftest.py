"""Pytest configuration and fixtures.

Server-side tests run against a scratch SQLite database per test; the service
graph is built exactly as the API builds it, bound to that database.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Awaitable, Callable
from types import SimpleNamespace
from typing import Any
from uuid import UUID, uuid4

import pytest
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from marionette import config as config_module
from marionette.config import Settings
from marionette.db import SessionFactory, create_tables, make_session_factory
from marionette.db.models import Workflow
from marionette.services import Services, build_services


@pytest.fixture
def settings(monkeypatch) -> Settings:
    """Settings with a known JWT secret, installed as the module-level instance."""
    monkeypatch.setenv("MARIONETTE_JWT_SECRET", "test-secret")
    monkeypatch.setenv("MARIONETTE_JWT_ALGORITHM", "HS256")
    cfg = Settings(_env_file=None)  # type: ignore[call-arg]
    monkeypatch.setattr(config_module, "settings", cfg)
    return cfg


@pytest.fixture
async def engine(tmp_path) -> AsyncIterator[AsyncEngine]:
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'marionette.db'}",
        connect_args={"timeout": 30},
    )
    await create_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> SessionFactory:
    return make_session_factory(engine)


@pytest.fixture
def services(session_factory: SessionFactory, settings: Settings) -> Services:
    return build_services(session_factory, settings)


@pytest.fixture
def owner_id() -> UUID:
    return uuid4()


@pytest.fixture
def make_workflow(services: Services) -> Callable[..., Awaitable[Workflow]]:
    """Create a workflow backed by freshly created micro actions.

    ``actions`` is a list of (type, params) pairs; the default is a single
    navigate step.
    """

    async def _make(
        *,
        platform: str = "twitter",
        type: str = "post",
        actions: list[tuple[str, dict[str, Any]]] | None = None,
        overrides: list[dict[str, Any]] | None = None,
        **kwargs: Any,
    ) -> Workflow:
        actions = actions or [("navigate", {"url": "https://example.com/home"})]
        steps = []
        for index, (action_type, params) in enumerate(actions):
            action = await services.resolver.create_micro_action(
                name=f"{platform}-{type}-{index}", type=action_type, params=params
            )
            override = overrides[index] if overrides else {}
            steps.append({"micro_action_id": str(action.id), "params_override": override})
        return await services.resolver.create(
            name=f"{platform} {type}", platform=platform, type=type, steps=steps, **kwargs
        )

    return _make


@pytest.fixture
def register_client(services: Services) -> Callable[..., Awaitable[SimpleNamespace]]:
    """Register a client for an owner; ``live=True`` also sends a heartbeat."""

    async def _register(owner: UUID, *, live: bool = True, name: str = "Laptop") -> SimpleNamespace:
        registration = await services.registry.register(owner, client_name=name, platform="linux")
        client = registration.client
        if live:
            client = await services.registry.heartbeat(client.client_id, registration.api_token)
        return SimpleNamespace(
            client=client,
            api_token=registration.api_token,
            encryption_key=registration.encryption_key,
        )

    return _register
