"""Runner fixtures: an in-memory stand-in for a Playwright page."""

from __future__ import annotations

from pathlib import Path
from types import SimpleNamespace
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from marionette.crypto import generate_client_key
from marionette_runner.config import RunnerConfig


class FakeElement:
    def __init__(self, text: str = "", attributes: dict[str, str] | None = None) -> None:
        self._text = text
        self._attributes = attributes or {}

    async def bounding_box(self) -> dict[str, float]:
        return {"x": 10, "y": 10, "width": 100, "height": 30}

    async def text_content(self) -> str:
        return self._text

    async def get_attribute(self, name: str) -> str | None:
        return self._attributes.get(name)

    async def is_visible(self) -> bool:
        return True


class FakePage:
    """Records navigation and keystrokes; selectors in ``missing`` time out."""

    def __init__(self) -> None:
        self.url = "about:blank"
        self.visited: list[str] = []
        self.redirects: dict[str, str] = {}
        self.missing: set[str] = set()
        self.present: set[str] = set()
        self.texts: dict[str, str] = {}
        self.uploads: list[str] = []
        self.buffer: list[str] = []
        self.viewport_size = {"width": 1920, "height": 1080}
        self.mouse = SimpleNamespace(move=AsyncMock(), click=AsyncMock(), wheel=AsyncMock())
        self.keyboard = SimpleNamespace(
            type=AsyncMock(side_effect=self._type), press=AsyncMock(side_effect=self._press)
        )

    @property
    def typed(self) -> str:
        return "".join(self.buffer)

    def _type(self, text: str) -> None:
        self.buffer.append(text)

    def _press(self, key: str) -> None:
        if key == "Backspace" and self.buffer:
            self.buffer.pop()

    async def goto(self, url: str, **kwargs: Any) -> None:
        self.visited.append(url)
        self.url = self.redirects.get(url, url)

    async def wait_for_selector(self, selector: str, **kwargs: Any) -> FakeElement:
        if selector in self.missing:
            raise PlaywrightTimeoutError(f"Timeout waiting for {selector}")
        return FakeElement(self.texts.get(selector, ""), {"href": f"https://example.com/{selector}"})

    async def query_selector(self, selector: str) -> FakeElement | None:
        return FakeElement() if selector in self.present else None

    async def click(self, selector: str, **kwargs: Any) -> None:
        if selector in self.missing:
            raise PlaywrightTimeoutError(f"Timeout clicking {selector}")

    async def set_input_files(self, selector: str, files: str, **kwargs: Any) -> None:
        self.uploads.append(files)

    async def screenshot(self, path: str, **kwargs: Any) -> None:
        Path(path).write_bytes(b"\x89PNG")

    async def wait_for_load_state(self, *args: Any, **kwargs: Any) -> None:
        return None

    async def set_viewport_size(self, size: dict[str, int]) -> None:
        self.viewport_size = size

    def set_default_timeout(self, timeout: float) -> None:
        return None


class FakeSession:
    def __init__(self, page: FakePage) -> None:
        self.page = page

    async def __aenter__(self) -> FakeSession:
        return self

    async def __aexit__(self, *exc: object) -> None:
        return None


@pytest.fixture
def fake_page() -> FakePage:
    return FakePage()


@pytest.fixture
def opener(fake_page: FakePage) -> MagicMock:
    """Session opener that hands out the fake page and counts how often it was called."""
    return MagicMock(side_effect=lambda: FakeSession(fake_page))


@pytest.fixture
def no_sleep() -> AsyncMock:
    return AsyncMock()


@pytest.fixture
def runner_config(tmp_path) -> RunnerConfig:
    return RunnerConfig(
        server_url="http://test",
        client_id="client_test",
        api_token="sk_test",
        encryption_key=generate_client_key(),
        min_action_delay_ms=0,
        max_action_delay_ms=0,
        log_dir=tmp_path / "logs",
    )
