"""Tests for fingerprint masking."""

from __future__ import annotations

import random
from unittest.mock import AsyncMock, MagicMock

from marionette_runner.stealth import (
    DEFAULT_HEADERS,
    DEFAULT_USER_AGENT,
    LAUNCH_ARGS,
    StealthProfile,
    apply_stealth,
    build_init_script,
)


class TestStealthProfile:
    def test_hardware_concurrency_range(self) -> None:
        rng = random.Random(0)
        values = {StealthProfile.random(rng).hardware_concurrency for _ in range(500)}
        assert min(values) >= 4
        assert max(values) <= 15

    def test_context_options(self) -> None:
        options = StealthProfile(hardware_concurrency=8).context_options()
        assert options["user_agent"] == DEFAULT_USER_AGENT
        assert options["viewport"] == {"width": 1920, "height": 1080}
        assert options["locale"] == "en-US"
        assert options["extra_http_headers"]["Accept-Language"] == "en-US,en;q=0.9"

    def test_launch_args_hide_automation(self) -> None:
        assert "--disable-blink-features=AutomationControlled" in LAUNCH_ARGS


class TestInitScript:
    def test_patches_present(self) -> None:
        script = build_init_script(StealthProfile(hardware_concurrency=12))

        assert "'webdriver', { get: () => false }" in script
        assert "[1, 2, 3, 4, 5]" in script
        assert '["en-US", "en"]' in script
        assert "permissions.query" in script
        assert "chrome.runtime" in script
        assert "hardwareConcurrency', { get: () => 12 }" in script
        assert "deviceMemory', { get: () => 8 }" in script
        assert "Math.random() < 0.01" in script
        assert "37445" in script and "Intel Inc." in script
        assert "37446" in script and "Intel Iris OpenGL Engine" in script

    async def test_apply_installs_before_navigation(self) -> None:
        """The script goes in as an init script; headers are set on the context."""
        context = MagicMock()
        context.add_init_script = AsyncMock()
        context.set_extra_http_headers = AsyncMock()
        profile = StealthProfile(hardware_concurrency=6)

        returned = await apply_stealth(context, profile)

        assert returned is profile
        script = context.add_init_script.await_args.kwargs["script"]
        assert "hardwareConcurrency', { get: () => 6 }" in script
        context.set_extra_http_headers.assert_awaited_once_with(DEFAULT_HEADERS)
