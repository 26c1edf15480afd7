"""Playwright browser sessions with stealth applied before first navigation."""

from __future__ import annotations

import os
import shutil
import sys
from typing import Any

import structlog
from playwright.async_api import Browser, BrowserContext, Page, Playwright, async_playwright

from marionette_runner.config import RunnerConfig
from marionette_runner.stealth import LAUNCH_ARGS, StealthProfile, apply_stealth

log = structlog.get_logger()

_CHROME_CANDIDATES = {
    "win32": [
        r"C:\Program Files\Google\Chrome\Application\chrome.exe",
        r"C:\Program Files (x86)\Google\Chrome\Application\chrome.exe",
    ],
    "darwin": ["/Applications/Google Chrome.app/Contents/MacOS/Google Chrome"],
    "linux": ["/usr/bin/google-chrome", "/usr/bin/google-chrome-stable", "/usr/bin/chromium"],
}


def find_chrome(explicit: str = "") -> str | None:
    """Locate an installed Chrome; None means use Playwright's bundled Chromium."""
    if explicit:
        return explicit if os.path.exists(explicit) else None
    platform_key = "linux" if sys.platform.startswith("linux") else sys.platform
    for candidate in _CHROME_CANDIDATES.get(platform_key, []):
        if os.path.exists(candidate):
            return candidate
    for name in ("google-chrome", "chromium", "chromium-browser"):
        found = shutil.which(name)
        if found:
            return found
    return None


class BrowserSession:
    """One browser, context and page for the duration of a job."""

    def __init__(self, config: RunnerConfig, *, profile: StealthProfile | None = None) -> None:
        self.config = config
        self.profile = profile or StealthProfile.random()
        self._playwright: Playwright | None = None
        self._browser: Browser | None = None
        self.context: BrowserContext | None = None
        self.page: Page | None = None

    async def __aenter__(self) -> BrowserSession:
        await self.start()
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    async def start(self) -> None:
        """Launch the browser. On any failure everything already started is torn down."""
        self._playwright = await async_playwright().start()
        try:
            await self._launch(self._playwright)
        except BaseException:
            await self.close()
            raise

    async def _launch(self, playwright: Playwright) -> None:
        launch_kwargs: dict[str, Any] = {"headless": self.config.headless, "args": LAUNCH_ARGS}
        chrome = find_chrome(self.config.chrome_path)
        if chrome:
            launch_kwargs["executable_path"] = chrome

        self._browser = await playwright.chromium.launch(**launch_kwargs)
        self.context = await self._browser.new_context(**self.profile.context_options())
        await apply_stealth(self.context, self.profile)
        self.page = await self.context.new_page()
        self.page.set_default_timeout(self.config.step_timeout_ms)
        log.info("browser_started", chrome=chrome or "bundled", headless=self.config.headless)

    async def close(self) -> None:
        context, browser, playwright = self.context, self._browser, self._playwright
        self.context = None
        self._browser = None
        self._playwright = None
        self.page = None
        try:
            if context is not None:
                await context.close()
        finally:
            try:
                if browser is not None:
                    await browser.close()
            finally:
                if playwright is not None:
                    await playwright.stop()
        log.debug("browser_closed")
