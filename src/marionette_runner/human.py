"""Human-like interaction timing.

Every page interaction an adapter performs goes through ``HumanBehavior``.
The sampling functions are pure over an injectable ``random.Random`` so their
distributions can be tested without a browser.
"""

from __future__ import annotations

import asyncio
import math
import random
import string
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

import structlog

log = structlog.get_logger()

Sleep = Callable[[float], Awaitable[None]]
Point = tuple[float, float]

TYPO_PROBABILITY = 0.05
PAUSE_PROBABILITY = 0.10
TYPO_MIN_LENGTH = 5
MOUSE_MIN_STEPS = 20
MOUSE_MAX_STEPS = 29

COMMON_VIEWPORTS = (
    (1920, 1080),
    (1366, 768),
    (1536, 864),
    (1440, 900),
    (1280, 720),
    (1600, 900),
    (1280, 800),
)


# =============================================================================
# Pure sampling
# =============================================================================


def sample_delay(min_ms: float, max_ms: float, rng: random.Random) -> float:
    """Sample a delay from a clamped normal distribution (Box-Muller).

    mean = (min + max) / 2, standard deviation = (max - min) / 6.
    """
    if max_ms < min_ms:
        min_ms, max_ms = max_ms, min_ms
    if max_ms == min_ms:
        return float(min_ms)
    mean = (min_ms + max_ms) / 2
    std_dev = (max_ms - min_ms) / 6
    u1 = 1.0 - rng.random()
    u2 = rng.random()
    z = math.sqrt(-2.0 * math.log(u1)) * math.cos(2.0 * math.pi * u2)
    return min(max(mean + z * std_dev, min_ms), max_ms)


def bezier_path(
    start: Point, end: Point, rng: random.Random, steps: int | None = None
) -> list[Point]:
    """Quadratic Bezier path from start to end through a random control point.

    ``steps`` is the number of segments (20-29 when not given). The returned
    list holds ``steps + 1`` points including both endpoints, so following it
    from ``start`` takes exactly ``steps`` moves.
    """
    n = steps if steps is not None else rng.randint(MOUSE_MIN_STEPS, MOUSE_MAX_STEPS)
    n = max(n, 1)
    (sx, sy), (ex, ey) = start, end
    spread = max(abs(ex - sx), abs(ey - sy), 50.0) * 0.5
    cx = (sx + ex) / 2 + rng.uniform(-spread, spread)
    cy = (sy + ey) / 2 + rng.uniform(-spread, spread)

    points: list[Point] = []
    for i in range(n + 1):
        t = i / n
        inv = 1 - t
        x = inv * inv * sx + 2 * inv * t * cx + t * t * ex
        y = inv * inv * sy + 2 * inv * t * cy + t * t * ey
        points.append((x, y))
    return points


@dataclass(frozen=True)
class Keystroke:
    """One typing event: ``text`` is typed, or ``key`` is pressed; then wait ``delay_ms``."""

    delay_ms: float
    text: str | None = None
    key: str | None = None


def _wrong_char(correct: str, rng: random.Random) -> str:
    pool = string.ascii_lowercase.replace(correct.lower(), "") if correct.isalpha() else "asdfjkl"
    return rng.choice(pool)


def typing_plan(text: str, rng: random.Random) -> list[Keystroke]:
    """Plan the keystrokes for typing ``text`` like a person.

    - 50-150 ms between characters
    - 10% chance of an extra 200-500 ms pause after a character
    - 5% chance (texts longer than 5 characters) of a wrong character,
      corrected with Backspace before the right one
    """
    events: list[Keystroke] = []
    allow_typos = len(text) > TYPO_MIN_LENGTH
    for char in text:
        if allow_typos and char.strip() and rng.random() < TYPO_PROBABILITY:
            events.append(Keystroke(text=_wrong_char(char, rng), delay_ms=sample_delay(100, 200, rng)))
            events.append(Keystroke(key="Backspace", delay_ms=sample_delay(100, 200, rng)))
        events.append(Keystroke(text=char, delay_ms=50 + rng.random() * 100))
        if rng.random() < PAUSE_PROBABILITY:
            events.append(Keystroke(delay_ms=200 + rng.random() * 300))
    return events


def scroll_plan(amount: float, rng: random.Random) -> list[float]:
    """Split a scroll distance into 5-9 increments."""
    steps = rng.randint(5, 9)
    return [amount / steps] * steps


# =============================================================================
# Page driver
# =============================================================================


class HumanBehavior:
    """Drives a Playwright page with human-like timing and motion."""

    def __init__(
        self,
        page: Any,
        *,
        rng: random.Random | None = None,
        sleep: Sleep | None = None,
        min_action_delay_ms: float = 500,
        max_action_delay_ms: float = 1500,
    ) -> None:
        self.page = page
        self.rng = rng or random.Random()
        self._sleep = sleep or asyncio.sleep
        self.min_action_delay_ms = min_action_delay_ms
        self.max_action_delay_ms = max_action_delay_ms
        self._mouse: Point = (0.0, 0.0)

    async def pause(self, ms: float) -> None:
        await self._sleep(ms / 1000)

    async def random_delay(self, min_ms: float | None = None, max_ms: float | None = None) -> float:
        delay = sample_delay(
            self.min_action_delay_ms if min_ms is None else min_ms,
            self.max_action_delay_ms if max_ms is None else max_ms,
            self.rng,
        )
        await self.pause(delay)
        return delay

    async def human_mouse_move(self, x: float, y: float) -> None:
        for px, py in bezier_path(self._mouse, (x, y), self.rng)[1:]:
            await self.page.mouse.move(px, py)
            await self.pause(10 + self.rng.random() * 10)
        self._mouse = (x, y)

    async def _target_point(self, selector: str, timeout_ms: float) -> Point | None:
        element = await self.page.wait_for_selector(selector, timeout=timeout_ms, state="visible")
        box = await element.bounding_box() if element is not None else None
        if not box:
            return None
        return (
            box["x"] + box["width"] * (0.3 + self.rng.random() * 0.4),
            box["y"] + box["height"] * (0.3 + self.rng.random() * 0.4),
        )

    async def human_click(self, selector: str, *, timeout_ms: float = 30000) -> None:
        """Move to a random point inside the element, then click it."""
        point = await self._target_point(selector, timeout_ms)
        if point is None:
            await self.page.click(selector, timeout=timeout_ms)
        else:
            await self.human_mouse_move(*point)
            await self.random_delay(50, 150)
            await self.page.mouse.click(point[0], point[1], delay=sample_delay(50, 120, self.rng))
        await self.random_delay(300, 800)

    async def human_type(self, selector: str, text: str, *, timeout_ms: float = 30000) -> None:
        """Focus the field with a click and type ``text`` keystroke by keystroke."""
        await self.human_click(selector, timeout_ms=timeout_ms)
        await self.random_delay(100, 300)
        for stroke in typing_plan(text, self.rng):
            if stroke.text is not None:
                await self.page.keyboard.type(stroke.text)
            elif stroke.key is not None:
                await self.page.keyboard.press(stroke.key)
            await self.pause(stroke.delay_ms)

    async def human_scroll(self, direction: str = "down", amount: float | None = None) -> None:
        distance = amount if amount is not None else 300 + self.rng.random() * 400
        sign = -1 if direction == "up" else 1
        for step in scroll_plan(distance, self.rng):
            await self.page.mouse.wheel(0, sign * step)
            await self.random_delay(50, 150)

    async def simulate_reading(self, min_ms: float = 2000, max_ms: float = 5000) -> None:
        """Dwell on the page with a few short scrolls."""
        budget = sample_delay(min_ms, max_ms, self.rng)
        spent = 0.0
        while spent < budget:
            if self.rng.random() < 0.3:
                await self.human_scroll("down", 100 + self.rng.random() * 200)
            spent += await self.random_delay(400, 1200)

    async def random_mouse_movement(self, moves: int | None = None) -> None:
        viewport = self.page.viewport_size or {"width": 1920, "height": 1080}
        for _ in range(moves if moves is not None else self.rng.randint(1, 3)):
            await self.human_mouse_move(
                self.rng.random() * viewport["width"], self.rng.random() * viewport["height"]
            )
            await self.random_delay(100, 400)

    async def random_viewport_resize(self) -> None:
        """Switch to one of the common desktop resolutions."""
        width, height = self.rng.choice(COMMON_VIEWPORTS)
        await self.page.set_viewport_size({"width": width, "height": height})
        log.debug("viewport_resized", width=width, height=height)
