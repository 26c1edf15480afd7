"""Browser fingerprint masking.

The init script runs in every document of the context before any page
script, so it must be installed before the first navigation.
"""

from __future__ import annotations

import json
import random
from dataclasses import dataclass, field
from typing import Any

import structlog

log = structlog.get_logger()

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)
DEFAULT_VIEWPORT = {"width": 1920, "height": 1080}
DEFAULT_HEADERS = {
    "Accept-Language": "en-US,en;q=0.9",
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,image/webp,*/*;q=0.8",
    "Accept-Encoding": "gzip, deflate, br",
    "Connection": "keep-alive",
    "Upgrade-Insecure-Requests": "1",
}
LAUNCH_ARGS = [
    "--disable-blink-features=AutomationControlled",
    "--disable-features=IsolateOrigins,site-per-process",
    "--disable-infobars",
    "--no-first-run",
    "--no-default-browser-check",
    "--disable-dev-shm-usage",
    "--window-size=1920,1080",
]

WEBGL_VENDOR = "Intel Inc."
WEBGL_RENDERER = "Intel Iris OpenGL Engine"
CANVAS_NOISE_PROBABILITY = 0.01


@dataclass(frozen=True)
class StealthProfile:
    """Per-session fingerprint values."""

    hardware_concurrency: int
    device_memory: int = 8
    platform: str = "Win32"
    languages: tuple[str, ...] = ("en-US", "en")
    user_agent: str = DEFAULT_USER_AGENT
    viewport: dict[str, int] = field(default_factory=lambda: dict(DEFAULT_VIEWPORT))
    headers: dict[str, str] = field(default_factory=lambda: dict(DEFAULT_HEADERS))

    @classmethod
    def random(cls, rng: random.Random | None = None) -> StealthProfile:
        rng = rng or random.Random()
        return cls(hardware_concurrency=rng.randrange(4, 16))

    def context_options(self) -> dict[str, Any]:
        """Keyword arguments for ``browser.new_context``."""
        return {
            "viewport": dict(self.viewport),
            "user_agent": self.user_agent,
            "locale": self.languages[0],
            "extra_http_headers": dict(self.headers),
        }


def build_init_script(profile: StealthProfile) -> str:
    """Render the JavaScript that patches automation-revealing properties."""
    return _INIT_TEMPLATE % {
        "languages": json.dumps(list(profile.languages)),
        "platform": json.dumps(profile.platform),
        "hardware_concurrency": profile.hardware_concurrency,
        "device_memory": profile.device_memory,
        "canvas_noise": CANVAS_NOISE_PROBABILITY,
        "webgl_vendor": json.dumps(WEBGL_VENDOR),
        "webgl_renderer": json.dumps(WEBGL_RENDERER),
    }


async def apply_stealth(context: Any, profile: StealthProfile | None = None) -> StealthProfile:
    """Install the fingerprint patches and headers on a browser context."""
    profile = profile or StealthProfile.random()
    await context.add_init_script(script=build_init_script(profile))
    await context.set_extra_http_headers(profile.headers)
    log.debug("stealth_applied", hardware_concurrency=profile.hardware_concurrency)
    return profile


_INIT_TEMPLATE = """
(() => {
  Object.defineProperty(navigator, 'webdriver', { get: () => false });

  Object.defineProperty(navigator, 'plugins', { get: () => [1, 2, 3, 4, 5] });

  Object.defineProperty(navigator, 'languages', { get: () => %(languages)s });

  const originalQuery = window.navigator.permissions && window.navigator.permissions.query;
  if (originalQuery) {
    window.navigator.permissions.query = (parameters) =>
      parameters && parameters.name === 'notifications'
        ? Promise.resolve({ state: Notification.permission })
        : originalQuery.call(window.navigator.permissions, parameters);
  }

  window.chrome = window.chrome || {};
  window.chrome.runtime = window.chrome.runtime || {};

  Object.defineProperty(navigator, 'platform', { get: () => %(platform)s });
  Object.defineProperty(navigator, 'hardwareConcurrency', { get: () => %(hardware_concurrency)d });
  Object.defineProperty(navigator, 'deviceMemory', { get: () => %(device_memory)d });

  const originalToDataURL = HTMLCanvasElement.prototype.toDataURL;
  HTMLCanvasElement.prototype.toDataURL = function (...args) {
    const context = this.getContext('2d');
    if (context && this.width > 0 && this.height > 0) {
      const imageData = context.getImageData(0, 0, this.width, this.height);
      const data = imageData.data;
      for (let i = 0; i < data.length; i += 4) {
        if (Math.random() < %(canvas_noise)s) {
          for (let c = 0; c < 3; c++) {
            const delta = Math.random() < 0.5 ? -1 : 1;
            data[i + c] = Math.min(255, Math.max(0, data[i + c] + delta));
          }
        }
      }
      context.putImageData(imageData, 0, 0);
    }
    return originalToDataURL.apply(this, args);
  };

  const patchWebGL = (proto) => {
    if (!proto) return;
    const getParameter = proto.getParameter;
    proto.getParameter = function (parameter) {
      if (parameter === 37445) return %(webgl_vendor)s;
      if (parameter === 37446) return %(webgl_renderer)s;
      return getParameter.call(this, parameter);
    };
  };
  patchWebGL(window.WebGLRenderingContext && WebGLRenderingContext.prototype);
  patchWebGL(window.WebGL2RenderingContext && WebGL2RenderingContext.prototype);
})();
"""
