from __future__ import annotations

import logging
import random
from pathlib import Path
from typing import Any

from kgx.extraction_config import BrowserSettings
from kgx.extraction_errors import BrowserLaunchError, NavigationError

LOGGER = logging.getLogger(__name__)

CHROMIUM_ARGS: tuple[str, ...] = (
    "--disable-blink-features=AutomationControlled",
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--disable-accelerated-2d-canvas",
    "--no-first-run",
    "--no-default-browser-check",
)
IGNORED_DEFAULT_ARGS: tuple[str, ...] = ("--enable-automation",)

_FINGERPRINT_SCRIPT = """
(() => {
  const seed = __SEED__;
  const withNoise = __NOISE__;
  const define = (target, key, value) => {
    try {
      Object.defineProperty(target, key, { get: () => value, configurable: true });
    } catch (error) {}
  };

  define(Navigator.prototype, 'webdriver', undefined);
  define(Navigator.prototype, 'languages', __LANGUAGES__);
  define(Navigator.prototype, 'platform', 'Win32');
  define(Navigator.prototype, 'hardwareConcurrency', 8);
  define(Navigator.prototype, 'deviceMemory', 8);

  const pluginNames = ['PDF Viewer', 'Chrome PDF Viewer', 'Chromium PDF Viewer', 'Microsoft Edge PDF Viewer', 'WebKit built-in PDF'];
  const plugins = pluginNames.map((name) => ({ name, filename: 'internal-pdf-viewer', description: 'Portable Document Format', length: 1 }));
  plugins.item = (index) => plugins[index] || null;
  plugins.namedItem = (name) => plugins.find((plugin) => plugin.name === name) || null;
  plugins.refresh = () => {};
  define(Navigator.prototype, 'plugins', plugins);

  if (!window.chrome) {
    window.chrome = { runtime: {}, app: { isInstalled: false } };
  }

  if (!withNoise) {
    return;
  }

  let state = seed >>> 0;
  const nextNoise = () => {
    state = (state * 1664525 + 1013904223) >>> 0;
    return (state % 3) - 1;
  };

  const originalGetImageData = CanvasRenderingContext2D.prototype.getImageData;
  CanvasRenderingContext2D.prototype.getImageData = function (...args) {
    const image = originalGetImageData.apply(this, args);
    for (let index = 0; index < image.data.length; index += 97) {
      image.data[index] = Math.max(0, Math.min(255, image.data[index] + nextNoise()));
    }
    return image;
  };

  const originalToDataURL = HTMLCanvasElement.prototype.toDataURL;
  HTMLCanvasElement.prototype.toDataURL = function (...args) {
    const context = this.getContext('2d');
    if (context && this.width > 0 && this.height > 0) {
      const pixel = originalGetImageData.call(context, 0, 0, 1, 1);
      pixel.data[0] = Math.max(0, Math.min(255, pixel.data[0] + nextNoise()));
      context.putImageData(pixel, 0, 0);
    }
    return originalToDataURL.apply(this, args);
  };

  const patchWebGL = (proto) => {
    if (!proto) {
      return;
    }
    const originalGetParameter = proto.getParameter;
    proto.getParameter = function (parameter) {
      if (parameter === 37445) {
        return 'Google Inc. (Intel)';
      }
      if (parameter === 37446) {
        return 'ANGLE (Intel, Intel(R) UHD Graphics 630 Direct3D11 vs_5_0 ps_5_0, D3D11)';
      }
      return originalGetParameter.call(this, parameter);
    };
  };
  patchWebGL(window.WebGLRenderingContext && WebGLRenderingContext.prototype);
  patchWebGL(window.WebGL2RenderingContext && WebGL2RenderingContext.prototype);
})();
"""


def fingerprint_script(settings: BrowserSettings, *, seed: int | None = None) -> str:
    """Init script that normalizes automation-revealing navigator and canvas probes."""
    languages = [settings.locale, settings.locale.split("-")[0]]
    return (
        _FINGERPRINT_SCRIPT.replace("__SEED__", str(seed if seed is not None else random.randint(1, 2**31 - 1)))
        .replace("__NOISE__", "true" if settings.fingerprint_noise else "false")
        .replace("__LANGUAGES__", repr(languages).replace("'", '"'))
    )


def context_options(settings: BrowserSettings, storage_state: dict[str, Any] | None) -> dict[str, Any]:
    options: dict[str, Any] = {
        "viewport": {"width": settings.viewport_width, "height": settings.viewport_height},
        "user_agent": settings.user_agent,
        "locale": settings.locale,
        "timezone_id": settings.timezone_id,
    }
    if storage_state is not None:
        options["storage_state"] = storage_state
    return options


class BrowserSession:
    """One Playwright browser, context and page owned by a single worker."""

    def __init__(self, *, playwright: Any, browser: Any, context: Any, page: Any) -> None:
        self._playwright = playwright
        self._browser = browser
        self.context = context
        self.page = page
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def storage_state(self) -> dict[str, Any]:
        return await self.context.storage_state()

    async def screenshot(self, path: Path) -> Path | None:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            await self.page.screenshot(path=str(path), full_page=True)
        except Exception:
            LOGGER.warning("unable to capture debug screenshot at %s", path, exc_info=True)
            return None
        return path

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        for label, closer in (("browser", self._browser), ("playwright", self._playwright)):
            if closer is None:
                continue
            try:
                if label == "browser":
                    await closer.close()
                else:
                    await closer.stop()
            except Exception:
                LOGGER.debug("error while closing %s", label, exc_info=True)


async def launch_browser_session(
    settings: BrowserSettings,
    *,
    storage_state: dict[str, Any] | None = None,
    headless: bool | None = None,
) -> BrowserSession:
    from playwright.async_api import async_playwright

    playwright = None
    browser = None
    try:
        playwright = await async_playwright().start()
        browser = await playwright.chromium.launch(
            headless=settings.headless if headless is None else headless,
            args=list(CHROMIUM_ARGS),
            ignore_default_args=list(IGNORED_DEFAULT_ARGS),
        )
        context = await browser.new_context(**context_options(settings, storage_state))
        await context.add_init_script(fingerprint_script(settings))
        context.set_default_timeout(settings.navigation_timeout_ms)
        page = await context.new_page()
    except Exception as exc:
        partial = BrowserSession(playwright=playwright, browser=browser, context=None, page=None)
        await partial.close()
        raise BrowserLaunchError("unable to launch browser", details=str(exc)) from exc
    return BrowserSession(playwright=playwright, browser=browser, context=context, page=page)


async def navigate_to_app(page: Any, settings: BrowserSettings, *, url: str | None = None) -> None:
    target = url or settings.app_url
    try:
        await page.goto(target, wait_until="domcontentloaded", timeout=settings.navigation_timeout_ms)
    except Exception as exc:
        raise NavigationError(f"unable to open {target}", details=str(exc)) from exc
