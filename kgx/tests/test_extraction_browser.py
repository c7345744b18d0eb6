from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any

import pytest

from kgx.extraction_browser import (
    BrowserSession,
    context_options,
    fingerprint_script,
    launch_browser_session,
    navigate_to_app,
)
from kgx.extraction_config import BrowserSettings
from kgx.extraction_errors import BrowserLaunchError, NavigationError


class _Closer:
    def __init__(self, *, fail: bool = False) -> None:
        self.fail = fail
        self.calls: list[str] = []

    async def close(self) -> None:
        self.calls.append("close")
        if self.fail:
            raise RuntimeError("already gone")

    async def stop(self) -> None:
        self.calls.append("stop")


def test_fingerprint_script_substitutes_placeholders() -> None:
    script = fingerprint_script(BrowserSettings(locale="de-DE", fingerprint_noise=False), seed=1234)

    assert "const seed = 1234;" in script
    assert "const withNoise = false;" in script
    assert '["de-DE", "de"]' in script
    assert "__SEED__" not in script
    assert "__LANGUAGES__" not in script


def test_context_options_include_storage_state_only_when_present() -> None:
    settings = BrowserSettings(viewport_width=1440, viewport_height=900)
    state = {"cookies": [], "origins": []}

    without_state = context_options(settings, None)
    with_state = context_options(settings, state)

    assert without_state["viewport"] == {"width": 1440, "height": 900}
    assert without_state["timezone_id"] == "America/New_York"
    assert "storage_state" not in without_state
    assert with_state["storage_state"] is state


def test_session_close_is_idempotent_and_tolerates_errors() -> None:
    browser = _Closer(fail=True)
    playwright = _Closer()
    session = BrowserSession(playwright=playwright, browser=browser, context=None, page=None)

    asyncio.run(session.close())
    asyncio.run(session.close())

    assert session.closed is True
    assert browser.calls == ["close"]
    assert playwright.calls == ["stop"]


def test_screenshot_failure_returns_none(tmp_path: Path) -> None:
    class _BrokenPage:
        async def screenshot(self, **_kwargs: Any) -> None:
            raise RuntimeError("target closed")

    session = BrowserSession(playwright=None, browser=None, context=None, page=_BrokenPage())

    assert asyncio.run(session.screenshot(tmp_path / "debug" / "shot.png")) is None
    assert (tmp_path / "debug").is_dir()


def test_launch_failure_is_wrapped_and_cleans_up(monkeypatch: pytest.MonkeyPatch) -> None:
    playwright = _Closer()

    class _Chromium:
        async def launch(self, **_kwargs: Any) -> Any:
            raise RuntimeError("Executable doesn't exist")

    playwright.chromium = _Chromium()  # type: ignore[attr-defined]

    class _Starter:
        async def start(self) -> _Closer:
            return playwright

    monkeypatch.setattr("playwright.async_api.async_playwright", lambda: _Starter())

    with pytest.raises(BrowserLaunchError, match="Executable doesn't exist"):
        asyncio.run(launch_browser_session(BrowserSettings()))

    assert playwright.calls == ["stop"]


def test_navigate_to_app_wraps_goto_errors() -> None:
    class _Page:
        def __init__(self) -> None:
            self.targets: list[str] = []

        async def goto(self, url: str, **_kwargs: Any) -> None:
            self.targets.append(url)
            raise RuntimeError("net::ERR_NAME_NOT_RESOLVED")

    page = _Page()

    with pytest.raises(NavigationError) as excinfo:
        asyncio.run(navigate_to_app(page, BrowserSettings(), url="https://example.com/app"))

    assert page.targets == ["https://example.com/app"]
    assert "ERR_NAME_NOT_RESOLVED" in str(excinfo.value)
