from __future__ import annotations

import asyncio
import logging
import sys
import time
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any

from kgx.extraction_browser import BrowserSession, launch_browser_session, navigate_to_app
from kgx.extraction_config import BrowserSettings, ExtractorConfig
from kgx.extraction_errors import LoginError
from kgx.extraction_login import is_authenticated
from kgx.extraction_sessions import save_shared_session, validate_storage_state

LOGGER = logging.getLogger(__name__)

SESSION_COOKIE_DOMAIN_HINTS: tuple[str, ...] = ("google.com", "gemini.google.com")
DEFAULT_LOGIN_POLL_SECONDS = 2.0

Launcher = Callable[..., Awaitable[BrowserSession]]


def _has_google_cookie(cookies: list[dict[str, Any]]) -> bool:
    for cookie in cookies:
        domain = str(cookie.get("domain") or "").lower()
        if any(hint in domain for hint in SESSION_COOKIE_DOMAIN_HINTS):
            return True
    return False


def assert_non_empty_session(storage_state: dict[str, Any]) -> dict[str, Any]:
    try:
        validate_storage_state(storage_state)
    except ValueError as exc:
        raise LoginError(step="capture", reason="captured storageState is malformed", details=str(exc)) from exc

    cookies = storage_state["cookies"]
    if not cookies and not storage_state["origins"]:
        raise LoginError(step="capture", reason="no session data captured; complete login and rerun sync")
    if cookies and not _has_google_cookie(cookies):
        raise LoginError(step="capture", reason="no Google cookies captured; complete login and rerun sync")
    return storage_state


async def wait_for_manual_login(
    page: Any,
    *,
    timeout_seconds: float,
    poll_seconds: float = DEFAULT_LOGIN_POLL_SECONDS,
    clock: Callable[[], float] = time.monotonic,
) -> None:
    deadline = clock() + timeout_seconds
    while not await is_authenticated(page):
        if clock() >= deadline:
            raise LoginError(
                step="manual",
                reason=f"chat surface did not appear within {int(timeout_seconds)} seconds",
            )
        await asyncio.sleep(poll_seconds)


async def sync_session(
    config: ExtractorConfig,
    *,
    project_root: Path,
    launcher: Launcher = launch_browser_session,
    poll_seconds: float = DEFAULT_LOGIN_POLL_SECONDS,
    save_shared: bool = True,
) -> dict[str, Any]:
    """Open a visible browser, wait for the operator to sign in, then capture its storage state."""
    settings: BrowserSettings = config.browser
    session = await launcher(settings, storage_state=None, headless=False)
    try:
        await navigate_to_app(session.page, settings)
        timeout_seconds = config.sessions.manual_login_timeout_seconds
        print(
            (
                "Complete the Google sign-in in the browser window. "
                f"Waiting up to {timeout_seconds} seconds for the chat surface."
            ),
            file=sys.stderr,
        )
        await wait_for_manual_login(session.page, timeout_seconds=timeout_seconds, poll_seconds=poll_seconds)
        storage_state = assert_non_empty_session(await session.storage_state())
    finally:
        await session.close()

    if save_shared:
        path = save_shared_session(storage_state, config=config, project_root=project_root)
        LOGGER.info("shared session saved to %s", path)
    return storage_state
