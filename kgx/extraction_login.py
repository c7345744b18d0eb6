from __future__ import annotations

import logging
import os
import random
from collections.abc import Mapping
from typing import Any

from kgx.extraction_config import BrowserSettings, ExtractionPolicy
from kgx.extraction_errors import (
    AntiBotChallengeError,
    ElementNotFoundError,
    LoginError,
    MFAChallengeError,
)
from kgx.extraction_selectors import (
    ANTI_BOT_TEXT_HINTS,
    MFA_TEXT_HINTS,
    SelectorRole,
    account_chooser_candidates,
    candidates_for,
    click_first,
    contains_hint,
    first_visible_selector,
    wait_for_role,
)
from kgx.extraction_timing import RandomWaitSettings, think_pause, type_like_human, wait_random_delay
from kgx.schemas import Account

LOGGER = logging.getLogger(__name__)

ENV_CREDENTIAL_PREFIX = "env:"


def resolve_credential(account: Account, environ: Mapping[str, str] | None = None) -> str | None:
    """Return the account password; ``env:NAME`` credentials are read from the environment."""
    stored = account.encrypted_credential.strip()
    if not stored.startswith(ENV_CREDENTIAL_PREFIX):
        return stored or None
    env = os.environ if environ is None else environ
    env_name = stored[len(ENV_CREDENTIAL_PREFIX) :].strip()
    if not env_name:
        return None
    return env.get(env_name)


async def _page_text(page: Any) -> str:
    try:
        return await page.inner_text("body")
    except Exception:
        LOGGER.debug("unable to read page text during login", exc_info=True)
        return ""


async def is_authenticated(page: Any) -> bool:
    return await first_visible_selector(page, candidates_for(SelectorRole.prompt_input)) is not None


async def detect_challenges(page: Any) -> None:
    if await first_visible_selector(page, candidates_for(SelectorRole.captcha_frame)) is not None:
        raise AntiBotChallengeError(details="captcha element present")
    if await first_visible_selector(page, candidates_for(SelectorRole.mfa_prompt)) is not None:
        raise MFAChallengeError(details="verification code input present")

    text = await _page_text(page)
    hint = contains_hint(text, ANTI_BOT_TEXT_HINTS)
    if hint is not None:
        raise AntiBotChallengeError(details=f"page mentions '{hint}'")
    hint = contains_hint(text, MFA_TEXT_HINTS)
    if hint is not None:
        raise MFAChallengeError(details=f"page mentions '{hint}'")


async def dismiss_interstitials(
    page: Any,
    policy: ExtractionPolicy,
    waits: RandomWaitSettings,
    *,
    rng: random.Random | None = None,
) -> int:
    dismissed = 0
    for _ in range(policy.interstitial_rounds):
        if await is_authenticated(page) and dismissed > 0:
            break
        selector = await click_first(page, candidates_for(SelectorRole.dismiss_nudge))
        if selector is None:
            break
        dismissed += 1
        LOGGER.info("dismissed interstitial via %s", selector)
        await wait_random_delay(page, waits, rng=rng)
    return dismissed


async def _enter_field(
    page: Any,
    role: SelectorRole,
    value: str,
    *,
    step: str,
    policy: ExtractionPolicy,
    waits: RandomWaitSettings,
    rng: random.Random | None,
) -> None:
    try:
        selector = await wait_for_role(
            page,
            role,
            timeout_ms=policy.selector_wait_timeout_ms,
            poll_ms=policy.selector_poll_ms,
        )
    except ElementNotFoundError as exc:
        raise LoginError(step=step, reason="input not found", details=str(exc)) from exc
    await think_pause(page, waits, rng=rng)
    await type_like_human(page, selector, value, waits, rng=rng)
    await wait_random_delay(page, waits, rng=rng)
    if await click_first(page, candidates_for(SelectorRole.next_button)) is None:
        await page.keyboard.press("Enter")
    await wait_random_delay(page, waits, rng=rng)


async def login(
    page: Any,
    account: Account,
    *,
    credential: str | None,
    policy: ExtractionPolicy,
    waits: RandomWaitSettings,
    rng: random.Random | None = None,
) -> None:
    """Drive the hosted sign-in flow until the chat surface is reachable."""
    if not credential:
        raise LoginError(step="credential", reason=f"no credential available for {account.email}")

    if await click_first(page, candidates_for(SelectorRole.sign_in)) is not None:
        await wait_random_delay(page, waits, rng=rng)
    await detect_challenges(page)

    chooser = await click_first(page, account_chooser_candidates(account.email))
    if chooser is None:
        chooser = await click_first(page, candidates_for(SelectorRole.use_another_account))
    if chooser is not None:
        await wait_random_delay(page, waits, rng=rng)

    if await first_visible_selector(page, candidates_for(SelectorRole.password_input)) is None:
        await _enter_field(
            page,
            SelectorRole.email_input,
            account.email,
            step="email",
            policy=policy,
            waits=waits,
            rng=rng,
        )
        await detect_challenges(page)

    await _enter_field(
        page,
        SelectorRole.password_input,
        credential,
        step="password",
        policy=policy,
        waits=waits,
        rng=rng,
    )
    await detect_challenges(page)
    await dismiss_interstitials(page, policy, waits, rng=rng)

    try:
        await wait_for_role(
            page,
            SelectorRole.prompt_input,
            timeout_ms=policy.selector_wait_timeout_ms,
            poll_ms=policy.selector_poll_ms,
        )
    except ElementNotFoundError as exc:
        await detect_challenges(page)
        raise LoginError(step="chat_surface", reason="prompt input never appeared", details=str(exc)) from exc


async def ensure_authenticated(
    page: Any,
    account: Account,
    *,
    browser_settings: BrowserSettings,
    policy: ExtractionPolicy,
    waits: RandomWaitSettings,
    environ: Mapping[str, str] | None = None,
    rng: random.Random | None = None,
) -> bool:
    """Make sure ``page`` sits on an authenticated chat surface.

    Returns ``True`` when a fresh login was performed, ``False`` when the loaded
    session was already authenticated.
    """
    if await is_authenticated(page):
        await dismiss_interstitials(page, policy, waits, rng=rng)
        return False

    LOGGER.info("session not authenticated for %s; starting login", account.email)
    await login(
        page,
        account,
        credential=resolve_credential(account, environ),
        policy=policy,
        waits=waits,
        rng=rng,
    )
    if page.url and not page.url.startswith(browser_settings.app_url):
        await page.goto(
            browser_settings.app_url,
            wait_until="domcontentloaded",
            timeout=browser_settings.navigation_timeout_ms,
        )
    return True
