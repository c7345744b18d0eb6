from __future__ import annotations

import asyncio
import time
from collections.abc import Sequence
from enum import Enum
from typing import Any

from kgx.extraction_errors import ElementNotFoundError


class SelectorRole(str, Enum):
    prompt_input = "prompt_input"
    send_button = "send_button"
    stop_button = "stop_button"
    new_chat = "new_chat"
    model_picker = "model_picker"
    model_option = "model_option"
    response_container = "response_container"
    user_turn = "user_turn"
    code_block = "code_block"
    message_node = "message_node"
    greeting = "greeting"
    sign_in = "sign_in"
    email_input = "email_input"
    password_input = "password_input"
    next_button = "next_button"
    use_another_account = "use_another_account"
    dismiss_nudge = "dismiss_nudge"
    mfa_prompt = "mfa_prompt"
    captcha_frame = "captcha_frame"
    thinking_indicator = "thinking_indicator"


_CATALOGUE: dict[SelectorRole, tuple[str, ...]] = {
    SelectorRole.prompt_input: (
        "rich-textarea div.ql-editor[contenteditable='true']",
        "div[contenteditable='true'][role='textbox']",
        "textarea[placeholder*='Enter a prompt']",
        "textarea[aria-label*='prompt']",
        "[data-test-id='chat-input']",
        ".chat-input",
        "div[contenteditable='true']",
        "textarea",
    ),
    SelectorRole.send_button: (
        "button[aria-label*='Send message']",
        "button[aria-label*='Send']",
        "button.send-button",
        "[data-test-id='send-button']",
        "button[mattooltip*='Send']",
    ),
    SelectorRole.stop_button: (
        "button[aria-label*='Stop response']",
        "button[aria-label*='Stop']",
        "button.stop",
        "[data-test-id='stop-button']",
    ),
    SelectorRole.new_chat: (
        "[data-test-id='new-chat-button'] a",
        "[data-test-id='new-chat-button']",
        "a[aria-label*='New chat']",
        "button[aria-label*='New chat']",
        "expandable-button[aria-label*='New chat']",
    ),
    SelectorRole.model_picker: (
        "[data-test-id='bard-mode-menu-button']",
        "button[aria-label*='model']",
        "button.gds-mode-switch-button",
        "bard-mode-switcher button",
    ),
    SelectorRole.model_option: (
        "[role='menuitemradio']",
        "[role='menuitem']",
        "bard-mode-list-button",
    ),
    SelectorRole.response_container: (
        "model-response",
        "div[data-message-author-role='model']",
        "message-content.model-response-text",
        ".model-response-text",
        "[data-test-id='model-response']",
        ".response-container",
    ),
    SelectorRole.user_turn: (
        "user-query",
        "div[data-message-author-role='user']",
        ".user-query-container",
        "[data-test-id='user-query']",
    ),
    SelectorRole.code_block: (
        "code-block code",
        "pre code",
        "pre",
        "code",
    ),
    SelectorRole.message_node: (
        "user-query",
        "model-response",
        "div[data-message-author-role]",
    ),
    SelectorRole.greeting: (
        "[data-test-id='greeting']",
        ".greeting-title",
        "h1:has-text('Hello')",
        "text=/How can I help/i",
    ),
    SelectorRole.sign_in: (
        "a:has-text('Sign in')",
        "button:has-text('Sign in')",
        "a[href*='accounts.google.com/ServiceLogin']",
    ),
    SelectorRole.email_input: (
        "input[type='email']",
        "input#identifierId",
        "input[name='identifier']",
    ),
    SelectorRole.password_input: (
        "input[type='password']",
        "input[name='Passwd']",
        "input[name='password']",
    ),
    SelectorRole.next_button: (
        "#identifierNext button",
        "#passwordNext button",
        "button:has-text('Next')",
        "div[role='button']:has-text('Next')",
    ),
    SelectorRole.use_another_account: (
        "div[role='link']:has-text('Use another account')",
        "li:has-text('Use another account')",
        "text=Use another account",
    ),
    SelectorRole.dismiss_nudge: (
        "button:has-text('Not now')",
        "button:has-text('No thanks')",
        "button:has-text('Skip')",
        "button:has-text('Dismiss')",
        "button:has-text('Got it')",
        "button:has-text('Close')",
        "button:has-text('Cancel')",
        "button[aria-label='Close']",
    ),
    SelectorRole.mfa_prompt: (
        "input[name='totpPin']",
        "input#totpPin",
        "input[autocomplete='one-time-code']",
        "div[data-challengetype]",
        "input[name='idvPin']",
    ),
    SelectorRole.captcha_frame: (
        "iframe[src*='recaptcha']",
        "iframe[title*='reCAPTCHA']",
        "#captchaimg",
        "input[name='ca']",
    ),
    SelectorRole.thinking_indicator: (
        "[data-test-id='thinking']",
        "model-thoughts",
        ".thinking-indicator",
        "text=/^\\s*(Show thinking|Thinking)/i",
    ),
}

RATE_LIMIT_TEXT_HINTS: tuple[str, ...] = (
    "rate limit",
    "you've reached your limit",
    "you have reached your limit",
    "reached the limit",
    "too many requests",
    "quota exceeded",
    "try again later",
    "come back later",
)
MFA_TEXT_HINTS: tuple[str, ...] = (
    "2-step verification",
    "two-step verification",
    "verify it's you",
    "verify it’s you",
    "enter the code",
    "check your phone",
)
ANTI_BOT_TEXT_HINTS: tuple[str, ...] = (
    "verify you are human",
    "confirm you're not a robot",
    "confirm you are not a robot",
    "unusual traffic",
    "couldn't sign you in",
    "this browser or app may not be secure",
)


def candidates_for(role: SelectorRole | str) -> tuple[str, ...]:
    """Ordered selector candidates for a semantic UI role, most specific first."""
    return _CATALOGUE[SelectorRole(role)]


def account_chooser_candidates(email: str) -> tuple[str, ...]:
    quoted = email.replace("'", "\\'")
    return (
        f"div[data-identifier='{quoted}']",
        f"li:has-text('{quoted}')",
        f"div[role='link']:has-text('{quoted}')",
    )


def model_label(model_variant: str) -> str:
    """Picker label for a variant id: ``gemini-3-pro`` reads as ``3 pro``."""
    label = model_variant.strip().lower()
    if label.startswith("gemini-"):
        label = label[len("gemini-") :]
    return label.replace("-", " ")


def model_option_candidates(model_variant: str) -> tuple[str, ...]:
    label = model_label(model_variant).replace("'", "\\'")
    return tuple(
        f"{base}:has-text('{label}')" for base in candidates_for(SelectorRole.model_option)
    ) + (f"text=/{_escape_regex(label)}/i",)


def contains_hint(text: str, hints: Sequence[str]) -> str | None:
    lowered = text.lower()
    for hint in hints:
        if hint in lowered:
            return hint
    return None


def _escape_regex(value: str) -> str:
    return "".join(f"\\{ch}" if ch in r"\.^$*+?{}[]|()/" else ch for ch in value)


async def first_visible_selector(page: Any, selectors: Sequence[str]) -> str | None:
    for selector in selectors:
        locator = page.locator(selector).first
        try:
            if await locator.count() > 0 and await locator.is_visible():
                return selector
        except Exception:
            continue
    return None


async def click_first(page: Any, selectors: Sequence[str], *, force: bool = False) -> str | None:
    selector = await first_visible_selector(page, selectors)
    if selector is None:
        return None
    await page.locator(selector).first.click(force=force)
    return selector


async def wait_for_role(
    page: Any,
    role: SelectorRole,
    *,
    timeout_ms: int,
    poll_ms: int,
    selectors: Sequence[str] | None = None,
) -> str:
    """Poll the role's candidates until one is visible; raise ``ElementNotFoundError`` at the deadline."""
    candidates = tuple(selectors) if selectors is not None else candidates_for(role)
    deadline = time.monotonic() + timeout_ms / 1000
    while True:
        selector = await first_visible_selector(page, candidates)
        if selector is not None:
            return selector
        if time.monotonic() >= deadline:
            raise ElementNotFoundError(
                role=role.value,
                selectors=candidates,
                details=f"none visible within {timeout_ms}ms",
            )
        await asyncio.sleep(poll_ms / 1000)
