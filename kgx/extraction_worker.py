from __future__ import annotations

import asyncio
import logging
import random
import time
from collections.abc import Awaitable, Callable, Mapping
from pathlib import Path
from typing import Any

from kgx.extraction_browser import BrowserSession, launch_browser_session, navigate_to_app
from kgx.extraction_config import ExtractorConfig, resolve_runtime_path
from kgx.extraction_errors import (
    ExtractionError,
    OutcomeKind,
    RateLimitError,
    ResponseExtractionError,
    SubmissionError,
    TaskCancelledError,
    WorkerOutcome,
    classify_failure,
    error_diagnostics,
)
from kgx.extraction_events import EventLog
from kgx.extraction_login import ensure_authenticated
from kgx.extraction_pool import AccountPool
from kgx.extraction_repository import ExtractionRepository
from kgx.extraction_response import extract_response
from kgx.extraction_selectors import (
    RATE_LIMIT_TEXT_HINTS,
    SelectorRole,
    candidates_for,
    click_first,
    contains_hint,
    first_visible_selector,
    model_label,
    model_option_candidates,
    wait_for_role,
)
from kgx.extraction_sessions import resolve_session_source, save_shared_session
from kgx.extraction_timing import RandomWaitSettings, wait_random_delay
from kgx.schemas import Account, Task, TaskStatus, utc_now

LOGGER = logging.getLogger(__name__)

Launcher = Callable[..., Awaitable[BrowserSession]]

_PASTE_JS = """
(node, text) => {
    node.focus();
    const data = new DataTransfer();
    data.setData('text/plain', text);
    const event = new ClipboardEvent('paste', { clipboardData: data, bubbles: true, cancelable: true });
    node.dispatchEvent(event);
}
"""
_ASSIGN_JS = """
(node, text) => {
    node.focus();
    if (node.tagName === 'TEXTAREA' || node.tagName === 'INPUT') {
        node.value = text;
    } else {
        node.innerText = text;
    }
    node.dispatchEvent(new InputEvent('input', { bubbles: true, inputType: 'insertText', data: text }));
    node.dispatchEvent(new Event('change', { bubbles: true }));
}
"""
_CLEAR_JS = """
(node) => {
    if (node.tagName === 'TEXTAREA' || node.tagName === 'INPUT') {
        node.value = '';
    } else {
        node.innerHTML = '';
    }
    node.dispatchEvent(new Event('input', { bubbles: true }));
}
"""
_LANDED_LENGTH_JS = """
(node) => (node.tagName === 'TEXTAREA' || node.tagName === 'INPUT')
    ? node.value.length
    : (node.innerText || '').trim().length
"""


class CancellationToken:
    """Cooperative cancellation flag plus the closers that abort in-flight browser work."""

    def __init__(self) -> None:
        self._cancelled = False
        self._closers: list[Callable[[], Awaitable[None]]] = []

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def attach(self, closer: Callable[[], Awaitable[None]]) -> None:
        self._closers.append(closer)

    async def cancel(self) -> None:
        self._cancelled = True
        closers, self._closers = self._closers, []
        for closer in closers:
            try:
                await closer()
            except Exception:
                LOGGER.debug("error while force-closing a cancelled session", exc_info=True)

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise TaskCancelledError("task cancelled by operator")


class ExtractionWorker:
    """Runs one task on one claimed account inside its own browser."""

    def __init__(
        self,
        repository: ExtractionRepository,
        pool: AccountPool,
        events: EventLog,
        config: ExtractorConfig,
        *,
        project_root: Path,
        launcher: Launcher = launch_browser_session,
        environ: Mapping[str, str] | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self._repository = repository
        self._pool = pool
        self._events = events
        self._config = config
        self._project_root = project_root
        self._launcher = launcher
        self._environ = environ
        self._rng = rng
        self._waits = RandomWaitSettings.from_timing(config.timing)

    async def run(self, task: Task, account: Account, token: CancellationToken) -> WorkerOutcome:
        context = _event_context(task, account)
        if token.cancelled:
            self._finalize_cancelled(task)
            self._pool.release(account.id, task_id=task.id)
            return WorkerOutcome(kind=OutcomeKind.cancelled, task_id=task.id, account_id=account.id)

        if not self._repository.mark_task_processing(task.id, account.id):
            self._pool.release(account.id, task_id=task.id)
            self._events.warning("Task no longer pending; skipped", **context)
            return WorkerOutcome(kind=OutcomeKind.cancelled, task_id=task.id, account_id=account.id)
        self._repository.mark_account_in_use(account.id, task_id=task.id)
        self._events.info(f"Processing {task.entity_type.value} {task.entity_name}", **context)

        session: BrowserSession | None = None
        try:
            session = await self._open_session(account, context)
            token.attach(session.close)
            token.raise_if_cancelled()

            page = session.page
            await navigate_to_app(page, self._config.browser)
            logged_in = await ensure_authenticated(
                page,
                account,
                browser_settings=self._config.browser,
                policy=self._config.extraction,
                waits=self._waits,
                environ=self._environ,
                rng=self._rng,
            )
            if logged_in:
                self._events.info(f"Signed in as {account.email}", **context)
            await self._persist_session(account, session)
            token.raise_if_cancelled()

            await self._start_new_conversation(page, context)
            await self._select_model(page, task.model_variant, context)
            token.raise_if_cancelled()

            input_selector = await self._inject_prompt(page, task.prompt_text, context)
            token.raise_if_cancelled()
            await self._submit(page, input_selector)
            await self._await_completion(page, token, context)
            token.raise_if_cancelled()

            try:
                extracted = await extract_response(page, self._config.extraction)
            except ResponseExtractionError:
                await self._raise_if_rate_limited(page)
                raise
            token.raise_if_cancelled()
        except asyncio.CancelledError:
            self._finalize_cancelled(task)
            raise
        except Exception as exc:
            if token.cancelled:
                self._finalize_cancelled(task)
                self._events.warning("Task cancelled", **context)
                return WorkerOutcome(kind=OutcomeKind.cancelled, task_id=task.id, account_id=account.id)
            return await self._handle_failure(task, account, exc, session, context)
        else:
            current = self._repository.get_task(task.id)
            if current is None or current.status != TaskStatus.processing:
                self._events.warning("Task no longer processing; discarding extracted graph", **context)
                return WorkerOutcome(kind=OutcomeKind.cancelled, task_id=task.id, account_id=account.id)
            record = self._repository.append_knowledge_graph(
                task=task,
                raw_json=extracted.payload,
                account_id=account.id,
            )
            self._repository.complete_task(task.id)
            self._pool.record_success(account.id)
            self._events.success(
                f"Knowledge graph extracted for {task.entity_name}",
                metadata={
                    "knowledge_graph_id": record.id,
                    "strategy": extracted.strategy,
                    "selector": extracted.selector,
                    "repaired": extracted.repaired,
                },
                **context,
            )
            return WorkerOutcome(
                kind=OutcomeKind.succeeded,
                task_id=task.id,
                account_id=account.id,
                knowledge_graph_id=record.id,
            )
        finally:
            self._pool.release(account.id, task_id=task.id)
            if session is not None:
                await session.close()

    async def _open_session(self, account: Account, context: dict[str, Any]) -> BrowserSession:
        resolved = resolve_session_source(
            account,
            config=self._config,
            project_root=self._project_root,
            environ=self._environ,
        )
        self._events.info(
            f"Using {resolved.source.value} session state",
            metadata={"skipped": resolved.skipped} if resolved.skipped else None,
            **context,
        )
        return await self._launcher(self._config.browser, storage_state=resolved.storage_state)

    async def _persist_session(self, account: Account, session: BrowserSession) -> None:
        try:
            storage_state = await session.storage_state()
            self._pool.save_session(account.id, storage_state)
            save_shared_session(storage_state, config=self._config, project_root=self._project_root)
        except Exception:
            LOGGER.warning("unable to persist session state for account %s", account.id, exc_info=True)

    async def _start_new_conversation(self, page: Any, context: dict[str, Any]) -> None:
        if await click_first(page, candidates_for(SelectorRole.new_chat)) is None:
            await navigate_to_app(page, self._config.browser)
        await wait_random_delay(page, self._waits, rng=self._rng)
        if not await self._conversation_is_empty(page):
            self._events.warning("Could not verify that a fresh conversation is open", **context)

    async def _conversation_is_empty(self, page: Any) -> bool:
        if await first_visible_selector(page, candidates_for(SelectorRole.greeting)) is not None:
            return True
        for selector in candidates_for(SelectorRole.message_node):
            if await page.locator(selector).count() > 0:
                return False
        return True

    async def _select_model(self, page: Any, model_variant: str, context: dict[str, Any]) -> None:
        picker = await first_visible_selector(page, candidates_for(SelectorRole.model_picker))
        if picker is None:
            LOGGER.info("no model picker found; using the default model")
            return
        button = page.locator(picker).first
        wanted = model_label(model_variant)
        current = (await button.inner_text()).strip().lower()
        if wanted in current:
            return
        await button.click()
        await wait_random_delay(page, self._waits, rng=self._rng)
        if await click_first(page, model_option_candidates(model_variant)) is None:
            await page.keyboard.press("Escape")
            self._events.warning(
                f"Model variant '{model_variant}' not offered; continuing with '{current}'",
                **context,
            )
            return
        await wait_random_delay(page, self._waits, rng=self._rng)

    async def _inject_prompt(self, page: Any, prompt: str, context: dict[str, Any]) -> str:
        policy = self._config.extraction
        selector = await wait_for_role(
            page,
            SelectorRole.prompt_input,
            timeout_ms=policy.selector_wait_timeout_ms,
            poll_ms=policy.selector_poll_ms,
        )
        field = page.locator(selector).first
        await field.click()

        required = int(len(prompt.strip()) * policy.prompt_length_tolerance)
        landed = 0
        channels: tuple[tuple[str, Callable[[], Awaitable[Any]]], ...] = (
            ("paste", lambda: field.evaluate(_PASTE_JS, prompt)),
            ("assign", lambda: field.evaluate(_ASSIGN_JS, prompt)),
            ("insert_text", lambda: page.keyboard.insert_text(prompt)),
            ("type", lambda: page.keyboard.type(prompt)),
        )
        for name, channel in channels:
            try:
                await field.evaluate(_CLEAR_JS)
                await field.focus()
                await channel()
                landed = int(await field.evaluate(_LANDED_LENGTH_JS))
            except Exception:
                LOGGER.debug("prompt channel %s raised", name, exc_info=True)
                continue
            if landed >= required:
                LOGGER.info("prompt injected via %s (%s/%s chars)", name, landed, len(prompt))
                return selector
            LOGGER.info("prompt channel %s landed %s of %s chars", name, landed, len(prompt))
        raise SubmissionError(
            "prompt did not land in the input",
            details=f"landed {landed} of {len(prompt)} chars",
            diagnostics={"selector": selector, "landed": landed, "expected": len(prompt)},
        )

    async def _press_send(self, page: Any, input_selector: str) -> str:
        send = await first_visible_selector(page, candidates_for(SelectorRole.send_button))
        if send is not None and await page.locator(send).first.is_enabled():
            await page.locator(send).first.click()
            return "click"

        await page.locator(input_selector).first.click()
        await page.keyboard.type(" ")
        await page.keyboard.press("Backspace")
        await wait_random_delay(page, self._waits, rng=self._rng)

        send = await first_visible_selector(page, candidates_for(SelectorRole.send_button))
        if send is not None and await page.locator(send).first.is_enabled():
            await page.locator(send).first.click()
            return "click_after_wake"

        await page.keyboard.press("Enter")
        return "enter"

    async def _response_count(self, page: Any) -> int:
        return await page.locator(candidates_for(SelectorRole.response_container)[0]).count()

    async def _generation_started(self, page: Any, *, baseline: int) -> bool:
        policy = self._config.extraction
        deadline = time.monotonic() + policy.submit_confirm_timeout_ms / 1000
        while True:
            if await first_visible_selector(page, candidates_for(SelectorRole.stop_button)) is not None:
                return True
            if await first_visible_selector(page, candidates_for(SelectorRole.thinking_indicator)) is not None:
                return True
            if await self._response_count(page) > baseline:
                return True
            if time.monotonic() >= deadline:
                return False
            await asyncio.sleep(policy.selector_poll_ms / 1000)

    async def _submit(self, page: Any, input_selector: str) -> None:
        baseline = await self._response_count(page)
        for attempt in range(2):
            method = await self._press_send(page, input_selector)
            if await self._generation_started(page, baseline=baseline):
                LOGGER.info("generation started (submit=%s, attempt=%s)", method, attempt + 1)
                return
            LOGGER.warning("generation did not start after submit=%s (attempt %s)", method, attempt + 1)
        await self._raise_if_rate_limited(page)
        raise SubmissionError("generation did not start after two submission attempts")

    async def _await_completion(self, page: Any, token: CancellationToken, context: dict[str, Any]) -> bool:
        policy = self._config.extraction
        deadline = time.monotonic() + policy.generation_timeout_ms / 1000
        while True:
            token.raise_if_cancelled()
            if await first_visible_selector(page, candidates_for(SelectorRole.stop_button)) is None:
                return True
            if time.monotonic() >= deadline:
                self._events.warning(
                    f"Generation still running after {policy.generation_timeout_ms // 1000}s; extracting anyway",
                    **context,
                )
                return False
            await asyncio.sleep(policy.generation_poll_ms / 1000)

    async def _raise_if_rate_limited(self, page: Any) -> None:
        try:
            text = await page.inner_text("body")
        except Exception:
            return
        hint = contains_hint(text, RATE_LIMIT_TEXT_HINTS)
        if hint is not None:
            raise RateLimitError("account is rate limited", details=f"page mentions '{hint}'")

    async def _capture_screenshot(self, session: BrowserSession | None, task: Task) -> str | None:
        if session is None or session.closed:
            return None
        stamp = utc_now().strftime("%Y%m%dT%H%M%SZ")
        directory = resolve_runtime_path(self._project_root, self._config.diagnostics_path)
        captured = await session.screenshot(directory / f"task-{task.id}-{stamp}.png")
        return str(captured) if captured is not None else None

    def _finalize_cancelled(self, task: Task) -> None:
        self._repository.cancel_task(task.id)

    async def _handle_failure(
        self,
        task: Task,
        account: Account,
        exc: Exception,
        session: BrowserSession | None,
        context: dict[str, Any],
    ) -> WorkerOutcome:
        retryable, rate_limited = classify_failure(exc)
        blamed = isinstance(exc, ExtractionError) and exc.blame_account
        error_text = str(exc) or exc.__class__.__name__
        if not isinstance(exc, ExtractionError):
            LOGGER.exception("unexpected error while processing task %s", task.id)

        metadata = error_diagnostics(exc)
        screenshot = await self._capture_screenshot(session, task)
        if screenshot is not None:
            metadata["screenshot"] = screenshot

        deadline = self._pool.record_failure(account.id, error_text, rate_limited=rate_limited)
        if deadline is not None:
            metadata["rate_limited_until"] = deadline.isoformat()
            self._events.warning(f"Account {account.email} rate limited until {deadline.isoformat()}", **context)
        elif blamed:
            self._events.warning(f"Account {account.email} needs attention: {error_text}", **context)

        updated = self._repository.record_task_failure(task.id, error_text, retryable=retryable)
        if updated is None:
            return WorkerOutcome(kind=OutcomeKind.cancelled, task_id=task.id, account_id=account.id)

        if updated.status == TaskStatus.queued:
            kind = OutcomeKind.retry
            self._events.warning(
                f"Task failed, requeued ({updated.retry_count}/{updated.max_retries}): {error_text}",
                metadata=metadata,
                **context,
            )
        else:
            kind = OutcomeKind.failed
            self._events.error(f"Task failed: {error_text}", metadata=metadata, **context)

        return WorkerOutcome(
            kind=kind,
            task_id=task.id,
            account_id=account.id,
            error_type=exc.__class__.__name__,
            error=error_text,
            rate_limited=rate_limited,
            account_blamed=blamed,
        )


def _event_context(task: Task, account: Account) -> dict[str, Any]:
    return {
        "task_id": task.id,
        "account_id": account.id,
        "entity_type": task.entity_type,
        "entity_id": task.entity_id,
    }
