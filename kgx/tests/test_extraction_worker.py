from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path

from browser_fakes import FakePage, FakeSession, chat_page, fenced_reply, graph_payload, launcher_for

from kgx.extraction_config import ExtractionPolicy, ExtractorConfig, SchedulerPolicy, TimingSettings
from kgx.extraction_errors import OutcomeKind
from kgx.extraction_events import EventLog
from kgx.extraction_pool import AccountPool
from kgx.extraction_repository import SQLiteExtractionRepository
from kgx.extraction_selectors import SelectorRole, candidates_for
from kgx.extraction_sessions import resolve_shared_session_path
from kgx.extraction_worker import CancellationToken, ExtractionWorker
from kgx.schemas import Account, EntityType, NewAccount, NewTask, Task, TaskStatus, utc_now

PROMPT = "Extract the supplier and customer graph for Acme Corp as JSON with nodes and edges."
FAST_POLICY = ExtractionPolicy(
    submit_confirm_timeout_ms=30,
    generation_timeout_ms=200,
    generation_poll_ms=5,
    selector_wait_timeout_ms=30,
    selector_poll_ms=5,
)


@dataclass
class Harness:
    repository: SQLiteExtractionRepository
    pool: AccountPool
    worker: ExtractionWorker
    session: FakeSession
    launcher: object
    config: ExtractorConfig
    task: Task
    account: Account

    def run(self, token: CancellationToken | None = None):
        return asyncio.run(self.worker.run(self.task, self.account, token or CancellationToken()))


def _harness(
    tmp_path: Path,
    page: FakePage,
    *,
    max_retries: int = 3,
    cooldown_seconds: float = 3600.0,
    policy: ExtractionPolicy = FAST_POLICY,
) -> Harness:
    repository = SQLiteExtractionRepository(tmp_path / "kgx.sqlite3")
    config = ExtractorConfig(
        scheduler=SchedulerPolicy(rate_limit_cooldown_seconds=cooldown_seconds),
        extraction=policy,
        timing=TimingSettings(random_waits=False),
    )
    events = EventLog(repository)
    pool = AccountPool(repository, cooldown_seconds=cooldown_seconds)
    session = FakeSession(page)
    launcher = launcher_for(session)
    worker = ExtractionWorker(repository, pool, events, config, project_root=tmp_path, launcher=launcher, environ={})

    pool.add_account(NewAccount(display_name="Worker 1", email="worker1@example.com", encrypted_credential="secret"))
    created = repository.create_task(
        NewTask(
            entity_type=EntityType.stock,
            entity_id=101,
            entity_name="Acme",
            prompt_text=PROMPT,
            max_retries=max_retries,
        )
    )
    account = pool.claim(created.id)
    assert account is not None
    task = repository.get_task(created.id)
    assert task is not None
    return Harness(repository, pool, worker, session, launcher, config, task, account)


def _messages(repository: SQLiteExtractionRepository) -> list[str]:
    return [event.message for event in reversed(repository.recent_logs(limit=100))]


def test_successful_run_stores_graph_and_releases_account(tmp_path: Path) -> None:
    payload = graph_payload(30)
    page = chat_page(fenced_reply(payload))
    harness = _harness(tmp_path, page)

    outcome = harness.run()

    assert outcome.kind == OutcomeKind.succeeded
    task = harness.repository.get_task(harness.task.id)
    assert task is not None and task.status == TaskStatus.completed
    graphs = harness.repository.list_knowledge_graphs()
    assert len(graphs) == 1
    assert graphs[0].raw_json == payload
    assert graphs[0].account_used == harness.account.id
    assert outcome.knowledge_graph_id == graphs[0].id

    account = harness.repository.get_account(harness.account.id)
    assert account is not None
    assert account.is_in_use is False
    assert account.success_count == 1
    assert account.persisted_session is not None
    assert resolve_shared_session_path(config=harness.config, project_root=tmp_path).exists()

    prompt_field = page.elements[candidates_for(SelectorRole.prompt_input)[0]][0]
    assert prompt_field.value == PROMPT
    assert candidates_for(SelectorRole.send_button)[0] in page.clicked
    assert harness.session.closed is True
    assert harness.launcher.calls == [{"storage_state": None, "headless": None}]
    assert "Knowledge graph extracted for Acme" in _messages(harness.repository)


def test_prompt_falls_back_to_keyboard_insertion(tmp_path: Path) -> None:
    page = chat_page(fenced_reply(graph_payload(30)))
    page.paste_works = False
    page.assign_works = False
    harness = _harness(tmp_path, page)

    outcome = harness.run()

    assert outcome.kind == OutcomeKind.succeeded
    prompt_field = page.elements[candidates_for(SelectorRole.prompt_input)[0]][0]
    assert prompt_field.value == PROMPT


def test_model_picker_switches_variant(tmp_path: Path) -> None:
    page = chat_page(fenced_reply(graph_payload(30)))
    page.add("[data-test-id='bard-mode-menu-button']", text="2.5 Flash")
    page.add("[role='menuitemradio']:has-text('3 pro')")
    harness = _harness(tmp_path, page)

    outcome = harness.run()

    assert outcome.kind == OutcomeKind.succeeded
    assert "[data-test-id='bard-mode-menu-button']" in page.clicked
    assert "[role='menuitemradio']:has-text('3 pro')" in page.clicked


def test_stored_account_session_is_used_on_next_launch(tmp_path: Path) -> None:
    page = chat_page(fenced_reply(graph_payload(30)))
    harness = _harness(tmp_path, page)
    harness.pool.save_session(harness.account.id, harness.session._state)
    account = harness.repository.get_account(harness.account.id)
    assert account is not None
    harness.account = account

    harness.run()

    assert harness.launcher.calls[0]["storage_state"] == harness.session._state


def test_generation_that_never_starts_is_requeued(tmp_path: Path) -> None:
    page = chat_page(None)
    harness = _harness(tmp_path, page)

    outcome = harness.run()

    assert outcome.kind == OutcomeKind.retry
    assert outcome.error_type == "SubmissionError"
    task = harness.repository.get_task(harness.task.id)
    assert task is not None
    assert task.status == TaskStatus.queued
    assert task.retry_count == 1
    assert task.assigned_account_id is None
    account = harness.repository.get_account(harness.account.id)
    assert account is not None
    assert account.is_in_use is False
    assert account.failure_count == 1
    assert account.rate_limited_until is None
    assert len(page.screenshots) == 1
    assert page.clicked.count(candidates_for(SelectorRole.send_button)[0]) == 2


def test_retry_budget_exhaustion_fails_task(tmp_path: Path) -> None:
    harness = _harness(tmp_path, chat_page(None), max_retries=1)

    outcome = harness.run()

    assert outcome.kind == OutcomeKind.failed
    task = harness.repository.get_task(harness.task.id)
    assert task is not None
    assert task.status == TaskStatus.failed
    assert task.retry_count == 1
    assert task.error_message is not None and "generation did not start" in task.error_message


def test_rate_limit_puts_account_on_cooldown(tmp_path: Path) -> None:
    page = chat_page(None)
    page.body_text = "You've reached your limit for 3 Pro. Try again later."
    harness = _harness(tmp_path, page, cooldown_seconds=900)
    before = utc_now()

    outcome = harness.run()

    assert outcome.kind == OutcomeKind.retry
    assert outcome.rate_limited is True
    account = harness.repository.get_account(harness.account.id)
    assert account is not None
    assert account.rate_limited_until is not None
    assert account.rate_limited_until >= before + timedelta(seconds=900)
    assert harness.pool.available_count() == 0
    task = harness.repository.get_task(harness.task.id)
    assert task is not None and task.status == TaskStatus.queued


def test_unparseable_reply_is_retried(tmp_path: Path) -> None:
    page = chat_page("I'm sorry, I can't produce that graph right now.")
    harness = _harness(tmp_path, page)

    outcome = harness.run()

    assert outcome.kind == OutcomeKind.retry
    assert outcome.error_type == "ResponseExtractionError"
    assert outcome.account_blamed is False
    assert not any("needs attention" in message for message in _messages(harness.repository))


def test_second_factor_challenge_is_terminal(tmp_path: Path) -> None:
    page = FakePage()
    page.add("input[name='totpPin']")
    harness = _harness(tmp_path, page)

    outcome = harness.run()

    assert outcome.kind == OutcomeKind.failed
    assert outcome.error_type == "MFAChallengeError"
    assert outcome.account_blamed is True
    assert any(
        message.startswith("Account worker1@example.com needs attention")
        for message in _messages(harness.repository)
    )
    task = harness.repository.get_task(harness.task.id)
    assert task is not None and task.status == TaskStatus.failed
    account = harness.repository.get_account(harness.account.id)
    assert account is not None
    assert account.failure_count == 1
    assert account.rate_limited_until is None
    assert account.is_in_use is False


def test_cancelled_before_start_never_opens_browser(tmp_path: Path) -> None:
    harness = _harness(tmp_path, chat_page(fenced_reply(graph_payload(30))))
    token = CancellationToken()
    asyncio.run(token.cancel())

    outcome = harness.run(token)

    assert outcome.kind == OutcomeKind.cancelled
    assert harness.launcher.calls == []
    task = harness.repository.get_task(harness.task.id)
    assert task is not None and task.status == TaskStatus.cancelled
    account = harness.repository.get_account(harness.account.id)
    assert account is not None and account.is_in_use is False


def test_cancel_during_generation_closes_browser(tmp_path: Path) -> None:
    page = chat_page(fenced_reply(graph_payload(30)))
    page.add_role(SelectorRole.stop_button)
    harness = _harness(tmp_path, page, policy=FAST_POLICY.model_copy(update={"generation_timeout_ms": 5_000}))

    async def scenario():
        token = CancellationToken()
        running = asyncio.create_task(harness.worker.run(harness.task, harness.account, token))
        while candidates_for(SelectorRole.send_button)[0] not in page.clicked:
            await asyncio.sleep(0.005)
        await token.cancel()
        return await running

    outcome = asyncio.run(scenario())

    assert outcome.kind == OutcomeKind.cancelled
    assert harness.session.closed is True
    task = harness.repository.get_task(harness.task.id)
    assert task is not None and task.status == TaskStatus.cancelled
    assert harness.repository.list_knowledge_graphs() == []


def test_generation_timeout_warns_then_extracts(tmp_path: Path) -> None:
    payload = graph_payload(30)
    page = chat_page(fenced_reply(payload))
    page.add_role(SelectorRole.stop_button)
    harness = _harness(tmp_path, page, policy=FAST_POLICY.model_copy(update={"generation_timeout_ms": 50}))

    outcome = harness.run()

    assert outcome.kind == OutcomeKind.succeeded
    assert harness.repository.list_knowledge_graphs()[0].raw_json == payload
    messages = _messages(harness.repository)
    timeout_index = next(
        index for index, message in enumerate(messages) if message.startswith("Generation still running after")
    )
    assert messages.index("Knowledge graph extracted for Acme") > timeout_index


def test_disabled_send_button_escalates_to_enter(tmp_path: Path) -> None:
    page = chat_page(fenced_reply(graph_payload(30)))
    send_selector = candidates_for(SelectorRole.send_button)[0]
    page.elements[send_selector][0].enabled = False
    page.key_hooks["Enter"] = page.click_hooks[send_selector]
    harness = _harness(tmp_path, page)

    outcome = harness.run()

    assert outcome.kind == OutcomeKind.succeeded
    assert send_selector not in page.clicked
    assert page.keyboard.typed == [" "]
    assert page.keyboard.pressed == ["Backspace", "Enter"]


def test_disabled_send_button_wakes_after_typing(tmp_path: Path) -> None:
    page = chat_page(fenced_reply(graph_payload(30)))
    send_selector = candidates_for(SelectorRole.send_button)[0]
    send = page.elements[send_selector][0]
    send.enabled = False

    def wake() -> None:
        send.enabled = True

    page.key_hooks["Backspace"] = wake
    harness = _harness(tmp_path, page)

    outcome = harness.run()

    assert outcome.kind == OutcomeKind.succeeded
    assert page.clicked.count(send_selector) == 1
    assert page.keyboard.pressed == ["Backspace"]


def test_leftover_conversation_is_reported_and_run_continues(tmp_path: Path) -> None:
    page = chat_page(fenced_reply(graph_payload(30)))
    page.add("user-query", text="A question from an earlier run")
    harness = _harness(tmp_path, page)

    outcome = harness.run()

    assert outcome.kind == OutcomeKind.succeeded
    messages = _messages(harness.repository)
    assert "Could not verify that a fresh conversation is open" in messages
    assert page.goto_calls.count(harness.config.browser.app_url) >= 2


def test_missing_model_variant_is_reported_and_default_kept(tmp_path: Path) -> None:
    page = chat_page(fenced_reply(graph_payload(30)))
    page.add("[data-test-id='bard-mode-menu-button']", text="2.5 Flash")
    harness = _harness(tmp_path, page)

    outcome = harness.run()

    assert outcome.kind == OutcomeKind.succeeded
    assert "[data-test-id='bard-mode-menu-button']" in page.clicked
    assert "Escape" in page.keyboard.pressed
    assert "Model variant 'gemini-3-pro' not offered; continuing with '2.5 flash'" in _messages(harness.repository)


def test_task_cancelled_elsewhere_before_start_is_skipped(tmp_path: Path) -> None:
    harness = _harness(tmp_path, chat_page(fenced_reply(graph_payload(30))))
    harness.repository.cancel_task(harness.task.id)

    outcome = harness.run()

    assert outcome.kind == OutcomeKind.cancelled
    assert harness.launcher.calls == []
    account = harness.repository.get_account(harness.account.id)
    assert account is not None and account.is_in_use is False
    assert "Task no longer pending; skipped" in _messages(harness.repository)
