from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest
from browser_fakes import FakeSession, chat_page, fenced_reply, graph_payload, launcher_for

from kgx.extraction_config import (
    PROCESSING_ENABLED_KEY,
    ROTATION_STRATEGY_KEY,
    ExtractionPolicy,
    ExtractorConfig,
    SchedulerPolicy,
    TimingSettings,
)
from kgx.extraction_errors import OutcomeKind, WorkerOutcome
from kgx.extraction_events import EventLog
from kgx.extraction_pool import AccountPool
from kgx.extraction_repository import SQLiteExtractionRepository
from kgx.extraction_scheduler import QueueScheduler, build_scheduler
from kgx.extraction_selectors import SelectorRole, candidates_for
from kgx.extraction_worker import CancellationToken
from kgx.schemas import Account, EntityType, NewAccount, NewTask, Task, TaskStatus

FAST_SCHEDULER = SchedulerPolicy(poll_interval_seconds=0.01, disabled_poll_interval_seconds=0.01)


class _StubWorker:
    """Completes every task after ``delay`` seconds, recording the order it saw them in."""

    def __init__(self, repository: SQLiteExtractionRepository, pool: AccountPool, *, delay: float = 0.0) -> None:
        self._repository = repository
        self._pool = pool
        self._delay = delay
        self.started: list[tuple[str, int]] = []

    async def run(self, task: Task, account: Account, token: CancellationToken) -> WorkerOutcome:
        self.started.append((task.entity_name, account.id))
        await asyncio.sleep(self._delay)
        self._repository.complete_task(task.id)
        self._pool.release(account.id, task_id=task.id)
        return WorkerOutcome(kind=OutcomeKind.succeeded, task_id=task.id, account_id=account.id)


class _CrashingWorker:
    async def run(self, task: Task, account: Account, token: CancellationToken) -> WorkerOutcome:
        raise RuntimeError("unexpected state")


class _GatedWorker:
    """Holds each task until its gate opens, then frees its account like the browser worker does.

    With ``stop_on_cancel`` a cancelled token opens the gate, the way closing the
    browser aborts a real run. Without it the worker keeps going after cancellation.
    """

    def __init__(self, pool: AccountPool, *, stop_on_cancel: bool) -> None:
        self._pool = pool
        self._stop_on_cancel = stop_on_cancel
        self.gates: dict[str, asyncio.Event] = {}
        self.started: list[tuple[str, int]] = []

    async def run(self, task: Task, account: Account, token: CancellationToken) -> WorkerOutcome:
        gate = self.gates.setdefault(task.entity_name, asyncio.Event())

        async def open_gate() -> None:
            gate.set()

        if self._stop_on_cancel:
            token.attach(open_gate)
        self.started.append((task.entity_name, account.id))
        try:
            await gate.wait()
        finally:
            self._pool.release(account.id, task_id=task.id)
        kind = OutcomeKind.cancelled if token.cancelled else OutcomeKind.succeeded
        return WorkerOutcome(kind=kind, task_id=task.id, account_id=account.id)


def _setup(
    tmp_path: Path,
    *,
    accounts: int,
    worker_delay: float = 0.0,
    worker: Any = None,
    worker_factory: Callable[[SQLiteExtractionRepository, AccountPool], Any] | None = None,
    policy: SchedulerPolicy = FAST_SCHEDULER,
):
    repository = SQLiteExtractionRepository(tmp_path / "kgx.sqlite3")
    repository.set_config(ROTATION_STRATEGY_KEY, "first")
    pool = AccountPool(repository)
    events = EventLog(repository)
    for index in range(1, accounts + 1):
        pool.add_account(
            NewAccount(
                display_name=f"Worker {index}",
                email=f"worker{index}@example.com",
                encrypted_credential="secret",
            )
        )
    if worker is not None:
        stub = worker
    elif worker_factory is not None:
        stub = worker_factory(repository, pool)
    else:
        stub = _StubWorker(repository, pool, delay=worker_delay)
    scheduler = QueueScheduler(repository, pool, events, stub, policy=policy)
    return repository, scheduler, stub


def _new_task(name: str, priority: int = 0) -> NewTask:
    return NewTask(
        entity_type=EntityType.stock,
        entity_id=len(name),
        entity_name=name,
        prompt_text=f"Extract the graph for {name}.",
        priority=priority,
    )


def test_tick_launches_in_priority_then_fifo_order(tmp_path: Path) -> None:
    repository, scheduler, stub = _setup(tmp_path, accounts=3)
    low = scheduler.enqueue(_new_task("Low", priority=1))
    high_a = scheduler.enqueue(_new_task("HighA", priority=5))
    high_b = scheduler.enqueue(_new_task("HighB", priority=5))

    async def scenario() -> list[int]:
        launched = await scheduler.tick()
        await scheduler.drain()
        return launched

    launched = asyncio.run(scenario())

    assert launched == [high_a.id, high_b.id, low.id]
    assert [name for name, _ in stub.started] == ["HighA", "HighB", "Low"]
    assert len({account_id for _, account_id in stub.started}) == 3
    assert all(task.status == TaskStatus.completed for task in repository.list_tasks())
    assert [outcome.kind for outcome in scheduler.outcomes] == [OutcomeKind.succeeded] * 3


def test_single_account_processes_tasks_one_at_a_time(tmp_path: Path) -> None:
    repository, scheduler, stub = _setup(tmp_path, accounts=1, worker_delay=0.01)
    for name in ("A", "B", "C"):
        scheduler.enqueue(_new_task(name))

    async def scenario() -> list[list[int]]:
        rounds = []
        for _ in range(3):
            launched = await scheduler.tick()
            assert await scheduler.tick() == []
            rounds.append(launched)
            await scheduler.drain()
        return rounds

    rounds = asyncio.run(scenario())

    assert [len(launched) for launched in rounds] == [1, 1, 1]
    assert [name for name, _ in stub.started] == ["A", "B", "C"]
    assert len(repository.list_tasks(status=TaskStatus.completed)) == 3
    assert repository.list_tasks(status=TaskStatus.queued) == []


def test_tick_does_nothing_when_processing_disabled(tmp_path: Path) -> None:
    repository, scheduler, stub = _setup(tmp_path, accounts=2)
    scheduler.enqueue(_new_task("A"))
    repository.set_config(PROCESSING_ENABLED_KEY, "false")

    assert asyncio.run(scheduler.tick()) == []
    assert stub.started == []


def test_tick_without_accounts_leaves_tasks_queued(tmp_path: Path) -> None:
    repository, scheduler, stub = _setup(tmp_path, accounts=0)
    task = scheduler.enqueue(_new_task("A"))

    assert asyncio.run(scheduler.tick()) == []
    stored = repository.get_task(task.id)
    assert stored is not None and stored.status == TaskStatus.queued


def test_enqueue_emits_event(tmp_path: Path) -> None:
    repository, scheduler, _ = _setup(tmp_path, accounts=1)

    scheduler.enqueue(_new_task("Acme", priority=2))

    event = repository.recent_logs(limit=1)[0]
    assert event.message == "Task added to queue: Stock Acme"
    assert event.metadata == {"priority": 2}


def test_cancel_queued_task(tmp_path: Path) -> None:
    repository, scheduler, _ = _setup(tmp_path, accounts=1)
    task = scheduler.enqueue(_new_task("A"))

    assert asyncio.run(scheduler.cancel_task(task.id)) is True
    stored = repository.get_task(task.id)
    assert stored is not None and stored.status == TaskStatus.cancelled
    assert asyncio.run(scheduler.cancel_task(task.id)) is False
    assert asyncio.run(scheduler.cancel_task(999)) is False


def test_force_delete_removes_task(tmp_path: Path) -> None:
    repository, scheduler, _ = _setup(tmp_path, accounts=1)
    task = scheduler.enqueue(_new_task("A"))

    assert asyncio.run(scheduler.force_delete_task(task.id)) is True
    assert repository.get_task(task.id) is None


def test_worker_crash_requeues_task_and_releases_account(tmp_path: Path) -> None:
    repository, scheduler, _ = _setup(tmp_path, accounts=1, worker=_CrashingWorker())
    task = scheduler.enqueue(_new_task("A"))

    async def scenario() -> None:
        await scheduler.tick()
        await scheduler.drain()

    asyncio.run(scenario())

    stored = repository.get_task(task.id)
    assert stored is not None
    assert stored.status == TaskStatus.queued
    assert stored.retry_count == 1
    assert repository.available_accounts() != []
    assert scheduler.running_task_ids == []
    assert any(event.message.startswith("Worker crashed") for event in repository.recent_logs())


def test_start_and_stop_drain_running_workers(tmp_path: Path) -> None:
    repository, scheduler, stub = _setup(tmp_path, accounts=1, worker_delay=0.02)
    task = scheduler.enqueue(_new_task("A"))

    async def scenario() -> None:
        await scheduler.start()
        await scheduler.start()
        while not stub.started:
            await asyncio.sleep(0.005)
        await scheduler.stop()

    asyncio.run(scenario())

    assert scheduler.is_running is False
    assert scheduler.running_task_ids == []
    stored = repository.get_task(task.id)
    assert stored is not None and stored.status == TaskStatus.completed
    assert repository.get_config(PROCESSING_ENABLED_KEY) == "false"
    messages = [event.message for event in repository.recent_logs()]
    assert "Queue processing stopped" in messages
    assert messages.count("Queue processing started") == 1


def test_cancel_processing_task_aborts_browser_worker(tmp_path: Path) -> None:
    repository = SQLiteExtractionRepository(tmp_path / "kgx.sqlite3")
    config = ExtractorConfig(
        scheduler=FAST_SCHEDULER,
        extraction=ExtractionPolicy(
            submit_confirm_timeout_ms=30,
            generation_timeout_ms=5_000,
            generation_poll_ms=5,
            selector_wait_timeout_ms=30,
            selector_poll_ms=5,
        ),
        timing=TimingSettings(random_waits=False),
    )
    page = chat_page(fenced_reply(graph_payload(30)))
    page.add_role(SelectorRole.stop_button)
    session = FakeSession(page)
    scheduler = build_scheduler(config, repository, project_root=tmp_path, launcher=launcher_for(session), environ={})
    scheduler.pool.add_account(
        NewAccount(display_name="Worker 1", email="worker1@example.com", encrypted_credential="secret")
    )
    task = scheduler.enqueue(_new_task("Acme"))

    async def scenario() -> bool:
        assert await scheduler.tick() == [task.id]
        while candidates_for(SelectorRole.send_button)[0] not in page.clicked:
            await asyncio.sleep(0.005)
        cancelled = await scheduler.cancel_task(task.id)
        await scheduler.drain()
        return cancelled

    assert asyncio.run(scenario()) is True
    stored = repository.get_task(task.id)
    assert stored is not None and stored.status == TaskStatus.cancelled
    assert session.closed is True
    assert repository.available_accounts() != []
    assert repository.list_knowledge_graphs() == []
    assert [outcome.kind for outcome in scheduler.outcomes] == [OutcomeKind.cancelled]


async def _until(condition: Callable[[], bool]) -> None:
    while not condition():
        await asyncio.sleep(0.002)


def test_late_release_from_cancelled_worker_keeps_reclaimed_account(tmp_path: Path) -> None:
    repository, scheduler, gated = _setup(
        tmp_path,
        accounts=2,
        worker_factory=lambda _repository, pool: _GatedWorker(pool, stop_on_cancel=False),
    )

    async def scenario() -> int:
        first = scheduler.enqueue(_new_task("A"))
        assert await scheduler.tick() == [first.id]
        await _until(lambda: len(gated.started) == 1)
        account_id = gated.started[0][1]

        assert await scheduler.cancel_task(first.id) is True
        second = scheduler.enqueue(_new_task("B"))
        assert await scheduler.tick() == [second.id]
        await _until(lambda: len(gated.started) == 2)
        assert gated.started[1][1] == account_id

        gated.gates["A"].set()
        await _until(lambda: first.id not in scheduler.running_task_ids)
        held = repository.get_account(account_id)
        assert held is not None
        assert held.is_in_use is True
        assert held.holder_task_id == second.id

        gated.gates["B"].set()
        await scheduler.drain()
        return account_id

    account_id = asyncio.run(scenario())

    freed = repository.get_account(account_id)
    assert freed is not None and freed.is_in_use is False and freed.holder_task_id is None


@pytest.mark.parametrize("action", ["cancel", "delete"])
def test_cancel_from_another_process_stops_worker_before_account_is_reused(tmp_path: Path, action: str) -> None:
    repository, scheduler, gated = _setup(
        tmp_path,
        accounts=1,
        worker_factory=lambda _repository, pool: _GatedWorker(pool, stop_on_cancel=True),
    )
    remote_repository = SQLiteExtractionRepository(tmp_path / "kgx.sqlite3")
    remote_pool = AccountPool(remote_repository)
    remote = QueueScheduler(
        remote_repository,
        remote_pool,
        EventLog(remote_repository),
        _StubWorker(remote_repository, remote_pool),
        policy=FAST_SCHEDULER,
    )
    task = scheduler.enqueue(_new_task("A"))

    async def scenario() -> int:
        assert await scheduler.tick() == [task.id]
        await _until(lambda: len(gated.started) == 1)
        account_id = gated.started[0][1]

        if action == "cancel":
            assert await remote.cancel_task(task.id) is True
        else:
            assert await remote.force_delete_task(task.id) is True
        still_held = repository.get_account(account_id)
        assert still_held is not None and still_held.is_in_use is True
        assert not gated.gates["A"].is_set()

        assert await scheduler.tick() == []
        await scheduler.drain()
        return account_id

    account_id = asyncio.run(scenario())
    remote_repository.close()

    freed = repository.get_account(account_id)
    assert freed is not None and freed.is_in_use is False
    assert [outcome.kind for outcome in scheduler.outcomes] == [OutcomeKind.cancelled]
    messages = [event.message for event in repository.recent_logs()]
    assert "Task cancelled outside this scheduler; stopping its worker" in messages


def test_reconcile_leaves_workers_of_live_tasks_alone(tmp_path: Path) -> None:
    repository, scheduler, gated = _setup(
        tmp_path,
        accounts=1,
        worker_factory=lambda _repository, pool: _GatedWorker(pool, stop_on_cancel=True),
    )
    task = scheduler.enqueue(_new_task("A"))

    async def scenario() -> list[int]:
        await scheduler.tick()
        await _until(lambda: len(gated.started) == 1)
        stale = await scheduler.reconcile()
        assert not gated.gates["A"].is_set()
        gated.gates["A"].set()
        await scheduler.drain()
        return stale

    assert asyncio.run(scenario()) == []
    assert scheduler.running_task_ids == []
    assert repository.get_task(task.id) is not None


def test_outcome_history_is_capped(tmp_path: Path) -> None:
    _, scheduler, _ = _setup(
        tmp_path,
        accounts=3,
        policy=FAST_SCHEDULER.model_copy(update={"outcome_history": 2}),
    )
    tasks = [scheduler.enqueue(_new_task(name)) for name in ("A", "B", "C")]

    async def scenario() -> None:
        await scheduler.tick()
        await scheduler.drain()

    asyncio.run(scenario())

    assert len(scheduler.outcomes) == 2
    assert {outcome.task_id for outcome in scheduler.outcomes} < {task.id for task in tasks}


def test_request_stop_schedules_one_shutdown_and_logs_its_failure(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    caplog: pytest.LogCaptureFixture,
) -> None:
    _, scheduler, _ = _setup(tmp_path, accounts=1)
    calls: list[str] = []

    async def failing_stop() -> None:
        calls.append("stop")
        raise RuntimeError("database is locked")

    monkeypatch.setattr(scheduler, "stop", failing_stop)

    async def scenario() -> None:
        first = scheduler.request_stop()
        assert scheduler.request_stop() is first
        with pytest.raises(RuntimeError):
            await first
        await asyncio.sleep(0)

    with caplog.at_level(logging.ERROR, logger="kgx.extraction_scheduler"):
        asyncio.run(scenario())

    assert calls == ["stop"]
    record = next(record for record in caplog.records if record.getMessage() == "scheduler shutdown failed")
    assert record.exc_info is not None and "database is locked" in str(record.exc_info[1])
