from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
from collections import deque
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

from kgx.extraction_browser import launch_browser_session
from kgx.extraction_config import PROCESSING_ENABLED_KEY, ExtractorConfig, SchedulerPolicy
from kgx.extraction_errors import WorkerOutcome
from kgx.extraction_events import EventLog
from kgx.extraction_pool import AccountPool
from kgx.extraction_repository import ExtractionRepository, is_processing_enabled
from kgx.extraction_worker import CancellationToken, ExtractionWorker, Launcher
from kgx.schemas import Account, NewTask, Task, TaskStatus, utc_now

LOGGER = logging.getLogger(__name__)


@dataclass
class RunningWorker:
    task_id: int
    account_id: int
    handle: asyncio.Task[WorkerOutcome | None]
    token: CancellationToken


class QueueScheduler:
    """Turns queued tasks and free accounts into running workers.

    Concurrency is bounded only by account supply: each tick computes the free
    slots as available accounts minus running workers, claims one account per
    pending task in priority order, and launches a detached worker per pair.

    A claimed account already drops out of the available count, so subtracting
    the running workers counts it twice. With N accounts and k workers busy only
    N - 2k new tasks start per tick, and none once half the pool is busy. Tasks
    left over wait for the next tick after a worker finishes, which costs up to
    one poll interval of idle account time per finished worker.

    Each tick first reconciles the running workers against the repository. A
    task that another process cancelled or deleted has its worker cancelled
    here, in the process that owns it, and that worker frees its own account.
    """

    def __init__(
        self,
        repository: ExtractionRepository,
        pool: AccountPool,
        events: EventLog,
        worker: ExtractionWorker,
        *,
        policy: SchedulerPolicy | None = None,
    ) -> None:
        self._repository = repository
        self._pool = pool
        self._events = events
        self._worker = worker
        self._policy = policy or SchedulerPolicy()
        self._running: dict[int, RunningWorker] = {}
        self._loop_task: asyncio.Task[None] | None = None
        self._wake: asyncio.Event | None = None
        self._stopped: asyncio.Event | None = None
        self._stop_requested = False
        self._stop_task: asyncio.Task[None] | None = None
        self.outcomes: deque[WorkerOutcome] = deque(maxlen=self._policy.outcome_history)

    @property
    def events(self) -> EventLog:
        return self._events

    @property
    def pool(self) -> AccountPool:
        return self._pool

    @property
    def running_task_ids(self) -> list[int]:
        return sorted(self._running)

    @property
    def is_running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    def enqueue(self, new_task: NewTask) -> Task:
        task = self._repository.create_task(new_task)
        self._events.info(
            f"Task added to queue: {task.entity_type.value} {task.entity_name}",
            task_id=task.id,
            entity_type=task.entity_type,
            entity_id=task.entity_id,
            metadata={"priority": task.priority},
        )
        return task

    async def reconcile(self) -> list[int]:
        """Cancel local workers whose task was cancelled or deleted elsewhere; returns their ids."""
        stale: list[int] = []
        for task_id, running in list(self._running.items()):
            if running.token.cancelled:
                continue
            task = self._repository.get_task(task_id)
            if task is not None and task.status != TaskStatus.cancelled:
                continue
            stale.append(task_id)
            await running.token.cancel()
            self._events.warning(
                "Task cancelled outside this scheduler; stopping its worker",
                task_id=task_id,
                account_id=running.account_id,
                metadata={"status": task.status.value if task is not None else "deleted"},
            )
        return stale

    async def tick(self) -> list[int]:
        """Run one scheduling round; returns the ids of tasks launched."""
        await self.reconcile()
        if not is_processing_enabled(self._repository):
            return []

        now = utc_now()
        available_slots = self._pool.available_count(now) - len(self._running)
        if available_slots <= 0:
            return []

        launched: list[int] = []
        for task in self._repository.pending_tasks(available_slots):
            if task.id in self._running:
                continue
            account = self._pool.claim(task.id, now=now)
            if account is None:
                break
            claimed = self._repository.get_task(task.id) or task
            self._launch(claimed, account)
            launched.append(task.id)
        return launched

    def _launch(self, task: Task, account: Account) -> None:
        token = CancellationToken()
        handle = asyncio.create_task(self._run_worker(task, account, token), name=f"kgx-task-{task.id}")
        self._running[task.id] = RunningWorker(
            task_id=task.id,
            account_id=account.id,
            handle=handle,
            token=token,
        )
        LOGGER.info("launched worker for task %s on account %s", task.id, account.id)

    async def _run_worker(self, task: Task, account: Account, token: CancellationToken) -> WorkerOutcome | None:
        try:
            outcome = await self._worker.run(task, account, token)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            LOGGER.exception("worker crashed for task %s", task.id)
            self._events.error(f"Worker crashed: {exc}", task_id=task.id, account_id=account.id)
            self._pool.release(account.id, task_id=task.id)
            self._repository.record_task_failure(task.id, f"worker crashed: {exc}", retryable=True)
            return None
        else:
            self.outcomes.append(outcome)
            return outcome
        finally:
            self._running.pop(task.id, None)

    async def drain(self) -> None:
        """Wait for every running worker to finish."""
        while self._running:
            handles = [running.handle for running in self._running.values()]
            await asyncio.gather(*handles, return_exceptions=True)

    async def _loop(self) -> None:
        while not self._stop_requested:
            interval = self._policy.poll_interval_seconds
            try:
                if not is_processing_enabled(self._repository):
                    interval = self._policy.disabled_poll_interval_seconds
                await self.tick()
            except Exception:
                LOGGER.exception("scheduler tick failed")
            await self._sleep(interval)

    async def _sleep(self, seconds: float) -> None:
        if self._wake is None:
            await asyncio.sleep(seconds)
            return
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(self._wake.wait(), timeout=seconds)
        self._wake.clear()

    async def start(self) -> None:
        self._repository.set_config(PROCESSING_ENABLED_KEY, "true")
        if self.is_running:
            return
        self._stop_requested = False
        self._wake = asyncio.Event()
        self._stopped = asyncio.Event()
        self._loop_task = asyncio.create_task(self._loop(), name="kgx-scheduler")
        self._events.info("Queue processing started")

    async def stop(self) -> None:
        self._repository.set_config(PROCESSING_ENABLED_KEY, "false")
        self._stop_requested = True
        if self._wake is not None:
            self._wake.set()
        if self._loop_task is not None:
            await self._loop_task
            self._loop_task = None
        await self.drain()
        self._events.info("Queue processing stopped")
        if self._stopped is not None:
            self._stopped.set()

    def request_stop(self) -> asyncio.Task[None]:
        """Schedule :meth:`stop` once; signal handlers call this."""
        if self._stop_task is None or self._stop_task.done():
            self._stop_task = asyncio.ensure_future(self.stop())
            self._stop_task.add_done_callback(self._on_stop_done)
        return self._stop_task

    def _on_stop_done(self, task: asyncio.Task[None]) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is None:
            return
        LOGGER.error("scheduler shutdown failed", exc_info=exc)
        if self._stopped is not None:
            self._stopped.set()

    async def run_forever(self) -> None:
        await self.start()
        loop = asyncio.get_running_loop()
        for signum in (signal.SIGINT, signal.SIGTERM):
            with contextlib.suppress(NotImplementedError, RuntimeError):
                loop.add_signal_handler(signum, self.request_stop)
        try:
            if self._stopped is not None:
                await self._stopped.wait()
        finally:
            for signum in (signal.SIGINT, signal.SIGTERM):
                with contextlib.suppress(NotImplementedError, RuntimeError):
                    loop.remove_signal_handler(signum)

    async def cancel_task(self, task_id: int) -> bool:
        running = self._running.get(task_id)
        if running is not None:
            await running.token.cancel()
            self._repository.cancel_task(task_id)
            self._pool.release(running.account_id, task_id=task_id)
            self._events.warning("Task cancelled while processing", task_id=task_id, account_id=running.account_id)
            return True

        task = self._repository.get_task(task_id)
        if task is None or task.is_terminal:
            return False
        self._repository.cancel_task(task_id)
        self._events.info("Task cancelled", task_id=task_id, metadata={"previous_status": task.status.value})
        return True

    async def force_delete_task(self, task_id: int) -> bool:
        await self.cancel_task(task_id)
        deleted = self._repository.delete_task(task_id)
        if deleted:
            self._events.warning("Task deleted", task_id=task_id)
        return deleted


def build_scheduler(
    config: ExtractorConfig,
    repository: ExtractionRepository,
    *,
    project_root: Path,
    launcher: Launcher = launch_browser_session,
    environ: Mapping[str, str] | None = None,
) -> QueueScheduler:
    events = EventLog(repository)
    pool = AccountPool(repository, cooldown_seconds=config.scheduler.rate_limit_cooldown_seconds)
    worker = ExtractionWorker(
        repository,
        pool,
        events,
        config,
        project_root=project_root,
        launcher=launcher,
        environ=environ,
    )
    return QueueScheduler(repository, pool, events, worker, policy=config.scheduler)
