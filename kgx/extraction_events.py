from __future__ import annotations

import asyncio
import logging
from typing import Any

from kgx.extraction_repository import ExtractionRepository
from kgx.schemas import EntityType, LogEvent, LogLevel

LOGGER = logging.getLogger(__name__)
EVENTS_LOGGER_NAME = "kgx.events"
DEFAULT_SUBSCRIBER_QUEUE_SIZE = 256

_STDLIB_LEVELS: dict[LogLevel, int] = {
    LogLevel.info: logging.INFO,
    LogLevel.success: logging.INFO,
    LogLevel.warning: logging.WARNING,
    LogLevel.error: logging.ERROR,
}


class EventSubscription:
    """Live feed of emitted events; iterate with ``async for`` and ``close()`` when done."""

    def __init__(self, owner: EventLog, *, max_queue_size: int) -> None:
        self._owner = owner
        self._queue: asyncio.Queue[LogEvent] = asyncio.Queue(maxsize=max_queue_size)
        self.dropped = 0

    def push(self, event: LogEvent) -> None:
        if self._queue.full():
            self._queue.get_nowait()
            self.dropped += 1
        self._queue.put_nowait(event)

    def pending(self) -> int:
        return self._queue.qsize()

    async def get(self) -> LogEvent:
        return await self._queue.get()

    def close(self) -> None:
        self._owner.unsubscribe(self)

    def __aiter__(self) -> EventSubscription:
        return self

    async def __anext__(self) -> LogEvent:
        return await self._queue.get()


class EventLog:
    def __init__(
        self,
        repository: ExtractionRepository,
        *,
        logger: logging.Logger | None = None,
        max_queue_size: int = DEFAULT_SUBSCRIBER_QUEUE_SIZE,
    ) -> None:
        self._repository = repository
        self._logger = logger or logging.getLogger(EVENTS_LOGGER_NAME)
        self._max_queue_size = max(1, max_queue_size)
        self._subscribers: list[EventSubscription] = []

    def subscribe(self) -> EventSubscription:
        subscription = EventSubscription(self, max_queue_size=self._max_queue_size)
        self._subscribers.append(subscription)
        return subscription

    def unsubscribe(self, subscription: EventSubscription) -> None:
        if subscription in self._subscribers:
            self._subscribers.remove(subscription)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def emit(
        self,
        level: LogLevel,
        message: str,
        *,
        task_id: int | None = None,
        account_id: int | None = None,
        entity_type: EntityType | None = None,
        entity_id: int | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> LogEvent:
        event = LogEvent(
            level=level,
            message=message,
            task_id=task_id,
            account_id=account_id,
            entity_type=entity_type,
            entity_id=entity_id,
            metadata=dict(metadata or {}),
        )
        try:
            event = self._repository.append_log(event)
        except Exception:
            LOGGER.exception("failed to persist log event: %s", message)

        self._logger.log(
            _STDLIB_LEVELS[level],
            "%s%s",
            message,
            _format_context(event),
        )
        for subscription in list(self._subscribers):
            subscription.push(event)
        return event

    def info(self, message: str, **context: Any) -> LogEvent:
        return self.emit(LogLevel.info, message, **context)

    def success(self, message: str, **context: Any) -> LogEvent:
        return self.emit(LogLevel.success, message, **context)

    def warning(self, message: str, **context: Any) -> LogEvent:
        return self.emit(LogLevel.warning, message, **context)

    def error(self, message: str, **context: Any) -> LogEvent:
        return self.emit(LogLevel.error, message, **context)


def _format_context(event: LogEvent) -> str:
    parts = []
    if event.task_id is not None:
        parts.append(f"task={event.task_id}")
    if event.account_id is not None:
        parts.append(f"account={event.account_id}")
    if event.entity_type is not None and event.entity_id is not None:
        parts.append(f"entity={event.entity_type.value}:{event.entity_id}")
    if not parts:
        return ""
    return " [" + " ".join(parts) + "]"
