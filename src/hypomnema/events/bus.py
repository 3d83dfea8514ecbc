"""In-process pub/sub event bus for Hypomnema session lifecycle events."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from enum import StrEnum
from typing import Any

import structlog

Handler = Callable[["HypomnemaEvent", dict[str, Any]], None | Awaitable[None]]


class HypomnemaEvent(StrEnum):
    """All event types published by Hypomnema components.

    Typed payload definitions for each event live in
    :mod:`hypomnema.events.payloads`.

    **Payload schemas by event:**

    ``SESSION_CREATED``, ``SESSION_LOADED``
        ``session_id: str``, ``model: str``. ``SESSION_LOADED`` also carries
        ``record_count: int``.

    ``SESSION_CLOSED``, ``SESSION_DELETED``
        ``session_id: str``

    ``RECORD_APPENDED``
        ``session_id: str``, ``sequence: int``, ``speaker: str``

    ``REPAIR_COMPLETED``
        ``session_id: str``, ``removed: list[int]``, ``merged: int``,
        ``orphans_removed: int``. Published only when repair changed something.

    ``COMPACTION_TRIGGERED``
        ``session_id: str``, ``size_bytes: int``, ``threshold_bytes: int``

    ``COMPACTION_COMPLETED``, ``COMPACTION_SKIPPED``
        ``model_dump()`` of :class:`~hypomnema.models.record.CompactionResult`.

    ``COMPACTION_FAILED``
        ``session_id: str``, ``error: str``

    ``TOOL_OUTPUT_TRUNCATED``
        ``session_id: str``, ``request_id: str``, ``original_bytes: int``,
        ``kept_bytes: int``
    """

    # Session lifecycle
    SESSION_CREATED = "session.created"
    SESSION_LOADED = "session.loaded"
    SESSION_CLOSED = "session.closed"
    SESSION_DELETED = "session.deleted"

    # Record lifecycle
    RECORD_APPENDED = "record.appended"
    REPAIR_COMPLETED = "repair.completed"

    # Compaction lifecycle
    COMPACTION_TRIGGERED = "compaction.triggered"
    COMPACTION_COMPLETED = "compaction.completed"
    COMPACTION_SKIPPED = "compaction.skipped"
    COMPACTION_FAILED = "compaction.failed"

    # Tools
    TOOL_OUTPUT_TRUNCATED = "tool_output.truncated"


class EventBus:
    """
    Simple in-process pub/sub event bus.

    - Sync handlers are called inline within ``publish()``.
    - Async handlers are scheduled via ``asyncio.create_task()``; the bus keeps
      a reference to each task until it finishes and logs its exception.
    - Handler exceptions are logged but never propagate to the publisher.

    Example::

        bus = EventBus()

        def on_compaction(event, payload):
            print(f"{payload['records_before']} -> {payload['records_after']} records")

        bus.subscribe(HypomnemaEvent.COMPACTION_COMPLETED, on_compaction)
    """

    def __init__(self, logger: structlog.BoundLogger | None = None) -> None:
        self._handlers: dict[HypomnemaEvent, list[Handler]] = {}
        self._global_handlers: list[Handler] = []
        self._tasks: set[asyncio.Task[Any]] = set()
        self._logger = logger or structlog.get_logger("hypomnema.events")

    def subscribe(self, event: HypomnemaEvent, handler: Handler) -> None:
        """
        Register a handler for a specific event type.

        Args:
            event: The event type to listen for.
            handler: Callable accepting ``(event, payload)``. May be sync or async.
        """
        self._handlers.setdefault(event, []).append(handler)

    def subscribe_all(self, handler: Handler) -> None:
        """Register a handler for every event type."""
        self._global_handlers.append(handler)

    def unsubscribe(self, event: HypomnemaEvent, handler: Handler) -> None:
        """Remove a previously registered handler. No-op if not found."""
        handlers = self._handlers.get(event, [])
        if handler in handlers:
            handlers.remove(handler)

    def publish(self, event: HypomnemaEvent, payload: dict[str, Any]) -> None:
        """
        Publish an event to all registered handlers.

        Sync handlers are called immediately in registration order.
        Async handlers are scheduled as background tasks. Exceptions from
        any handler are logged and dropped.
        """
        all_handlers = list(self._handlers.get(event, [])) + list(self._global_handlers)
        for handler in all_handlers:
            try:
                result = handler(event, payload)
                if asyncio.iscoroutine(result):
                    try:
                        loop = asyncio.get_running_loop()
                    except RuntimeError:
                        # No running loop: the coroutine can never be awaited.
                        result.close()
                        continue
                    task = loop.create_task(result)
                    self._tasks.add(task)
                    task.add_done_callback(
                        lambda t, ev=event, h=handler: self._on_task_done(ev, h, t)
                    )
            except Exception as exc:
                self._log_handler_error(event, handler, exc)

    @property
    def pending_tasks(self) -> int:
        """Number of async handler tasks that have not finished yet."""
        return len(self._tasks)

    def _on_task_done(self, event: HypomnemaEvent, handler: Handler, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self._log_handler_error(event, handler, exc)

    def _log_handler_error(self, event: HypomnemaEvent, handler: Handler, exc: BaseException) -> None:
        self._logger.error(
            "event_handler_error",
            event=str(event),
            handler=getattr(handler, "__qualname__", repr(handler)),
            error=str(exc),
        )
