"""Lifecycle events for executions, phases, steps, recipes and groups."""

import asyncio
import datetime
import logging
from collections.abc import Callable
from dataclasses import dataclass
from dataclasses import field
from enum import Enum
from typing import Any
from typing import Protocol

logger = logging.getLogger(__name__)


class EventType(Enum):
    EXECUTION_STARTED = "execution:started"
    EXECUTION_COMPLETED = "execution:completed"
    EXECUTION_FAILED = "execution:failed"
    EXECUTION_CANCELLED = "execution:cancelled"
    PHASE_STARTED = "phase:started"
    PHASE_COMPLETED = "phase:completed"
    PHASE_FAILED = "phase:failed"
    STEP_STARTED = "step:started"
    STEP_COMPLETED = "step:completed"
    STEP_FAILED = "step:failed"
    STEP_SKIPPED = "step:skipped"
    STEP_RETRY = "step:retry"
    STEP_CANCELLED = "step:cancelled"
    RECIPE_STARTED = "recipe:started"
    RECIPE_COMPLETED = "recipe:completed"
    RECIPE_FAILED = "recipe:failed"
    RECIPE_CANCELLED = "recipe:cancelled"
    GROUP_STARTED = "group:started"
    GROUP_BATCH = "group:batch"
    GROUP_COMPLETED = "group:completed"


@dataclass
class ExecutionEvent:
    type: EventType
    execution_id: str
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime.datetime = field(default_factory=datetime.datetime.now)


class ExecutionObserver(Protocol):
    def on_event(self, event: ExecutionEvent) -> None: ...


class EventBus:
    """Fans lifecycle events out to observers and bounded stream queues.

    Observers are called synchronously; one that raises is logged and skipped.
    Stream queues drop events once full.
    """

    def __init__(self):
        self._observers: list[ExecutionObserver | Callable[[ExecutionEvent], None]] = []
        self._streams: list[asyncio.Queue] = []

    def subscribe(self, observer: ExecutionObserver | Callable[[ExecutionEvent], None]) -> None:
        if observer not in self._observers:
            self._observers.append(observer)

    def unsubscribe(self, observer: ExecutionObserver | Callable[[ExecutionEvent], None]) -> None:
        if observer in self._observers:
            self._observers.remove(observer)

    def stream(self, maxsize: int = 1000) -> asyncio.Queue:
        """Subscribe a queue to live events."""
        q: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._streams.append(q)
        return q

    def close_stream(self, q: asyncio.Queue) -> None:
        if q in self._streams:
            self._streams.remove(q)

    def emit(self, type: EventType, execution_id: str, **data: Any) -> ExecutionEvent:
        event = ExecutionEvent(type=type, execution_id=execution_id, data=data)
        logger.debug(f"Event: {type.value} [{execution_id}] {data}")

        for observer in list(self._observers):
            handler = getattr(observer, "on_event", observer)
            try:
                handler(event)
            except Exception:
                logger.warning(f"Observer {observer!r} failed handling {type.value}", exc_info=True)

        for q in self._streams:
            try:
                q.put_nowait(event)
            except asyncio.QueueFull:
                logger.debug(f"Event stream full, dropped {type.value}")
        return event
