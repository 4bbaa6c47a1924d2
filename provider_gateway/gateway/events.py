"""Observability events.

Emission is side-effect only: a subscriber can never change routing, and a
subscriber that raises is logged and ignored.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections import defaultdict
from enum import Enum
from typing import Any, Callable

logger = logging.getLogger(__name__)


class GatewayEvent(str, Enum):
    ROUTING_DECISION = "routing-decision"
    REQUEST_COMPLETE = "request:complete"
    REQUEST_FAILED = "request:failed"
    CACHE_HIT = "cache-hit"
    USAGE_TRACKED = "usage-tracked"
    FAILOVER = "failover"
    BUDGET_ALERT = "budget-alert"
    BUDGET_EXCEEDED = "budget-exceeded"
    CIRCUIT_OPENED = "circuit:opened"
    CIRCUIT_HALF_OPEN = "circuit:half-open"
    CIRCUIT_CLOSED = "circuit:closed"
    HEALTH_CHECKED = "health:checked"


ALL_EVENTS = "*"

EventHandler = Callable[[dict[str, Any]], Any]


class EventBus:
    """Explicit subscription interface.

    Handlers receive the payload dict (which always carries ``event``).
    Coroutine handlers are scheduled as tasks and never awaited by the emitter.
    """

    def __init__(self):
        self._handlers: dict[str, list[EventHandler]] = defaultdict(list)
        self._tasks: set[asyncio.Task] = set()

    def subscribe(self, event: GatewayEvent | str, handler: EventHandler) -> Callable[[], None]:
        """Register a handler; returns a callable that unsubscribes it."""
        name = event.value if isinstance(event, GatewayEvent) else event
        if name != ALL_EVENTS:
            GatewayEvent(name)  # reject unknown names early
        self._handlers[name].append(handler)

        def _unsubscribe() -> None:
            handlers = self._handlers.get(name, [])
            if handler in handlers:
                handlers.remove(handler)

        return _unsubscribe

    def emit(self, event: GatewayEvent, **payload: Any) -> None:
        data = {"event": event.value, **payload}
        for handler in [*self._handlers.get(event.value, []), *self._handlers.get(ALL_EVENTS, [])]:
            try:
                result = handler(data)
                if inspect.isawaitable(result):
                    task = asyncio.ensure_future(result)
                    self._tasks.add(task)
                    task.add_done_callback(self._task_done)
            except Exception:
                logger.exception("Event handler for %s raised; ignoring", event.value)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Async event handler failed", exc_info=task.exception())

    async def aclose(self) -> None:
        """Wait for pending async handlers, then drop all subscriptions."""
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._handlers.clear()
