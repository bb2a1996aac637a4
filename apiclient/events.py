"""Observer registry for the side effects the client broadcasts to its host."""

from __future__ import annotations

import asyncio
import inspect
import threading
from collections.abc import Callable
from typing import Any

from .constants import LOGGER

Listener = Callable[[dict[str, Any]], Any]


class EventDispatcher:
    """Fire-and-forget fan-out of named events to registered listeners.

    Listeners receive the event payload dict. Coroutine listeners are scheduled
    on the running loop and the task handle is retained until it finishes.
    A failing listener is logged and never affects the request that emitted
    the event.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._listeners: dict[str, list[Listener]] = {}
        self._tasks: set[asyncio.Task[Any]] = set()

    def subscribe(self, event: str, listener: Listener) -> Callable[[], None]:
        with self._lock:
            self._listeners.setdefault(event, []).append(listener)

        def _unsubscribe() -> None:
            self.unsubscribe(event, listener)

        return _unsubscribe

    def unsubscribe(self, event: str, listener: Listener) -> None:
        with self._lock:
            listeners = self._listeners.get(event)
            if listeners and listener in listeners:
                listeners.remove(listener)

    def emit(self, event: str, payload: dict[str, Any] | None = None) -> None:
        with self._lock:
            listeners = list(self._listeners.get(event, ()))
        if not listeners:
            return

        payload = {"event": event, **(payload or {})}
        for listener in listeners:
            try:
                result = listener(payload)
            except Exception:
                LOGGER.exception("Event listener failed event=%s", event)
                continue
            if inspect.isawaitable(result):
                self._retain(asyncio.ensure_future(result), event)

    def _retain(self, task: asyncio.Task[Any], event: str) -> None:
        self._tasks.add(task)

        def _done(finished: asyncio.Task[Any]) -> None:
            self._tasks.discard(finished)
            if finished.cancelled():
                return
            error = finished.exception()
            if error is not None:
                LOGGER.error(
                    "Async event listener failed event=%s error=%s",
                    event,
                    error,
                )

        task.add_done_callback(_done)

    async def drain(self) -> None:
        """Wait for scheduled coroutine listeners; used on shutdown and in tests."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
