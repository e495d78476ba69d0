"""Listener registry backing the public event surface."""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Callable

logger = logging.getLogger(__name__)

EVENTS = frozenset(
    {
        "connected",
        "closed",
        "disconnected",
        "pieclosed",
        "message",
        "present",
        "absent",
        "error",
        "warning",
        "info",
        "rejected",
    }
)


class EventEmitter:
    """Dispatches named events to registered listeners.

    Listeners may be plain functions or coroutine functions; coroutines are
    scheduled on the running loop.  A failing listener is logged and does
    not prevent the remaining listeners from running.
    """

    def __init__(self) -> None:
        self._listeners: dict[str, list[Callable[..., object]]] = {}
        self._tasks: set[asyncio.Future[object]] = set()

    def on(self, event: str, listener: Callable[..., object]) -> None:
        if event not in EVENTS:
            raise ValueError(f"Unknown event '{event}'. Expected one of: {', '.join(sorted(EVENTS))}")
        self._listeners.setdefault(event, []).append(listener)

    def off(self, event: str, listener: Callable[..., object]) -> None:
        listeners = self._listeners.get(event, [])
        if listener in listeners:
            listeners.remove(listener)

    def listener_count(self, event: str) -> int:
        return len(self._listeners.get(event, []))

    def emit(self, event: str, *args: object) -> None:
        for listener in list(self._listeners.get(event, [])):
            try:
                result = listener(*args)
            except Exception:
                logger.exception("Listener for '%s' failed", event)
                continue
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._tasks.add(task)
                task.add_done_callback(self._on_listener_done)

    def _on_listener_done(self, task: asyncio.Future[object]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Async listener failed", exc_info=exc)
