"""
Typed listener registry.

Listeners are keyed by enum members (message types, connection events,
streaming lifecycle events). Plain string values are accepted by `on`/`off`
and resolved to the matching member.

Invocation is isolated: an exception in one listener is logged and the
remaining listeners still run. Coroutine listeners are scheduled as tasks so
a slow listener never stalls the caller (e.g. the VAD sampling loop).
"""
from __future__ import annotations

import asyncio
import inspect
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Set, Type

from logging_setup import StructuredLogger

Listener = Callable[..., Any]


def invoke_safely(logger: StructuredLogger, label: str, fn: Listener, *args: Any) -> None:
    """Call `fn(*args)`, logging instead of raising. Awaitables are scheduled, not awaited."""
    try:
        result = fn(*args)
    except Exception as e:
        logger.error(
            "Listener raised",
            listener_for=label,
            error=str(e),
            error_type=type(e).__name__,
            exc_info=True,
        )
        return

    if inspect.isawaitable(result):
        _schedule(logger, label, result)


_pending: Set[asyncio.Task] = set()


def _schedule(logger: StructuredLogger, label: str, awaitable: Any) -> None:
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        logger.warning("Async listener called outside an event loop; dropped", listener_for=label)
        if inspect.iscoroutine(awaitable):
            awaitable.close()
        return

    task = loop.create_task(_await(awaitable))
    _pending.add(task)

    def _done(t: asyncio.Task) -> None:
        _pending.discard(t)
        if t.cancelled():
            return
        exc = t.exception()
        if exc is not None:
            logger.error(
                "Async listener raised",
                listener_for=label,
                error=str(exc),
                error_type=type(exc).__name__,
            )

    task.add_done_callback(_done)


async def _await(awaitable: Any) -> Any:
    return await awaitable


class ListenerRegistry:
    """Dispatch table: enum member -> ordered list of listeners."""

    def __init__(self, logger: StructuredLogger, *enums: Type[Enum], exclude: Iterable[Enum] = ()):
        self._logger = logger
        self._enums = enums
        skip = set(exclude)
        self._listeners: Dict[Enum, List[Listener]] = {
            member: [] for enum in enums for member in enum if member not in skip
        }

    def _resolve(self, key: Enum | str) -> Enum:
        if isinstance(key, Enum):
            if key in self._listeners:
                return key
        else:
            for enum in self._enums:
                try:
                    member = enum(key)
                except ValueError:
                    continue
                if member in self._listeners:
                    return member
        raise ValueError(f"Unknown event type: {key!r}")

    def on(self, key: Enum | str, listener: Listener) -> None:
        """Register `listener` for `key`. Raises ValueError for unknown keys."""
        self._listeners[self._resolve(key)].append(listener)

    def off(self, key: Enum | str, listener: Listener) -> None:
        """Remove `listener` from `key`; a listener that was never registered is ignored."""
        listeners = self._listeners[self._resolve(key)]
        if listener in listeners:
            listeners.remove(listener)

    def emit(self, key: Enum, *args: Any) -> int:
        """Invoke every listener for `key` in registration order. Returns how many ran."""
        listeners = list(self._listeners.get(key, ()))
        label = key.value if isinstance(key, Enum) else str(key)
        for listener in listeners:
            invoke_safely(self._logger, label, listener, *args)
        return len(listeners)

    def count(self, key: Enum | str) -> int:
        return len(self._listeners[self._resolve(key)])

    def clear(self) -> None:
        for listeners in self._listeners.values():
            listeners.clear()
