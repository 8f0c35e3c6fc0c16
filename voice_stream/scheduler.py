"""
Cooperative periodic tasks.

The VAD sampling cadence and the chunk timer are both PeriodicTasks on the
same asyncio loop. They are independent and independently configurable; the
VAD should tick at least as often as chunks are cut.
"""
from __future__ import annotations

import asyncio
import inspect
from typing import Any, Awaitable, Callable, Optional

from logging_setup import StructuredLogger


class PeriodicTask:
    """
    Runs `callback` every `interval_ms` on the running event loop.

    The callback may be sync or async. If it raises, the error is logged,
    handed to `on_error`, and (with `stop_on_error`) the loop halts. The task
    never raises into the loop.
    """

    def __init__(
        self,
        name: str,
        interval_ms: float,
        callback: Callable[[], Any],
        *,
        logger: StructuredLogger,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        on_error: Optional[Callable[[Exception], Any]] = None,
        stop_on_error: bool = True,
    ):
        if interval_ms <= 0:
            raise ValueError("interval_ms must be positive")
        self.name = name
        self.interval_ms = interval_ms
        self._callback = callback
        self._logger = logger
        self._sleep = sleep
        self._on_error = on_error
        self._stop_on_error = stop_on_error
        self._task: Optional[asyncio.Task] = None
        self.ticks = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Schedule the loop. Must be called from within a running event loop."""
        if self.running:
            return
        loop = asyncio.get_running_loop()
        self._task = loop.create_task(self._run(), name=self.name)

    def cancel(self) -> None:
        """Cancel the loop; safe to call repeatedly or before start()."""
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None

    async def _run(self) -> None:
        while True:
            await self._sleep(self.interval_ms / 1000)
            try:
                result = self._callback()
                if inspect.isawaitable(result):
                    await result
                self.ticks += 1
            except Exception as e:
                self._logger.error(
                    "Periodic task failed",
                    task=self.name,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                if self._on_error is not None:
                    try:
                        self._on_error(e)
                    except Exception:
                        self._logger.exception("Periodic task error handler failed", task=self.name)
                if self._stop_on_error:
                    return
