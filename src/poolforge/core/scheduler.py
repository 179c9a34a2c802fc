"""
PoolForge periodic task scheduler.

Cooperative asyncio timers with a shared cancellation point: a session
failure seen by any timer cancels all of them.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable

from poolforge.core.errors import SessionError
from poolforge.core.logging import get_logger

logger = get_logger(__name__)

PeriodicCallback = Callable[[], Awaitable[object]]


class PeriodicTask:
    """Handle for one periodic timer."""

    def __init__(self, name: str, interval: float, initial_delay: float = 0.0) -> None:
        self.name = name
        self.interval = interval
        self.initial_delay = initial_delay
        self.runs = 0
        self._task: asyncio.Task[None] | None = None

    @property
    def cancelled(self) -> bool:
        return self._task is None or self._task.done()

    def cancel(self) -> None:
        """Stop the timer. Safe to call more than once."""
        if self._task is not None and not self._task.done():
            self._task.cancel()
            logger.debug("Periodic task cancelled", task=self.name)

    def __repr__(self) -> str:
        return f"PeriodicTask(name={self.name!r}, interval={self.interval}, runs={self.runs})"


class Scheduler:
    """Owns every periodic task of one session."""

    def __init__(self) -> None:
        self._tasks: dict[str, PeriodicTask] = {}
        self._on_session_error: list[Callable[[SessionError], None]] = []

    def add_session_error_callback(self, callback: Callable[[SessionError], None]) -> None:
        self._on_session_error.append(callback)

    def every(
        self,
        name: str,
        interval: float,
        callback: PeriodicCallback,
        initial_delay: float = 0.0,
    ) -> PeriodicTask:
        """
        Run ``callback`` every ``interval`` seconds after ``initial_delay``.

        Must be called from inside a running event loop. Re-registering a
        name replaces (and cancels) the previous timer of that name.
        """
        existing = self._tasks.get(name)
        if existing is not None:
            existing.cancel()

        handle = PeriodicTask(name, interval, initial_delay)
        handle._task = asyncio.get_running_loop().create_task(
            self._loop(handle, callback), name=f"periodic-{name}"
        )
        self._tasks[name] = handle
        logger.debug("Periodic task scheduled", task=name, interval=interval)
        return handle

    async def _loop(self, handle: PeriodicTask, callback: PeriodicCallback) -> None:
        await asyncio.sleep(handle.initial_delay)
        while True:
            try:
                await callback()
            except SessionError as e:
                logger.warning("Session invalid; stopping all timers", task=handle.name)
                self.cancel_all()
                for listener in self._on_session_error:
                    try:
                        listener(e)
                    except Exception as exc:
                        logger.warning("Session error callback failed", error=str(exc))
                return
            except Exception as e:
                logger.error("Periodic task error", task=handle.name, error=str(e))
            handle.runs += 1
            await asyncio.sleep(handle.interval)

    def get(self, name: str) -> PeriodicTask | None:
        return self._tasks.get(name)

    @property
    def active(self) -> list[PeriodicTask]:
        return [t for t in self._tasks.values() if not t.cancelled]

    def cancel(self, name: str) -> None:
        handle = self._tasks.pop(name, None)
        if handle is not None:
            handle.cancel()

    def cancel_all(self) -> None:
        """Cancel every outstanding timer and clear the handles."""
        handles = list(self._tasks.values())
        self._tasks.clear()
        for handle in handles:
            handle.cancel()
