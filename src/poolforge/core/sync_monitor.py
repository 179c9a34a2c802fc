"""
PoolForge parity-sync progress monitor.

Polls the backend's single global sync job and turns raw progress into
bounded, monotonic updates. Normal completion and the safety timeout both
end on a forced 100% so a progress bar can never freeze below the top.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable

from poolforge.backend.base import StorageBackend
from poolforge.core.config import PollingConfig
from poolforge.core.errors import BackendError, SyncError
from poolforge.core.logging import get_logger
from poolforge.core.models import SyncJob, SyncOutcome, SyncUpdate

logger = get_logger(__name__)

SyncCallback = Callable[[SyncUpdate], None]

DEFAULT_STATUS = "Synchronizing..."
COMPLETED_STATUS = "Sync completed"
TIMEOUT_STATUS = "Sync timed out here - it may continue running in the background"


class SyncProgressMonitor:
    """Watches one run of the backend parity sync."""

    def __init__(
        self,
        backend: StorageBackend,
        poll_interval: float = 1.0,
        safety_timeout_polls: int = 150,
        max_fetch_failures: int = 5,
    ) -> None:
        self.backend = backend
        self.poll_interval = poll_interval
        self.safety_timeout_polls = safety_timeout_polls
        self.max_fetch_failures = max_fetch_failures
        self.job = SyncJob()
        self.outcome: SyncOutcome | None = None

    @classmethod
    def from_config(cls, backend: StorageBackend, config: PollingConfig) -> SyncProgressMonitor:
        return cls(
            backend,
            poll_interval=config.sync_interval_seconds,
            safety_timeout_polls=config.sync_safety_timeout_polls,
            max_fetch_failures=config.sync_max_fetch_failures,
        )

    async def watch(
        self,
        poll_interval: float | None = None,
        safety_timeout_polls: int | None = None,
    ) -> AsyncIterator[SyncUpdate]:
        """
        Yield one update per successful poll until the job ends.

        The stream terminates when the backend reports ``running == False``,
        when it reports an error, after ``safety_timeout_polls`` polls, or
        after more than ``max_fetch_failures`` consecutive failed fetches.
        Every call is a fresh watch: percent restarts from zero.
        """
        interval = self.poll_interval if poll_interval is None else poll_interval
        limit = self.safety_timeout_polls if safety_timeout_polls is None else safety_timeout_polls

        self.job = SyncJob(running=True, status_text="Starting sync...")
        self.outcome = None
        failures = 0

        while True:
            await asyncio.sleep(interval)
            self.job.poll_count += 1

            try:
                raw = await self.backend.get_sync_progress()
            except BackendError as exc:
                failures += 1
                logger.warning(
                    "Sync progress fetch failed",
                    poll=self.job.poll_count,
                    consecutive_failures=failures,
                    error=exc.message,
                )
                if failures > self.max_fetch_failures:
                    yield self._finish(
                        success=False,
                        status_text="Lost contact with sync job",
                        error=exc.message,
                    )
                    return
                if self.job.poll_count > limit:
                    yield self._timeout()
                    return
                continue

            failures = 0

            if raw.error:
                self.job.percent = self._clamp(raw.percent)
                yield self._finish(
                    success=False,
                    status_text=raw.status_text or "Sync failed",
                    error=raw.error,
                )
                return

            if not raw.running:
                yield self._finish(success=True, status_text=raw.status_text or COMPLETED_STATUS)
                return

            if self.job.poll_count > limit:
                yield self._timeout()
                return

            self.job.percent = self._clamp(raw.percent)
            self.job.status_text = raw.status_text or DEFAULT_STATUS
            yield SyncUpdate(percent=self.job.percent, status_text=self.job.status_text)

    async def run(
        self,
        callback: SyncCallback | None = None,
        poll_interval: float | None = None,
        safety_timeout_polls: int | None = None,
    ) -> SyncOutcome:
        """Consume a whole watch, pushing every update to ``callback``."""
        async for update in self.watch(poll_interval, safety_timeout_polls):
            if callback is not None:
                try:
                    callback(update)
                except Exception as e:
                    logger.warning("Sync callback error", error=str(e))
        if self.outcome is None:
            raise SyncError("Sync watch ended without a result")
        return self.outcome

    def _clamp(self, percent: int) -> int:
        """Bound to 0..100 and never move backwards within one watch."""
        return max(self.job.percent, min(100, max(0, percent)))

    def _timeout(self) -> SyncUpdate:
        logger.warning("Sync safety timeout reached", polls=self.job.poll_count)
        return self._finish(success=True, status_text=TIMEOUT_STATUS, timed_out=True)

    def _finish(
        self,
        success: bool,
        status_text: str,
        error: str | None = None,
        timed_out: bool = False,
    ) -> SyncUpdate:
        # success is always reported as a forced 100%; failures keep the last percent
        forced = success
        percent = 100 if success else self.job.percent
        self.job.running = False
        self.job.percent = percent
        self.job.status_text = status_text
        self.job.error = error
        self.outcome = SyncOutcome(
            success=success,
            percent=percent,
            status_text=status_text,
            timed_out=timed_out,
            error=error,
        )
        logger.info(
            "Sync watch finished",
            success=success,
            percent=percent,
            polls=self.job.poll_count,
            error=error,
        )
        return SyncUpdate(
            percent=percent,
            status_text=status_text,
            final=True,
            forced=forced,
            error=error,
        )
