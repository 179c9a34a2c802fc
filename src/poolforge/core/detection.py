"""
PoolForge new-disk detection.

Periodically compares the backend's unconfigured devices with the ignored
set and raises or dismisses a single "new disks" notification.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable

from poolforge.core.config import PollingConfig
from poolforge.core.errors import BackendError, SessionError
from poolforge.core.inventory import DiskInventory
from poolforge.core.logging import get_logger
from poolforge.core.models import BatchSummary, BlockDevice, IncrementalRequest
from poolforge.core.orchestrator import DiskResultCallback, ProvisioningOrchestrator
from poolforge.core.scheduler import PeriodicTask, Scheduler
from poolforge.core.tasks import TaskCallback

logger = get_logger(__name__)

NotifyCallback = Callable[[list[BlockDevice]], None]
DismissCallback = Callable[[], None]

DETECTION_TASK = "disk-detection"


class DiskDetectionWatcher:
    """Tracks newly attached disks for one session."""

    def __init__(
        self,
        inventory: DiskInventory,
        orchestrator: ProvisioningOrchestrator,
        on_notify: NotifyCallback | None = None,
        on_dismiss: DismissCallback | None = None,
    ) -> None:
        self.inventory = inventory
        self.orchestrator = orchestrator
        self.on_notify = on_notify
        self.on_dismiss = on_dismiss
        self.ignored_ids: set[str] = set()
        self.notification_shown = False
        self.detected_disks: list[BlockDevice] = []

    def start(self, scheduler: Scheduler, config: PollingConfig) -> PeriodicTask:
        """Register the detection tick with the session scheduler."""
        return scheduler.every(
            DETECTION_TASK,
            config.detection_interval_seconds,
            self.poll,
            initial_delay=config.detection_initial_delay_seconds,
        )

    async def poll(self) -> list[BlockDevice]:
        """
        One detection tick.

        Returns the new disks seen by this tick. A failed ignored-list fetch
        is treated as an empty ignored set; a failed unconfigured fetch
        propagates so the scheduler can log it.
        """
        unconfigured = await self.inventory.list_unconfigured()
        try:
            ignored = await self.inventory.list_ignored()
        except SessionError:
            raise
        except BackendError as e:
            logger.warning("Could not fetch ignored disks", error=e.message)
            ignored = set()
        else:
            # the backend list is authoritative; unignored disks come back
            self.ignored_ids = set(ignored)

        new_disks = [d for d in unconfigured if d.id not in ignored]
        self.detected_disks = new_disks

        if new_disks and not self.notification_shown:
            self.notification_shown = True
            logger.info("New disks detected", disks=[d.id for d in new_disks])
            self._emit_notify(new_disks)
        elif not new_disks and self.notification_shown:
            self._dismiss()
        return list(new_disks)

    async def accept(
        self,
        requests: Iterable[IncrementalRequest],
        progress: TaskCallback | None = None,
        on_result: DiskResultCallback | None = None,
    ) -> BatchSummary:
        """Provision the detected disks one after another."""
        requests = list(requests)
        if self.notification_shown:
            self._dismiss()
        summary = await self.orchestrator.provision_batch(requests, progress, on_result)
        self.ignored_ids.update(summary.ignored)
        self.detected_disks = []
        return summary

    async def ignore_all(self) -> list[str]:
        """Dismiss every detected disk with one ignore call per disk."""
        ignored: list[str] = []
        for disk in list(self.detected_disks):
            try:
                await self.orchestrator.backend.ignore_device(disk.id)
            except SessionError:
                raise
            except BackendError as e:
                logger.error("Ignore failed", device_id=disk.id, error=e.message)
                continue
            self.ignored_ids.add(disk.id)
            ignored.append(disk.id)

        self.detected_disks = [d for d in self.detected_disks if d.id not in self.ignored_ids]
        if self.notification_shown:
            self._dismiss()
        logger.info("Disks ignored", disks=ignored)
        return ignored

    def _dismiss(self) -> None:
        self.notification_shown = False
        logger.debug("New disk notification dismissed")
        if self.on_dismiss is not None:
            try:
                self.on_dismiss()
            except Exception as e:
                logger.warning("Dismiss callback error", error=str(e))

    def _emit_notify(self, disks: list[BlockDevice]) -> None:
        if self.on_notify is not None:
            try:
                self.on_notify(list(disks))
            except Exception as e:
                logger.warning("Notify callback error", error=str(e))
