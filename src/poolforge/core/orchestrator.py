"""
PoolForge provisioning orchestrator.

Runs the ordered provisioning pipeline in two modes:

* full-pool creation: one backend call, then the fixed six-step task list
  (format, mount, snapraid, mergerfs, fstab, sync) reported to the caller;
* incremental provisioning: one real backend call per newly detected disk,
  disks processed strictly one after another with failures isolated per disk.

A SessionError in either mode stops everything immediately.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Iterable

from poolforge.backend.base import StorageBackend
from poolforge.core.config import PoolForgeConfig
from poolforge.core.errors import BackendError, ProvisionError, SessionError, SyncError
from poolforge.core.inventory import DiskInventory
from poolforge.core.logging import OperationLogger, get_logger
from poolforge.core.models import (
    POOL_TASKS,
    BatchSummary,
    DiskResult,
    DiskRole,
    DiskSelection,
    IncrementalAction,
    IncrementalRequest,
    PoolConfiguration,
    SyncOutcome,
    TaskName,
)
from poolforge.core.sync_monitor import SyncCallback, SyncProgressMonitor
from poolforge.core.tasks import TaskCallback, TaskPipeline
from poolforge.core.validation import validate_selections

logger = get_logger(__name__)

DiskResultCallback = Callable[[DiskResult], None]

_POOL_MESSAGES: dict[TaskName, tuple[str, str]] = {
    TaskName.FORMAT: ("Formatting disks...", "Disks formatted"),
    TaskName.MOUNT: ("Mounting partitions...", "Partitions mounted"),
    TaskName.SNAPRAID: ("Configuring SnapRAID...", "SnapRAID configured"),
    TaskName.MERGERFS: ("Configuring MergerFS...", "MergerFS configured"),
    TaskName.FSTAB: ("Updating /etc/fstab...", "/etc/fstab updated"),
    TaskName.SYNC: ("Initial sync...", "Initial sync running in background"),
}

_DISK_MESSAGES: dict[TaskName, tuple[str, str]] = {
    TaskName.FORMAT: ("Formatting disk (this may take a few minutes)...", "Disk formatted"),
    TaskName.MOUNT: ("Mounting disk...", "Disk mounted"),
    TaskName.POOL: ("Adding to pool...", "Added to pool"),
}


class ProvisioningOrchestrator:
    """Drives the backend through the provisioning pipelines."""

    def __init__(
        self,
        backend: StorageBackend,
        inventory: DiskInventory,
        config: PoolForgeConfig,
    ) -> None:
        self.backend = backend
        self.inventory = inventory
        self.config = config
        self.configuration: PoolConfiguration | None = None
        self.monitor: SyncProgressMonitor | None = None
        self.warnings: list[str] = []
        self._sync_task: asyncio.Task[SyncOutcome] | None = None
        self._background: set[asyncio.Task[SyncOutcome]] = set()

    # ==================== Full pool ====================

    async def provision_pool(
        self,
        selections: list[DiskSelection],
        progress: TaskCallback | None = None,
        sync_progress: SyncCallback | None = None,
    ) -> PoolConfiguration:
        """
        Create the whole pool from a selection list.

        Raises ValidationError before any network call when the selection is
        inconsistent, ProvisionError naming the failed task when the backend
        rejects the configuration, and SessionError when the session died.
        Parity sync problems never fail the run.
        """
        devices = self.inventory.devices or await self.inventory.list_devices()
        validate_selections(devices, selections)

        pipeline = TaskPipeline(POOL_TASKS, callbacks=[progress] if progress else [])
        has_parity = any(s.role == DiskRole.PARITY for s in selections)

        with OperationLogger(
            "pool provisioning",
            logger,
            disks=[s.device_id for s in selections],
            parity=has_parity,
        ):
            try:
                pipeline.start(TaskName.FORMAT, _POOL_MESSAGES[TaskName.FORMAT][0])
                result = await self.backend.configure_pool(selections)
                pipeline.complete(TaskName.FORMAT, _POOL_MESSAGES[TaskName.FORMAT][1])

                for name in (TaskName.MOUNT, TaskName.SNAPRAID, TaskName.MERGERFS, TaskName.FSTAB):
                    running, done = _POOL_MESSAGES[name]
                    if name == TaskName.SNAPRAID and not has_parity:
                        done = "No parity disk - SnapRAID not configured"
                    pipeline.run_through(name, running, done)

                pipeline.start(TaskName.SYNC, _POOL_MESSAGES[TaskName.SYNC][0])
                if has_parity:
                    message = await self._start_background_sync(sync_progress)
                else:
                    message = "No parity - skipped"
                pipeline.complete(TaskName.SYNC, message)

            except SessionError as exc:
                pipeline.fail_current(exc.reason)
                raise
            except BackendError as exc:
                failed = pipeline.fail_current(f"Error: {exc.message}")
                task_name = failed.name.value if failed else TaskName.FORMAT.value
                raise ProvisionError(task_name, exc.message) from exc

        self.configuration = PoolConfiguration(
            selections=[
                DiskSelection(s.device_id, s.role, s.format, s.label) for s in selections
            ],
            pool_mount_path=str(result.get("poolMount") or self.config.wizard.pool_mount_path),
        )
        logger.info(
            "Storage pool created",
            pool_mount=self.configuration.pool_mount_path,
            data_disks=self.configuration.data_disks,
            parity_disk=self.configuration.parity_disk,
            cache_disk=self.configuration.cache_disk,
        )
        return self.configuration

    async def _start_background_sync(self, sync_progress: SyncCallback | None) -> str:
        """Trigger parity sync and watch it without blocking the pipeline."""
        try:
            await self._trigger_sync()
        except SyncError as exc:
            self._warn(str(exc))
            return "Sync scheduled for later"

        self.monitor = SyncProgressMonitor.from_config(self.backend, self.config.polling)
        task = asyncio.get_running_loop().create_task(
            self.monitor.run(sync_progress), name="parity-sync-monitor"
        )
        self._sync_task = task
        self._background.add(task)
        task.add_done_callback(self._on_sync_done)

        await asyncio.sleep(self.config.polling.sync_ui_wait_seconds)
        if task.done() and not task.cancelled() and task.exception() is None:
            return task.result().status_text
        return _POOL_MESSAGES[TaskName.SYNC][1]

    async def _trigger_sync(self) -> None:
        try:
            await self.backend.start_parity_sync()
        except BackendError as exc:
            raise SyncError(f"Parity sync could not be started: {exc.message}") from exc

    def _on_sync_done(self, task: asyncio.Task[SyncOutcome]) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self._warn(f"Parity sync monitor stopped: {exc}")
            return
        outcome = task.result()
        if not outcome.success:
            self._warn(f"Parity sync failed: {outcome.error or outcome.status_text}")
        elif outcome.timed_out:
            self._warn(outcome.status_text)

    async def wait_for_sync(self) -> SyncOutcome | None:
        """
        Wait for the background sync monitor of the last pool run.

        Sync failures come back as an unsuccessful outcome rather than an
        exception; only a dead session is raised.
        """
        task = self._sync_task
        if task is None:
            return None
        try:
            return await asyncio.shield(task)
        except SessionError:
            raise
        except asyncio.CancelledError:
            if task.cancelled():
                return None
            raise
        except Exception as exc:
            return SyncOutcome(success=False, percent=0, status_text="Sync monitor failed", error=str(exc))

    async def run_sync(self, sync_progress: SyncCallback | None = None) -> SyncOutcome:
        """Start a parity sync and watch it to the end (foreground)."""
        await self._trigger_sync()
        self.monitor = SyncProgressMonitor.from_config(self.backend, self.config.polling)
        return await self.monitor.run(sync_progress)

    def cancel_background(self) -> None:
        """Stop watching any background sync. The backend job keeps running."""
        for task in list(self._background):
            task.cancel()
        self._background.clear()

    def _warn(self, message: str) -> None:
        logger.warning("Provisioning warning", warning=message)
        self.warnings.append(message)

    # ==================== Incremental ====================

    async def provision_incremental_disk(
        self,
        request: IncrementalRequest,
        progress: TaskCallback | None = None,
    ) -> str:
        """
        Provision one newly detected disk.

        Task subset: format (only when requested), mount, pool (only for
        pool actions). Each call is one real backend request chosen by the
        action. Raises ProvisionError or SessionError.
        """
        device_id = request.disk.id
        action = request.action

        if action == IncrementalAction.IGNORE:
            try:
                return await self.backend.ignore_device(device_id)
            except BackendError as exc:
                raise ProvisionError("ignore", exc.message, device_id) from exc

        names = [TaskName.FORMAT] if request.format else []
        names.append(TaskName.MOUNT)
        if action.joins_pool:
            names.append(TaskName.POOL)
        pipeline = TaskPipeline(names, device_id=device_id, callbacks=[progress] if progress else [])

        role = DiskRole.CACHE if action == IncrementalAction.POOL_CACHE else DiskRole.DATA
        logger.info(
            "Provisioning disk",
            device_id=device_id,
            action=action.value,
            format=request.format,
        )

        first = names[0]
        pipeline.start(first, _DISK_MESSAGES[first][0])
        try:
            if action.joins_pool:
                message = await self.backend.add_to_pool(device_id, request.format, role)
            else:
                message = await self.backend.mount_standalone(
                    device_id, request.format, request.mount_name
                )
        except SessionError as exc:
            pipeline.fail_current(exc.reason)
            raise
        except BackendError as exc:
            failed = pipeline.fail_current(exc.message)
            raise ProvisionError(
                failed.name.value if failed else first.value, exc.message, device_id
            ) from exc

        pipeline.complete(first, _DISK_MESSAGES[first][1])
        for name in names[1:]:
            pipeline.run_through(name, *_DISK_MESSAGES[name])

        if action.joins_pool:
            self._pool_configuration().add(DiskSelection(device_id, role, request.format))
        return message

    async def provision_batch(
        self,
        requests: Iterable[IncrementalRequest],
        progress: TaskCallback | None = None,
        on_result: DiskResultCallback | None = None,
    ) -> BatchSummary:
        """
        Provision newly detected disks one at a time.

        A failing disk is recorded and the loop moves on; only a SessionError
        aborts the remaining disks.
        """
        summary = BatchSummary()
        for request in requests:
            device_id = request.disk.id
            try:
                message = await self.provision_incremental_disk(request, progress)
            except ProvisionError as exc:
                logger.warning(
                    "Disk provisioning failed",
                    device_id=device_id,
                    task=exc.task,
                    error=exc.message,
                )
                result = DiskResult(device_id, False, exc.message, exc.task)
            else:
                if request.action == IncrementalAction.IGNORE:
                    summary.ignored.append(device_id)
                    continue
                result = DiskResult(device_id, True, message or "Completed")

            summary.results.append(result)
            if on_result is not None:
                try:
                    on_result(result)
                except Exception as e:
                    logger.warning("Disk result callback error", error=str(e))

        logger.info(
            "Disk batch finished",
            success_count=summary.success_count,
            fail_count=summary.fail_count,
            ignored_count=summary.ignored_count,
        )
        return summary

    async def remove_from_pool(self, device_id: str) -> str:
        """Detach a disk from the pool and drop it from the live configuration."""
        try:
            message = await self.backend.remove_from_pool(device_id)
        except BackendError as exc:
            raise ProvisionError("remove", exc.message, device_id) from exc
        if self.configuration is not None:
            self.configuration.remove(device_id)
        logger.info("Disk removed from pool", device_id=device_id)
        return message

    def _pool_configuration(self) -> PoolConfiguration:
        if self.configuration is None:
            self.configuration = PoolConfiguration(
                pool_mount_path=self.config.wizard.pool_mount_path
            )
        return self.configuration
