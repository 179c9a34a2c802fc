"""
PoolForge Session Management.

A PoolSession is the explicit context that owns every long-lived piece of
one authenticated connection: the backend client, the periodic timers, the
wizard, the orchestrator and the detection watcher. Invalidating or tearing
down the session stops all of them in one call.
"""

from __future__ import annotations

import uuid
from collections.abc import Callable
from datetime import datetime
from types import TracebackType

from poolforge.backend import StorageBackend, get_backend
from poolforge.core.config import PoolForgeConfig, load_config
from poolforge.core.detection import DismissCallback, DiskDetectionWatcher, NotifyCallback
from poolforge.core.errors import SessionError
from poolforge.core.inventory import DiskInventory
from poolforge.core.logging import get_logger, setup_logging
from poolforge.core.models import SystemStats
from poolforge.core.orchestrator import ProvisioningOrchestrator
from poolforge.core.scheduler import Scheduler
from poolforge.core.wizard import WizardStateMachine, WizardStateStore

logger = get_logger(__name__)

STATS_TASK = "system-stats"
PUBLIC_IP_TASK = "public-ip"

SessionExpiredCallback = Callable[[SessionError], None]


class PoolSession:
    """
    Context for one authenticated PoolForge session.

    This is the main entry point for all PoolForge operations.
    """

    def __init__(
        self,
        config: PoolForgeConfig | None = None,
        backend: StorageBackend | None = None,
        on_session_expired: SessionExpiredCallback | None = None,
        on_notify: NotifyCallback | None = None,
        on_dismiss: DismissCallback | None = None,
    ) -> None:
        self.id = str(uuid.uuid4())
        self.config = config or load_config()
        self.started_at = datetime.now()
        self.on_session_expired = on_session_expired
        self.expired = False

        setup_logging(self.config.logging)

        self.backend = backend or get_backend(self.config.backend)
        self.backend.add_session_listener(self.invalidate)

        self.scheduler = Scheduler()
        self.scheduler.add_session_error_callback(self.invalidate)

        self.inventory = DiskInventory(self.backend)
        self.orchestrator = ProvisioningOrchestrator(self.backend, self.inventory, self.config)
        self.wizard = WizardStateMachine(
            self.inventory,
            self.orchestrator,
            WizardStateStore(self.config.wizard.state_file),
            cache_requires_fast_disk=self.config.wizard.cache_requires_fast_disk,
            format_disks=self.config.wizard.format_new_disks,
        )
        self.watcher = DiskDetectionWatcher(
            self.inventory,
            self.orchestrator,
            on_notify=on_notify,
            on_dismiss=on_dismiss,
        )

        self.stats: SystemStats | None = None
        self.public_ip: str | None = None

        logger.info(
            "Session started",
            session_id=self.id,
            backend=self.config.backend.base_url,
        )

    # ==================== Polling ====================

    def start_polling(self) -> None:
        """Register the stats, public IP and disk detection timers."""
        if self.expired:
            raise SessionError()
        polling = self.config.polling
        self.scheduler.every(STATS_TASK, polling.stats_interval_seconds, self.refresh_stats)
        self.scheduler.every(
            PUBLIC_IP_TASK, polling.public_ip_interval_seconds, self.refresh_public_ip
        )
        self.watcher.start(self.scheduler, polling)

    async def refresh_stats(self) -> SystemStats:
        self.stats = await self.backend.get_system_stats()
        return self.stats

    async def refresh_public_ip(self) -> str:
        self.public_ip = await self.backend.get_public_ip()
        return self.public_ip

    # ==================== Lifecycle ====================

    def invalidate(self, error: SessionError | None = None) -> None:
        """
        Handle a dead session.

        Cancels every timer and background sync watcher, then fires the
        re-authentication hook. Only the first call has any effect.
        """
        if self.expired:
            return
        self.expired = True
        error = error or SessionError()

        self.scheduler.cancel_all()
        self.orchestrator.cancel_background()
        logger.warning("Session invalidated", session_id=self.id, reason=error.reason)

        if self.on_session_expired is not None:
            try:
                self.on_session_expired(error)
            except Exception as e:
                logger.warning("Session expired callback error", error=str(e))

    async def teardown(self) -> None:
        """Cancel everything the session owns and close the backend."""
        self.scheduler.cancel_all()
        self.orchestrator.cancel_background()
        await self.backend.close()
        duration = (datetime.now() - self.started_at).total_seconds()
        logger.info("Session ended", session_id=self.id, duration_seconds=duration)

    async def __aenter__(self) -> PoolSession:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.teardown()
