"""
PoolForge disk inventory.

Fetches and caches the backend's view of block devices. The last
successful fetch wins; callers re-fetch on every wizard step entry and
every detection tick.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import TypeVar

from poolforge.backend.base import StorageBackend
from poolforge.core.errors import BackendError, FetchError
from poolforge.core.logging import get_logger
from poolforge.core.models import BlockDevice

T = TypeVar("T")
logger = get_logger(__name__)


class DiskInventory:
    """Device listings from the backend, with the last good result cached."""

    def __init__(self, backend: StorageBackend) -> None:
        self.backend = backend
        self.devices: list[BlockDevice] = []
        self.unconfigured: list[BlockDevice] = []
        self.configured: list[BlockDevice] = []
        self.ignored: set[str] = set()
        self.fetched_at: datetime | None = None

    async def _fetch(self, what: str, call: Callable[[], Awaitable[T]]) -> T:
        try:
            return await call()
        except FetchError:
            raise
        except BackendError as exc:
            logger.warning("Inventory fetch failed", listing=what, error=exc.message)
            raise FetchError(f"Failed to fetch {what}: {exc.message}", exc.status_code) from exc

    async def list_devices(self) -> list[BlockDevice]:
        """Fetch every block device the backend considers eligible."""
        devices = await self._fetch("devices", self.backend.list_devices)
        self.devices = devices
        self.fetched_at = datetime.now()
        logger.debug("Devices fetched", count=len(devices))
        return list(devices)

    async def list_unconfigured(self) -> list[BlockDevice]:
        """Fetch devices not present in any pool configuration."""
        devices = await self._fetch("unconfigured devices", self.backend.list_unconfigured)
        self.unconfigured = devices
        return list(devices)

    async def list_configured(self) -> list[BlockDevice]:
        devices = await self._fetch("configured devices", self.backend.list_configured)
        self.configured = devices
        return list(devices)

    async def list_ignored(self) -> set[str]:
        """Fetch ids of devices the user dismissed."""
        ignored = await self._fetch("ignored devices", self.backend.list_ignored)
        self.ignored = set(ignored)
        return set(self.ignored)

    def get(self, device_id: str) -> BlockDevice | None:
        """Look up a device in the last successful fetch."""
        for device in self.devices:
            if device.id == device_id:
                return device
        for device in self.unconfigured:
            if device.id == device_id:
                return device
        return None

    @property
    def device_ids(self) -> set[str]:
        return {d.id for d in self.devices}
