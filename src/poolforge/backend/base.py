"""
PoolForge Storage Backend Base.

Defines the abstract interface to the NAS backend that performs the
physical pool work. PoolForge is a pure client of this interface.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from poolforge.core.errors import SessionError
    from poolforge.core.models import BlockDevice, DiskRole, DiskSelection, SyncJob, SystemStats


SessionListener = Callable[["SessionError"], None]


class StorageBackend(ABC):
    """Abstract base class for the storage backend collaborator."""

    def __init__(self) -> None:
        self._session_listeners: list[SessionListener] = []

    # ==================== Session ====================

    def add_session_listener(self, listener: SessionListener) -> None:
        """Register a callback fired whenever any request detects a dead session."""
        self._session_listeners.append(listener)

    def _notify_session_error(self, error: SessionError) -> None:
        for listener in list(self._session_listeners):
            listener(error)

    async def close(self) -> None:
        """Release transport resources."""

    # ==================== Inventory ====================

    @abstractmethod
    async def list_devices(self) -> list[BlockDevice]:
        """List every eligible block device."""

    @abstractmethod
    async def list_unconfigured(self) -> list[BlockDevice]:
        """List devices that are not part of any pool configuration."""

    @abstractmethod
    async def list_configured(self) -> list[BlockDevice]:
        """List devices that already belong to the pool."""

    @abstractmethod
    async def list_ignored(self) -> list[str]:
        """List ids of devices the user dismissed."""

    @abstractmethod
    async def ignore_device(self, device_id: str) -> str:
        """Dismiss a device from new-disk detection."""

    @abstractmethod
    async def unignore_device(self, device_id: str) -> str:
        """Undo a previous dismissal."""

    # ==================== Provisioning ====================

    @abstractmethod
    async def add_to_pool(self, device_id: str, format: bool, role: DiskRole) -> str:
        """Add one disk to the existing pool as data or cache."""

    @abstractmethod
    async def mount_standalone(self, device_id: str, format: bool, name: str) -> str:
        """Mount one disk outside the pool."""

    @abstractmethod
    async def remove_from_pool(self, device_id: str) -> str:
        """Detach one disk from the pool."""

    @abstractmethod
    async def configure_pool(self, selections: list[DiskSelection]) -> dict[str, Any]:
        """Create the whole pool in one call."""

    # ==================== Parity sync ====================

    @abstractmethod
    async def start_parity_sync(self) -> dict[str, Any]:
        """Trigger the global parity sync job (fire-and-forget)."""

    @abstractmethod
    async def get_sync_progress(self) -> SyncJob:
        """Fetch the state of the global parity sync job."""

    # ==================== Host ====================

    @abstractmethod
    async def get_system_stats(self) -> SystemStats:
        """Fetch CPU/RAM/temperature statistics."""

    @abstractmethod
    async def get_public_ip(self) -> str:
        """Fetch the public IP address of the NAS."""
