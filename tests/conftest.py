"""
Pytest configuration and fixtures for PoolForge tests.
"""

import sys
import tempfile
from pathlib import Path
from typing import Any, Generator

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from poolforge.backend.base import StorageBackend
from poolforge.core.config import LoggingConfig, PollingConfig, PoolForgeConfig, WizardConfig
from poolforge.core.errors import BackendError, SessionError
from poolforge.core.models import (
    BlockDevice,
    DeviceType,
    DiskRole,
    DiskSelection,
    SyncJob,
    SystemStats,
    parse_size,
)


def make_device(device_id: str, size: str, device_type: DeviceType = DeviceType.HDD) -> BlockDevice:
    return BlockDevice(
        id=device_id,
        model=f"Disk {device_id}",
        size=size,
        size_bytes=parse_size(size),
        type=device_type,
    )


class FakeBackend(StorageBackend):
    """In-memory storage backend recording every call."""

    def __init__(self, devices: list[BlockDevice] | None = None) -> None:
        super().__init__()
        self.devices = list(devices or [])
        self.unconfigured: list[BlockDevice] = list(self.devices)
        self.configured: list[BlockDevice] = []
        self.ignored: list[str] = []
        self.calls: list[tuple[Any, ...]] = []
        self.failures: dict[str, Exception] = {}
        self.sync_jobs: list[SyncJob | Exception] = [SyncJob(running=False)]
        self.pool_mount = "/mnt/storage"
        self.closed = False

    def fail(self, key: str, error: Exception | None = None) -> None:
        """Make an operation (or an operation for one device) raise."""
        self.failures[key] = error or BackendError(f"{key} failed", status_code=500)

    def expire_session(self) -> None:
        self.failures["*"] = SessionError()

    def _check(self, operation: str, device_id: str | None = None) -> None:
        error = self.failures.get("*") or self.failures.get(operation)
        if error is None and device_id is not None:
            error = self.failures.get(f"{operation}:{device_id}")
        if error is None:
            return
        if isinstance(error, SessionError):
            self._notify_session_error(error)
        raise error

    async def list_devices(self) -> list[BlockDevice]:
        self.calls.append(("list_devices",))
        self._check("list_devices")
        return list(self.devices)

    async def list_unconfigured(self) -> list[BlockDevice]:
        self.calls.append(("list_unconfigured",))
        self._check("list_unconfigured")
        return list(self.unconfigured)

    async def list_configured(self) -> list[BlockDevice]:
        self.calls.append(("list_configured",))
        self._check("list_configured")
        return list(self.configured)

    async def list_ignored(self) -> list[str]:
        self.calls.append(("list_ignored",))
        self._check("list_ignored")
        return list(self.ignored)

    async def ignore_device(self, device_id: str) -> str:
        self.calls.append(("ignore_device", device_id))
        self._check("ignore_device", device_id)
        self.ignored.append(device_id)
        return f"Disk {device_id} ignored"

    async def unignore_device(self, device_id: str) -> str:
        self.calls.append(("unignore_device", device_id))
        self._check("unignore_device", device_id)
        self.ignored.remove(device_id)
        return f"Disk {device_id} restored"

    async def add_to_pool(self, device_id: str, format: bool, role: DiskRole) -> str:
        self.calls.append(("add_to_pool", device_id, format, role))
        self._check("add_to_pool", device_id)
        return f"Disk {device_id} added to pool"

    async def mount_standalone(self, device_id: str, format: bool, name: str) -> str:
        self.calls.append(("mount_standalone", device_id, format, name))
        self._check("mount_standalone", device_id)
        return f"Disk {device_id} mounted at /mnt/disks/{name}"

    async def remove_from_pool(self, device_id: str) -> str:
        self.calls.append(("remove_from_pool", device_id))
        self._check("remove_from_pool", device_id)
        return f"Disk {device_id} removed from pool"

    async def configure_pool(self, selections: list[DiskSelection]) -> dict[str, Any]:
        self.calls.append(("configure_pool", [s.to_payload() for s in selections]))
        self._check("configure_pool")
        return {"success": True, "poolMount": self.pool_mount, "usedPercent": 0}

    async def start_parity_sync(self) -> dict[str, Any]:
        self.calls.append(("start_parity_sync",))
        self._check("start_parity_sync")
        return {"success": True}

    async def get_sync_progress(self) -> SyncJob:
        self.calls.append(("get_sync_progress",))
        self._check("get_sync_progress")
        item = self.sync_jobs.pop(0) if len(self.sync_jobs) > 1 else self.sync_jobs[0]
        if isinstance(item, Exception):
            raise item
        return SyncJob(
            running=item.running,
            percent=item.percent,
            status_text=item.status_text,
            error=item.error,
        )

    async def get_system_stats(self) -> SystemStats:
        self.calls.append(("get_system_stats",))
        self._check("get_system_stats")
        return SystemStats(cpu_load=12.5, cpu_temp=41.0, ram_used=2.1, ram_total=8.0, uptime=3600)

    async def get_public_ip(self) -> str:
        self.calls.append(("get_public_ip",))
        self._check("get_public_ip")
        return "203.0.113.7"

    async def close(self) -> None:
        self.closed = True

    def called(self, operation: str) -> list[tuple[Any, ...]]:
        return [c for c in self.calls if c[0] == operation]


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for tests."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def devices() -> list[BlockDevice]:
    """Four HDDs of mixed sizes and one NVMe drive."""
    return [
        make_device("sda", "4 TB"),
        make_device("sdb", "6 TB"),
        make_device("sdc", "6 TB"),
        make_device("sdd", "5 TB"),
        make_device("nvme0n1", "1 TB", DeviceType.NVME),
    ]


@pytest.fixture
def fake_backend(devices: list[BlockDevice]) -> FakeBackend:
    return FakeBackend(devices)


@pytest.fixture
def sample_config(temp_dir: Path) -> PoolForgeConfig:
    """Configuration with instant polling and state kept in a temp dir."""
    return PoolForgeConfig(
        logging=LoggingConfig(
            file_enabled=False,
            console_enabled=False,
            log_directory=temp_dir / "logs",
        ),
        polling=PollingConfig(
            sync_interval_seconds=0,
            sync_ui_wait_seconds=0,
            detection_initial_delay_seconds=0,
            detection_interval_seconds=0.01,
            stats_interval_seconds=0.01,
            public_ip_interval_seconds=0.01,
        ),
        wizard=WizardConfig(state_file=temp_dir / "wizard_state.json"),
    )


def pytest_configure(config: pytest.Config) -> None:
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "integration: Integration tests")
    config.addinivalue_line("markers", "slow: Slow running tests")
