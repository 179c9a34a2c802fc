"""
PoolForge data models.

Defines the core data structures for devices, role selections, pool
configurations, provisioning tasks and parity-sync progress.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, IntEnum
from typing import Any

import humanize

_SIZE_RE = re.compile(r"^([\d.]+)\s*(TB|GB|MB|KB|B)?$", re.IGNORECASE)
_SIZE_MULTIPLIERS = {
    "B": 1,
    "KB": 1024,
    "MB": 1024**2,
    "GB": 1024**3,
    "TB": 1024**4,
}


def parse_size(value: str | int | float | None) -> int:
    """
    Parse a human-readable size ("6 TB", "512 GB") to bytes.

    Multipliers are base-1024. Anything unparseable yields 0 so that capacity
    comparisons fail conservatively.
    """
    if value is None or isinstance(value, bool):
        return 0
    if isinstance(value, (int, float)):
        return max(0, int(value))

    match = _SIZE_RE.match(value.strip())
    if not match:
        return 0
    try:
        number = float(match.group(1))
    except ValueError:
        return 0
    unit = (match.group(2) or "B").upper()
    return int(number * _SIZE_MULTIPLIERS[unit])


def format_bytes(size_bytes: int) -> str:
    """Human-readable size for summaries."""
    return humanize.naturalsize(size_bytes, binary=True)


class DeviceType(Enum):
    """Type of block device."""

    HDD = "HDD"
    SSD = "SSD"
    NVME = "NVMe"

    @classmethod
    def from_string(cls, value: str | None) -> DeviceType:
        """Create DeviceType from a backend string, defaulting to HDD."""
        if not value:
            return cls.HDD
        value_lower = value.lower().strip()
        for device_type in cls:
            if device_type.value.lower() == value_lower:
                return device_type
        return cls.HDD

    @property
    def is_fast(self) -> bool:
        return self in (DeviceType.SSD, DeviceType.NVME)


class DiskRole(Enum):
    """Role a device plays within a configuration."""

    DATA = "data"
    PARITY = "parity"
    CACHE = "cache"
    STANDALONE = "standalone"
    IGNORE = "ignore"


@dataclass(frozen=True)
class BlockDevice:
    """Immutable snapshot of a block device as reported by the backend."""

    id: str
    model: str = "Unknown"
    size: str = ""
    size_bytes: int = 0
    type: DeviceType = DeviceType.HDD
    temperature_c: int | None = None
    transport: str = ""
    has_existing_data: bool = False
    serial: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BlockDevice:
        """
        Build a device from backend JSON.

        The disk list reports ``size`` as a human string ("5.5 TB") while the
        detection endpoint reports raw bytes plus ``sizeFormatted``; both are
        accepted.
        """
        raw_size = data.get("size")
        if isinstance(raw_size, (int, float)) and not isinstance(raw_size, bool):
            size_bytes = max(0, int(raw_size))
            size = data.get("sizeFormatted") or format_bytes(size_bytes)
        else:
            size = str(raw_size or "")
            size_bytes = parse_size(size)

        device_id = str(data["id"])
        transport = str(data.get("transport") or data.get("tran") or "")
        type_value = data.get("type")
        if not type_value and ("nvme" in device_id or transport.lower() == "nvme"):
            type_value = "NVMe"

        has_data = data.get("hasData")
        if has_data is None:
            has_data = any(p.get("fstype") for p in data.get("partitions") or [])

        temperature = data.get("temp", data.get("temperatureC"))
        return cls(
            id=device_id,
            model=str(data.get("model") or "Unknown"),
            size=size,
            size_bytes=size_bytes,
            type=DeviceType.from_string(type_value),
            temperature_c=int(temperature) if temperature is not None else None,
            transport=transport,
            has_existing_data=bool(has_data),
            serial=str(data.get("serial") or ""),
        )

    @property
    def display_name(self) -> str:
        if self.model and self.model != "Unknown":
            return f"{self.model} ({self.id})"
        return self.id

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "model": self.model,
            "size": self.size,
            "size_bytes": self.size_bytes,
            "type": self.type.value,
            "temperature_c": self.temperature_c,
            "transport": self.transport,
            "has_existing_data": self.has_existing_data,
            "serial": self.serial,
        }


@dataclass
class DiskSelection:
    """A device assigned to a role in one configuration."""

    device_id: str
    role: DiskRole
    format: bool = True
    label: str | None = None

    def to_payload(self) -> dict[str, Any]:
        """Render the backend's ``{id, role, format}`` shape."""
        payload: dict[str, Any] = {
            "id": self.device_id,
            "role": self.role.value,
            "format": self.format,
        }
        if self.label:
            payload["label"] = self.label
        return payload


@dataclass
class PoolConfiguration:
    """The logical pool: ordered role selections plus the union mount path."""

    selections: list[DiskSelection] = field(default_factory=list)
    pool_mount_path: str = ""
    created_at: datetime = field(default_factory=datetime.now)

    @property
    def data_disks(self) -> list[str]:
        return [s.device_id for s in self.selections if s.role == DiskRole.DATA]

    @property
    def parity_disk(self) -> str | None:
        return next((s.device_id for s in self.selections if s.role == DiskRole.PARITY), None)

    @property
    def cache_disk(self) -> str | None:
        return next((s.device_id for s in self.selections if s.role == DiskRole.CACHE), None)

    @property
    def device_ids(self) -> set[str]:
        return {s.device_id for s in self.selections}

    def get(self, device_id: str) -> DiskSelection | None:
        for selection in self.selections:
            if selection.device_id == device_id:
                return selection
        return None

    def add(self, selection: DiskSelection) -> None:
        """Append a selection, replacing any prior role for the same device."""
        self.remove(selection.device_id)
        self.selections.append(selection)

    def remove(self, device_id: str) -> DiskSelection | None:
        selection = self.get(device_id)
        if selection is not None:
            self.selections.remove(selection)
        return selection

    def to_dict(self) -> dict[str, Any]:
        return {
            "pool_mount_path": self.pool_mount_path,
            "created_at": self.created_at.isoformat(),
            "selections": [s.to_payload() for s in self.selections],
        }


class WizardStep(IntEnum):
    """Steps of the pool setup wizard."""

    DETECTING = 1
    SELECT_DATA = 2
    SELECT_PARITY = 3
    SELECT_CACHE = 4
    SUMMARY = 5
    PROVISIONING = 6
    COMPLETED = 7


@dataclass
class WizardState:
    """Selections and position of one wizard run."""

    current_step: WizardStep = WizardStep.DETECTING
    selected_data_disks: list[str] = field(default_factory=list)
    selected_parity_disk: str | None = None
    selected_cache_disk: str | None = None
    is_configuring: bool = False
    last_error: str | None = None

    def role_of(self, device_id: str) -> DiskRole | None:
        if device_id in self.selected_data_disks:
            return DiskRole.DATA
        if device_id == self.selected_parity_disk:
            return DiskRole.PARITY
        if device_id == self.selected_cache_disk:
            return DiskRole.CACHE
        return None

    def copy(self) -> WizardState:
        return WizardState(
            current_step=self.current_step,
            selected_data_disks=list(self.selected_data_disks),
            selected_parity_disk=self.selected_parity_disk,
            selected_cache_disk=self.selected_cache_disk,
            is_configuring=self.is_configuring,
            last_error=self.last_error,
        )

    def to_dict(self) -> dict[str, Any]:
        # is_configuring is a process-local lock and is never persisted
        return {
            "currentStep": int(self.current_step),
            "selectedDataDisks": list(self.selected_data_disks),
            "selectedParityDisk": self.selected_parity_disk,
            "selectedCacheDisk": self.selected_cache_disk,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WizardState:
        try:
            step = WizardStep(int(data.get("currentStep", 1)))
        except ValueError:
            step = WizardStep.DETECTING
        return cls(
            current_step=step,
            selected_data_disks=[str(d) for d in data.get("selectedDataDisks") or []],
            selected_parity_disk=data.get("selectedParityDisk"),
            selected_cache_disk=data.get("selectedCacheDisk"),
        )


class TaskName(Enum):
    """Provisioning pipeline tasks."""

    FORMAT = "format"
    MOUNT = "mount"
    SNAPRAID = "snapraid"
    MERGERFS = "mergerfs"
    FSTAB = "fstab"
    SYNC = "sync"
    POOL = "pool"


POOL_TASKS: tuple[TaskName, ...] = (
    TaskName.FORMAT,
    TaskName.MOUNT,
    TaskName.SNAPRAID,
    TaskName.MERGERFS,
    TaskName.FSTAB,
    TaskName.SYNC,
)


class TaskStatus(Enum):
    """Status of a provisioning task."""

    PENDING = "pending"
    RUNNING = "running"
    DONE = "done"
    ERROR = "error"


@dataclass
class ProvisioningTask:
    """One step of a provisioning run. Recreated for every run."""

    name: TaskName
    status: TaskStatus = TaskStatus.PENDING
    message: str = ""
    device_id: str | None = None


@dataclass
class SyncUpdate:
    """One UI-facing parity-sync progress push."""

    percent: int
    status_text: str
    final: bool = False
    forced: bool = False
    error: str | None = None


@dataclass
class SyncJob:
    """Live view of the backend's single parity-sync job."""

    running: bool = False
    percent: int = 0
    status_text: str = ""
    error: str | None = None
    poll_count: int = 0


@dataclass
class SyncOutcome:
    """Terminal result of watching a sync job."""

    success: bool
    percent: int
    status_text: str
    timed_out: bool = False
    error: str | None = None


class IncrementalAction(Enum):
    """What to do with a newly detected disk."""

    POOL_DATA = "pool-data"
    POOL_CACHE = "pool-cache"
    STANDALONE = "standalone"
    IGNORE = "ignore"

    @property
    def joins_pool(self) -> bool:
        return self.value.startswith("pool")


@dataclass
class IncrementalRequest:
    """Per-disk provisioning request for a newly detected disk."""

    disk: BlockDevice
    action: IncrementalAction
    format: bool = True
    name: str | None = None

    @property
    def mount_name(self) -> str:
        return self.name or self.disk.id


@dataclass
class DiskResult:
    """Outcome of one disk in an incremental batch."""

    device_id: str
    success: bool
    message: str = ""
    failed_task: str | None = None


@dataclass
class BatchSummary:
    """Aggregate of an incremental provisioning batch."""

    results: list[DiskResult] = field(default_factory=list)
    ignored: list[str] = field(default_factory=list)

    @property
    def success_count(self) -> int:
        return sum(1 for r in self.results if r.success)

    @property
    def fail_count(self) -> int:
        return sum(1 for r in self.results if not r.success)

    @property
    def ignored_count(self) -> int:
        return len(self.ignored)

    @property
    def failed_disks(self) -> list[str]:
        return [r.device_id for r in self.results if not r.success]


@dataclass
class SystemStats:
    """Host statistics reported by the backend."""

    cpu_load: float = 0.0
    cpu_temp: float = 0.0
    ram_used: float = 0.0
    ram_total: float = 0.0
    uptime: float = 0.0

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SystemStats:
        return cls(
            cpu_load=float(data.get("cpuLoad") or 0),
            cpu_temp=float(data.get("cpuTemp") or 0),
            ram_used=float(data.get("ramUsed") or 0),
            ram_total=float(data.get("ramTotal") or 0),
            uptime=float(data.get("uptime") or 0),
        )
