"""
PoolForge selection validation.

Pure functions enforcing the cross-role selection rules. Nothing here
touches the network or mutates its arguments.
"""

from __future__ import annotations

from collections.abc import Collection, Iterable

from poolforge.core.errors import ValidationError
from poolforge.core.models import BlockDevice, DiskRole, DiskSelection


def _by_id(devices: Iterable[BlockDevice]) -> dict[str, BlockDevice]:
    return {d.id: d for d in devices}


def largest_size(devices: Iterable[BlockDevice], device_ids: Collection[str]) -> int:
    """Size in bytes of the largest listed device; unknown ids count as 0."""
    index = _by_id(devices)
    sizes = [index[d].size_bytes if d in index else 0 for d in device_ids]
    return max(sizes, default=0)


def can_advance_from_data_step(selected_data_disks: Collection[str]) -> bool:
    """True iff at least one data disk is selected."""
    return len(selected_data_disks) > 0


def eligible_parity_disks(
    all_devices: Iterable[BlockDevice],
    selected_data_disks: Collection[str],
) -> list[BlockDevice]:
    """
    Devices that may hold parity for the given data selection.

    Excludes devices selected as data and devices smaller than the largest
    selected data disk. A device whose size could not be parsed is never
    eligible.
    """
    devices = list(all_devices)
    largest = largest_size(devices, selected_data_disks)
    return [
        d
        for d in devices
        if d.id not in selected_data_disks and d.size_bytes > 0 and d.size_bytes >= largest
    ]


def eligible_cache_disks(
    all_devices: Iterable[BlockDevice],
    selected_data_disks: Collection[str],
    selected_parity_disk: str | None,
    fast_only: bool = False,
) -> list[BlockDevice]:
    """Devices not already used as data or parity. No size constraint."""
    return [
        d
        for d in all_devices
        if d.id not in selected_data_disks
        and d.id != selected_parity_disk
        and (d.type.is_fast or not fast_only)
    ]


def validate_pool_submission(
    data_disks: Collection[BlockDevice],
    parity_disk: BlockDevice | None,
) -> None:
    """
    Re-check the parity capacity rule at submission time.

    Raises ValidationError when the parity disk is smaller than the largest
    data disk. Equal sizes are accepted.
    """
    if not data_disks:
        raise ValidationError("At least one data disk is required")
    if parity_disk is None:
        return

    largest = max(d.size_bytes for d in data_disks)
    if parity_disk.size_bytes <= 0 or parity_disk.size_bytes < largest:
        raise ValidationError(
            f"Parity disk {parity_disk.id} ({parity_disk.size or 'unknown size'}) must be "
            f"equal to or larger than the largest data disk"
        )


def validate_selections(
    devices: Iterable[BlockDevice],
    selections: Collection[DiskSelection],
) -> None:
    """Structural checks on a full pool selection list, then the capacity rule."""
    index = _by_id(devices)
    seen: set[str] = set()
    for selection in selections:
        if selection.device_id in seen:
            raise ValidationError(f"Device {selection.device_id} is assigned more than one role")
        seen.add(selection.device_id)
        if selection.device_id not in index:
            raise ValidationError(f"Unknown device {selection.device_id}")
        if selection.role not in (DiskRole.DATA, DiskRole.PARITY, DiskRole.CACHE):
            raise ValidationError(f"Role {selection.role.value} is not valid in a pool")

    data = [index[s.device_id] for s in selections if s.role == DiskRole.DATA]
    parity = [index[s.device_id] for s in selections if s.role == DiskRole.PARITY]
    cache = [s for s in selections if s.role == DiskRole.CACHE]

    if len(parity) > 1:
        raise ValidationError("Only one parity disk is supported")
    if len(cache) > 1:
        raise ValidationError("Only one cache disk is supported")

    validate_pool_submission(data, parity[0] if parity else None)
