"""
PoolForge storage setup wizard.

A resumable state machine over the guided flow

    Detecting -> SelectData -> SelectParity -> SelectCache -> Summary
              -> Provisioning -> Completed

Every mutation goes through ``dispatch(event)``, which validates, applies,
persists and returns a snapshot of the new state. Provisioning is the one
asynchronous, irreversible step and has its own entry point,
``create_pool()``.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from poolforge.core.errors import (
    PoolForgeError,
    ProvisionError,
    SessionError,
    TransitionError,
    ValidationError,
)
from poolforge.core.inventory import DiskInventory
from poolforge.core.logging import get_logger
from poolforge.core.models import (
    BlockDevice,
    DiskRole,
    DiskSelection,
    PoolConfiguration,
    WizardState,
    WizardStep,
    format_bytes,
)
from poolforge.core.orchestrator import ProvisioningOrchestrator
from poolforge.core.sync_monitor import SyncCallback
from poolforge.core.tasks import TaskCallback
from poolforge.core.validation import (
    can_advance_from_data_step,
    eligible_cache_disks,
    eligible_parity_disks,
    validate_pool_submission,
)

logger = get_logger(__name__)

StateListener = Callable[[WizardState], None]


# ==================== Events ====================


@dataclass(frozen=True)
class Advance:
    """Move to the next step."""


@dataclass(frozen=True)
class Back:
    """Move to the previous step."""


@dataclass(frozen=True)
class Skip:
    """Skip the optional parity or cache step, clearing its selection."""


@dataclass(frozen=True)
class ToggleDataDisk:
    device_id: str


@dataclass(frozen=True)
class SelectParity:
    device_id: str | None


@dataclass(frozen=True)
class SelectCache:
    device_id: str | None


@dataclass(frozen=True)
class Reset:
    """Forget every selection and return to detection."""


WizardEvent = Advance | Back | Skip | ToggleDataDisk | SelectParity | SelectCache | Reset


@dataclass
class PoolSummary:
    """What the summary step shows before provisioning."""

    data_disks: list[BlockDevice]
    parity_disk: BlockDevice | None
    cache_disk: BlockDevice | None
    total_capacity_bytes: int

    @property
    def protected(self) -> bool:
        return self.parity_disk is not None

    @property
    def total_capacity(self) -> str:
        return format_bytes(self.total_capacity_bytes)


# ==================== Persistence ====================


class WizardStateStore:
    """Durable JSON storage for wizard position and selections."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def load(self) -> WizardState | None:
        if not self.path.exists():
            return None
        try:
            with open(self.path) as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.warning("Could not load wizard state", path=str(self.path), error=str(e))
            return None
        if not isinstance(data, dict):
            return None
        return WizardState.from_dict(data)

    def save(self, state: WizardState) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, "w") as f:
                json.dump(state.to_dict(), f, indent=2)
        except OSError as e:
            logger.warning("Could not save wizard state", path=str(self.path), error=str(e))

    def clear(self) -> None:
        self.path.unlink(missing_ok=True)


# ==================== State machine ====================


class WizardStateMachine:
    """Drives one wizard instance."""

    def __init__(
        self,
        inventory: DiskInventory,
        orchestrator: ProvisioningOrchestrator,
        store: WizardStateStore,
        cache_requires_fast_disk: bool = False,
        format_disks: bool = True,
    ) -> None:
        self.inventory = inventory
        self.orchestrator = orchestrator
        self.store = store
        self.cache_requires_fast_disk = cache_requires_fast_disk
        self.format_disks = format_disks
        self._state = WizardState()
        self._listeners: list[StateListener] = []
        self.configuration: PoolConfiguration | None = None

    @property
    def state(self) -> WizardState:
        """Snapshot of the current state."""
        return self._state.copy()

    @property
    def devices(self) -> list[BlockDevice]:
        return list(self.inventory.devices)

    def add_listener(self, listener: StateListener) -> None:
        """Subscribe to state snapshots after every change."""
        self._listeners.append(listener)

    # ---------- startup / resume ----------

    async def start(self) -> WizardState:
        """
        Enter the setup flow.

        Fetches the inventory first; if persisted state exists past the
        detection step, the wizard resumes there with selections re-applied
        to the fresh device list.
        """
        saved = self.store.load()
        await self.inventory.list_devices()

        state = WizardState()
        if saved is not None and saved.current_step > WizardStep.DETECTING:
            state = self._reapply(saved)
            logger.info(
                "Wizard resumed",
                step=state.current_step.name,
                data_disks=state.selected_data_disks,
            )
        self._commit(state)
        return self.state

    async def refresh(self) -> WizardState:
        """Re-fetch the inventory (on step entry) and drop vanished selections."""
        await self.inventory.list_devices()
        self._commit(self._reapply(self._state))
        return self.state

    def _reapply(self, saved: WizardState) -> WizardState:
        present = self.inventory.device_ids
        state = saved.copy()
        state.selected_data_disks = [d for d in saved.selected_data_disks if d in present]
        if state.selected_parity_disk not in present:
            state.selected_parity_disk = None
        if state.selected_cache_disk not in present:
            state.selected_cache_disk = None
        # a provisioning run cannot be resumed from the client side
        if state.current_step >= WizardStep.PROVISIONING:
            state.current_step = WizardStep.SUMMARY
        self._prune_parity(state)
        return state

    # ---------- dispatch ----------

    def dispatch(self, event: WizardEvent) -> WizardState:
        """Apply one event and return the new state snapshot."""
        if self._state.is_configuring and not isinstance(event, Reset):
            raise TransitionError("Provisioning is in progress")

        state = self._state.copy()
        if isinstance(event, Advance):
            self._advance(state)
        elif isinstance(event, Back):
            self._back(state)
        elif isinstance(event, Skip):
            self._skip(state)
        elif isinstance(event, ToggleDataDisk):
            self._toggle_data(state, event.device_id)
        elif isinstance(event, SelectParity):
            self._select_parity(state, event.device_id)
        elif isinstance(event, SelectCache):
            self._select_cache(state, event.device_id)
        elif isinstance(event, Reset):
            return self.reset()
        else:
            raise TypeError(f"Unknown wizard event: {event!r}")

        self._commit(state)
        return self.state

    def _advance(self, state: WizardState) -> None:
        step = state.current_step
        if step == WizardStep.DETECTING:
            if not self.inventory.devices:
                raise ValidationError("No disks detected")
        elif step == WizardStep.SELECT_DATA:
            if not can_advance_from_data_step(state.selected_data_disks):
                raise ValidationError("Select at least one data disk")
        elif step == WizardStep.SELECT_PARITY:
            if state.selected_parity_disk is not None:
                self._check_parity(state, state.selected_parity_disk)
        elif step == WizardStep.SELECT_CACHE:
            pass
        elif step == WizardStep.SUMMARY:
            raise TransitionError("Use create_pool() to start provisioning")
        else:
            raise TransitionError(f"Cannot advance from {step.name}")
        state.current_step = WizardStep(step + 1)

    def _back(self, state: WizardState) -> None:
        step = state.current_step
        if not WizardStep.SELECT_DATA <= step <= WizardStep.SUMMARY:
            raise TransitionError(f"Cannot go back from {step.name}")
        state.current_step = WizardStep(step - 1)

    def _skip(self, state: WizardState) -> None:
        if state.current_step == WizardStep.SELECT_PARITY:
            state.selected_parity_disk = None
        elif state.current_step == WizardStep.SELECT_CACHE:
            state.selected_cache_disk = None
        else:
            raise TransitionError(f"{state.current_step.name} cannot be skipped")
        state.current_step = WizardStep(state.current_step + 1)

    def _require_selection_step(self, state: WizardState) -> None:
        if state.current_step >= WizardStep.PROVISIONING:
            raise TransitionError("Selections are locked once provisioning has started")

    def _require_device(self, device_id: str) -> None:
        if device_id not in self.inventory.device_ids:
            raise ValidationError(f"Unknown device {device_id}")

    def _toggle_data(self, state: WizardState, device_id: str) -> None:
        self._require_selection_step(state)
        self._require_device(device_id)
        if device_id in state.selected_data_disks:
            state.selected_data_disks.remove(device_id)
        else:
            self._release(state, device_id)
            state.selected_data_disks.append(device_id)
        self._prune_parity(state)

    def _select_parity(self, state: WizardState, device_id: str | None) -> None:
        self._require_selection_step(state)
        if device_id is None:
            state.selected_parity_disk = None
            return
        self._require_device(device_id)
        self._release(state, device_id)
        self._check_parity(state, device_id)
        state.selected_parity_disk = device_id

    def _select_cache(self, state: WizardState, device_id: str | None) -> None:
        self._require_selection_step(state)
        if device_id is None:
            state.selected_cache_disk = None
            return
        self._require_device(device_id)
        self._release(state, device_id)
        eligible = eligible_cache_disks(
            self.inventory.devices,
            state.selected_data_disks,
            state.selected_parity_disk,
            fast_only=self.cache_requires_fast_disk,
        )
        if device_id not in {d.id for d in eligible}:
            raise ValidationError(f"Device {device_id} cannot be used as cache")
        state.selected_cache_disk = device_id

    def _release(self, state: WizardState, device_id: str) -> None:
        """A device holds one role at most: drop it from every role first."""
        if device_id in state.selected_data_disks:
            state.selected_data_disks.remove(device_id)
        if state.selected_parity_disk == device_id:
            state.selected_parity_disk = None
        if state.selected_cache_disk == device_id:
            state.selected_cache_disk = None

    def _check_parity(self, state: WizardState, device_id: str) -> None:
        eligible = eligible_parity_disks(self.inventory.devices, state.selected_data_disks)
        if device_id not in {d.id for d in eligible}:
            raise ValidationError(
                f"Parity disk {device_id} must be at least as large as the largest data disk"
            )

    def _prune_parity(self, state: WizardState) -> None:
        """Clear a parity selection the current data set made ineligible."""
        parity = state.selected_parity_disk
        if parity is None:
            return
        eligible = eligible_parity_disks(self.inventory.devices, state.selected_data_disks)
        if parity not in {d.id for d in eligible}:
            logger.info("Parity selection cleared", device_id=parity)
            state.selected_parity_disk = None

    def _commit(self, state: WizardState) -> None:
        self._state = state
        self.store.save(state)
        snapshot = state.copy()
        for listener in self._listeners:
            try:
                listener(snapshot)
            except Exception as e:
                logger.warning("Wizard listener error", error=str(e))

    # ---------- summary / provisioning ----------

    def selections(self) -> list[DiskSelection]:
        """Role selections in submission order: data, parity, cache."""
        state = self._state
        result = [
            DiskSelection(d, DiskRole.DATA, self.format_disks) for d in state.selected_data_disks
        ]
        if state.selected_parity_disk:
            result.append(DiskSelection(state.selected_parity_disk, DiskRole.PARITY, self.format_disks))
        if state.selected_cache_disk:
            result.append(DiskSelection(state.selected_cache_disk, DiskRole.CACHE, self.format_disks))
        return result

    def summary(self) -> PoolSummary:
        state = self._state
        data = [d for d in (self.inventory.get(i) for i in state.selected_data_disks) if d]
        parity = self.inventory.get(state.selected_parity_disk) if state.selected_parity_disk else None
        cache = self.inventory.get(state.selected_cache_disk) if state.selected_cache_disk else None
        return PoolSummary(
            data_disks=data,
            parity_disk=parity,
            cache_disk=cache,
            total_capacity_bytes=sum(d.size_bytes for d in data),
        )

    async def create_pool(
        self,
        progress: TaskCallback | None = None,
        sync_progress: SyncCallback | None = None,
    ) -> PoolConfiguration:
        """
        Enter Provisioning and run the full-pool pipeline.

        Allowed from Summary, or from Provisioning after a failed run
        (retry). ``is_configuring`` is taken before the first await so that a
        second concurrent call is rejected.
        """
        if self._state.is_configuring:
            raise TransitionError("Provisioning is already running")
        step = self._state.current_step
        if step not in (WizardStep.SUMMARY, WizardStep.PROVISIONING):
            raise TransitionError(f"Cannot start provisioning from {step.name}")

        summary = self.summary()
        validate_pool_submission(summary.data_disks, summary.parity_disk)
        selections = self.selections()

        state = self._state.copy()
        state.is_configuring = True
        state.current_step = WizardStep.PROVISIONING
        state.last_error = None
        self._commit(state)

        try:
            configuration = await self.orchestrator.provision_pool(
                selections, progress=progress, sync_progress=sync_progress
            )
        except (ProvisionError, ValidationError, SessionError) as exc:
            self._fail(str(exc))
            raise
        except PoolForgeError as exc:
            self._fail(str(exc))
            raise ProvisionError("format", str(exc)) from exc
        except asyncio.CancelledError:
            self._fail("Provisioning was cancelled")
            raise
        except Exception as exc:
            self._fail(f"Unexpected error: {exc}")
            raise

        self.configuration = configuration
        done = self._state.copy()
        done.is_configuring = False
        done.current_step = WizardStep.COMPLETED
        self._commit(done)
        self.store.clear()
        logger.info("Wizard completed", pool_mount=configuration.pool_mount_path)
        return configuration

    def _fail(self, message: str) -> None:
        failed = self._state.copy()
        failed.is_configuring = False
        failed.last_error = message
        self._commit(failed)
        logger.error("Wizard provisioning failed", error=message)

    def reset(self) -> WizardState:
        """Explicit reset: clear selections and persisted state."""
        if self._state.is_configuring:
            raise TransitionError("Provisioning is in progress")
        self._state = WizardState()
        self.store.clear()
        for listener in self._listeners:
            try:
                listener(self._state.copy())
            except Exception as e:
                logger.warning("Wizard listener error", error=str(e))
        return self.state

    def to_dict(self) -> dict[str, Any]:
        state = self._state
        return {
            **state.to_dict(),
            "isConfiguring": state.is_configuring,
            "lastError": state.last_error,
        }
