"""
Tests for poolforge.core.wizard module.
"""

import asyncio
import json
from pathlib import Path

import pytest

from conftest import FakeBackend
from poolforge.core.config import PoolForgeConfig
from poolforge.core.errors import BackendError, ProvisionError, TransitionError, ValidationError
from poolforge.core.inventory import DiskInventory
from poolforge.core.models import DiskRole, WizardState, WizardStep
from poolforge.core.orchestrator import ProvisioningOrchestrator
from poolforge.core.wizard import (
    Advance,
    Back,
    Reset,
    SelectCache,
    SelectParity,
    Skip,
    ToggleDataDisk,
    WizardStateMachine,
    WizardStateStore,
)


def build_wizard(backend: FakeBackend, config: PoolForgeConfig) -> WizardStateMachine:
    inventory = DiskInventory(backend)
    return WizardStateMachine(
        inventory,
        ProvisioningOrchestrator(backend, inventory, config),
        WizardStateStore(config.wizard.state_file),
        cache_requires_fast_disk=config.wizard.cache_requires_fast_disk,
    )


@pytest.fixture
def wizard(fake_backend: FakeBackend, sample_config: PoolForgeConfig) -> WizardStateMachine:
    machine = build_wizard(fake_backend, sample_config)
    asyncio.run(machine.start())
    return machine


def walk_to_summary(wizard: WizardStateMachine) -> WizardState:
    wizard.dispatch(Advance())
    wizard.dispatch(ToggleDataDisk("sda"))
    wizard.dispatch(ToggleDataDisk("sdd"))
    wizard.dispatch(Advance())
    wizard.dispatch(SelectParity("sdb"))
    wizard.dispatch(Advance())
    wizard.dispatch(SelectCache("nvme0n1"))
    return wizard.dispatch(Advance())


def roles(state: WizardState) -> list[str]:
    assigned = list(state.selected_data_disks)
    assigned += [d for d in (state.selected_parity_disk, state.selected_cache_disk) if d]
    return assigned


class TestTransitions:
    """Tests for step transitions."""

    def test_starts_detecting(self, wizard: WizardStateMachine) -> None:
        assert wizard.state.current_step == WizardStep.DETECTING

    def test_detecting_needs_devices(self, sample_config: PoolForgeConfig) -> None:
        machine = build_wizard(FakeBackend([]), sample_config)
        asyncio.run(machine.start())
        with pytest.raises(ValidationError):
            machine.dispatch(Advance())

    def test_data_step_needs_a_disk(self, wizard: WizardStateMachine) -> None:
        wizard.dispatch(Advance())
        with pytest.raises(ValidationError):
            wizard.dispatch(Advance())
        assert wizard.state.current_step == WizardStep.SELECT_DATA

    def test_full_walk(self, wizard: WizardStateMachine) -> None:
        state = walk_to_summary(wizard)
        assert state.current_step == WizardStep.SUMMARY
        assert state.selected_data_disks == ["sda", "sdd"]
        assert state.selected_parity_disk == "sdb"
        assert state.selected_cache_disk == "nvme0n1"

    def test_back(self, wizard: WizardStateMachine) -> None:
        walk_to_summary(wizard)
        assert wizard.dispatch(Back()).current_step == WizardStep.SELECT_CACHE
        assert wizard.dispatch(Back()).current_step == WizardStep.SELECT_PARITY

    def test_back_from_detecting_rejected(self, wizard: WizardStateMachine) -> None:
        with pytest.raises(TransitionError):
            wizard.dispatch(Back())

    def test_skip_parity_clears_selection(self, wizard: WizardStateMachine) -> None:
        wizard.dispatch(Advance())
        wizard.dispatch(ToggleDataDisk("sda"))
        wizard.dispatch(Advance())
        wizard.dispatch(SelectParity("sdb"))
        state = wizard.dispatch(Skip())
        assert state.current_step == WizardStep.SELECT_CACHE
        assert state.selected_parity_disk is None

    def test_skip_only_on_optional_steps(self, wizard: WizardStateMachine) -> None:
        wizard.dispatch(Advance())
        with pytest.raises(TransitionError):
            wizard.dispatch(Skip())

    def test_advance_from_summary_rejected(self, wizard: WizardStateMachine) -> None:
        walk_to_summary(wizard)
        with pytest.raises(TransitionError):
            wizard.dispatch(Advance())

    def test_dispatch_returns_snapshot(self, wizard: WizardStateMachine) -> None:
        wizard.dispatch(Advance())
        state = wizard.dispatch(ToggleDataDisk("sda"))
        state.selected_data_disks.append("sdb")
        assert wizard.state.selected_data_disks == ["sda"]

    def test_unknown_device_rejected(self, wizard: WizardStateMachine) -> None:
        wizard.dispatch(Advance())
        with pytest.raises(ValidationError):
            wizard.dispatch(ToggleDataDisk("sdz"))

    def test_listener_sees_every_change(self, wizard: WizardStateMachine) -> None:
        seen: list[WizardState] = []
        wizard.add_listener(seen.append)
        wizard.dispatch(Advance())
        wizard.dispatch(ToggleDataDisk("sda"))
        assert [s.current_step for s in seen] == [WizardStep.SELECT_DATA, WizardStep.SELECT_DATA]
        assert seen[-1].selected_data_disks == ["sda"]


class TestRoleExclusivity:
    """A device never holds two roles at once."""

    def test_undersized_parity_rejected_without_change(self, wizard: WizardStateMachine) -> None:
        wizard.dispatch(Advance())
        wizard.dispatch(ToggleDataDisk("sda"))
        wizard.dispatch(ToggleDataDisk("sdd"))
        wizard.dispatch(Advance())

        with pytest.raises(ValidationError):
            wizard.dispatch(SelectParity("sda"))

        state = wizard.state
        assert state.selected_data_disks == ["sda", "sdd"]
        assert state.selected_parity_disk is None

    def test_cache_takes_device_from_parity(self, wizard: WizardStateMachine) -> None:
        wizard.dispatch(Advance())
        wizard.dispatch(ToggleDataDisk("sda"))
        wizard.dispatch(Advance())
        wizard.dispatch(SelectParity("sdb"))
        wizard.dispatch(Advance())

        state = wizard.dispatch(SelectCache("sdb"))

        assert state.selected_cache_disk == "sdb"
        assert state.selected_parity_disk is None
        assert state.role_of("sdb") == DiskRole.CACHE

    def test_data_takes_device_from_parity(self, wizard: WizardStateMachine) -> None:
        wizard.dispatch(Advance())
        wizard.dispatch(ToggleDataDisk("sda"))
        wizard.dispatch(SelectParity("sdb"))
        state = wizard.dispatch(ToggleDataDisk("sdb"))
        assert state.selected_data_disks == ["sda", "sdb"]
        assert state.selected_parity_disk is None

    def test_larger_data_disk_clears_parity(self, wizard: WizardStateMachine) -> None:
        wizard.dispatch(Advance())
        wizard.dispatch(ToggleDataDisk("sda"))
        wizard.dispatch(SelectParity("sdd"))
        # 6 TB data disk outgrows the 5 TB parity disk
        state = wizard.dispatch(ToggleDataDisk("sdb"))
        assert state.selected_parity_disk is None

    def test_every_sequence_keeps_single_roles(self, wizard: WizardStateMachine) -> None:
        wizard.dispatch(Advance())
        events = [
            ToggleDataDisk("sda"),
            SelectCache("sda"),
            ToggleDataDisk("sda"),
            SelectParity("sdb"),
            SelectCache("sdb"),
            ToggleDataDisk("sdb"),
            SelectParity("sdc"),
            SelectCache("nvme0n1"),
            ToggleDataDisk("nvme0n1"),
        ]
        for event in events:
            state = wizard.dispatch(event)
            assigned = roles(state)
            assert len(assigned) == len(set(assigned))

    def test_fast_only_cache(self, fake_backend: FakeBackend, sample_config: PoolForgeConfig) -> None:
        sample_config.wizard.cache_requires_fast_disk = True
        machine = build_wizard(fake_backend, sample_config)
        asyncio.run(machine.start())
        machine.dispatch(Advance())
        machine.dispatch(ToggleDataDisk("sda"))
        with pytest.raises(ValidationError):
            machine.dispatch(SelectCache("sdc"))
        assert machine.dispatch(SelectCache("nvme0n1")).selected_cache_disk == "nvme0n1"


class TestPersistence:
    """Tests for wizard state persistence and resumption."""

    def test_state_written_after_dispatch(
        self, wizard: WizardStateMachine, sample_config: PoolForgeConfig
    ) -> None:
        wizard.dispatch(Advance())
        wizard.dispatch(ToggleDataDisk("sda"))
        data = json.loads(Path(sample_config.wizard.state_file).read_text())
        assert data["currentStep"] == 2
        assert data["selectedDataDisks"] == ["sda"]
        assert "isConfiguring" not in data

    def test_resume_is_idempotent(
        self,
        wizard: WizardStateMachine,
        fake_backend: FakeBackend,
        sample_config: PoolForgeConfig,
    ) -> None:
        wizard.dispatch(Advance())
        wizard.dispatch(ToggleDataDisk("sda"))
        wizard.dispatch(ToggleDataDisk("sdb"))
        wizard.dispatch(Advance())

        resumed = build_wizard(fake_backend, sample_config)
        state = asyncio.run(resumed.start())

        assert state.current_step == WizardStep.SELECT_PARITY
        assert state.selected_data_disks == ["sda", "sdb"]

    def test_resume_drops_missing_devices(
        self,
        wizard: WizardStateMachine,
        fake_backend: FakeBackend,
        sample_config: PoolForgeConfig,
    ) -> None:
        walk_to_summary(wizard)
        fake_backend.devices = [d for d in fake_backend.devices if d.id not in ("sdd", "nvme0n1")]

        state = asyncio.run(build_wizard(fake_backend, sample_config).start())

        assert state.current_step == WizardStep.SUMMARY
        assert state.selected_data_disks == ["sda"]
        assert state.selected_parity_disk == "sdb"
        assert state.selected_cache_disk is None

    def test_resume_from_provisioning_lands_on_summary(
        self, fake_backend: FakeBackend, sample_config: PoolForgeConfig
    ) -> None:
        store = WizardStateStore(sample_config.wizard.state_file)
        store.save(WizardState(current_step=WizardStep.PROVISIONING, selected_data_disks=["sda"]))

        state = asyncio.run(build_wizard(fake_backend, sample_config).start())
        assert state.current_step == WizardStep.SUMMARY
        assert not state.is_configuring

    def test_corrupt_state_file_starts_fresh(
        self, fake_backend: FakeBackend, sample_config: PoolForgeConfig
    ) -> None:
        sample_config.wizard.state_file.write_text("{not json")
        state = asyncio.run(build_wizard(fake_backend, sample_config).start())
        assert state.current_step == WizardStep.DETECTING

    def test_reset_clears_everything(
        self, wizard: WizardStateMachine, sample_config: PoolForgeConfig
    ) -> None:
        walk_to_summary(wizard)
        state = wizard.dispatch(Reset())
        assert state.current_step == WizardStep.DETECTING
        assert roles(state) == []
        assert not sample_config.wizard.state_file.exists()


class TestCreatePool:
    """Tests for the provisioning step."""

    def test_summary(self, wizard: WizardStateMachine) -> None:
        walk_to_summary(wizard)
        summary = wizard.summary()
        assert [d.id for d in summary.data_disks] == ["sda", "sdd"]
        assert summary.parity_disk is not None and summary.parity_disk.id == "sdb"
        assert summary.protected
        assert summary.total_capacity_bytes == sum(d.size_bytes for d in summary.data_disks)
        assert summary.total_capacity == "9.0 TiB"

    def test_success_completes_and_clears_state(
        self,
        wizard: WizardStateMachine,
        fake_backend: FakeBackend,
        sample_config: PoolForgeConfig,
    ) -> None:
        walk_to_summary(wizard)
        configuration = asyncio.run(wizard.create_pool())

        assert wizard.state.current_step == WizardStep.COMPLETED
        assert not wizard.state.is_configuring
        assert configuration.parity_disk == "sdb"
        assert not sample_config.wizard.state_file.exists()
        payload = fake_backend.called("configure_pool")[0][1]
        assert [p["role"] for p in payload] == ["data", "data", "parity", "cache"]

    def test_failure_allows_retry(
        self, wizard: WizardStateMachine, fake_backend: FakeBackend
    ) -> None:
        walk_to_summary(wizard)
        fake_backend.fail("configure_pool", BackendError("mergerfs not installed"))

        with pytest.raises(ProvisionError):
            asyncio.run(wizard.create_pool())

        state = wizard.state
        assert state.current_step == WizardStep.PROVISIONING
        assert not state.is_configuring
        assert state.last_error is not None and "mergerfs" in state.last_error

        fake_backend.failures.clear()
        asyncio.run(wizard.create_pool())
        assert wizard.state.current_step == WizardStep.COMPLETED

    def test_only_from_summary(self, wizard: WizardStateMachine) -> None:
        wizard.dispatch(Advance())
        with pytest.raises(TransitionError):
            asyncio.run(wizard.create_pool())

    def test_single_run_in_flight(self, wizard: WizardStateMachine) -> None:
        walk_to_summary(wizard)

        async def run() -> list[object]:
            return await asyncio.gather(
                wizard.create_pool(), wizard.create_pool(), return_exceptions=True
            )

        results = asyncio.run(run())
        assert sum(isinstance(r, TransitionError) for r in results) == 1
        assert wizard.state.current_step == WizardStep.COMPLETED

    def test_selections_locked_while_configuring(self, wizard: WizardStateMachine) -> None:
        walk_to_summary(wizard)

        async def run() -> None:
            task = asyncio.ensure_future(wizard.create_pool())
            await asyncio.sleep(0)
            with pytest.raises(TransitionError):
                wizard.dispatch(ToggleDataDisk("sdc"))
            await task

        asyncio.run(run())

    def test_cancelled_run_releases_lock(
        self, wizard: WizardStateMachine, fake_backend: FakeBackend
    ) -> None:
        walk_to_summary(wizard)

        async def slow_configure(selections: object) -> dict[str, object]:
            await asyncio.sleep(10)
            return {"success": True}

        fake_backend.configure_pool = slow_configure  # type: ignore[method-assign]

        async def run() -> None:
            task = asyncio.ensure_future(wizard.create_pool())
            await asyncio.sleep(0.01)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

        asyncio.run(run())

        state = wizard.state
        assert not state.is_configuring
        assert state.current_step == WizardStep.PROVISIONING
        assert state.last_error == "Provisioning was cancelled"
        assert wizard.reset().current_step == WizardStep.DETECTING

    def test_unexpected_error_releases_lock(
        self, wizard: WizardStateMachine, fake_backend: FakeBackend
    ) -> None:
        walk_to_summary(wizard)
        fake_backend.fail("configure_pool", ValueError("bad response body"))

        with pytest.raises(ValueError):
            asyncio.run(wizard.create_pool())

        state = wizard.state
        assert not state.is_configuring
        assert state.last_error is not None and "bad response body" in state.last_error
        assert wizard.reset().current_step == WizardStep.DETECTING
