"""
PoolForge CLI Main Entry Point.

Command-line interface for storage pool setup and disk provisioning.
"""

from __future__ import annotations

import asyncio
import json
import sys
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any, TypeVar

import click
import humanize
from rich.console import Console
from rich.panel import Panel
from rich.progress import BarColumn, Progress, SpinnerColumn, TextColumn
from rich.table import Table

from poolforge import __version__
from poolforge.core.config import BackendConfig, PoolForgeConfig, load_config
from poolforge.core.errors import (
    BackendError,
    PoolForgeError,
    ProvisionError,
    SessionError,
    ValidationError,
)
from poolforge.core.models import (
    BlockDevice,
    DiskRole,
    DiskSelection,
    IncrementalAction,
    IncrementalRequest,
    ProvisioningTask,
    SyncOutcome,
    SyncUpdate,
    TaskStatus,
    WizardState,
    WizardStep,
)
from poolforge.core.session import PoolSession
from poolforge.core.validation import eligible_cache_disks, eligible_parity_disks
from poolforge.core.wizard import (
    Advance,
    Back,
    SelectCache,
    SelectParity,
    Skip,
    ToggleDataDisk,
)

console = Console()
T = TypeVar("T")

_STATUS_MARKS = {
    TaskStatus.PENDING: "[dim]·[/dim]",
    TaskStatus.RUNNING: "[yellow]…[/yellow]",
    TaskStatus.DONE: "[green]✓[/green]",
    TaskStatus.ERROR: "[red]✗[/red]",
}


def get_session(ctx: click.Context) -> PoolSession:
    """Get or create session from context."""
    if "session" not in ctx.obj:
        ctx.obj["session"] = PoolSession(config=ctx.obj["config"])
    return ctx.obj["session"]


def run_async(ctx: click.Context, operation: Callable[[PoolSession], Awaitable[T]]) -> T:
    """Run one async operation inside the session and map errors to exit codes."""
    session = get_session(ctx)

    async def runner() -> T:
        async with session:
            return await operation(session)

    try:
        return asyncio.run(runner())
    except SessionError as e:
        console.print(f"[red]{e.reason} - log in again and pass a fresh --session-id[/red]")
        sys.exit(2)
    except ValidationError as e:
        console.print(f"[red]✗ {e}[/red]")
        sys.exit(1)
    except ProvisionError as e:
        console.print(f"[red]✗ Task '{e.task}' failed: {e.message}[/red]")
        sys.exit(1)
    except BackendError as e:
        console.print(f"[red]Backend error: {e.message}[/red]")
        sys.exit(1)


def echo_json(data: Any) -> None:
    click.echo(json.dumps(data, indent=2, default=str))


def print_task(task: ProvisioningTask) -> None:
    prefix = f"{task.device_id}: " if task.device_id else ""
    console.print(f"  {_STATUS_MARKS[task.status]} {prefix}{task.name.value:<9} {task.message}")


def device_table(title: str, devices: list[BlockDevice], ignored: set[str] | None = None) -> Table:
    table = Table(title=title)
    table.add_column("Device", style="cyan")
    table.add_column("Model", style="white")
    table.add_column("Size", style="green")
    table.add_column("Type", style="yellow")
    table.add_column("Temp", style="magenta")
    table.add_column("Data", style="red")
    if ignored is not None:
        table.add_column("Ignored", style="dim")

    for disk in devices:
        row = [
            disk.id,
            disk.model[:30] if disk.model else "Unknown",
            disk.size or humanize.naturalsize(disk.size_bytes, binary=True),
            disk.type.value,
            f"{disk.temperature_c}°C" if disk.temperature_c is not None else "",
            "Yes" if disk.has_existing_data else "",
        ]
        if ignored is not None:
            row.append("Yes" if disk.id in ignored else "")
        table.add_row(*row)
    return table


class SyncProgressBar:
    """Rich progress bar fed by parity sync updates.

    Updates are recorded even while the bar is not shown; entering the
    context starts rendering from the latest one.
    """

    def __init__(self) -> None:
        self.progress = Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            TextColumn("[progress.percentage]{task.percentage:>3.0f}%"),
            console=console,
        )
        self.task = self.progress.add_task("Parity sync...", total=100)

    def __call__(self, update: SyncUpdate) -> None:
        self.progress.update(self.task, completed=update.percent, description=update.status_text)

    def __enter__(self) -> SyncProgressBar:
        self.progress.start()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.progress.stop()


def print_outcome(outcome: SyncOutcome | None) -> None:
    if outcome is None:
        return
    if outcome.success and not outcome.timed_out:
        console.print(f"[green]✓ {outcome.status_text}[/green]")
    elif outcome.timed_out:
        console.print(f"[yellow]{outcome.status_text}[/yellow]")
    else:
        console.print(f"[red]✗ {outcome.error or outcome.status_text}[/red]")


@click.group()
@click.version_option(version=__version__, prog_name="PoolForge")
@click.option(
    "--config",
    "-c",
    type=click.Path(exists=True, path_type=Path),
    help="Path to configuration file",
)
@click.option("--base-url", help="Backend URL (e.g. http://nas.local:3001)")
@click.option("--session-id", envvar="POOLFORGE_SESSION_ID", help="Backend session id")
@click.option("--csrf-token", envvar="POOLFORGE_CSRF_TOKEN", help="Backend CSRF token")
@click.option("--json", "json_output", is_flag=True, help="Output in JSON format")
@click.pass_context
def cli(
    ctx: click.Context,
    config: Path | None,
    base_url: str | None,
    session_id: str | None,
    csrf_token: str | None,
    json_output: bool,
) -> None:
    """
    PoolForge - storage pool setup for a home NAS.

    Builds SnapRAID + MergerFS pools from raw disks and provisions disks
    attached later.
    """
    ctx.ensure_object(dict)

    loaded = PoolForgeConfig.load(config) if config else load_config()
    overrides = {
        key: value
        for key, value in {
            "base_url": base_url,
            "session_id": session_id,
            "csrf_token": csrf_token,
        }.items()
        if value is not None
    }
    if overrides:
        loaded.backend = BackendConfig.model_validate(
            {**loaded.backend.model_dump(), **overrides}
        )

    ctx.obj["config"] = loaded
    ctx.obj["json_output"] = json_output


# ==================== Inventory ====================


@cli.command("list")
@click.pass_context
def list_disks(ctx: click.Context) -> None:
    """List every eligible disk."""
    json_output = ctx.obj.get("json_output", False)

    async def operation(session: PoolSession) -> list[BlockDevice]:
        return await session.inventory.list_devices()

    with console.status("Scanning disks..."):
        devices = run_async(ctx, operation)

    if json_output:
        echo_json([d.to_dict() for d in devices])
        return
    console.print(device_table("Disks", devices))


@cli.command("unconfigured")
@click.pass_context
def list_unconfigured(ctx: click.Context) -> None:
    """List disks that are not part of the pool."""
    json_output = ctx.obj.get("json_output", False)

    async def operation(session: PoolSession) -> tuple[list[BlockDevice], set[str]]:
        devices = await session.inventory.list_unconfigured()
        ignored = await session.inventory.list_ignored()
        return devices, ignored

    devices, ignored = run_async(ctx, operation)

    if json_output:
        echo_json(
            {
                "unconfigured": [d.to_dict() for d in devices],
                "ignored": sorted(ignored),
            }
        )
        return
    if not devices:
        console.print("[green]No unconfigured disks[/green]")
        return
    console.print(device_table("Unconfigured Disks", devices, ignored))


# ==================== Provisioning ====================


@cli.command("create-pool")
@click.option("--data", "data_disks", multiple=True, required=True, help="Data disk id")
@click.option("--parity", help="Parity disk id")
@click.option("--cache", help="Cache disk id")
@click.option("--no-format", is_flag=True, help="Keep existing filesystems")
@click.option("--wait/--no-wait", default=False, help="Wait for the initial parity sync")
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation")
@click.pass_context
def create_pool(
    ctx: click.Context,
    data_disks: tuple[str, ...],
    parity: str | None,
    cache: str | None,
    no_format: bool,
    wait: bool,
    yes: bool,
) -> None:
    """Create the storage pool from raw disks."""
    json_output = ctx.obj.get("json_output", False)
    fmt = not no_format

    selections = [DiskSelection(d, DiskRole.DATA, fmt) for d in data_disks]
    if parity:
        selections.append(DiskSelection(parity, DiskRole.PARITY, fmt))
    if cache:
        selections.append(DiskSelection(cache, DiskRole.CACHE, fmt))

    if fmt and not yes:
        ids = ", ".join(s.device_id for s in selections)
        click.confirm(f"All data on {ids} will be erased. Continue?", abort=True)

    async def operation(session: PoolSession) -> dict[str, Any]:
        await session.inventory.list_devices()
        bar = None if json_output else SyncProgressBar()
        configuration = await session.orchestrator.provision_pool(
            selections,
            progress=None if json_output else print_task,
            sync_progress=bar,
        )
        outcome = None
        if wait and configuration.parity_disk:
            if bar is None:
                outcome = await session.orchestrator.wait_for_sync()
            else:
                with bar:
                    outcome = await session.orchestrator.wait_for_sync()
        return {
            "configuration": configuration,
            "warnings": list(session.orchestrator.warnings),
            "sync": outcome,
        }

    result = run_async(ctx, operation)
    configuration = result["configuration"]

    if json_output:
        data = configuration.to_dict()
        data["warnings"] = result["warnings"]
        if result["sync"] is not None:
            data["sync"] = vars(result["sync"])
        echo_json(data)
        return

    console.print(
        Panel(
            f"""[cyan]Pool mount:[/cyan] {configuration.pool_mount_path}
[cyan]Data disks:[/cyan] {", ".join(configuration.data_disks)}
[cyan]Parity disk:[/cyan] {configuration.parity_disk or "(none - no redundancy)"}
[cyan]Cache disk:[/cyan] {configuration.cache_disk or "(none)"}""",
            title="Storage Pool Created",
        )
    )
    for warning in result["warnings"]:
        console.print(f"[yellow]⚠ {warning}[/yellow]")
    print_outcome(result["sync"])


_ACTIONS = {
    "data": IncrementalAction.POOL_DATA,
    "cache": IncrementalAction.POOL_CACHE,
    "standalone": IncrementalAction.STANDALONE,
}


@cli.command("add-disk")
@click.argument("devices", nargs=-1, required=True)
@click.option(
    "--as",
    "action",
    type=click.Choice(sorted(_ACTIONS)),
    default="data",
    show_default=True,
    help="Role of the new disk",
)
@click.option("--name", help="Mount name for standalone disks")
@click.option("--no-format", is_flag=True, help="Keep the existing filesystem")
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation")
@click.pass_context
def add_disk(
    ctx: click.Context,
    devices: tuple[str, ...],
    action: str,
    name: str | None,
    no_format: bool,
    yes: bool,
) -> None:
    """Provision newly attached disks, one after another."""
    json_output = ctx.obj.get("json_output", False)

    if not no_format and not yes:
        click.confirm(f"All data on {', '.join(devices)} will be erased. Continue?", abort=True)

    async def operation(session: PoolSession) -> Any:
        unconfigured = {d.id: d for d in await session.inventory.list_unconfigured()}
        requests = []
        for device_id in devices:
            disk = unconfigured.get(device_id)
            if disk is None:
                raise ValidationError(f"{device_id} is not an unconfigured disk")
            requests.append(
                IncrementalRequest(disk, _ACTIONS[action], format=not no_format, name=name)
            )
        return await session.orchestrator.provision_batch(
            requests, progress=None if json_output else print_task
        )

    summary = run_async(ctx, operation)

    if json_output:
        echo_json(
            {
                "success_count": summary.success_count,
                "fail_count": summary.fail_count,
                "results": [vars(r) for r in summary.results],
            }
        )
    elif summary.fail_count == 0:
        console.print(f"[green]✓ {summary.success_count} disk(s) provisioned[/green]")
    else:
        console.print(
            f"[yellow]{summary.success_count} disk(s) provisioned, "
            f"{summary.fail_count} failed: {', '.join(summary.failed_disks)}[/yellow]"
        )

    if summary.fail_count:
        sys.exit(1)


@cli.command("remove-disk")
@click.argument("device")
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation")
@click.pass_context
def remove_disk(ctx: click.Context, device: str, yes: bool) -> None:
    """Detach a disk from the pool."""
    if not yes:
        click.confirm(f"Remove {device} from the pool?", abort=True)

    async def operation(session: PoolSession) -> str:
        return await session.orchestrator.remove_from_pool(device)

    message = run_async(ctx, operation)
    console.print(f"[green]✓ {message}[/green]")


@cli.command("ignore")
@click.argument("device")
@click.pass_context
def ignore_disk(ctx: click.Context, device: str) -> None:
    """Stop notifying about a disk."""

    async def operation(session: PoolSession) -> str:
        return await session.backend.ignore_device(device)

    console.print(f"[green]✓ {run_async(ctx, operation)}[/green]")


@cli.command("unignore")
@click.argument("device")
@click.pass_context
def unignore_disk(ctx: click.Context, device: str) -> None:
    """Resume notifying about a disk."""

    async def operation(session: PoolSession) -> str:
        return await session.backend.unignore_device(device)

    console.print(f"[green]✓ {run_async(ctx, operation)}[/green]")


# ==================== Sync ====================


@cli.command("sync")
@click.pass_context
def sync(ctx: click.Context) -> None:
    """Run a parity sync and follow its progress."""
    json_output = ctx.obj.get("json_output", False)

    async def operation(session: PoolSession) -> SyncOutcome:
        if json_output:
            return await session.orchestrator.run_sync()
        with SyncProgressBar() as bar:
            return await session.orchestrator.run_sync(bar)

    outcome = run_async(ctx, operation)
    if json_output:
        echo_json(vars(outcome) if outcome else None)
        return
    print_outcome(outcome)
    if outcome is not None and not outcome.success:
        sys.exit(1)


# ==================== Detection ====================


@cli.command("watch")
@click.option("--once", is_flag=True, help="Run a single detection pass and exit")
@click.pass_context
def watch(ctx: click.Context, once: bool) -> None:
    """Watch for newly attached disks."""
    json_output = ctx.obj.get("json_output", False)

    def notify(disks: list[BlockDevice]) -> None:
        if json_output:
            echo_json({"new_disks": [d.to_dict() for d in disks]})
        else:
            console.print(device_table("New Disks Detected", disks))
            console.print(
                "Provision them with [cyan]poolforge add-disk[/cyan] "
                "or dismiss with [cyan]poolforge ignore[/cyan]"
            )

    def dismiss() -> None:
        if not json_output:
            console.print("[dim]New disk notification cleared[/dim]")

    async def operation(session: PoolSession) -> list[BlockDevice]:
        session.watcher.on_notify = notify
        session.watcher.on_dismiss = dismiss
        if once:
            return await session.watcher.poll()

        session.start_polling()
        if not json_output:
            console.print("[cyan]Watching for new disks (Ctrl+C to stop)...[/cyan]")
        while not session.expired:
            await asyncio.sleep(1)
        raise SessionError()

    new_disks = run_async(ctx, operation)
    if once and not new_disks and not json_output:
        console.print("[green]No new disks[/green]")


# ==================== Wizard ====================


def _prompt_ids(text: str, default: str = "") -> str:
    return click.prompt(text, default=default, show_default=bool(default)).strip()


def _render_state(state: WizardState) -> None:
    step = state.current_step
    title = step.name.replace("_", " ").title()
    console.print(f"\n[bold]Step {int(step)}/{len(WizardStep)}: {title}[/bold]")
    if state.last_error:
        console.print(f"[red]Last attempt failed: {state.last_error}[/red]")


async def _wizard_flow(session: PoolSession) -> Any:
    wizard = session.wizard
    state = await wizard.start()
    if state.current_step > WizardStep.DETECTING:
        console.print(f"[yellow]Resuming setup at step {int(state.current_step)}[/yellow]")

    while state.current_step < WizardStep.PROVISIONING or (
        state.current_step == WizardStep.PROVISIONING and not state.is_configuring
    ):
        _render_state(state)
        devices = wizard.devices
        try:
            if state.current_step == WizardStep.DETECTING:
                console.print(device_table("Detected Disks", devices))
                state = wizard.dispatch(Advance())

            elif state.current_step == WizardStep.SELECT_DATA:
                console.print(device_table("Available Disks", devices))
                answer = _prompt_ids(
                    "Data disks (comma separated)", ",".join(state.selected_data_disks)
                )
                wanted = [d.strip() for d in answer.split(",") if d.strip()]
                for device_id in set(state.selected_data_disks) ^ set(wanted):
                    state = wizard.dispatch(ToggleDataDisk(device_id))
                state = wizard.dispatch(Advance())

            elif state.current_step == WizardStep.SELECT_PARITY:
                eligible = eligible_parity_disks(devices, state.selected_data_disks)
                console.print(device_table("Eligible Parity Disks", eligible))
                answer = _prompt_ids(
                    "Parity disk (empty to skip, 'b' to go back)",
                    state.selected_parity_disk or "",
                )
                if answer == "b":
                    state = wizard.dispatch(Back())
                elif not answer:
                    console.print("[yellow]⚠ No parity: data will not be protected[/yellow]")
                    state = wizard.dispatch(Skip())
                else:
                    wizard.dispatch(SelectParity(answer))
                    state = wizard.dispatch(Advance())

            elif state.current_step == WizardStep.SELECT_CACHE:
                eligible = eligible_cache_disks(
                    devices,
                    state.selected_data_disks,
                    state.selected_parity_disk,
                    fast_only=session.config.wizard.cache_requires_fast_disk,
                )
                console.print(device_table("Eligible Cache Disks", eligible))
                answer = _prompt_ids(
                    "Cache disk (empty to skip, 'b' to go back)",
                    state.selected_cache_disk or "",
                )
                if answer == "b":
                    state = wizard.dispatch(Back())
                elif not answer:
                    state = wizard.dispatch(Skip())
                else:
                    wizard.dispatch(SelectCache(answer))
                    state = wizard.dispatch(Advance())

            else:
                summary = wizard.summary()
                parity = summary.parity_disk
                cache = summary.cache_disk
                data = ", ".join(d.display_name for d in summary.data_disks)
                console.print(
                    Panel(
                        f"""[cyan]Data disks:[/cyan] {data}
[cyan]Parity disk:[/cyan] {parity.display_name if parity else "(none - no redundancy)"}
[cyan]Cache disk:[/cyan] {cache.display_name if cache else "(none)"}
[cyan]Usable capacity:[/cyan] {summary.total_capacity}""",
                        title="Pool Summary",
                    )
                )
                choice = click.prompt(
                    "Create the pool? All data on these disks will be erased",
                    type=click.Choice(["yes", "back", "quit"]),
                    default="quit",
                )
                if choice == "back":
                    if state.current_step == WizardStep.SUMMARY:
                        state = wizard.dispatch(Back())
                    continue
                if choice == "quit":
                    return None
                bar = SyncProgressBar()
                try:
                    configuration = await wizard.create_pool(
                        progress=print_task, sync_progress=bar
                    )
                except ProvisionError as e:
                    console.print(f"[red]✗ {e}[/red]")
                    state = wizard.state
                    continue
                if session.orchestrator.monitor is not None and click.confirm(
                    "Follow the initial parity sync?", default=True
                ):
                    with bar:
                        print_outcome(await session.orchestrator.wait_for_sync())
                return configuration

        except ValidationError as e:
            console.print(f"[red]✗ {e}[/red]")
            state = wizard.state

    return None


@cli.command("wizard")
@click.pass_context
def wizard(ctx: click.Context) -> None:
    """Interactive pool setup wizard (resumable)."""
    configuration = run_async(ctx, _wizard_flow)
    if configuration is None:
        console.print("[yellow]Setup paused - run 'poolforge wizard' to resume[/yellow]")
        return

    session = get_session(ctx)
    console.print(
        Panel(
            f"""[cyan]Pool mount:[/cyan] {configuration.pool_mount_path}
[cyan]Data disks:[/cyan] {", ".join(configuration.data_disks)}
[cyan]Parity disk:[/cyan] {configuration.parity_disk or "(none)"}
[cyan]Cache disk:[/cyan] {configuration.cache_disk or "(none)"}""",
            title="Storage Pool Created",
        )
    )
    for warning in session.orchestrator.warnings:
        console.print(f"[yellow]⚠ {warning}[/yellow]")


@cli.command("reset-wizard")
@click.pass_context
def reset_wizard(ctx: click.Context) -> None:
    """Forget saved wizard progress."""
    session = get_session(ctx)
    session.wizard.reset()
    console.print("[green]✓ Wizard state cleared[/green]")


def main() -> None:
    """Main entry point."""
    try:
        cli(obj={})
    except KeyboardInterrupt:
        console.print("\n[yellow]Operation cancelled[/yellow]")
        sys.exit(130)
    except PoolForgeError as e:
        console.print(f"[red]Error: {e}[/red]")
        sys.exit(1)


if __name__ == "__main__":
    main()
