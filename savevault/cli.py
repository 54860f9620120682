"""
CLI commands for savevault.

Provides the `savevault` command-line interface for watching save slots,
browsing and restoring versions, and managing configuration.
"""

import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any, Awaitable, Callable, List, Optional, Tuple

import click
from rich.console import Console
from rich.table import Table
from rich.panel import Panel

from config.loader import ConfigurationLoader
from core.errors import ConfigurationError, SaveVaultError
from core.models.config import EngineSettings
from core.models.versions import SaveSlot
from core.storage.utils import format_size
from core.sync.deterministic import DeterministicSlotId
from core.sync.engine import VersioningEngine
from core.sync.events import (
    CaptureFailed,
    LifecycleEvent,
    SlotAvailable,
    SlotContentAbsent,
    SlotUnavailable,
    VersionCreated,
    VersionRestored,
)

from . import __version__

console = Console()

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def configure_logging(settings: EngineSettings) -> Optional[Path]:
    """
    Configure root logging from settings.

    Returns:
        The log file path when file logging is enabled
    """
    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    log_file = settings.get_log_file()
    if log_file:
        handlers.append(logging.FileHandler(log_file, encoding='utf-8'))

    logging.basicConfig(
        level=getattr(logging, settings.log_level),
        format=LOG_FORMAT,
        handlers=handlers,
        force=True
    )
    return log_file


@click.group()
@click.version_option(version=__version__, prog_name="savevault")
@click.option(
    '--data-dir',
    type=click.Path(file_okay=False, path_type=Path),
    envvar='SAVEVAULT_DATA_DIR',
    help='Directory holding the database, blobs and config (default: ~/.savevault)'
)
@click.pass_context
def main(ctx: click.Context, data_dir: Optional[Path]):
    """
    SaveVault CLI.

    Keep a versioned, compressed history of emulator save files.
    """
    ctx.ensure_object(dict)
    ctx.obj['data_dir'] = data_dir


def _load_settings(ctx: click.Context, **overrides: Any) -> EngineSettings:
    loader = ConfigurationLoader(ctx.obj.get('data_dir'))
    try:
        settings = loader.load(**overrides)
    except ConfigurationError as e:
        console.print(f"[red]❌ {e}[/red]")
        sys.exit(2)
    configure_logging(settings)
    return settings


def _run(settings: EngineSettings, operation: Callable[[VersioningEngine], Awaitable[Any]]) -> Any:
    """Run one engine operation with a started engine, exiting 1 on known failures"""
    async def runner():
        async with VersioningEngine(settings) as engine:
            return await operation(engine)

    try:
        return asyncio.run(runner())
    except SaveVaultError as e:
        console.print(f"[red]❌ {e}[/red]")
        sys.exit(1)


async def _resolve_slot(engine: VersioningEngine, target: str) -> SaveSlot:
    """Find a slot by id, id prefix, or root path"""
    slots = await engine.list_slots()

    by_id = [slot for slot in slots if slot.id.startswith(target)]
    if len(by_id) == 1:
        return by_id[0]

    path = DeterministicSlotId.normalize_path(target)
    by_path = [slot for slot in slots if slot.root_path == path]
    if len(by_path) == 1:
        return by_path[0]
    if len(by_path) > 1:
        raise click.ClickException(
            f"{path} is registered for several emulators; use a slot id: "
            + ", ".join(f"{slot.id} ({slot.emulator_tag})" for slot in by_path)
        )
    raise click.ClickException(f"No slot matches {target}")


def format_event(event: LifecycleEvent) -> str:
    """One-line rich markup for a lifecycle event"""
    if isinstance(event, VersionCreated):
        evicted = f", evicted {event.evicted_version_ids}" if event.evicted_version_ids else ""
        return (
            f"[green]💾 v{event.version_id}[/green] of [cyan]{event.slot_id}[/cyan] "
            f"({format_size(event.size_original)} → {format_size(event.size_compressed)}{evicted})"
        )
    if isinstance(event, VersionRestored):
        return f"[blue]⏪ Restored v{event.version_id}[/blue] of [cyan]{event.slot_id}[/cyan]"
    if isinstance(event, CaptureFailed):
        return f"[red]❌ Capture failed[/red] for [cyan]{event.slot_id}[/cyan] ({event.reason}): {event.detail}"
    if isinstance(event, SlotUnavailable):
        return f"[yellow]⚠️  {event.path} unavailable[/yellow] ([cyan]{event.slot_id}[/cyan])"
    if isinstance(event, SlotAvailable):
        return f"[green]✅ {event.path} available again[/green] ([cyan]{event.slot_id}[/cyan])"
    if isinstance(event, SlotContentAbsent):
        return f"[dim]{event.path} has no content ([cyan]{event.slot_id}[/cyan])[/dim]"
    return str(event)


@main.command()
@click.argument('paths', nargs=-1, type=click.Path(path_type=Path))
@click.option('--emulator', '-e', help='Emulator tag for the given paths (e.g. pcsx2)')
@click.option('--capture-now', is_flag=True, help='Evaluate current content on registration')
@click.pass_context
def watch(ctx: click.Context, paths: Tuple[Path, ...], emulator: Optional[str], capture_now: bool):
    """Watch save files or directories until interrupted.

    Without PATHS, every slot already known to the store is watched.
    """
    if paths and not emulator:
        raise click.UsageError("--emulator is required when paths are given")

    settings = _load_settings(ctx, capture_on_register=True if capture_now else None)

    async def run_watch(engine: VersioningEngine) -> None:
        subscription = engine.bus.subscribe()

        if paths:
            for path in paths:
                slot = await engine.register_slot(path, emulator)
                console.print(f"[blue]👀 Watching {slot.root_path}[/blue] [dim]({slot.id}, {slot.kind.value})[/dim]")
        else:
            for slot in await engine.list_slots():
                await engine.register_slot(slot.root_path, slot.emulator_tag, slot.kind)
                console.print(f"[blue]👀 Watching {slot.root_path}[/blue] [dim]({slot.id}, {slot.kind.value})[/dim]")

        if not engine.runtimes:
            console.print("[yellow]⚠️  Nothing to watch. Pass save paths with --emulator.[/yellow]")
            return

        console.print("[dim]Press Ctrl+C to stop[/dim]")
        async for event in subscription:
            console.print(format_event(event))

    try:
        _run(settings, run_watch)
    except KeyboardInterrupt:
        console.print("\n[yellow]Stopped watching.[/yellow]")


@main.command()
@click.pass_context
def status(ctx: click.Context):
    """Show all known save slots."""
    settings = _load_settings(ctx)

    async def collect(engine: VersioningEngine):
        slots = await engine.list_slots()
        statuses = [await engine.get_slot_status(slot.id) for slot in slots]
        stats = await engine.store.get_stats()
        return statuses, stats

    statuses, stats = _run(settings, collect)

    if not statuses:
        console.print("[yellow]No save slots registered yet. Run 'savevault watch PATH --emulator TAG'.[/yellow]")
        return

    table = Table(title="SaveVault Slots")
    table.add_column("Slot", style="cyan", no_wrap=True)
    table.add_column("Emulator", style="magenta")
    table.add_column("Path", style="white")
    table.add_column("Kind", style="dim")
    table.add_column("Active", justify="right")
    table.add_column("Versions", justify="right")
    table.add_column("Last capture", style="dim")

    for slot_status in statuses:
        table.add_row(
            slot_status.slot_id,
            slot_status.emulator_tag,
            str(slot_status.root_path),
            slot_status.kind.value,
            f"v{slot_status.active_version.version_id}" if slot_status.active_version else "-",
            str(slot_status.version_count),
            slot_status.last_capture_time.strftime("%Y-%m-%d %H:%M:%S") if slot_status.last_capture_time else "-",
        )

    console.print(table)
    console.print(
        f"[dim]{stats['versions']} versions, {format_size(stats['bytes_original'])} "
        f"stored as {format_size(stats['bytes_compressed'])}[/dim]"
    )


@main.command()
@click.argument('target')
@click.pass_context
def versions(ctx: click.Context, target: str):
    """List stored versions of a slot (TARGET is a slot id or save path)."""
    settings = _load_settings(ctx)

    async def collect(engine: VersioningEngine):
        slot = await _resolve_slot(engine, target)
        return slot, await engine.list_versions(slot.id)

    slot, slot_versions = _run(settings, collect)

    table = Table(title=f"Versions of {slot.root_path} ({slot.emulator_tag})")
    table.add_column("Version", justify="right", style="cyan")
    table.add_column("Created", style="white")
    table.add_column("Size", justify="right")
    table.add_column("Stored", justify="right")
    table.add_column("Saved", justify="right", style="green")
    table.add_column("Hash", style="dim")

    for version in slot_versions:
        marker = " *" if version.version_id == slot.active_version_id else ""
        table.add_row(
            f"v{version.version_id}{marker}",
            version.created_at.strftime("%Y-%m-%d %H:%M:%S"),
            format_size(version.size_original),
            format_size(version.size_compressed),
            f"{version.space_saved_percent:.0f}%",
            version.content_hash[:12],
        )

    console.print(table)
    if not slot_versions:
        console.print("[yellow]No versions stored yet.[/yellow]")


@main.command()
@click.argument('target')
@click.argument('version_id', type=int)
@click.option('--yes', '-y', is_flag=True, help='Do not ask for confirmation')
@click.pass_context
def restore(ctx: click.Context, target: str, version_id: int, yes: bool):
    """Write VERSION_ID back to the slot's save location."""
    settings = _load_settings(ctx)

    async def do_restore(engine: VersioningEngine):
        slot = await _resolve_slot(engine, target)
        if not yes and not click.confirm(f"Overwrite {slot.root_path} with v{version_id}?"):
            raise click.Abort()
        return slot, await engine.restore_version(slot.id, version_id)

    slot, version = _run(settings, do_restore)
    console.print(f"[green]✅ Restored v{version.version_id} to {slot.root_path}[/green]")


@main.command()
@click.argument('target')
@click.argument('version_id', type=int)
@click.argument('dest', type=click.Path(path_type=Path))
@click.pass_context
def export(ctx: click.Context, target: str, version_id: int, dest: Path):
    """Write a decompressed copy of VERSION_ID to DEST."""
    settings = _load_settings(ctx)

    async def do_export(engine: VersioningEngine):
        slot = await _resolve_slot(engine, target)
        return await engine.export_version(slot.id, version_id, dest)

    written = _run(settings, do_export)
    console.print(f"[green]✅ Exported v{version_id} to {written}[/green]")


@main.command()
@click.argument('target')
@click.argument('version_id', type=int)
@click.option('--yes', '-y', is_flag=True, help='Do not ask for confirmation')
@click.pass_context
def delete(ctx: click.Context, target: str, version_id: int, yes: bool):
    """Delete one stored version."""
    settings = _load_settings(ctx)

    async def do_delete(engine: VersioningEngine):
        slot = await _resolve_slot(engine, target)
        if not yes and not click.confirm(f"Delete v{version_id} of {slot.root_path}?"):
            raise click.Abort()
        return await engine.delete_version(slot.id, version_id)

    version = _run(settings, do_delete)
    console.print(f"[green]🗑️  Deleted v{version.version_id}[/green]")


@main.command()
@click.argument('target')
@click.option('--yes', '-y', is_flag=True, help='Do not ask for confirmation')
@click.pass_context
def remove(ctx: click.Context, target: str, yes: bool):
    """Forget a slot and delete all of its versions."""
    settings = _load_settings(ctx)

    async def do_remove(engine: VersioningEngine):
        slot = await _resolve_slot(engine, target)
        if not yes and not click.confirm(f"Delete all versions of {slot.root_path}?"):
            raise click.Abort()
        return slot, await engine.remove_slot(slot.id)

    slot, count = _run(settings, do_remove)
    console.print(f"[green]🗑️  Removed {slot.root_path} and {count} versions[/green]")


@main.command(name='config')
@click.option('--init', 'init_file', is_flag=True, help='Write a config file with the defaults')
@click.option('--force', '-f', is_flag=True, help='Overwrite an existing config file')
@click.pass_context
def config_command(ctx: click.Context, init_file: bool, force: bool):
    """Show the effective configuration."""
    loader = ConfigurationLoader(ctx.obj.get('data_dir'))

    if init_file:
        try:
            path = loader.write_default_config(overwrite=force)
        except ConfigurationError as e:
            console.print(f"[yellow]⚠️  {e}. Use --force to overwrite.[/yellow]")
            return
        console.print(f"[green]✅ Created {path}[/green]")
        return

    try:
        settings = loader.load()
    except ConfigurationError as e:
        console.print(f"[red]❌ {e}[/red]")
        sys.exit(2)

    source = str(loader.config_file) if loader.config_file.exists() else "defaults"
    console.print(Panel(
        json.dumps(loader.sectioned(settings), indent=2),
        title=f"Effective configuration ({source})",
        border_style="blue"
    ))


if __name__ == '__main__':
    main()
