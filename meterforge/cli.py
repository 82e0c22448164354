"""
CLI for MeterForge.

Commands:
- init: Create the local database and config
- status: Show the active storage backend and dataset summary
- add-type / add-meter / add-reading: Record data
- list / readings: Show meters and their readings
- consumption / cost / forecast: Analyse a meter
- use-local / use-file / use-webdav / use-cloud: Switch storage backend
- export / import: JSON backups
"""

import asyncio
import logging
import sys
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Optional

import click
from rich.console import Console
from rich.panel import Panel
from rich.prompt import Confirm, Prompt
from rich.table import Table

from meterforge import __version__
from meterforge.config import Config
from meterforge.core import predictions
from meterforge.core.coordinator import (
    ConflictChoice,
    DecisionKind,
    PendingDecision,
    RecoveryChoice,
    StorageCoordinator,
)
from meterforge.core.data_manager import DataManager
from meterforge.core.validation import ValidationError
from meterforge.models import Dataset, Meter, StorageMode
from meterforge.storage.sqlite_db import SQLiteKeyValueStore
from meterforge.sync import credentials as credential_store
from meterforge.sync import filesystem_adapter as file_store
from meterforge.sync.cloud_adapter import CloudStorageAdapter, StaticTokenAuth
from meterforge.sync.credentials import CredentialManager
from meterforge.sync.errors import RecoveryAction, StorageError
from meterforge.sync.filesystem_adapter import FileHandle, FileSystemAdapter, LocalFileHandle
from meterforge.sync.local_db_adapter import LocalDatabaseAdapter
from meterforge.sync.webdav_adapter import WebDAVAdapter

console = Console()

logger = logging.getLogger("meterforge")

RECOVERY_HINTS = {
    RecoveryAction.RETRY: "Check your connection and try again.",
    RecoveryAction.REAUTHENTICATE: "Check your credentials, e.g. with 'meterforge use-webdav'.",
    RecoveryAction.REGRANT_PERMISSION: "Check the permissions of the data file.",
    RecoveryAction.PICK_FILE: "Choose another data file with 'meterforge use-file'.",
    RecoveryAction.CONFIGURE: "Configure the backend first, or run 'meterforge use-local'.",
    RecoveryAction.FREE_SPACE: "Free up space on the server.",
}


class PromptFilePicker:
    """FilePicker that asks for paths on the terminal."""

    def pick_existing(self) -> Optional[FileHandle]:
        path = Prompt.ask("Path of the existing data file (empty to cancel)", default="")
        return LocalFileHandle(Path(path)) if path else None

    def pick_new(self, suggested_name: str) -> Optional[FileHandle]:
        path = Prompt.ask("Where should the data file be created?", default=str(Path.cwd() / suggested_name))
        return LocalFileHandle(Path(path)) if path else None


class FixedPathPicker:
    """FilePicker that always returns the path given on the command line."""

    def __init__(self, path: Path):
        self.path = path

    def pick_existing(self) -> Optional[FileHandle]:
        return LocalFileHandle(self.path)

    def pick_new(self, suggested_name: str) -> Optional[FileHandle]:
        return LocalFileHandle(self.path)


def build_local_adapter(config: Config) -> LocalDatabaseAdapter:
    return LocalDatabaseAdapter(config.sqlite_path)


def build_file_adapter(config: Config) -> FileSystemAdapter:
    return FileSystemAdapter(SQLiteKeyValueStore(config.sqlite_path, file_store.STORE_TABLE))


def build_webdav_adapter(config: Config) -> WebDAVAdapter:
    manager = CredentialManager(
        SQLiteKeyValueStore(config.sqlite_path, credential_store.STORE_TABLE),
        passphrase=config.credential_passphrase,
    )
    return WebDAVAdapter(
        manager,
        max_retries=config.webdav_max_retries,
        retry_delay=config.webdav_retry_delay,
    )


def build_cloud_adapter(config: Config) -> CloudStorageAdapter:
    if not config.cloud_api_base_url:
        raise click.UsageError("No cloud API URL configured")
    return CloudStorageAdapter(
        config.cloud_api_base_url,
        StaticTokenAuth(config.cloud_access_token),
        max_retries=config.webdav_max_retries,
        retry_delay=config.webdav_retry_delay,
    )


def prompt_for_decision(decision: PendingDecision) -> None:
    """Ask the user to resolve a pending decision."""
    if decision.kind is DecisionKind.CONFLICT:
        local: Dataset = decision.context["local"]
        remote: Dataset = decision.context["remote"]

        table = Table(title=f"Both copies hold data ({decision.context['backend']})")
        table.add_column("")
        table.add_column("This device", justify="right")
        table.add_column("Remote", justify="right")
        for key, count in local.summary().items():
            table.add_row(key, str(count), str(remote.summary()[key]))
        table.add_row("last modified", f"{local.last_modified:%Y-%m-%d %H:%M}", f"{remote.last_modified:%Y-%m-%d %H:%M}")
        console.print(table)

        answer = Prompt.ask("Keep which copy?", choices=["local", "remote", "cancel"], default="cancel")
        if answer == "cancel":
            decision.cancel()
        else:
            decision.resolve(ConflictChoice(answer))
        return

    console.print(f"[yellow]Data file {decision.context['file_name']} is missing: {decision.context['error']}[/yellow]")
    answer = Prompt.ask(
        "How do you want to continue?",
        choices=[choice.value for choice in RecoveryChoice],
        default=RecoveryChoice.USE_LOCAL.value,
    )
    decision.resolve(RecoveryChoice(answer))


async def answer_decisions(coordinator: StorageCoordinator) -> None:
    while True:
        decision = await coordinator.decisions.get()
        prompt_for_decision(decision)


@asynccontextmanager
async def open_session(config: Config, picker=None) -> AsyncIterator[StorageCoordinator]:
    """
    Load the dataset from the configured backend.

    A file backend is resumed through the coordinator so a missing file
    can be recovered interactively.
    """
    config.ensure_directories()

    if config.storage_mode is StorageMode.WEBDAV:
        adapter = build_webdav_adapter(config)
    elif config.storage_mode is StorageMode.CLOUD:
        adapter = build_cloud_adapter(config)
    else:
        adapter = build_local_adapter(config)

    manager = DataManager(
        adapter,
        fallback_factory=lambda: build_local_adapter(config),
        autosave_delay=config.autosave_delay,
    )
    coordinator = StorageCoordinator(
        manager,
        local_factory=lambda: build_local_adapter(config),
        file_picker=picker or PromptFilePicker(),
    )
    responder = asyncio.ensure_future(answer_decisions(coordinator))

    try:
        await manager.init()
        if config.storage_mode is StorageMode.FILESYSTEM:
            if not await coordinator.open_file_storage(build_file_adapter(config)):
                console.print("[yellow]Data file not available, using the local database[/yellow]")
                config.storage_mode = StorageMode.LOCAL
                config.save()
        yield coordinator
    finally:
        responder.cancel()
        coordinator.close()
        await manager.aclose()
        # A switch during the session may have replaced the opening adapter
        await close_adapters(adapter, manager.adapter)


async def close_adapters(*adapters) -> None:
    """Close each distinct adapter that holds a network client, once."""
    closed = []
    for adapter in adapters:
        if not hasattr(adapter, "aclose") or any(adapter is c for c in closed):
            continue
        closed.append(adapter)
        await adapter.aclose()


def run(config: Config, action, picker=None):
    """Run an async action against the loaded dataset, reporting errors."""

    async def runner():
        async with open_session(config, picker) as coordinator:
            return await action(coordinator)

    try:
        return asyncio.run(runner())
    except StorageError as e:
        console.print(f"[red]Error: {e.message}[/red]")
        hint = RECOVERY_HINTS.get(e.recovery)
        if hint:
            console.print(f"[dim]{hint}[/dim]")
        sys.exit(1)
    except ValidationError as e:
        console.print(f"[red]Error: {e.message}[/red]")
        sys.exit(1)


def find_meter(manager: DataManager, ref: str) -> Meter:
    """Look up a meter by id or (case-insensitive) name."""
    meter = manager.get_meter(ref)
    if meter is None:
        meter = next((m for m in manager.get_meters() if m.name.lower() == ref.lower()), None)
    if meter is None:
        raise ValidationError(f"Meter not found: {ref}")
    return meter


@click.group()
@click.option("--config", "-c", type=click.Path(exists=True), help="Path to config file")
@click.pass_context
def main(ctx: click.Context, config: Optional[str]) -> None:
    """MeterForge - Track utility meter readings, stored where you choose."""
    ctx.ensure_object(dict)

    if config:
        ctx.obj["config"] = Config.load(Path(config))
    else:
        ctx.obj["config"] = Config.load()

    logging.basicConfig(
        level=ctx.obj["config"].log_level.upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


@main.command()
@click.pass_context
def init(ctx: click.Context) -> None:
    """Create the local database and config."""
    config: Config = ctx.obj["config"]

    console.print(Panel.fit(
        f"[bold blue]MeterForge v{__version__}[/bold blue]\n"
        "Meter readings, stored where you choose",
        border_style="blue",
    ))

    config.ensure_directories()
    config.save()

    async def action(coordinator: StorageCoordinator):
        return coordinator.data_manager.get_storage_name()

    storage = run(config, action)

    console.print("\n[green]✓ MeterForge initialized[/green]")
    console.print(f"[dim]Storage: {storage}[/dim]")
    console.print(f"[dim]Config: {config.storage_path / 'config.yaml'}[/dim]")
    console.print(f"[dim]Database: {config.sqlite_path}[/dim]")
    console.print("\n[bold]Next steps:[/bold]")
    console.print("  1. Add a meter type: [cyan]meterforge add-type Water m³[/cyan]")
    console.print("  2. Add a meter: [cyan]meterforge add-meter 'Kitchen' --type Water[/cyan]")


@main.command()
@click.pass_context
def status(ctx: click.Context) -> None:
    """Show the active storage backend and dataset summary."""
    config: Config = ctx.obj["config"]

    async def action(coordinator: StorageCoordinator):
        manager = coordinator.data_manager
        table = Table(title=manager.get_storage_name(), show_header=False)
        table.add_row("Mode", manager.adapter.mode.value)
        for key, count in manager.data.summary().items():
            table.add_row(key.replace("_", " ").capitalize(), str(count))
        table.add_row("Last modified", f"{manager.data.last_modified:%Y-%m-%d %H:%M:%S} UTC")
        console.print(table)

        if await coordinator.check_remote_conflict():
            console.print("[yellow]The remote copy was changed elsewhere since this copy was loaded.[/yellow]")

    run(config, action)


@main.command("add-type")
@click.argument("name")
@click.argument("unit")
@click.option("--icon", default="📊", help="Icon shown next to the type")
@click.pass_context
def add_type(ctx: click.Context, name: str, unit: str, icon: str) -> None:
    """Add a meter type (e.g. Water m³)."""
    config: Config = ctx.obj["config"]

    async def action(coordinator: StorageCoordinator):
        return coordinator.data_manager.add_meter_type(name, unit, icon=icon)

    meter_type = run(config, action)
    console.print(f"[green]✓ Meter type added[/green] [dim]{meter_type.id}[/dim]")


@main.command("add-meter")
@click.argument("name")
@click.option("--type", "-t", "type_ref", required=True, help="Meter type id or name")
@click.option("--number", "-n", default="", help="Meter number")
@click.option("--location", "-l", default="", help="Location")
@click.option("--continuous", is_flag=True, help="Meter counts continuously")
@click.pass_context
def add_meter(ctx: click.Context, name: str, type_ref: str, number: str, location: str, continuous: bool) -> None:
    """Add a meter."""
    config: Config = ctx.obj["config"]

    async def action(coordinator: StorageCoordinator):
        manager = coordinator.data_manager
        meter_type = manager.get_meter_type(type_ref) or next(
            (t for t in manager.get_meter_types() if t.name.lower() == type_ref.lower()), None
        )
        if meter_type is None:
            raise ValidationError(f"Meter type not found: {type_ref}")
        return manager.add_meter(
            name, meter_type.id, meter_number=number, location=location, is_continuous=continuous
        )

    meter = run(config, action)
    console.print(f"[green]✓ Meter added[/green] [dim]{meter.id}[/dim]")


@main.command("add-reading")
@click.argument("meter")
@click.argument("value", type=float)
@click.option("--date", "-d", "timestamp", default=None, help="ISO date or timestamp (default: now)")
@click.option("--note", default="", help="Note")
@click.pass_context
def add_reading(ctx: click.Context, meter: str, value: float, timestamp: Optional[str], note: str) -> None:
    """Record a reading for a meter (id or name)."""
    config: Config = ctx.obj["config"]

    async def action(coordinator: StorageCoordinator):
        manager = coordinator.data_manager
        return manager.add_reading(find_meter(manager, meter).id, value, timestamp=timestamp, note=note)

    reading = run(config, action)
    console.print(f"[green]✓ Reading {reading.value:g} recorded[/green] [dim]{reading.timestamp:%Y-%m-%d}[/dim]")


@main.command("list")
@click.pass_context
def list_meters(ctx: click.Context) -> None:
    """List meters with their latest reading."""
    config: Config = ctx.obj["config"]

    async def action(coordinator: StorageCoordinator):
        manager = coordinator.data_manager
        return [(item, manager.get_latest_reading(item.meter.id)) for item in manager.meters_with_types()]

    rows = run(config, action)
    if not rows:
        console.print("[dim]No meters yet.[/dim]")
        return

    table = Table(title=f"Meters ({len(rows)})")
    table.add_column("ID", style="dim", max_width=8)
    table.add_column("Name")
    table.add_column("Type")
    table.add_column("Location")
    table.add_column("Latest", justify="right")

    for item, latest in rows:
        unit = item.type.unit if item.type else ""
        table.add_row(
            item.meter.id[:8],
            item.meter.name,
            f"{item.type.icon} {item.type.name}" if item.type else "?",
            item.meter.location,
            f"{latest.value:g} {unit} ({latest.timestamp:%Y-%m-%d})" if latest else "-",
        )
    console.print(table)


@main.command()
@click.argument("meter")
@click.pass_context
def readings(ctx: click.Context, meter: str) -> None:
    """Show all readings of a meter."""
    config: Config = ctx.obj["config"]

    async def action(coordinator: StorageCoordinator):
        manager = coordinator.data_manager
        found = find_meter(manager, meter)
        return found, manager.get_readings_for_meter(found.id)

    found, items = run(config, action)
    table = Table(title=f"{found.name} ({len(items)} readings)")
    table.add_column("Date")
    table.add_column("Value", justify="right")
    table.add_column("Note")
    for reading in items:
        table.add_row(f"{reading.timestamp:%Y-%m-%d %H:%M}", f"{reading.value:g}", reading.note)
    console.print(table)


@main.command()
@click.argument("meter")
@click.option("--start", default=None, help="ISO start date")
@click.option("--end", default=None, help="ISO end date")
@click.pass_context
def consumption(ctx: click.Context, meter: str, start: Optional[str], end: Optional[str]) -> None:
    """Show the consumption of a meter."""
    config: Config = ctx.obj["config"]

    async def action(coordinator: StorageCoordinator):
        manager = coordinator.data_manager
        found = manager.get_meter_with_type(find_meter(manager, meter).id)
        return found, manager.calculate_consumption(found.meter.id, start, end)

    found, result = run(config, action)
    if len(result.readings) < 2:
        console.print("[dim]At least two readings are needed.[/dim]")
        return

    unit = found.type.unit if found.type else ""
    console.print(
        f"[bold]{found.meter.name}[/bold]: {result.consumption:g} {unit} "
        f"[dim]({result.start_date:%Y-%m-%d} to {result.end_date:%Y-%m-%d})[/dim]"
    )


@main.command()
@click.argument("meter")
@click.option("--start", default=None, help="ISO start date")
@click.option("--end", default=None, help="ISO end date")
@click.option("--year", type=int, default=None, help="Show a monthly breakdown for a year")
@click.pass_context
def cost(ctx: click.Context, meter: str, start: Optional[str], end: Optional[str], year: Optional[int]) -> None:
    """Show the cost of a meter under its tariff."""
    config: Config = ctx.obj["config"]

    async def action(coordinator: StorageCoordinator):
        manager = coordinator.data_manager
        meter_id = find_meter(manager, meter).id
        breakdown = manager.get_monthly_breakdown(meter_id, year) if year else None
        return manager.calculate_cost(meter_id, start, end), breakdown

    result, breakdown = run(config, action)
    if result.error:
        console.print(f"[yellow]{result.error}[/yellow]")
        return

    console.print(f"[bold]{result.cost:.2f} {result.currency}[/bold] ({result.tariff.name})")
    console.print(f"  Usage: {result.consumption:g} × {result.tariff.price_per_unit} = {result.usage_cost:.2f}")
    console.print(f"  Base charge: {result.base_charge:.2f}")

    if breakdown:
        table = Table(title=f"Monthly breakdown {year}")
        table.add_column("Month")
        table.add_column("Consumption", justify="right")
        table.add_column("Cost", justify="right")
        for month in breakdown:
            table.add_row(month.month_name, f"{month.consumption:g}", f"{month.cost:.2f}")
        console.print(table)


@main.command()
@click.argument("meter")
@click.pass_context
def forecast(ctx: click.Context, meter: str) -> None:
    """Project the usage of a meter."""
    config: Config = ctx.obj["config"]

    async def action(coordinator: StorageCoordinator):
        manager = coordinator.data_manager
        return manager.get_readings_for_meter(find_meter(manager, meter).id)

    items = run(config, action)
    usage = predictions.project_annual_usage(items)
    trend = predictions.analyze_trend(items)
    year_end = predictions.year_end_projection(items)

    console.print(f"Daily average: {usage.daily:.2f}")
    console.print(f"Projected annual usage: {usage.annual:.1f} [dim]({usage.confidence.value} confidence)[/dim]")
    console.print(f"Trend: {trend.direction.value} ({trend.percentage:.1f} %)")
    if year_end.value is not None:
        console.print(f"Expected reading at year end: {year_end.value:.1f}")


@main.command("use-local")
@click.option("--clear", is_flag=True, help="Start from an empty dataset instead of moving the data")
@click.pass_context
def use_local(ctx: click.Context, clear: bool) -> None:
    """Store data in the local database."""
    config: Config = ctx.obj["config"]
    if clear and not Confirm.ask("Start with an empty dataset?"):
        return

    async def action(coordinator: StorageCoordinator):
        await coordinator.switch_to_local(clear_data=clear)

    run(config, action)
    config.storage_mode = StorageMode.LOCAL
    config.save()
    console.print("[green]✓ Using the local database[/green]")


@main.command("use-file")
@click.argument("path", type=click.Path(dir_okay=False, path_type=Path))
@click.pass_context
def use_file(ctx: click.Context, path: Path) -> None:
    """Store data in a JSON file. An existing file is loaded, otherwise it is created."""
    config: Config = ctx.obj["config"]

    async def action(coordinator: StorageCoordinator):
        adapter = build_file_adapter(config)
        if path.exists():
            return await coordinator.use_existing_file(adapter)
        return await coordinator.use_new_file(adapter)

    if not run(config, action, picker=FixedPathPicker(path)):
        console.print("[yellow]Still using the local database[/yellow]")
        return

    config.storage_mode = StorageMode.FILESYSTEM
    config.data_file = path.resolve()
    config.save()
    console.print(f"[green]✓ Using {path}[/green]")


@main.command("use-webdav")
@click.argument("server_url")
@click.argument("username")
@click.option("--password", prompt=True, hide_input=True, help="Password or app password")
@click.option("--path", "file_path", default=None, help="Document path on the server")
@click.pass_context
def use_webdav(ctx: click.Context, server_url: str, username: str, password: str, file_path: Optional[str]) -> None:
    """Sync data with a WebDAV server (Nextcloud, ownCloud, ...)."""
    config: Config = ctx.obj["config"]
    file_path = file_path or config.webdav_file_path

    async def action(coordinator: StorageCoordinator):
        adapter = build_webdav_adapter(config)
        try:
            await adapter.configure(server_url, username, password, file_path)
        except ValueError as e:
            raise ValidationError(str(e))
        return await coordinator.switch_to_remote(adapter)

    if not run(config, action):
        console.print("[yellow]Cancelled, storage unchanged[/yellow]")
        return

    config.storage_mode = StorageMode.WEBDAV
    config.webdav_server_url = server_url
    config.webdav_username = username
    config.webdav_file_path = file_path
    config.save()
    console.print("[green]✓ Syncing with WebDAV[/green]")


@main.command("use-cloud")
@click.argument("api_url")
@click.option("--token", envvar="METERFORGE_CLOUD_ACCESS_TOKEN", required=True, help="Access token")
@click.pass_context
def use_cloud(ctx: click.Context, api_url: str, token: str) -> None:
    """Sync data with the MeterForge cloud gateway."""
    config: Config = ctx.obj["config"]
    config.cloud_api_base_url = api_url
    config.cloud_access_token = token

    async def action(coordinator: StorageCoordinator):
        return await coordinator.switch_to_remote(build_cloud_adapter(config))

    if not run(config, action):
        console.print("[yellow]Cancelled, storage unchanged[/yellow]")
        return

    config.storage_mode = StorageMode.CLOUD
    config.save()
    console.print("[green]✓ Syncing with the cloud[/green]")
    console.print("[dim]Provide the token through METERFORGE_CLOUD_ACCESS_TOKEN on later runs.[/dim]")


@main.command()
@click.argument("output", type=click.Path(dir_okay=False, path_type=Path))
@click.pass_context
def export(ctx: click.Context, output: Path) -> None:
    """Write a JSON backup of all data."""
    config: Config = ctx.obj["config"]

    async def action(coordinator: StorageCoordinator):
        return coordinator.data_manager.export_json()

    output.write_text(run(config, action), encoding="utf-8")
    console.print(f"[green]✓ Backup written to {output}[/green]")


@main.command("import")
@click.argument("source", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.pass_context
def import_backup(ctx: click.Context, source: Path) -> None:
    """Replace all data with a JSON backup."""
    config: Config = ctx.obj["config"]
    if not Confirm.ask("This replaces all current data. Continue?"):
        return

    text = source.read_text(encoding="utf-8")

    async def action(coordinator: StorageCoordinator):
        return await coordinator.data_manager.import_json(text)

    dataset = run(config, action)
    console.print(
        f"[green]✓ Imported {len(dataset.meters)} meters and {len(dataset.readings)} readings[/green]"
    )


if __name__ == "__main__":
    main()
