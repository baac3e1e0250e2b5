"""
CLI commands for outline-sync.

Provides the `outline-sync` command-line interface for tree initialization,
status checking, running the sync engine and dead-letter management.
"""

import asyncio
import sys
from pathlib import Path
from typing import Optional

import click
import requests
from rich.console import Console
from rich.table import Table

from config.loader import ConfigurationLoader
from core.models.config import GlobalSettings, SyncConfig
from core.models.records import SyncState
from core.remote.base import RemoteDocumentStore
from core.remote.memory import InMemoryDocumentStore
from core.remote.outline import OutlineClient
from core.sync.deadletter import DeadLetterQueue
from core.sync.engine import SyncEngine
from core.sync.errors import SyncError
from core.sync.identity import IdentityStore
from . import __version__
from .logging_setup import configure_logging

console = Console()


@click.group()
@click.version_option(version=__version__, prog_name="outline-sync")
@click.option(
    '--root', '-r',
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    default=None,
    help='Markdown tree to synchronize (default: current directory)'
)
@click.option(
    '--log-level',
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default=None,
    help='Override OUTLINE_SYNC_LOG_LEVEL'
)
@click.pass_context
def main(ctx: click.Context, root: Optional[Path], log_level: Optional[str]):
    """
    outline-sync CLI.

    Keep a directory of markdown files synchronized with Outline.
    """
    settings = GlobalSettings()
    configure_logging(log_level or settings.log_level, settings.get_log_file())

    ctx.ensure_object(dict)
    ctx.obj['root'] = (root or Path.cwd()).resolve()
    ctx.obj['loader'] = ConfigurationLoader(settings)


def _load_config(ctx: click.Context) -> SyncConfig:
    loader: ConfigurationLoader = ctx.obj['loader']
    return loader.load_sync_config(ctx.obj['root'])


def _require_outline(config: SyncConfig) -> None:
    if not config.outline.is_configured:
        console.print("[red]❌ Outline is not configured. Set OUTLINE_URL and OUTLINE_API_KEY "
                      "or run 'outline-sync init --outline-url ...'.[/red]")
        sys.exit(1)


@main.command()
@click.option('--force', '-f', is_flag=True, help='Overwrite existing configuration')
@click.option('--outline-url', help='Outline base URL, e.g. https://docs.example.com')
@click.option('--default-collection', help='Collection for files at the tree root (default: Inbox)')
@click.pass_context
def init(ctx: click.Context, force: bool, outline_url: Optional[str], default_collection: Optional[str]):
    """Initialize outline-sync for a markdown tree."""
    loader: ConfigurationLoader = ctx.obj['loader']
    root: Path = ctx.obj['root']
    config_file = root / ".outline-sync" / "config.json"

    if config_file.exists() and not force:
        console.print("[yellow]⚠️  Tree already initialized. Use --force to overwrite.[/yellow]")
        return

    console.print(f"[blue]🚀 Initializing outline-sync in {root}...[/blue]")
    try:
        config = loader.setup_tree(
            root,
            overwrite=force,
            **{
                "outline.url": outline_url,
                "default_collection": default_collection,
            }
        )
    except ValueError as e:
        console.print(f"[red]❌ Failed to create configuration: {e}[/red]")
        sys.exit(1)

    console.print(f"[green]✅ Created {config.get_config_file()}[/green]")
    console.print(f"[blue]🗂️  Default collection: {config.default_collection}[/blue]")
    if not config.outline.api_key:
        console.print("[yellow]💡 Set OUTLINE_API_KEY in the environment before running.[/yellow]")
    console.print("\n[blue]Next steps:[/blue]")
    console.print("1. Check connectivity: [bold]outline-sync status[/bold]")
    console.print("2. Start syncing: [bold]outline-sync run[/bold]")


@main.command()
@click.option('--verbose', '-v', is_flag=True, help='Show detailed status information')
@click.pass_context
def status(ctx: click.Context, verbose: bool):
    """Check configuration, Outline reachability and sync state."""
    config = _load_config(ctx)

    table = Table(title="outline-sync Status")
    table.add_column("Component", style="cyan", no_wrap=True)
    table.add_column("Status", style="white")
    table.add_column("Details", style="dim")

    if config.is_initialized:
        table.add_row("Tree Config", "[green]✅ Initialized[/green]", str(config.get_config_file()))
    else:
        table.add_row("Tree Config", "[red]❌ Not initialized[/red]", "Run 'outline-sync init'")

    outline_ok = bool(config.outline.url) and _check_outline_connection(config.outline.url)
    if outline_ok:
        table.add_row("Outline", "[green]✅ Reachable[/green]", config.outline.url)
    else:
        table.add_row("Outline", "[red]❌ Not reachable[/red]", config.outline.url or "no URL configured")

    if config.outline.api_key:
        table.add_row("API Key", "[green]✅ Set[/green]", "")
    else:
        table.add_row("API Key", "[red]❌ Missing[/red]", "OUTLINE_API_KEY")

    identity, dead_letters = asyncio.run(_load_state(config))
    for state in SyncState:
        table.add_row(f"Records ({state.value})", str(identity.count_state(state)), "")
    dead_style = "red" if len(dead_letters) else "green"
    table.add_row("Dead Letters", f"[{dead_style}]{len(dead_letters)}[/{dead_style}]",
                  "outline-sync dead-letters list")

    if verbose:
        table.add_row("Root", str(config.root), "")
        table.add_row("Merge Policy", config.merge_policy.value, "")
        table.add_row("Debounce", f"{config.watch.debounce_seconds}s", "")
        table.add_row("Reconcile Interval", f"{config.reconciler.interval_minutes}min",
                      "enabled" if config.reconciler.enabled else "disabled")
        for prefix, collection in sorted(config.collection_mapping.items()):
            table.add_row("Mapping", f"{prefix}/", collection)

    console.print(table)

    if not (config.is_initialized and outline_ok and config.outline.api_key):
        console.print("\n[yellow]⚠️  Some components need attention. See status above.[/yellow]")


@main.command()
@click.option('--no-reconcile', is_flag=True, help='Disable the periodic reconciliation pass')
@click.pass_context
def run(ctx: click.Context, no_reconcile: bool):
    """Watch the tree and synchronize until interrupted."""
    config = _load_config(ctx)
    _require_outline(config)

    console.print(f"[blue]👀 Watching {config.root} (Ctrl-C to stop)[/blue]")
    try:
        asyncio.run(_run_engine(config, OutlineClient(config.outline), not no_reconcile))
    except KeyboardInterrupt:
        pass
    console.print("[green]Stopped.[/green]")


@main.command()
@click.option('--dry-run', '-n', is_flag=True, help='Show planned changes without dispatching them')
@click.pass_context
def reconcile(ctx: click.Context, dry_run: bool):
    """Run one full reconciliation pass."""
    config = _load_config(ctx)
    if dry_run:
        remote: RemoteDocumentStore = InMemoryDocumentStore()
    else:
        _require_outline(config)
        remote = OutlineClient(config.outline)

    report = asyncio.run(_run_reconcile(config, remote, dry_run))

    table = Table(title="Reconciliation" + (" (dry run)" if dry_run else ""))
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="white")
    table.add_row("Files scanned", str(report.scanned))
    table.add_row("Unchanged", str(report.unchanged))
    for kind, count in sorted(report.planned.items()):
        table.add_row(f"Planned {kind}", str(count))
    for status_name, count in sorted(report.outcomes.items()):
        table.add_row(f"Outcome {status_name}", str(count))
    table.add_row("Skipped (busy)", str(report.skipped_busy))
    table.add_row("Duration", f"{report.duration_seconds:.2f}s")
    console.print(table)

    if dry_run:
        for event in report.events:
            console.print(f"  [dim]{event.kind.value:<7}[/dim] {event.path}")
    for error in report.errors:
        console.print(f"[red]❌ {error}[/red]")
    if report.errors:
        sys.exit(1)


@main.group(name="dead-letters")
def dead_letters():
    """Inspect and replay operations that could not be delivered."""


@dead_letters.command(name="list")
@click.pass_context
def dead_letters_list(ctx: click.Context):
    """List dead-letter entries."""
    config = _load_config(ctx)
    _, queue = asyncio.run(_load_state(config))

    if not len(queue):
        console.print("[green]✅ No dead letters[/green]")
        return

    table = Table(title="Dead Letters")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Operation")
    table.add_column("Path")
    table.add_column("Attempts")
    table.add_column("Reason", style="red")
    table.add_column("Failed At", style="dim")
    for entry in queue.entries():
        table.add_row(
            entry.entry_id,
            entry.operation.kind.value,
            entry.path,
            str(entry.attempt),
            f"{entry.error_kind}: {entry.error_message}",
            entry.failed_at.isoformat(timespec='seconds'),
        )
    console.print(table)


@dead_letters.command(name="replay")
@click.argument('entry_id', required=False)
@click.option('--all', 'replay_all', is_flag=True, help='Replay every entry')
@click.pass_context
def dead_letters_replay(ctx: click.Context, entry_id: Optional[str], replay_all: bool):
    """Re-submit a dead-letter entry (or all of them)."""
    if not entry_id and not replay_all:
        raise click.UsageError("Give an entry ID or --all")

    config = _load_config(ctx)
    _require_outline(config)
    try:
        outcomes = asyncio.run(
            _run_replay(config, OutlineClient(config.outline), entry_id, replay_all)
        )
    except KeyError as e:
        console.print(f"[red]❌ {e.args[0]}[/red]")
        sys.exit(1)

    for outcome in outcomes:
        style = "green" if outcome.succeeded else "red"
        console.print(
            f"[{style}]{outcome.status.value}[/{style}] "
            f"{outcome.operation.kind.value} {outcome.operation.path}"
        )


@dead_letters.command(name="clear")
@click.confirmation_option(prompt='Discard all dead-letter entries?')
@click.pass_context
def dead_letters_clear(ctx: click.Context):
    """Discard every dead-letter entry."""
    config = _load_config(ctx)
    removed = asyncio.run(_clear_dead_letters(config))
    console.print(f"[green]🗑️  Removed {removed} dead-letter entries[/green]")


@main.command()
@click.pass_context
def collections(ctx: click.Context):
    """List remote Outline collections and the local mapping."""
    config = _load_config(ctx)
    _require_outline(config)

    try:
        remote_collections = asyncio.run(_list_collections(OutlineClient(config.outline)))
    except SyncError as e:
        console.print(f"[red]❌ Failed to list collections: {e}[/red]")
        sys.exit(1)

    mapped = {name: prefix for prefix, name in config.collection_mapping.items()}
    table = Table(title="Outline Collections")
    table.add_column("Name", style="cyan")
    table.add_column("ID", style="dim")
    table.add_column("Local Directory")
    for collection in sorted(remote_collections, key=lambda c: c.name):
        prefix = mapped.get(collection.name)
        table.add_row(collection.name, collection.id, f"{prefix}/" if prefix else "")
    console.print(table)


async def _load_state(config: SyncConfig):
    identity = IdentityStore(config.identity_file, config.lease_seconds)
    queue = DeadLetterQueue(config.dead_letter_file)
    await identity.load()
    await queue.load()
    return identity, queue


async def _run_engine(config: SyncConfig, remote: RemoteDocumentStore, reconcile_enabled: bool) -> None:
    engine = SyncEngine(config, remote, enable_reconciler=reconcile_enabled)
    if not await engine.start():
        await remote.close()
        raise click.ClickException("Sync engine failed to start, see log for details")
    try:
        await asyncio.Event().wait()
    finally:
        await engine.stop()
        await remote.close()


async def _run_reconcile(config: SyncConfig, remote: RemoteDocumentStore, dry_run: bool):
    engine = SyncEngine(config, remote, enable_watcher=False, enable_reconciler=False)
    await engine.start()
    try:
        return await engine.reconcile(dry_run=dry_run)
    finally:
        await engine.stop()
        await remote.close()


async def _run_replay(
    config: SyncConfig,
    remote: RemoteDocumentStore,
    entry_id: Optional[str],
    replay_all: bool
):
    engine = SyncEngine(config, remote, enable_watcher=False, enable_reconciler=False)
    await engine.start()
    try:
        if replay_all:
            return await engine.replay_all_dead_letters()
        return [await engine.replay_dead_letter(entry_id)]
    finally:
        await engine.stop()
        await remote.close()


async def _clear_dead_letters(config: SyncConfig) -> int:
    queue = DeadLetterQueue(config.dead_letter_file)
    await queue.load()
    return await queue.clear()


async def _list_collections(remote: RemoteDocumentStore):
    try:
        return await remote.list_collections()
    finally:
        await remote.close()


def _check_outline_connection(url: str) -> bool:
    """Check if the Outline server answers its health endpoint."""
    try:
        response = requests.get(f"{url}/_health", timeout=2)
        return response.status_code == 200
    except requests.RequestException:
        return False


if __name__ == "__main__":
    main()
