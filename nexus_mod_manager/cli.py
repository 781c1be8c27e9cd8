"""Command-line interface for nexus-mod-manager."""

import asyncio
import logging
import os
import sys
from pathlib import Path

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.table import Table

from .api import DEFAULT_TIMEOUT, NexusAPI, NexusAPIError, NexusContext
from .categories import CategorySync, SyncMode
from .deploy import LinkDeployer
from .dialogs import ConsoleConfirmer, PresetConfirmer
from .downloader import DownloadError, DownloadManager
from .events import NOTIFICATION, REMOVE_DOWNLOAD, EventBus, Notification
from .installer import ExtractionError, install_archive
from .nxm import MalformedLinkError
from .selectors import active_game_id, download_path
from .service import ModManagerService, NoActiveGame, UpdateCheckInProgress
from .state import StateError, StateStore
from .versions import UpdateStatus

console = Console()
err_console = Console(stderr=True)

DEFAULT_HOME = (
    Path(os.environ.get("XDG_DATA_HOME", Path.home() / ".local" / "share")) / "nexus-mod-manager"
)

STATUS_LABELS = {
    UpdateStatus.NONE: "",
    UpdateStatus.BLOCKED: "[red]Bugged, disable it[/red]",
    UpdateStatus.BUGGY_UPDATE_AVAILABLE: "[red]Bugged, update[/red]",
    UpdateStatus.UPDATE_AVAILABLE: "[yellow]Update available[/yellow]",
    UpdateStatus.MANUAL_UPDATE_REQUIRED: "[yellow]Update (pick file manually)[/yellow]",
}

NOTIFICATION_STYLES = {
    "success": "green",
    "error": "red",
    "warning": "yellow",
}


def _print_notification(notification: Notification) -> None:
    style = NOTIFICATION_STYLES.get(notification.type, "blue")
    message = escape(notification.message)
    if notification.title:
        console.print(f"[{style}]{notification.title}:[/{style}] {message}")
    else:
        console.print(f"[{style}]{message}[/{style}]")


def _open_store(ctx: click.Context) -> StateStore:
    store = StateStore(ctx.obj["home"])
    try:
        store.load()
    except StateError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)
    return store


def _build_service(
    ctx: click.Context, confirmer=None
) -> tuple[StateStore, ModManagerService, EventBus]:
    store = _open_store(ctx)
    api_key = ctx.obj.get("api_key") or store.get(["account", "nexus", "APIKey"], "")
    api = NexusAPI(
        NexusContext(
            api_key=api_key or "",
            game_id=active_game_id(store),
            timeout=ctx.obj.get("timeout"),
        )
    )
    events = EventBus()
    events.on(NOTIFICATION, _print_notification)
    downloads = DownloadManager(store)
    events.on(REMOVE_DOWNLOAD, downloads.remove_archive)
    service = ModManagerService(
        store,
        api,
        LinkDeployer(store),
        confirmer or ConsoleConfirmer(console),
        events,
    )
    return store, service, events


def _require_game(service: ModManagerService) -> str:
    try:
        return service.game_id
    except NoActiveGame as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)


@click.group()
@click.option(
    "--api-key",
    envvar="NEXUS_API_KEY",
    help="Nexus Mods API key (or set NEXUS_API_KEY env var)",
)
@click.option(
    "--home",
    envvar="NEXUS_MM_HOME",
    type=click.Path(file_okay=False, path_type=Path),
    default=DEFAULT_HOME,
    show_default=True,
    help="Directory holding the state file, mods and downloads",
)
@click.option(
    "--timeout",
    envvar="NEXUS_TIMEOUT",
    type=float,
    default=DEFAULT_TIMEOUT,
    show_default=True,
    help="Network timeout in seconds for API requests",
)
@click.option("-v", "--verbose", is_flag=True, help="Show debug logging")
@click.pass_context
def main(
    ctx: click.Context, api_key: str | None, home: Path, timeout: float, verbose: bool
) -> None:
    """Manage Nexus Mods downloads, versions and deployment."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=err_console, show_path=False)],
    )
    ctx.ensure_object(dict)
    ctx.obj["api_key"] = api_key
    ctx.obj["home"] = home
    ctx.obj["timeout"] = timeout if timeout > 0 else None


@main.command(name="set-game")
@click.argument("game_id")
@click.option(
    "--game-dir",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    help="Game directory mods are deployed to",
)
@click.option("--install-path", help="Where mods are installed, may contain {game}")
@click.option("--copy", "use_copy", is_flag=True, help="Copy files instead of symlinking")
@click.pass_context
def set_game(
    ctx: click.Context,
    game_id: str,
    game_dir: Path | None,
    install_path: str | None,
    use_copy: bool,
) -> None:
    """
    Select the active game.

    GAME_ID: Game id, e.g. skyrimse
    """
    store, service, _events = _build_service(ctx)
    service.set_game(game_id)
    if game_dir:
        store.set(["settings", "gameMode", "discovered", game_id, "path"], str(game_dir.resolve()))
    if install_path:
        store.set(["settings", "mods", "installPath", game_id], install_path)
    if use_copy:
        store.set(["settings", "mods", "activator", game_id], "copy")
    console.print(f"[green]Active game:[/green] {game_id}")


@main.command(name="set-key")
@click.option("--key", prompt="Nexus API key", hide_input=True, help="Nexus Mods API key")
@click.pass_context
def set_key(ctx: click.Context, key: str) -> None:
    """Store the Nexus API key."""
    _store, service, _events = _build_service(ctx)
    service.set_api_key(key.strip())
    console.print("[green]API key saved.[/green]")


@main.command()
@click.pass_context
def validate(ctx: click.Context) -> None:
    """Check the API key."""
    _store, service, _events = _build_service(ctx)
    try:
        user_info = asyncio.run(service.api.validate_key())
    except NexusAPIError as e:
        console.print(f"[red]API Error:[/red] {e}")
        sys.exit(1)
    premium = "yes" if user_info.get("is_premium") else "no"
    console.print(f"[green]Authenticated as:[/green] {user_info.get('name')} (premium: {premium})")


@main.command()
@click.argument("nxm_url")
@click.option("--no-install", is_flag=True, help="Only download the archive")
@click.pass_context
def download(ctx: click.Context, nxm_url: str, no_install: bool) -> None:
    """
    Download (and install) a file from an nxm:// link.

    NXM_URL: Link from the "Mod Manager Download" button
    """
    store, service, _events = _build_service(ctx)

    try:
        result = asyncio.run(service.start_download(nxm_url))
    except MalformedLinkError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)

    if not result.success:
        sys.exit(1)

    game_id = result.meta["game"]
    downloads = DownloadManager(store)
    try:
        archive_id, path = downloads.download(
            result.uris, download_path(store), game_id, result.meta
        )
    except DownloadError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)
    console.print(f"[dim]Saved {path}[/dim]")

    if no_install:
        return

    try:
        record = install_archive(store, game_id, path, archive_id, result.meta["nexus"])
    except (ExtractionError, OSError) as e:
        console.print(f"[red]Extraction error:[/red] {e}")
        sys.exit(1)
    console.print(f"[green]Installed[/green] {record.display_name} as {record.id}")


@main.command()
@click.argument("nxm_url")
@click.pass_context
def resolve(ctx: click.Context, nxm_url: str) -> None:
    """Print the download locations of an nxm:// link."""
    _store, service, _events = _build_service(ctx)
    try:
        uris = asyncio.run(service.resolve_download_uris(nxm_url))
    except (MalformedLinkError, NexusAPIError) as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)
    if not uris:
        console.print("[yellow]No download locations (yet).[/yellow]")
        return
    for uri in uris:
        console.print(uri)


@main.command(name="mods")
@click.pass_context
def list_mods(ctx: click.Context) -> None:
    """Show installed mods of the active game."""
    _store, service, _events = _build_service(ctx)
    game_id = _require_game(service)

    rows = service.mod_overview()
    if not rows:
        console.print(f"[yellow]No mods installed for {game_id}.[/yellow]")
        return

    table = Table(title=f"Mods ({game_id})")
    table.add_column("Id", style="cyan")
    table.add_column("Name")
    table.add_column("Version", style="green")
    table.add_column("Enabled")
    table.add_column("Status")

    for row in rows:
        version = row.version or "-"
        if len(row.versions) > 1:
            version += f" ({len(row.versions)} versions)"
        table.add_row(
            row.id,
            row.name[:40],
            version,
            "[green]yes[/green]" if row.enabled else "no",
            STATUS_LABELS[row.status] if row.active_id == row.id else "",
        )
    console.print(table)


@main.command()
@click.argument("mod_id")
@click.pass_context
def versions(ctx: click.Context, mod_id: str) -> None:
    """
    Show all installed versions of a mod.

    MOD_ID: Id of any installed version
    """
    _store, service, _events = _build_service(ctx)
    _require_game(service)
    try:
        group = service.resolve_version(mod_id)
    except KeyError:
        console.print(f"[red]Error:[/red] Unknown mod: {mod_id}")
        sys.exit(1)

    console.print(f"[bold]Nexus mod id:[/bold] {group.external_mod_id or '-'}")
    for member_id, version in group.versions():
        marker = "[green]*[/green]" if member_id == group.active_id else " "
        console.print(f" {marker} {member_id} {version or '-'}")
    label = STATUS_LABELS[group.status]
    if label:
        console.print(f"[bold]Status:[/bold] {label}")


@main.command()
@click.argument("mod_ids", nargs=-1, required=True)
@click.pass_context
def enable(ctx: click.Context, mod_ids: tuple[str, ...]) -> None:
    """Enable mods in the active profile."""
    _store, service, _events = _build_service(ctx)
    _require_game(service)
    result = service.enable(list(mod_ids))
    console.print(f"[green]Enabled {len(result.changed)} mod(s).[/green]")
    console.print("[dim]Run 'nexus-mm deploy' to apply.[/dim]")


@main.command()
@click.argument("mod_ids", nargs=-1, required=True)
@click.pass_context
def disable(ctx: click.Context, mod_ids: tuple[str, ...]) -> None:
    """Disable mods in the active profile."""
    _store, service, _events = _build_service(ctx)
    _require_game(service)
    result = service.disable(list(mod_ids))
    console.print(f"[green]Disabled {len(result.changed)} mod(s).[/green]")
    console.print("[dim]Run 'nexus-mm deploy' to apply.[/dim]")


@main.command(name="select-version")
@click.argument("old_id")
@click.argument("new_id")
@click.pass_context
def select_version(ctx: click.Context, old_id: str, new_id: str) -> None:
    """Switch from one installed version of a mod to another."""
    _store, service, _events = _build_service(ctx)
    _require_game(service)
    result = service.select_version(old_id, new_id)
    if result.changed:
        console.print(f"[green]Switched[/green] {old_id} -> {new_id}")
    else:
        console.print("[dim]Nothing to do.[/dim]")


@main.command()
@click.argument("mod_ids", nargs=-1, required=True)
@click.option("-y", "--yes", is_flag=True, help="Don't ask for confirmation")
@click.option("--keep-files", is_flag=True, help="Keep the installed files (with --yes)")
@click.option("--archive", is_flag=True, help="Also remove the downloaded archive (with --yes)")
@click.option("--dependents", is_flag=True, help="Disable dependent mods (with --yes)")
@click.pass_context
def remove(
    ctx: click.Context,
    mod_ids: tuple[str, ...],
    yes: bool,
    keep_files: bool,
    archive: bool,
    dependents: bool,
) -> None:
    """Remove mods."""
    confirmer = None
    if yes:
        confirmer = PresetConfirmer(
            True, {"mod": not keep_files, "archive": archive, "dependents": dependents}
        )
    _store, service, _events = _build_service(ctx, confirmer)
    _require_game(service)

    result = asyncio.run(service.remove(list(mod_ids)))
    if result.cancelled:
        console.print("[dim]Cancelled.[/dim]")
        return
    if not result.success:
        sys.exit(1)


@main.command(name="check-updates")
@click.option("--full", is_flag=True, help="Check every mod instead of recently updated ones")
@click.pass_context
def check_updates(ctx: click.Context, full: bool) -> None:
    """Check installed mods for updates."""
    _store, service, _events = _build_service(ctx)
    _require_game(service)
    try:
        result = asyncio.run(service.check_for_updates(full=full))
    except UpdateCheckInProgress as e:
        console.print(f"[yellow]{e}[/yellow]")
        sys.exit(1)
    if not result.success:
        sys.exit(1)


@main.command()
@click.option("--full", is_flag=True, help="Replace local categories instead of merging")
@click.option("-y", "--yes", is_flag=True, help="Don't ask for confirmation")
@click.pass_context
def categories(ctx: click.Context, full: bool, yes: bool) -> None:
    """Retrieve the category list of the active game."""
    confirmer = PresetConfirmer(True) if yes else ConsoleConfirmer(console)
    store, service, events = _build_service(ctx, confirmer)
    game_id = _require_game(service)

    sync = CategorySync(store, service.api, confirmer, events)
    mode = SyncMode.FULL if full else SyncMode.INCREMENTAL
    result = asyncio.run(sync.sync(game_id, mode))
    if result.cancelled:
        console.print("[dim]Cancelled.[/dim]")
    elif not result.success:
        sys.exit(1)


@main.command()
@click.pass_context
def deploy(ctx: click.Context) -> None:
    """Deploy enabled mods to the game directory."""
    _store, service, _events = _build_service(ctx)
    _require_game(service)
    result = asyncio.run(service.deploy())
    if not result.success:
        sys.exit(1)


if __name__ == "__main__":
    main()
