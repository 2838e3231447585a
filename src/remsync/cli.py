from __future__ import annotations

import ftplib
from datetime import datetime
from pathlib import Path

import paramiko
import typer
from rich.console import Console
from rich.progress import BarColumn, Progress, SpinnerColumn, TextColumn
from rich.table import Table

from .backup import backup_local_file
from .config import DEFAULT_CONFIG_FILE, SyncTarget, load_target
from .conflict import upload_with_conflict_check
from .errors import ConfigError, RemsyncError
from .logging_setup import setup_logging
from .models import ConflictDecision, DeletePolicy, SyncDirection
from .sync_engine import SyncEngine
from .transfer_base import TransferClient, join_remote
from .transfer_factory import open_client

app = typer.Typer(help="Synchronize a local folder with an SFTP or FTP server")
console = Console()

CONFIG_OPTION = typer.Option(
    Path(DEFAULT_CONFIG_FILE), "--config", "-c", help="Path to the TOML target file"
)
TARGET_OPTION = typer.Option(
    None, "--target", "-t", help="Target name (required when several are configured)"
)
PROFILE_OPTION = typer.Option(None, "--profile", "-p", help="Profile override to apply")
VERBOSE_OPTION = typer.Option(False, "--verbose", "-v", help="Log at DEBUG level")

# ftplib.all_errors already covers OSError and EOFError
TRANSFER_ERRORS = (paramiko.SSHException, RemsyncError, *ftplib.all_errors)


def _load(config: Path, target: str | None, profile: str | None, verbose: bool) -> SyncTarget:
    setup_logging("DEBUG" if verbose else "INFO", console=console)
    try:
        return load_target(config, target, profile)
    except ConfigError as exc:
        console.print(f"[red]Invalid configuration:[/red] {exc}")
        raise typer.Exit(1)


def _connect(sync_target: SyncTarget) -> TransferClient:
    try:
        return open_client(sync_target)
    except TRANSFER_ERRORS as exc:
        console.print(
            f"[red]Connection to {sync_target.server_name} failed:[/red] {exc}"
        )
        raise typer.Exit(1)


def _remote_for_local(sync_target: SyncTarget, local_path: Path) -> tuple[Path, str]:
    local_root = sync_target.local_root.expanduser().resolve()
    resolved = local_path.expanduser().resolve()
    try:
        relative = resolved.relative_to(local_root)
    except ValueError:
        console.print(f"[red]{resolved} is not under {local_root}[/red]")
        raise typer.Exit(1)
    return resolved, join_remote(sync_target.remote_root, relative.as_posix())


def _format_mtime(modify_time_ms: int) -> str:
    return datetime.fromtimestamp(modify_time_ms / 1000).strftime("%Y-%m-%d %H:%M:%S")


@app.command()
def sync(
    direction: SyncDirection = typer.Option(
        SyncDirection.LOCAL_TO_REMOTE, help="Which way files are copied"
    ),
    delete_removed: bool = typer.Option(
        False,
        "--delete-removed/--keep-removed",
        help="Delete on the receiving side whatever is gone from the sending side",
    ),
    config: Path = CONFIG_OPTION,
    target: str | None = TARGET_OPTION,
    profile: str | None = PROFILE_OPTION,
    verbose: bool = VERBOSE_OPTION,
) -> None:
    """Run one reconciliation pass between the local and remote roots."""
    sync_target = _load(config, target, profile, verbose)
    client = _connect(sync_target)
    try:
        engine = SyncEngine(client, sync_target)
        with Progress(
            SpinnerColumn(),
            TextColumn("{task.description}"),
            BarColumn(),
            TextColumn("{task.completed}"),
            console=console,
        ) as progress:
            task_id = progress.add_task("Syncing...", total=None)

            def on_progress(current: int, total: int, file_name: str) -> None:
                progress.update(
                    task_id,
                    description=file_name,
                    completed=current,
                    total=total or None,
                )

            try:
                outcome = engine.sync(
                    direction,
                    DeletePolicy.for_direction(direction, delete_removed),
                    on_progress,
                )
            except (ValueError, RemsyncError) as exc:
                progress.stop()
                console.print(f"[red]Sync failed:[/red] {exc}")
                raise typer.Exit(1)
    finally:
        client.disconnect()

    console.print()
    console.print(f"Uploaded: {outcome.uploaded}")
    console.print(f"Downloaded: {outcome.downloaded}")
    console.print(f"Deleted: {outcome.deleted}")
    if outcome.failed:
        console.print(f"[red]Failed: {len(outcome.failed)}[/red]")
        for item in outcome.failed:
            console.print(f"  {item.operation}: {item.path}")
        raise typer.Exit(1)


@app.command()
def upload(
    path: Path = typer.Argument(..., help="Local file under the target's local root"),
    force: bool = typer.Option(False, "--force", help="Overwrite even on conflict"),
    config: Path = CONFIG_OPTION,
    target: str | None = TARGET_OPTION,
    profile: str | None = PROFILE_OPTION,
    verbose: bool = VERBOSE_OPTION,
) -> None:
    """Upload one file, refusing when the remote copy changed since last transfer."""
    sync_target = _load(config, target, profile, verbose)
    local_path, remote_path = _remote_for_local(sync_target, path)
    if not local_path.is_file():
        console.print(f"[red]Not a file:[/red] {local_path}")
        raise typer.Exit(1)

    client = _connect(sync_target)
    try:
        result = upload_with_conflict_check(
            client, client.metadata_store, local_path, remote_path, force=force
        )
    except TRANSFER_ERRORS as exc:
        console.print(f"[red]Upload failed:[/red] {exc}")
        raise typer.Exit(1)
    finally:
        client.disconnect()

    if result.decision == ConflictDecision.CONFLICT:
        console.print(
            f"[yellow]{remote_path} changed on {sync_target.server_name} "
            "since it was last transferred.[/yellow]"
        )
        console.print("  overwrite: rerun with --force")
        console.print("  download:  remsync download to take the remote copy")
        console.print("  compare:   fetch the remote copy and diff it by hand")
        raise typer.Exit(1)
    console.print(f"Uploaded {local_path} -> {remote_path}")


@app.command()
def download(
    path: Path = typer.Argument(..., help="Local path whose remote counterpart to fetch"),
    config: Path = CONFIG_OPTION,
    target: str | None = TARGET_OPTION,
    profile: str | None = PROFILE_OPTION,
    verbose: bool = VERBOSE_OPTION,
) -> None:
    """Download one file over its local counterpart."""
    sync_target = _load(config, target, profile, verbose)
    local_path, remote_path = _remote_for_local(sync_target, path)
    client = _connect(sync_target)
    try:
        if sync_target.backup_dir is not None and local_path.exists():
            backup_local_file(local_path, sync_target.backup_dir, remote_path)
        client.download_file(remote_path, local_path)
    except FileNotFoundError:
        console.print(f"[red]Remote file not found:[/red] {remote_path}")
        raise typer.Exit(1)
    except TRANSFER_ERRORS as exc:
        console.print(f"[red]Download failed:[/red] {exc}")
        raise typer.Exit(1)
    finally:
        client.disconnect()
    console.print(f"Downloaded {remote_path} -> {local_path}")


@app.command("ls")
def list_remote(
    path: str = typer.Argument("", help="Directory relative to the remote root"),
    config: Path = CONFIG_OPTION,
    target: str | None = TARGET_OPTION,
    profile: str | None = PROFILE_OPTION,
    verbose: bool = VERBOSE_OPTION,
) -> None:
    """List one remote directory."""
    sync_target = _load(config, target, profile, verbose)
    remote_path = join_remote(sync_target.remote_root, path) if path else sync_target.remote_root
    client = _connect(sync_target)
    try:
        entries = client.list_directory(remote_path)
    finally:
        client.disconnect()

    table = Table(title=remote_path)
    table.add_column("Name")
    table.add_column("Size", justify="right")
    table.add_column("Modified")
    for entry in entries:
        name = f"{entry.name}/" if entry.is_directory else entry.name
        size = "" if entry.size is None else str(entry.size)
        table.add_row(name, size, _format_mtime(entry.modify_time))
    console.print(table)


if __name__ == "__main__":
    app()
