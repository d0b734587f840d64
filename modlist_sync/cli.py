"""Command-line interface for modlist-sync."""

import logging
import sys
import threading
from dataclasses import replace
from pathlib import Path

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.progress import TaskID
from rich.table import Table

from .config import HOME_ENV, SyncConfig
from .downloader import create_download_progress
from .events import DownloadProgressEvent, ItemEvent, format_bytes
from .installer import InstallError, InstallOutcome
from .manifest import SUPPORTED_GAMES, ManifestError, ManifestValidationError
from .planner import ReconciliationPlan
from .service import LoadedManifest, ModListService

console = Console()


def setup_logging(verbose: bool = False) -> None:
    """Route library logging through rich on stderr."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )
    logging.getLogger("urllib3").setLevel(logging.WARNING)


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.option(
    "--work-dir",
    envvar=HOME_ENV,
    type=click.Path(file_okay=False, path_type=Path),
    help=f"Working directory for staging and backups (or set {HOME_ENV})",
)
@click.option("--staging-dir", type=click.Path(file_okay=False, path_type=Path), help="Override the staging directory")
@click.option("--backup-dir", type=click.Path(file_okay=False, path_type=Path), help="Override the backup directory")
@click.pass_context
def main(
    ctx: click.Context,
    verbose: bool,
    work_dir: Path | None,
    staging_dir: Path | None,
    backup_dir: Path | None,
) -> None:
    """Keep a mods folder in sync with a shareable modlist manifest."""
    setup_logging(verbose)
    ctx.ensure_object(dict)
    ctx.obj["config"] = SyncConfig.from_env(
        work_dir=work_dir, staging_dir=staging_dir, backup_dir=backup_dir
    )


def _service(ctx: click.Context) -> ModListService:
    return ModListService(config=ctx.obj["config"])


def _load_or_exit(service: ModListService, path: Path, require_valid: bool = True) -> LoadedManifest:
    try:
        loaded = service.load(path)
    except ManifestError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)

    if require_valid and not loaded.is_valid:
        _print_validation_errors(loaded)
        sys.exit(1)
    return loaded


def _print_validation_errors(loaded: LoadedManifest) -> None:
    console.print(f"[red]Manifest {loaded.path} has {len(loaded.errors)} problem(s):[/red]")
    for error in loaded.errors:
        console.print(f"  - {error}")


@main.command()
@click.argument("name")
@click.argument("game", type=click.Choice(SUPPORTED_GAMES, case_sensitive=False))
@click.option("-o", "--output", type=click.Path(dir_okay=False, path_type=Path), required=True, help="Where to write the manifest")
@click.option("--description", help="Optional description")
@click.option("--author", help="Optional author or group name")
@click.pass_context
def new(
    ctx: click.Context,
    name: str,
    game: str,
    output: Path,
    description: str | None,
    author: str | None,
) -> None:
    """
    Create an empty manifest.

    NAME: Human-readable modlist name
    GAME: Target game
    """
    service = _service(ctx)
    manifest = replace(service.create(name, game), description=description, author=author)
    try:
        service.save(manifest, output)
    except ManifestError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)
    console.print(f"[green]Created manifest[/green] {manifest.name} ({manifest.list_id}) at {output}")


@main.command()
@click.argument("manifest_path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.pass_context
def validate(ctx: click.Context, manifest_path: Path) -> None:
    """Check a manifest for problems."""
    loaded = _load_or_exit(_service(ctx), manifest_path, require_valid=False)
    if not loaded.is_valid:
        _print_validation_errors(loaded)
        sys.exit(1)

    manifest = loaded.manifest
    console.print(f"[green]Manifest is valid.[/green]")
    console.print(f"[bold]Name:[/bold] {manifest.name}")
    console.print(f"[bold]Game:[/bold] {manifest.game}")
    console.print(f"[bold]Revision:[/bold] {manifest.revision}")
    console.print(f"[bold]Mods:[/bold] {len(manifest.mods)}")


@main.command(name="plan")
@click.argument("manifest_path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.argument("mods_dir", type=click.Path(file_okay=False, path_type=Path))
@click.pass_context
def plan_command(ctx: click.Context, manifest_path: Path, mods_dir: Path) -> None:
    """
    Show what installing a manifest would change.

    MANIFEST_PATH: Modlist manifest (JSON)
    MODS_DIR: Game mods folder
    """
    service = _service(ctx)
    loaded = _load_or_exit(service, manifest_path)
    reconciliation = service.plan(loaded.manifest, mods_dir)
    _print_plan(reconciliation)


def _print_plan(reconciliation: ReconciliationPlan) -> None:
    table = Table(title="Modlist status")
    table.add_column("Mod")
    table.add_column("File")
    table.add_column("Size", justify="right")
    table.add_column("Action")

    for action in reconciliation.actions:
        label = "[yellow]replace[/yellow]" if action.is_replacement else "[cyan]download[/cyan]"
        table.add_row(
            action.entry.display_name,
            action.entry.effective_file_name,
            format_bytes(action.entry.size_bytes),
            label,
        )
    for entry in reconciliation.up_to_date:
        table.add_row(
            entry.display_name,
            entry.effective_file_name,
            format_bytes(entry.size_bytes),
            "[green]up to date[/green]",
        )
    for err in reconciliation.verification_errors:
        table.add_row(
            err.entry.display_name,
            err.entry.effective_file_name,
            format_bytes(err.entry.size_bytes),
            f"[red]unverifiable: {err.error}[/red]",
        )

    console.print(table)
    console.print(
        f"[bold]To download:[/bold] {len(reconciliation.to_download)}  "
        f"[bold]To replace:[/bold] {len(reconciliation.to_replace)}  "
        f"[bold]Up to date:[/bold] {len(reconciliation.up_to_date)}  "
        f"[bold]Transfer:[/bold] {format_bytes(reconciliation.total_bytes)}"
    )


@main.command()
@click.argument("manifest_path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.argument("mods_dir", type=click.Path(file_okay=False, path_type=Path))
@click.option("--dry-run", is_flag=True, help="Show what would be installed without downloading")
@click.pass_context
def install(ctx: click.Context, manifest_path: Path, mods_dir: Path, dry_run: bool) -> None:
    """
    Download and install every mod the manifest lists.

    MANIFEST_PATH: Modlist manifest (JSON)
    MODS_DIR: Game mods folder
    """
    service = _service(ctx)
    loaded = _load_or_exit(service, manifest_path)
    manifest = loaded.manifest

    console.print(f"[bold]Modlist:[/bold] {manifest.name} (revision {manifest.revision})")

    if dry_run:
        _print_plan(service.plan(manifest, mods_dir))
        console.print("\n[yellow]Dry run - no changes made.[/yellow]")
        return

    cancel = threading.Event()
    result: dict = {}

    with create_download_progress() as progress:
        tasks: dict[str, TaskID] = {}

        def on_started(event: ItemEvent) -> None:
            tasks[event.entry.id] = progress.add_task(
                "download",
                filename=event.entry.effective_file_name[:40],
                total=event.entry.size_bytes,
            )

        def on_download(event: DownloadProgressEvent) -> None:
            task_id = tasks.get(event.entry.id)
            if task_id is not None:
                progress.update(task_id, completed=event.bytes_received, total=event.bytes_total or None)

        def on_completed(event: ItemEvent) -> None:
            if event.success:
                progress.console.print(f"[green]Installed[/green] {event.entry.display_name}")
            else:
                progress.console.print(f"[red]Failed[/red] {event.entry.display_name}: {event.error}")

        unsubscribe = [
            service.events.subscribe_item_started(on_started),
            service.events.subscribe_download_progress(on_download),
            service.events.subscribe_item_completed(on_completed),
        ]

        def run() -> None:
            try:
                result["outcome"] = service.install(manifest, mods_dir, cancel=cancel)
            except Exception as e:
                result["error"] = e

        worker = threading.Thread(target=run, daemon=True)
        worker.start()
        try:
            while worker.is_alive():
                worker.join(0.2)
        except KeyboardInterrupt:
            progress.console.print("[yellow]Cancelling after the current step...[/yellow]")
            cancel.set()
            worker.join()
        finally:
            for fn in unsubscribe:
                fn()

    error = result.get("error")
    if error is not None:
        if isinstance(error, (ManifestValidationError, InstallError)):
            console.print(f"[red]Error:[/red] {error}")
            sys.exit(1)
        raise error

    outcome: InstallOutcome = result["outcome"]
    _print_outcome(outcome)
    if not outcome.success:
        sys.exit(1)


def _print_outcome(outcome: InstallOutcome) -> None:
    if outcome.failures:
        table = Table(title="Failures")
        table.add_column("Mod")
        table.add_column("Reason")
        table.add_column("Error")
        for failure in outcome.failures:
            table.add_row(failure.entry.display_name, failure.reason.value, failure.error)
        console.print(table)

    for err in outcome.verification_errors:
        console.print(f"[yellow]Could not verify[/yellow] {err.entry.display_name}: {err.error}")

    summary = (
        f"{outcome.installed_count} installed, {outcome.replaced_count} replaced, "
        f"{outcome.skipped_count} up to date, {outcome.failed_count} failed"
    )
    if outcome.cancelled:
        console.print(f"\n[yellow]Installation cancelled:[/yellow] {summary}")
    elif outcome.success:
        console.print(f"\n[green]Modlist installed:[/green] {summary}")
    else:
        console.print(f"\n[red]Completed with failures:[/red] {summary}")


@main.command()
@click.argument("old_path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.argument("new_path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.pass_context
def diff(ctx: click.Context, old_path: Path, new_path: Path) -> None:
    """
    Show what changed between two revisions of a manifest.

    OLD_PATH: Previous manifest
    NEW_PATH: Updated manifest
    """
    service = _service(ctx)
    old = _load_or_exit(service, old_path, require_valid=False).manifest
    updated = _load_or_exit(service, new_path, require_valid=False).manifest

    result = service.compare(old, updated)
    console.print(f"[bold]Revision:[/bold] {old.revision} -> {updated.revision} ({result.revision_delta:+d})")

    if not result.has_changes:
        console.print("[green]No changes.[/green]")
        return

    for line in result.summary():
        console.print(f"  {line}")
    console.print(
        f"\n{len(result.added)} added, {len(result.changed)} changed, "
        f"{len(result.removed)} removed, {len(result.unchanged)} unchanged"
    )


@main.command(name="hash")
@click.argument("files", nargs=-1, required=True, type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.pass_context
def hash_command(ctx: click.Context, files: tuple[Path, ...]) -> None:
    """Print the SHA-256 of one or more files."""
    service = _service(ctx)
    for path in files:
        console.print(f"{service.compute_hash(path)}  {path}", highlight=False)


@main.command()
@click.argument("file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.argument("sha256")
@click.pass_context
def verify(ctx: click.Context, file: Path, sha256: str) -> None:
    """Check a file against an expected SHA-256."""
    if _service(ctx).verify_hash(file, sha256):
        console.print(f"[green]OK[/green] {file}")
    else:
        console.print(f"[red]MISMATCH[/red] {file}")
        sys.exit(1)


@main.command()
@click.argument("mods_dir", type=click.Path(exists=True, file_okay=False, path_type=Path))
@click.option("-o", "--output", type=click.Path(dir_okay=False, path_type=Path), required=True, help="Where to write the manifest")
@click.option("--base-url", required=True, help="URL prefix the packages will be published under")
@click.option("--name", help="Modlist name (defaults to the previous manifest's)")
@click.option("--game", type=click.Choice(SUPPORTED_GAMES, case_sensitive=False), help="Target game")
@click.option("--previous", type=click.Path(exists=True, dir_okay=False, path_type=Path), help="Previous revision to carry metadata from")
@click.pass_context
def export(
    ctx: click.Context,
    mods_dir: Path,
    output: Path,
    base_url: str,
    name: str | None,
    game: str | None,
    previous: Path | None,
) -> None:
    """
    Write a manifest describing the mod packages in a folder.

    MODS_DIR: Folder containing .zip mod packages
    """
    service = _service(ctx)
    previous_manifest = _load_or_exit(service, previous, require_valid=False).manifest if previous else None

    try:
        manifest = service.export(
            mods_dir, base_url, name=name, game=game, previous=previous_manifest
        )
        service.save(manifest, output)
    except (ValueError, ManifestError) as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)

    console.print(
        f"[green]Exported {len(manifest.mods)} mods[/green] to {output} (revision {manifest.revision})"
    )


@main.command()
@click.argument("mods_dir", type=click.Path(file_okay=False, path_type=Path))
@click.option("--port", type=int, default=5000, help="Port (default 5000)")
@click.pass_context
def serve(ctx: click.Context, mods_dir: Path, port: int) -> None:
    """
    Run the JSON/SSE web API.

    MODS_DIR: Default mods folder for requests that don't name one
    """
    from .web import create_and_run

    create_and_run(config=ctx.obj["config"], mods_dir=mods_dir, port=port)


if __name__ == "__main__":
    main()
