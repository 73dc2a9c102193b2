"""upkeep CLI — install, inspect, update, back up, and restore managed files."""

import logging

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from upkeep import __version__
from upkeep.config import load_config
from upkeep.errors import TransactionAbortedWithRollbackErrors, UpkeepError

console = Console()

STATE_STYLES = {
    "unchanged": "green",
    "modified": "yellow",
    "user_added": "cyan",
    "user_deleted": "magenta",
    "no_metadata": "dim",
    "hash_error": "red",
}


class UpkeepGroup(click.Group):
    """Turns engine errors into readable messages and exit codes."""

    def invoke(self, ctx):
        try:
            return super().invoke(ctx)
        except TransactionAbortedWithRollbackErrors as e:
            console.print(f"[red]Update failed:[/] {e.cause}")
            console.print(
                "[bold red]The project needs manual inspection.[/] "
                "These paths may be inconsistent:"
            )
            for failure in e.rollback_errors:
                console.print(f"  [red]x[/] {failure.path}: {failure.error}")
            ctx.exit(2)
        except UpkeepError as e:
            console.print(f"[red]Error ({e.kind.value}):[/] {e.message}")
            ctx.exit(1)


@click.group(cls=UpkeepGroup)
@click.version_option(version=__version__)
@click.option("--verbose", "-v", is_flag=True, help="Show debug logging")
def main(verbose: bool):
    """upkeep — safe, drift-aware updates of generated project files.

    Installed files are hashed and tracked; updates only replace files
    nobody has edited since, after backing everything up.
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=console, show_path=False)],
        force=True,
    )


# ── Status ───────────────────────────────────────────────────────────


@main.command()
@click.argument("root", default=".")
def status(root: str):
    """Show the drift state of every tracked file."""
    from upkeep.sync.drift import DriftDetector
    from upkeep.sync.metadata import MetadataStore

    config = load_config(root)
    metadata = MetadataStore(config).load()
    if metadata is None:
        console.print("[yellow]No upkeep metadata found — nothing installed here.[/]")
        return

    reports = DriftDetector(config).check_all()
    table = Table(title=f"Tracked files ({len(reports)}) — version {metadata.installed_version}")
    table.add_column("Path", style="cyan")
    table.add_column("State")
    table.add_column("Policy", style="dim")

    for report in reports:
        style = STATE_STYLES.get(report.state.value, "white")
        table.add_row(
            report.path,
            f"[{style}]{report.state.value}[/]",
            config.policy.classify(report.path).value,
        )

    console.print(table)


# ── Install / Update ─────────────────────────────────────────────────


@main.command()
@click.argument("root", default=".")
@click.option("--source", "-s", required=True, help="Package directory holding canonical files")
@click.option("--version", "version", required=True, help="Version being installed")
@click.option("--prefix", "-p", multiple=True, help="Only install paths under this prefix")
@click.option("--force", is_flag=True, help="Overwrite existing untracked files")
def install(root: str, source: str, version: str, prefix: tuple, force: bool):
    """Install canonical files from SOURCE into ROOT and start tracking them."""
    from upkeep.sync.source import DirectorySource
    from upkeep.sync.updater import Updater

    config = load_config(root)
    updater = Updater(config, DirectorySource(source, allowed_prefixes=list(prefix)), version)

    console.print(f"\n[bold blue]upkeep[/] — Installing {version} into {config.root}\n")
    result = updater.install(force=force)

    console.print(f"  [green]v[/] {len(result.written)} file(s) installed")
    for path in result.skipped:
        console.print(f"  [yellow]![/] kept existing {path}")


@main.command()
@click.argument("root", default=".")
@click.option("--source", "-s", required=True, help="Package directory holding canonical files")
@click.option("--version", "version", required=True, help="Version to update to")
@click.option("--prefix", "-p", multiple=True, help="Only consider paths under this prefix")
@click.option("--dry-run", is_flag=True, help="Show the plan without writing anything")
@click.option("--force", is_flag=True, help="Overwrite customised files too (after backup)")
def update(root: str, source: str, version: str, prefix: tuple, dry_run: bool, force: bool):
    """Update ROOT to the files in SOURCE without clobbering user edits."""
    from upkeep.sync.source import DirectorySource
    from upkeep.sync.updater import UpdateAction, Updater

    config = load_config(root)
    updater = Updater(config, DirectorySource(source, allowed_prefixes=list(prefix)), version)
    plan = updater.plan()

    console.print(
        f"\n[bold blue]upkeep[/] — Update {plan.from_version} -> {plan.to_version}\n"
    )

    table = Table(title="Update plan")
    table.add_column("Path", style="cyan")
    table.add_column("Action")
    table.add_column("State", style="dim")
    for item in plan.items:
        if item.action is UpdateAction.CURRENT:
            continue
        table.add_row(item.path, item.action.value, item.state.value if item.state else "")
    console.print(table)

    if dry_run:
        console.print("\n[yellow]Dry run — nothing written.[/]")
        return

    result = updater.apply(plan, force=force)
    if not result.written:
        console.print("\n[green]Already up to date.[/]")
        return

    if result.backup is not None:
        console.print(f"  Backup: {result.backup.path}")
        for failure in result.backup.failures:
            console.print(f"  [yellow]![/] not backed up: {failure}")
    console.print(f"  [green]v[/] {len(result.written)} file(s) updated")
    for item in result.skipped:
        console.print(f"  [yellow]![/] skipped {item.path} ({item.state.value})")


# ── Backups ──────────────────────────────────────────────────────────


@main.command()
@click.argument("root", default=".")
@click.option("--reason", "-r", default="manual", help="Reason recorded in the manifest")
def backup(root: str, reason: str):
    """Back up every tracked file that is not user content."""
    from upkeep.sync.backup import BackupManager

    config = load_config(root)
    result = BackupManager(config).create_full_backup(reason=reason)

    console.print(f"  [green]v[/] Backed up {result.manifest.file_count} file(s) to {result.path}")
    for failure in result.failures:
        console.print(f"  [yellow]![/] {failure}")


@main.command(name="backups")
@click.argument("root", default=".")
def list_backups(root: str):
    """List available backups, newest first."""
    from upkeep.sync.backup import BackupManager

    backups = BackupManager(load_config(root)).list_backups()
    if not backups:
        console.print("[yellow]No backups found.[/]")
        return

    table = Table(title=f"Backups ({len(backups)})")
    table.add_column("Timestamp", style="cyan")
    table.add_column("Reason")
    table.add_column("Version")
    table.add_column("Files", justify="right")

    for b in backups:
        m = b.manifest
        table.add_row(m.timestamp, m.reason, m.version, str(m.file_count))

    console.print(table)


@main.command()
@click.argument("root")
@click.argument("backup_name")
def restore(root: str, backup_name: str):
    """Restore ROOT from a backup (a timestamp from `upkeep backups`, or a path)."""
    from pathlib import Path

    from upkeep.sync.backup import BackupManager

    config = load_config(root)
    backup_path = Path(backup_name)
    if not backup_path.is_dir():
        backup_path = config.backups_path / backup_name

    result = BackupManager(config).restore_from_backup(backup_path)

    style = "green" if result.complete else "yellow"
    console.print(
        Panel(
            f"Restored {result.restored} of {result.total} file(s) (version {result.version})",
            title="Restore",
            style=style,
        )
    )
    for failure in result.failures:
        console.print(f"  [red]x[/] {failure}")
    result.raise_for_partial()


@main.command()
@click.argument("root")
@click.argument("path")
def untrack(root: str, path: str):
    """Stop tracking PATH; future updates treat it as user content."""
    from upkeep.sync.metadata import MetadataStore

    if MetadataStore(load_config(root)).untrack_file(path):
        console.print(f"  [green]v[/] {path} is no longer tracked")
    else:
        console.print(f"[yellow]{path} was not tracked.[/]")


if __name__ == "__main__":
    main()
