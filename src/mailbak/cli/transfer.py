"""Migrate between accounts and import files into an account."""

import sys
from pathlib import Path

import click
from click import argument, echo, option
from rich.console import Console
from rich.progress import (
    BarColumn,
    Progress,
    SpinnerColumn,
    TaskProgressColumn,
    TextColumn,
    TimeElapsedColumn,
    TimeRemainingColumn,
)

from ..backup import TransferProgress, import_file, run_migration
from ..models import ExportFormat

from .utils import cancel_on_interrupt, open_provider, require_account, run


def transfer_progress(console: Console, verb: str) -> Progress:
    return Progress(
        SpinnerColumn(),
        TextColumn(f"[bold blue]{verb}"),
        TextColumn("{task.description}"),
        BarColumn(),
        TaskProgressColumn(),
        TextColumn("{task.completed}/{task.total}"),
        TimeElapsedColumn(),
        TextColumn("ETA"),
        TimeRemainingColumn(),
        console=console,
    )


@click.command(no_args_is_help=True)
@option('-F', '--folder', 'folder_names', multiple=True, help="Source folder path or name (repeatable; default: all)")
@option('-D', '--no-dedupe', is_flag=True, help="Upload even if the Message-ID already exists in the destination")
@argument('source_id')
@argument('dest_id')
def migrate(folder_names: tuple[str, ...], no_dedupe: bool, source_id: str, dest_id: str):
    """Copy folders from one account to another.

    Destination folders are matched by name and created when missing.

    \b
    Examples:
      mailbak migrate old@example.com new@fastmail.com
      mailbak m user@gmail.com user@example.com -F INBOX
    """
    source_acct = require_account(source_id)
    dest_acct = require_account(dest_id)
    console = Console()

    with transfer_progress(console, "Migrating") as progress, cancel_on_interrupt() as cancel:
        task = progress.add_task("", total=None)

        def on_progress(p: TransferProgress):
            progress.update(task, total=p.total, completed=p.current, description=p.folder)

        async def go():
            async with open_provider(source_acct) as source, open_provider(dest_acct) as dest:
                return await run_migration(
                    source, dest,
                    folders=list(folder_names) or None,
                    skip_duplicates=not no_dedupe,
                    cancel=cancel,
                    on_progress=on_progress,
                )

        result = run(go())

    for stats in result.folders:
        if stats.error:
            console.print(f"  [red]✗[/] {stats.folder}: {stats.error}")
        else:
            console.print(
                f"  [green]✓[/] {stats.folder}: {stats.transferred} migrated, "
                f"{stats.skipped} skipped, {stats.failed} failed"
            )
    echo(f"\nMigrated {result.transferred:,}, skipped {result.skipped:,}, failed {result.failed:,}")
    if result.cancelled:
        echo("Migration cancelled before completion.")
    if result.cancelled or result.failed:
        sys.exit(1)


@click.command("import", no_args_is_help=True)
@option('-F', '--folder', default="INBOX", help="Destination folder (created if missing)")
@option('-t', '--type', 'fmt', type=click.Choice(['mbox', 'eml']), help="Input format (default: eml for directories, else mbox)")
@argument('account_id')
@argument('path', type=click.Path(exists=True, path_type=Path))
def import_cmd(folder: str, fmt: str | None, account_id: str, path: Path):
    """Upload an MBOX file or a directory of EML files.

    \b
    Examples:
      mailbak import user@example.com backups/backup_20240101_120000/inbox.mbox
      mailbak import user@example.com backups/backup_20240101_120000/eml/inbox -F Restored
    """
    acct = require_account(account_id)
    export_format = ExportFormat(fmt) if fmt else (ExportFormat.EML if path.is_dir() else ExportFormat.MBOX)
    console = Console()

    with transfer_progress(console, "Importing") as progress, cancel_on_interrupt() as cancel:
        task = progress.add_task(folder, total=None)

        def on_progress(p: TransferProgress):
            progress.update(task, total=p.total, completed=p.current)

        async def go():
            async with open_provider(acct) as provider:
                return await import_file(provider, path, folder, export_format, cancel, on_progress)

        stats = run(go())

    echo(f"Imported {stats.transferred:,} messages into {folder} ({stats.failed:,} failed)")
    if stats.failed:
        sys.exit(1)
