"""Backup command: export folders to MBOX, EML and/or JSON."""

import sys
from pathlib import Path

import click
import humanize
from click import argument, echo, option
from rich.console import Console
from rich.progress import (
    BarColumn,
    Progress,
    SpinnerColumn,
    TaskProgressColumn,
    TextColumn,
    TimeElapsedColumn,
)

from ..backup import BackupOptions, BackupProgress, run_backup

from .utils import cancel_on_interrupt, open_provider, parse_formats, require_account, run


def dir_size(path: Path) -> int:
    return sum(p.stat().st_size for p in path.rglob("*") if p.is_file())


@click.command(no_args_is_help=True)
@option('-a', '--attachments', is_flag=True, help="Download attachment content for messages without a raw source")
@option('-f', '--format', 'formats', multiple=True, default=("mbox",), callback=parse_formats, help="mbox, eml, json (repeatable or comma-separated)")
@option('-F', '--folder', 'folder_names', multiple=True, help="Folder path or name (repeatable; default: all)")
@option('-l', '--limit', type=int, default=0, help="Max messages per folder (0 = all)")
@option('-o', '--output', 'output_dir', type=click.Path(file_okay=False, path_type=Path), default=Path("backups"), help="Output directory")
@argument('account_id')
def backup(
    attachments: bool,
    formats: list,
    folder_names: tuple[str, ...],
    limit: int,
    output_dir: Path,
    account_id: str,
):
    """Back up an account's folders.

    Each run writes a timestamped directory with one file (or EML directory)
    per folder and format, plus summary.json.

    \b
    Examples:
      mailbak backup user@example.com
      mailbak backup user@example.com -f mbox,json -F INBOX -F Sent
      mailbak b user@gmail.com -f eml -l 100 -o ~/mail-backups
    """
    acct = require_account(account_id)
    options = BackupOptions(
        formats=formats,
        output_dir=output_dir,
        folders=list(folder_names) or None,
        limit=limit,
        include_attachments=attachments,
    )
    console = Console()

    with Progress(
        SpinnerColumn(),
        TextColumn("[bold blue]Backing up"),
        BarColumn(),
        TaskProgressColumn(),
        TextColumn("{task.completed}/{task.total} folders"),
        TextColumn("[dim]{task.description}"),
        TimeElapsedColumn(),
        console=console,
    ) as progress, cancel_on_interrupt() as cancel:
        task = progress.add_task("", total=None)

        def on_progress(p: BackupProgress):
            progress.update(task, total=p.total, completed=p.current, description=p.folder)
            if p.finished:
                console.print(f"  [green]✓[/] {p.folder}: {p.messages:,} messages")

        async def go():
            async with open_provider(acct) as provider:
                return await run_backup(provider, options, cancel, on_progress)

        result = run(go())

    for stats in result.errors:
        console.print(f"  [red]✗[/] {stats.folder}: {stats.error}")
    size = humanize.naturalsize(dir_size(result.output_dir))
    echo(f"\n{result.total_messages:,} messages from {len(result.folders)} folders -> {result.output_dir} ({size})")
    if result.cancelled:
        echo("Backup cancelled before completion.")
        sys.exit(1)
