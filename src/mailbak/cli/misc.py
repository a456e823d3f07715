"""Connection test and folder listing commands."""

import sys

import click
from click import argument, echo, option

from ..models import Folder

from .utils import err, open_provider, require_account, run


@click.command("test", no_args_is_help=True)
@argument('account_id')
def test(account_id: str):
    """Check that an account can connect.

    \b
    Examples:
      mailbak test user@example.com
    """
    acct = require_account(account_id)
    provider = open_provider(acct)

    async def check() -> bool:
        ok = await provider.test_connection()
        await provider.disconnect()
        return ok

    if run(check()):
        echo(f"OK: connected to {acct.email} ({acct.type.value})")
    else:
        err(f"Connection to {acct.email} failed (use -vv for details)")
        sys.exit(1)


def format_folder(folder: Folder, depth: int, show_path: bool) -> str:
    counts = ""
    if folder.message_count is not None:
        counts = f"  {folder.message_count:,} messages"
        if folder.unread_count:
            counts += f" ({folder.unread_count:,} unread)"
    path = f"  [{folder.path}]" if show_path and folder.path != folder.name else ""
    flags = f"  {' '.join(folder.flags)}" if folder.flags and any(folder.flags) else ""
    return f"{'  ' * depth}{folder.name}{path}{counts}{flags}"


@click.command(no_args_is_help=True)
@option('-p', '--paths', 'show_path', is_flag=True, help="Show provider paths/ids")
@option('-t', '--total', is_flag=True, help="Also print the total message count")
@argument('account_id')
def folders(show_path: bool, total: bool, account_id: str):
    """List folders/labels/mailboxes as a tree.

    \b
    Examples:
      mailbak folders user@example.com
      mailbak f user@gmail.com -p        # show label ids
    """
    acct = require_account(account_id)

    async def fetch():
        async with open_provider(acct) as provider:
            tree = await provider.get_folders()
            count = await provider.get_total_message_count() if total else None
            return tree, count

    tree, count = run(fetch())

    def show(folder: Folder, depth: int):
        echo(format_folder(folder, depth, show_path))
        for child in folder.children:
            show(child, depth + 1)

    for folder in tree:
        show(folder, 0)
    if count is not None:
        echo(f"\nTotal: {count:,} messages")
