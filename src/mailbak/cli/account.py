"""Account management commands."""

import sys

import click
from click import argument, echo, option

from ..config import (
    get_account,
    load_config,
    new_account_id,
    remove_account,
    save_account,
    save_credentials,
    set_default_account,
)
from ..errors import NotFoundError
from ..models import ImapAccount, JmapAccount, ProviderType

from .utils import AliasGroup, err, get_password


@click.group(cls=AliasGroup, aliases={
    'a': 'add',
    'd': 'default',
    'l': 'ls',
    'r': 'rm',
})
def account():
    """Manage accounts."""
    pass


@account.command("add", no_args_is_help=True)
@option('-H', '--host', help="IMAP host")
@option('--insecure', is_flag=True, help="Plain IMAP instead of TLS")
@option('-n', '--name', help="Display name (default: email)")
@option('-p', '--password', 'password_opt', help="Password (prompts if not provided)")
@option('-P', '--port', type=int, help="IMAP port (default 993, or 143 with --insecure)")
@option('-s', '--session-url', help="JMAP session URL")
@option('-u', '--username', help="Login username (default: email)")
@argument('acct_type', type=click.Choice(['imap', 'jmap']))
@argument('email')
def account_add(
    host: str | None,
    insecure: bool,
    name: str | None,
    password_opt: str | None,
    port: int | None,
    session_url: str | None,
    username: str | None,
    acct_type: str,
    email: str,
):
    """Add an IMAP or JMAP account (Gmail: `mailbak auth gmail`).

    \b
    Examples:
      mailbak account add imap user@example.com -H imap.example.com
      mailbak account add jmap user@fastmail.com -s https://api.fastmail.com/jmap/session
      echo "$PASS" | mailbak a a imap user@example.com -H imap.example.com
    """
    type = ProviderType(acct_type)
    if type == ProviderType.IMAP and not host:
        err("IMAP accounts need --host.")
        sys.exit(1)
    if type == ProviderType.JMAP and not session_url:
        err("JMAP accounts need --session-url.")
        sys.exit(1)

    password = get_password(password_opt)
    account_id = new_account_id(type)
    if type == ProviderType.IMAP:
        acct = ImapAccount(
            id=account_id,
            name=name or email,
            email=email,
            host=host,
            port=port or (143 if insecure else 993),
            secure=not insecure,
            username=username or email,
        )
    else:
        acct = JmapAccount(
            id=account_id,
            name=name or email,
            email=email,
            session_url=session_url,
            username=username or email,
        )
    save_account(acct)
    save_credentials(account_id, {"password": password})
    echo(f"Account '{acct.name}' saved ({acct_type}: {email}) [{account_id}]")


@account.command("ls")
def account_ls():
    """List accounts."""
    config = load_config()
    if not config.accounts:
        echo("No accounts configured.")
        echo("  mailbak account add imap user@example.com -H imap.example.com")
        echo("  mailbak auth gmail user@gmail.com")
        return

    echo(f"Accounts ({config.root / 'config.yaml'}):\n")
    for account_id, acct in config.accounts.items():
        marker = "*" if account_id == config.default_account else " "
        host_info = ""
        if isinstance(acct, ImapAccount):
            host_info = f" ({acct.host}:{acct.port})"
        elif isinstance(acct, JmapAccount):
            host_info = f" ({acct.session_url})"
        echo(f"{marker} {account_id:22} {acct.type.value:6} {acct.email}{host_info}")


@account.command("rm", no_args_is_help=True)
@argument('account_id')
def account_rm(account_id: str):
    """Remove an account and its credentials.

    \b
    Examples:
      mailbak account rm imap_1718000000000
      mailbak a r user@example.com
    """
    acct = get_account(account_id)
    if not acct or not remove_account(acct.id):
        err(f"Account '{account_id}' not found.")
        sys.exit(1)
    echo(f"Account '{acct.name}' removed.")


@account.command("default", no_args_is_help=True)
@argument('account_id')
def account_default(account_id: str):
    """Set the default account."""
    acct = get_account(account_id)
    try:
        set_default_account(acct.id if acct else account_id)
    except NotFoundError:
        err(f"Account '{account_id}' not found.")
        sys.exit(1)
    echo(f"Default account: {acct.name}")
