"""OAuth setup commands."""

import sys

import click
from click import argument, echo, option, prompt

from ..config import new_account_id, save_account, save_credentials
from ..errors import MailConnectionError
from ..models import GmailAccount, ProviderType
from ..providers import GmailAuthFlow

from .utils import AliasGroup, err


@click.group(cls=AliasGroup, aliases={'g': 'gmail'})
def auth():
    """Authorize OAuth accounts."""
    pass


@auth.command("gmail", no_args_is_help=True)
@option('-c', '--client-id', envvar='MAILBAK_GMAIL_CLIENT_ID', help="OAuth2 client id")
@option('-C', '--code', help="Authorization code (prompts if not provided)")
@option('-n', '--name', help="Display name (default: email)")
@option('-s', '--client-secret', envvar='MAILBAK_GMAIL_CLIENT_SECRET', help="OAuth2 client secret")
@argument('email')
def auth_gmail(
    client_id: str | None,
    code: str | None,
    name: str | None,
    client_secret: str | None,
    email: str,
):
    """Add a Gmail account through the OAuth2 consent flow.

    \b
    Open the printed URL, approve access, then paste the `code` parameter
    of the page you are redirected to.

    \b
    Examples:
      mailbak auth gmail user@gmail.com -c ID -s SECRET
      MAILBAK_GMAIL_CLIENT_ID=... MAILBAK_GMAIL_CLIENT_SECRET=... mailbak auth gmail user@gmail.com
    """
    client_id = client_id or prompt("OAuth2 client id")
    client_secret = client_secret or prompt("OAuth2 client secret", hide_input=True)

    flow = GmailAuthFlow(client_id, client_secret)
    if not code:
        echo("Visit this URL to authorize mailbak:\n")
        echo(flow.authorization_url())
        echo()
        code = prompt("Authorization code")

    try:
        refresh_token = flow.exchange_code(code)
    except MailConnectionError as e:
        err(f"Error: {e}")
        sys.exit(1)

    account_id = new_account_id(ProviderType.GMAIL)
    acct = GmailAccount(
        id=account_id,
        name=name or email,
        email=email,
        refresh_token=refresh_token,
    )
    save_account(acct)
    save_credentials(account_id, {
        "clientId": client_id,
        "clientSecret": client_secret,
        "refreshToken": refresh_token,
    })
    echo(f"Gmail account '{acct.name}' saved [{account_id}]")
