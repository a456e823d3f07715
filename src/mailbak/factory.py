"""Create the right provider for an account."""

from dataclasses import replace

from .errors import InvalidArgumentError
from .models import Account, GmailAccount, ImapAccount, JmapAccount, ProviderType
from .providers import EmailProvider, GmailProvider, ImapProvider, JmapProvider, ProviderSettings


def _require(credentials: dict, key: str, account: Account) -> str:
    value = credentials.get(key)
    if not value:
        raise InvalidArgumentError(f"Missing credential {key!r} for account {account.id}")
    return value


def get_provider_for_account(
    account: Account,
    credentials: dict,
    settings: ProviderSettings | None = None,
) -> EmailProvider:
    """Build a provider from an account record and its credentials.

    Credentials are `{password}` for IMAP/JMAP and `{clientId, clientSecret,
    refreshToken}` for Gmail.
    """
    credentials = credentials or {}
    if account.type == ProviderType.IMAP and isinstance(account, ImapAccount):
        return ImapProvider(account, _require(credentials, "password", account), settings)
    if account.type == ProviderType.GMAIL and isinstance(account, GmailAccount):
        if not account.refresh_token and credentials.get("refreshToken"):
            account = replace(account, refresh_token=credentials["refreshToken"])
        return GmailProvider(
            account,
            _require(credentials, "clientId", account),
            _require(credentials, "clientSecret", account),
            settings,
        )
    if account.type == ProviderType.JMAP and isinstance(account, JmapAccount):
        return JmapProvider(account, _require(credentials, "password", account), settings)
    raise InvalidArgumentError(f"Unknown account type: {account.type}")
