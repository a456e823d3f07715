"""Email backup and migration across IMAP, Gmail and JMAP."""

from .errors import (
    InvalidArgumentError,
    MailbakError,
    MailConnectionError,
    NotConnectedError,
    NotFoundError,
    ParseError,
    ProviderError,
)
from .factory import get_provider_for_account
from .models import (
    Account,
    Attachment,
    EmailAddress,
    EmailMessage,
    ExportFormat,
    Folder,
    GmailAccount,
    ImapAccount,
    JmapAccount,
    ProviderType,
)
from .providers import EmailProvider, GmailProvider, ImapProvider, JmapProvider, ProviderSettings

__all__ = [
    "Account",
    "Attachment",
    "EmailAddress",
    "EmailMessage",
    "EmailProvider",
    "ExportFormat",
    "Folder",
    "GmailAccount",
    "GmailProvider",
    "ImapAccount",
    "ImapProvider",
    "InvalidArgumentError",
    "JmapAccount",
    "JmapProvider",
    "MailConnectionError",
    "MailbakError",
    "NotConnectedError",
    "NotFoundError",
    "ParseError",
    "ProviderError",
    "ProviderSettings",
    "get_provider_for_account",
]
