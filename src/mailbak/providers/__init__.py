"""Email providers: IMAP, Gmail and JMAP behind one interface."""

from .base import EmailProvider, ProviderSettings
from .gmail import GmailAuthFlow, GmailProvider
from .imap import ImapProvider
from .jmap import JmapProvider


__all__ = [
    'EmailProvider',
    'GmailAuthFlow',
    'GmailProvider',
    'ImapProvider',
    'JmapProvider',
    'ProviderSettings',
]
