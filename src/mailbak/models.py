"""Canonical message model that every provider produces and every exporter consumes."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Iterator


NO_SUBJECT = "(No Subject)"
UNKNOWN_ADDRESS = "unknown"


class ProviderType(str, Enum):
    """Supported account types."""
    IMAP = "imap"
    GMAIL = "gmail"
    JMAP = "jmap"


class ExportFormat(str, Enum):
    MBOX = "mbox"
    EML = "eml"
    JSON = "json"


@dataclass
class EmailAddress:
    address: str
    name: str | None = None

    def __str__(self) -> str:
        if self.name:
            return f'"{self.name}" <{self.address}>'
        return self.address

    def to_dict(self) -> dict[str, str]:
        result = {"address": self.address}
        if self.name:
            result["name"] = self.name
        return result


@dataclass
class Attachment:
    """Attachment metadata, with content when it has been downloaded."""
    filename: str
    content_type: str
    size: int = 0
    content: bytes | None = None
    content_id: str | None = None
    # Provider handle for lazy download (Gmail attachmentId, JMAP blobId)
    blob_id: str | None = None


def now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class EmailMessage:
    """Provider-agnostic email message.

    When `raw` is set it is the byte-for-byte source of truth; the structured
    fields are a normalized view of it and exporters only rebuild a message
    from them when `raw` is missing.
    """
    id: str
    uid: int
    subject: str = NO_SUBJECT
    from_addr: EmailAddress = field(default_factory=lambda: EmailAddress(UNKNOWN_ADDRESS))
    to: list[EmailAddress] = field(default_factory=list)
    cc: list[EmailAddress] = field(default_factory=list)
    bcc: list[EmailAddress] = field(default_factory=list)
    date: datetime = field(default_factory=now)
    headers: dict[str, str | list[str]] = field(default_factory=dict)
    text: str | None = None
    html: str | None = None
    attachments: list[Attachment] = field(default_factory=list)
    raw: bytes | None = None
    labels: list[str] | None = None
    folder: str | None = None
    flags: list[str] | None = None
    native_id: str | None = None

    def header(self, name: str) -> str | None:
        """First value of a header, matched case-insensitively."""
        lname = name.lower()
        for key, value in self.headers.items():
            if key.lower() == lname:
                return value[0] if isinstance(value, list) else value
        return None


def add_header(headers: dict[str, str | list[str]], name: str, value: str) -> None:
    """Add a header value, turning repeated headers into a list in arrival order."""
    existing = headers.get(name)
    if existing is None:
        headers[name] = value
    elif isinstance(existing, list):
        existing.append(value)
    else:
        headers[name] = [existing, value]


@dataclass
class Folder:
    """A folder, label or mailbox. `path` is the provider-native key."""
    name: str
    path: str
    delimiter: str = "/"
    flags: list[str] = field(default_factory=list)
    message_count: int | None = None
    unread_count: int | None = None
    children: list["Folder"] = field(default_factory=list)

    @property
    def selectable(self) -> bool:
        return not any(f.lower() == "\\noselect" for f in self.flags)

    def iter_tree(self) -> Iterator["Folder"]:
        """Yield this folder and all descendants, depth-first."""
        yield self
        for child in self.children:
            yield from child.iter_tree()


def flatten_folders(folders: list[Folder]) -> list[Folder]:
    return [f for root in folders for f in root.iter_tree()]


@dataclass
class Account:
    """An account record. Secrets live in separately loaded credentials."""
    id: str
    name: str
    email: str
    type: ProviderType
    created_at: datetime = field(default_factory=now)
    last_sync: datetime | None = None


@dataclass
class ImapAccount(Account):
    type: ProviderType = ProviderType.IMAP
    host: str = ""
    port: int = 993
    secure: bool = True
    username: str = ""


@dataclass
class GmailAccount(Account):
    type: ProviderType = ProviderType.GMAIL
    refresh_token: str = ""


@dataclass
class JmapAccount(Account):
    type: ProviderType = ProviderType.JMAP
    session_url: str = ""
    username: str = ""
