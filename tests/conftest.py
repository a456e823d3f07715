"""Shared fixtures: sample messages and an in-memory provider."""

from datetime import datetime, timezone

import pytest

from mailbak.errors import InvalidArgumentError, NotFoundError
from mailbak.models import EmailAddress, EmailMessage, Folder, ProviderType
from mailbak.providers import EmailProvider


SIMPLE_RAW = (
    b"From: Alice Example <alice@example.com>\r\n"
    b"To: Bob <bob@example.com>, carol@example.com\r\n"
    b"Subject: Quarterly report\r\n"
    b"Date: Mon, 15 Jan 2024 10:30:00 +0000\r\n"
    b"Message-ID: <report-1@example.com>\r\n"
    b"MIME-Version: 1.0\r\n"
    b"Content-Type: text/plain; charset=utf-8\r\n"
    b"\r\n"
    b"Numbers attached.\r\n"
)

MULTIPART_RAW = (
    b"From: bob@example.com\r\n"
    b"To: alice@example.com\r\n"
    b"Subject: =?utf-8?q?Caf=C3=A9_photos?=\r\n"
    b"Date: Tue, 16 Jan 2024 08:00:00 +0100\r\n"
    b"Message-ID: <photos-2@example.com>\r\n"
    b"MIME-Version: 1.0\r\n"
    b'Content-Type: multipart/mixed; boundary="XYZ"\r\n'
    b"\r\n"
    b"--XYZ\r\n"
    b'Content-Type: multipart/alternative; boundary="ALT"\r\n'
    b"\r\n"
    b"--ALT\r\n"
    b"Content-Type: text/plain; charset=utf-8\r\n"
    b"\r\n"
    b"See attached.\r\n"
    b"--ALT\r\n"
    b"Content-Type: text/html; charset=utf-8\r\n"
    b"\r\n"
    b"<p>See attached.</p>\r\n"
    b"--ALT--\r\n"
    b"--XYZ\r\n"
    b"Content-Type: image/png\r\n"
    b'Content-Disposition: attachment; filename="cat.png"\r\n'
    b"Content-Transfer-Encoding: base64\r\n"
    b"\r\n"
    b"iVBORw0KGgo=\r\n"
    b"--XYZ--\r\n"
)


def make_message(uid: int = 1, subject: str = "Hello", raw: bytes | None = None, **kwargs) -> EmailMessage:
    kwargs.setdefault("id", f"<msg-{uid}@example.com>")
    kwargs.setdefault("from_addr", EmailAddress("alice@example.com", "Alice"))
    kwargs.setdefault("to", [EmailAddress("bob@example.com")])
    kwargs.setdefault("date", datetime(2024, 1, 15, 10, 30, tzinfo=timezone.utc))
    kwargs.setdefault("text", f"Body of message {uid}")
    return EmailMessage(uid=uid, subject=subject, raw=raw, **kwargs)


class MemoryProvider(EmailProvider):
    """Provider holding folders and messages in dicts."""

    def __init__(self, folders: dict[str, list[EmailMessage]] | None = None, type: ProviderType = ProviderType.IMAP):
        super().__init__()
        self.type = type
        self.store: dict[str, list[EmailMessage]] = {k: list(v) for k, v in (folders or {}).items()}
        self.failing_folders: set[str] = set()
        self.uploads: list[tuple[str, EmailMessage]] = []

    @property
    def provider_type(self) -> ProviderType:
        return self.type

    async def connect(self) -> None:
        self.connected = True

    async def disconnect(self) -> None:
        self.connected = False

    async def test_connection(self) -> bool:
        return True

    async def get_folders(self) -> list[Folder]:
        self._ensure_connected()
        return [Folder(name=name, path=name) for name in self.store]

    async def get_messages(self, folder: str, limit: int = 0) -> list[EmailMessage]:
        self._ensure_connected()
        if folder in self.failing_folders:
            raise NotFoundError(f"Folder not found: {folder}")
        messages = self.store[folder]
        return messages[-limit:] if limit > 0 else list(messages)

    async def get_message(self, folder: str, id: str) -> EmailMessage:
        for m in self.store.get(folder, []):
            if m.id == id:
                return m
        raise NotFoundError(id)

    async def upload_messages(self, folder: str, messages: list[EmailMessage]) -> None:
        self._ensure_connected()
        for m in messages:
            if not m.raw:
                raise InvalidArgumentError(f"{m.id} has no raw")
        for m in messages:
            self.uploads.append((folder, m))
            self.store[folder].append(m)

    async def create_folder(self, path: str) -> None:
        self.store.setdefault(path, [])

    async def delete_folder(self, path: str) -> None:
        self.store.pop(path, None)

    async def get_total_message_count(self) -> int:
        return sum(len(v) for v in self.store.values())


@pytest.fixture
def simple_raw():
    return SIMPLE_RAW


@pytest.fixture
def multipart_raw():
    return MULTIPART_RAW
