"""Abstract base class for email providers.

Every provider (IMAP, Gmail, JMAP) implements this interface, producing and
consuming the canonical `EmailMessage` model.
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from functools import partial
from typing import Any, Callable, TypeVar

from ..errors import NotConnectedError, ProviderError
from ..models import Attachment, EmailMessage, Folder, ProviderType


T = TypeVar("T")

DEFAULT_REQUEST_TIMEOUT = 30.0
DEFAULT_JMAP_PAGE_SIZE = 100


@dataclass
class ProviderSettings:
    """Tunables shared by all providers."""
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT
    # Gmail: request format="raw" so `raw` is populated
    gmail_fetch_raw: bool = False
    jmap_page_size: int = DEFAULT_JMAP_PAGE_SIZE


class EmailProvider(ABC):
    """Capability contract shared by all providers.

    Lifecycle is disconnected -> connected -> disconnected. Operations other
    than `connect`, `disconnect` and `test_connection` raise
    `NotConnectedError` unless connected.
    """

    def __init__(self, settings: ProviderSettings | None = None):
        self.settings = settings or ProviderSettings()
        self.connected = False

    @property
    @abstractmethod
    def provider_type(self) -> ProviderType:
        ...

    @property
    def is_connected(self) -> bool:
        return self.connected

    def _ensure_connected(self) -> None:
        if not self.connected:
            raise NotConnectedError()

    async def _run(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Run a blocking client call on the default executor."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, partial(fn, *args, **kwargs))

    @abstractmethod
    async def connect(self) -> None:
        """Authenticate and open a session. Raises MailConnectionError."""

    @abstractmethod
    async def disconnect(self) -> None:
        """Close the session. Safe to call when already disconnected."""

    @abstractmethod
    async def test_connection(self) -> bool:
        """Try to connect; never raises."""

    @abstractmethod
    async def get_folders(self) -> list[Folder]:
        ...

    @abstractmethod
    async def get_messages(self, folder: str, limit: int = 0) -> list[EmailMessage]:
        """Fetch messages from `folder`; `limit=0` means all."""

    @abstractmethod
    async def get_message(self, folder: str, id: str) -> EmailMessage:
        """Fetch one message by native id or Message-ID. Raises NotFoundError."""

    @abstractmethod
    async def upload_messages(self, folder: str, messages: list[EmailMessage]) -> None:
        """Upload messages (each with `raw`) into `folder`, stopping at the first failure."""

    @abstractmethod
    async def create_folder(self, path: str) -> None:
        ...

    @abstractmethod
    async def delete_folder(self, path: str) -> None:
        ...

    @abstractmethod
    async def get_total_message_count(self) -> int:
        ...

    async def fetch_raw(self, message: EmailMessage) -> bytes:
        """RFC822 source of `message`, downloading it if needed."""
        self._ensure_connected()
        if message.raw:
            return message.raw
        raise ProviderError(f"{self.provider_type.value} provider cannot download raw messages")

    async def fetch_attachment(self, message: EmailMessage, attachment: Attachment) -> bytes:
        """Attachment content, downloading it if only metadata is known."""
        self._ensure_connected()
        if attachment.content is not None:
            return attachment.content
        raise ProviderError(f"{self.provider_type.value} provider cannot download attachments")

    async def __aenter__(self):
        await self.connect()
        return self

    async def __aexit__(self, *args):
        await self.disconnect()
