"""IMAP provider built on imaplib."""

import imaplib
import re
from datetime import datetime

from imapclient import imap_utf7
from loguru import logger

from ..errors import (
    InvalidArgumentError,
    MailConnectionError,
    NotFoundError,
    ParseError,
    ProviderError,
)
from ..models import EmailMessage, Folder, ImapAccount, ProviderType, flatten_folders
from ..parsing import parse_rfc822
from .base import EmailProvider, ProviderSettings


FETCH_ITEMS = "(UID FLAGS INTERNALDATE BODY.PEEK[])"

# (flags) delimiter name; delimiter is a quoted char or NIL
LIST_RE = re.compile(r'^\((?P<flags>[^)]*)\)\s+(?P<delim>"(?:[^"\\]|\\.)*"|NIL)\s*(?P<name>.*)$', re.IGNORECASE)
LITERAL_RE = re.compile(r'\{\d+\}$')
UID_RE = re.compile(rb'\bUID (\d+)')
FLAGS_RE = re.compile(rb'\bFLAGS \(([^)]*)\)')
INTERNALDATE_RE = re.compile(rb'\bINTERNALDATE "([^"]+)"')
STATUS_MESSAGES_RE = re.compile(rb'\bMESSAGES (\d+)')


def quote(name: str) -> str:
    """Quote a search string or already-encoded mailbox name for the wire."""
    escaped = name.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def quote_mailbox(name: str) -> str:
    """Encode a mailbox name as modified UTF-7 (RFC 3501 5.1.3) and quote it."""
    return quote(imap_utf7.encode(name).decode("ascii"))


def decode_mailbox(name: str) -> str:
    """Decode a modified UTF-7 mailbox name; UTF-8 names pass through."""
    if not name.isascii() or "&" not in name:
        return name
    return imap_utf7.decode(name.encode("ascii"))


def _unquote(s: str) -> str:
    if len(s) >= 2 and s.startswith('"') and s.endswith('"'):
        return re.sub(r'\\(.)', r'\1', s[1:-1])
    return s


def _decode(b: bytes | str) -> str:
    return b.decode("utf-8", errors="replace") if isinstance(b, bytes) else b


def response_text(data) -> str:
    """Server response text, for error messages."""
    if not data:
        return ""
    parts = []
    for item in data:
        if item is None:
            continue
        if isinstance(item, tuple):
            item = item[0]
        parts.append(_decode(item))
    return " ".join(parts)


def parse_list_response(data) -> list[tuple[list[str], str | None, str]]:
    """Parse LIST responses into [(flags, delimiter, path), ...].

    Handles quoted names, atoms, literal names (returned by imaplib as a
    (line, literal) tuple) and NIL delimiters.
    """
    entries = []
    for item in data or []:
        if item is None:
            continue
        literal = None
        if isinstance(item, tuple):
            line, literal = _decode(item[0]), _decode(item[1])
        else:
            line = _decode(item)
        m = LIST_RE.match(line.strip())
        if not m:
            logger.warning(f"Unparseable LIST response: {line!r}")
            continue
        flags = m.group("flags").split()
        delim_raw = m.group("delim")
        delim = None if delim_raw.upper() == "NIL" else _unquote(delim_raw)
        name = m.group("name").strip()
        if literal is not None and LITERAL_RE.search(name):
            name = literal
        else:
            name = _unquote(name)
        entries.append((flags, delim, decode_mailbox(name)))
    return entries


def build_folder_tree(entries: list[tuple[list[str], str | None, str]]) -> list[Folder]:
    """Rebuild the folder hierarchy from LIST entries."""
    nodes: dict[str, Folder] = {}
    delims: dict[str, str | None] = {}
    for flags, delim, path in entries:
        name = path.rsplit(delim, 1)[-1] if delim else path
        nodes[path] = Folder(name=name, path=path, delimiter=delim or "/", flags=flags)
        delims[path] = delim

    roots = []
    for path, folder in nodes.items():
        delim = delims[path]
        parent = path.rsplit(delim, 1)[0] if delim and delim in path else None
        if parent is not None and parent in nodes:
            nodes[parent].children.append(folder)
        else:
            roots.append(folder)
    return roots


def split_fetch_response(data) -> list[tuple[bytes, bytes]]:
    """Group a FETCH response into (attributes, body) pairs, one per message.

    imaplib returns each literal as a (line, literal) tuple followed by the
    rest of the line as bytes; attributes may be on either side of the body.
    """
    messages = []
    current = None
    for item in data or []:
        if isinstance(item, tuple):
            if current is not None:
                messages.append(current)
            current = [item[0], item[1]]
        elif isinstance(item, bytes):
            if current is None:
                # Attributes without a body literal
                logger.debug(f"FETCH item without body: {item[:80]!r}")
                continue
            current[0] = current[0] + b" " + item
            messages.append(current)
            current = None
    if current is not None:
        messages.append(current)
    return [(attrs, body) for attrs, body in messages]


def parse_internaldate(value: bytes) -> datetime | None:
    try:
        return datetime.strptime(value.decode().strip(), "%d-%b-%Y %H:%M:%S %z")
    except ValueError:
        return None


class ImapProvider(EmailProvider):
    """IMAP provider; blocking imaplib calls run on the default executor."""

    def __init__(
        self,
        account: ImapAccount,
        password: str,
        settings: ProviderSettings | None = None,
    ):
        super().__init__(settings)
        self.account = account
        self.password = password
        self._conn: imaplib.IMAP4 | None = None

    @property
    def provider_type(self) -> ProviderType:
        return ProviderType.IMAP

    @property
    def conn(self) -> imaplib.IMAP4:
        self._ensure_connected()
        return self._conn

    def _open(self) -> imaplib.IMAP4:
        cls = imaplib.IMAP4_SSL if self.account.secure else imaplib.IMAP4
        conn = cls(self.account.host, self.account.port, timeout=self.settings.request_timeout)
        conn.login(self.account.username, self.password)
        return conn

    async def connect(self) -> None:
        acct = self.account
        logger.debug(f"IMAP connect {acct.username}@{acct.host}:{acct.port} (secure={acct.secure})")
        try:
            self._conn = await self._run(self._open)
        except (imaplib.IMAP4.error, OSError) as e:
            self._conn = None
            self.connected = False
            raise MailConnectionError(f"IMAP connection to {acct.host} failed: {e}") from e
        self.connected = True

    async def disconnect(self) -> None:
        conn, self._conn = self._conn, None
        self.connected = False
        if conn is None:
            return
        try:
            await self._run(conn.logout)
        except (imaplib.IMAP4.error, OSError) as e:
            logger.debug(f"IMAP logout failed: {e}")

    async def test_connection(self) -> bool:
        try:
            await self.connect()
        except Exception as e:
            logger.debug(f"IMAP connection test failed: {e}")
            return False
        await self.disconnect()
        return True

    async def _call(self, method: str, *args):
        """Run an imaplib command, translating library errors."""
        try:
            return await self._run(getattr(self.conn, method), *args)
        except (imaplib.IMAP4.error, OSError, UnicodeEncodeError) as e:
            raise ProviderError(f"IMAP {method.upper()} failed: {e}", str(e)) from e

    async def _select(self, folder: str) -> int:
        """EXAMINE a folder, returning its message count."""
        try:
            typ, data = await self._run(self.conn.select, quote_mailbox(folder), True)
        except (imaplib.IMAP4.error, OSError, UnicodeEncodeError) as e:
            raise NotFoundError(f"Folder not found: {folder} ({e})") from e
        if typ != "OK":
            raise NotFoundError(f"Folder not found: {folder} ({response_text(data)})")
        try:
            return int(data[0])
        except (TypeError, ValueError, IndexError):
            return 0

    async def get_folders(self) -> list[Folder]:
        typ, data = await self._call("list", '""', "*")
        if typ != "OK":
            raise ProviderError("Failed to list folders", response_text(data))
        return build_folder_tree(parse_list_response(data))

    def _to_message(self, attrs: bytes, body: bytes, folder: str) -> EmailMessage:
        m = UID_RE.search(attrs)
        uid = int(m.group(1)) if m else 0
        m = FLAGS_RE.search(attrs)
        flags = _decode(m.group(1)).split() if m else []
        message = parse_rfc822(body, uid=uid, folder=folder, flags=flags, native_id=str(uid))
        if message.header("Date") is None:
            m = INTERNALDATE_RE.search(attrs)
            internal = parse_internaldate(m.group(1)) if m else None
            if internal:
                message.date = internal
        return message

    async def get_messages(self, folder: str, limit: int = 0) -> list[EmailMessage]:
        total = await self._select(folder)
        if total == 0:
            return []
        start = max(1, total - limit + 1) if limit > 0 else 1
        logger.debug(f"IMAP FETCH {folder} {start}:{total}")
        typ, data = await self._call("fetch", f"{start}:{total}", FETCH_ITEMS)
        if typ != "OK":
            raise ProviderError(f"Failed to fetch messages from {folder}", response_text(data))

        messages = []
        for attrs, body in split_fetch_response(data):
            try:
                messages.append(self._to_message(attrs, body, folder))
            except ParseError as e:
                logger.warning(f"Skipping unparseable message in {folder}: {e}")
        return messages

    async def _search_message_id(self, message_id: str) -> str:
        typ, data = await self._call("uid", "SEARCH", None, "HEADER", "Message-ID", quote(message_id))
        uids = data[0].split() if typ == "OK" and data and data[0] else []
        if not uids:
            raise NotFoundError(f"Message not found: {message_id}")
        return _decode(uids[0])

    async def get_message(self, folder: str, id: str) -> EmailMessage:
        await self._select(folder)
        uid = id if id.isdigit() else await self._search_message_id(id)
        typ, data = await self._call("uid", "FETCH", uid, FETCH_ITEMS)
        pairs = split_fetch_response(data) if typ == "OK" else []
        if not pairs:
            raise NotFoundError(f"Message not found: {id} in {folder}")
        attrs, body = pairs[0]
        return self._to_message(attrs, body, folder)

    async def upload_messages(self, folder: str, messages: list[EmailMessage]) -> None:
        self._ensure_connected()
        for message in messages:
            if not message.raw:
                raise InvalidArgumentError(f"Message {message.id} has no raw content to upload")

        for message in messages:
            # \Recent is server-managed
            flags = [f for f in message.flags or [] if f.lower() != "\\recent"]
            flag_list = f"({' '.join(flags)})" if flags else None
            date_time = imaplib.Time2Internaldate(message.date)
            typ, data = await self._call("append", quote_mailbox(folder), flag_list, date_time, message.raw)
            if typ != "OK":
                raise ProviderError(f"Failed to append {message.id} to {folder}", response_text(data))

    async def create_folder(self, path: str) -> None:
        typ, data = await self._call("create", quote_mailbox(path))
        if typ != "OK":
            raise ProviderError(f"Failed to create folder {path}", response_text(data))

    async def delete_folder(self, path: str) -> None:
        typ, data = await self._call("delete", quote_mailbox(path))
        if typ != "OK":
            raise ProviderError(f"Failed to delete folder {path}", response_text(data))

    async def get_total_message_count(self) -> int:
        total = 0
        for folder in flatten_folders(await self.get_folders()):
            if not folder.selectable:
                continue
            typ, data = await self._call("status", quote_mailbox(folder.path), "(MESSAGES)")
            m = STATUS_MESSAGES_RE.search(data[0]) if typ == "OK" and data and data[0] else None
            if not m:
                logger.warning(f"STATUS failed for {folder.path}: {response_text(data)}")
                continue
            total += int(m.group(1))
        return total

    async def fetch_raw(self, message: EmailMessage) -> bytes:
        self._ensure_connected()
        if message.raw:
            return message.raw
        fetched = await self.get_message(message.folder or "INBOX", message.native_id or message.id)
        return fetched.raw
