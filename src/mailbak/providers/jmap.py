"""JMAP provider (RFC 8620/8621) over httpx."""

import re
from datetime import datetime, timezone
from urllib.parse import quote

import httpx
from loguru import logger

from ..errors import (
    InvalidArgumentError,
    MailConnectionError,
    NotFoundError,
    ProviderError,
)
from ..models import (
    NO_SUBJECT,
    UNKNOWN_ADDRESS,
    Attachment,
    EmailAddress,
    EmailMessage,
    Folder,
    JmapAccount,
    ProviderType,
    flatten_folders,
    now,
)
from ..parsing import ensure_utc, headers_from_pairs
from .base import EmailProvider, ProviderSettings


CORE = "urn:ietf:params:jmap:core"
MAIL = "urn:ietf:params:jmap:mail"
DEFAULT_MAX_OBJECTS_IN_GET = 500

EMAIL_PROPERTIES = [
    "id", "blobId", "threadId", "mailboxIds", "keywords", "size",
    "receivedAt", "messageId", "inReplyTo", "references", "headers",
    "sender", "from", "to", "cc", "bcc", "replyTo",
    "subject", "sentAt", "hasAttachment", "preview",
    "bodyValues", "textBody", "htmlBody", "attachments",
]

KEYWORD_FLAGS = {
    "$seen": "\\Seen",
    "$flagged": "\\Flagged",
    "$answered": "\\Answered",
    "$draft": "\\Draft",
}
FLAG_KEYWORDS = {flag.lower(): kw for kw, flag in KEYWORD_FLAGS.items()}


def keywords_to_flags(keywords: dict[str, bool] | None) -> list[str]:
    """Map JMAP keywords to flags; unknown keywords are kept verbatim."""
    flags = []
    for kw, enabled in (keywords or {}).items():
        if enabled:
            flags.append(KEYWORD_FLAGS.get(kw.lower(), kw))
    return flags


def flags_to_keywords(flags: list[str] | None) -> dict[str, bool]:
    keywords = {}
    for flag in flags or []:
        kw = FLAG_KEYWORDS.get(flag.lower())
        if kw:
            keywords[kw] = True
        elif not flag.startswith("\\"):
            keywords[flag] = True
    return keywords


def parse_utc_date(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return ensure_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))
    except ValueError:
        return None


def format_utc_date(dt: datetime) -> str:
    return ensure_utc(dt).astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _address(a: dict) -> EmailAddress:
    return EmailAddress(a.get("email") or UNKNOWN_ADDRESS, a.get("name") or None)


def _first_body_value(parts: list[dict] | None, values: dict) -> str | None:
    for part in parts or []:
        value = values.get(part.get("partId") or "")
        if value is not None:
            return value.get("value")
    return None


def build_mailbox_tree(mailboxes: list[dict]) -> list[Folder]:
    nodes = {}
    for mb in mailboxes:
        nodes[mb["id"]] = Folder(
            name=mb.get("name", ""),
            path=mb["id"],
            delimiter="/",
            flags=[mb["role"]] if mb.get("role") else [],
            message_count=mb.get("totalEmails"),
            unread_count=mb.get("unreadEmails"),
        )
    roots = []
    for mb in mailboxes:
        parent_id = mb.get("parentId")
        if parent_id and parent_id in nodes:
            nodes[parent_id].children.append(nodes[mb["id"]])
        else:
            roots.append(nodes[mb["id"]])
    return roots


class JmapProvider(EmailProvider):
    """JMAP provider with Basic auth; folder `path` is the mailbox id."""

    def __init__(
        self,
        account: JmapAccount,
        password: str,
        settings: ProviderSettings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        super().__init__(settings)
        self.account = account
        self.password = password
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self.session: dict | None = None
        self.account_id: str | None = None
        self._mailbox_cache: dict[str, dict] = {}

    @property
    def provider_type(self) -> ProviderType:
        return ProviderType.JMAP

    @property
    def client(self) -> httpx.AsyncClient:
        self._ensure_connected()
        return self._client

    @property
    def max_objects_in_get(self) -> int:
        core = (self.session or {}).get("capabilities", {}).get(CORE) or {}
        return int(core.get("maxObjectsInGet") or DEFAULT_MAX_OBJECTS_IN_GET)

    async def _load_session(self, client: httpx.AsyncClient) -> dict:
        url = self.account.session_url
        try:
            resp = await client.get(url, headers={"Accept": "application/json"})
            resp.raise_for_status()
            session = resp.json()
        except httpx.HTTPStatusError as e:
            raise MailConnectionError(f"JMAP session request failed: {e.response.status_code}") from e
        except httpx.HTTPError as e:
            raise MailConnectionError(f"JMAP session request to {url} failed: {e}") from e
        except ValueError as e:
            raise MailConnectionError(f"JMAP session response is not valid JSON: {e}") from e

        if not isinstance(session, dict) or not session.get("apiUrl"):
            raise MailConnectionError("JMAP session has no apiUrl")
        if MAIL not in (session.get("capabilities") or {}):
            raise MailConnectionError("JMAP server does not support mail")
        if not (session.get("primaryAccounts") or {}).get(MAIL):
            raise MailConnectionError("No mail account found in JMAP session")
        return session

    async def connect(self) -> None:
        client = httpx.AsyncClient(
            auth=(self.account.username, self.password),
            timeout=self.settings.request_timeout,
            transport=self._transport,
        )
        try:
            session = await self._load_session(client)
        except MailConnectionError:
            await client.aclose()
            self.connected = False
            raise
        self._client = client
        self.session = session
        self.account_id = session["primaryAccounts"][MAIL]
        self._mailbox_cache = {}
        self.connected = True
        logger.debug(f"Connected to JMAP server {self.account.session_url} (account {self.account_id})")

    async def disconnect(self) -> None:
        client, self._client = self._client, None
        self.session = None
        self.account_id = None
        self._mailbox_cache = {}
        self.connected = False
        if client is not None:
            await client.aclose()

    async def test_connection(self) -> bool:
        try:
            await self.connect()
        except Exception as e:
            logger.debug(f"JMAP connection test failed: {e}")
            return False
        await self.disconnect()
        return True

    async def _request(self, calls: list[tuple[str, dict, str]]) -> dict[str, dict]:
        """POST method calls; returns arguments keyed by call id."""
        body = {
            "using": [CORE, MAIL],
            "methodCalls": [[name, args, call_id] for name, args, call_id in calls],
        }
        try:
            resp = await self.client.post(self.session["apiUrl"], json=body, headers={"Accept": "application/json"})
            resp.raise_for_status()
            data = resp.json()
        except httpx.HTTPError as e:
            raise ProviderError(f"JMAP request failed: {e}", str(e)) from e
        except ValueError as e:
            raise ProviderError(f"JMAP response is not valid JSON: {e}", str(e)) from e

        results = {}
        for name, args, call_id in data.get("methodResponses", []):
            if name == "error":
                description = args.get("description") or args.get("type") or "Unknown error"
                raise ProviderError(f"JMAP {call_id} failed: {description}", description)
            results[call_id] = args
        return results

    async def _call(self, name: str, args: dict) -> dict:
        call_id = name.replace("/", "-").lower()
        results = await self._request([(name, {"accountId": self.account_id, **args}, call_id)])
        if call_id not in results:
            raise ProviderError(f"No response from JMAP server for {name}")
        return results[call_id]

    async def get_folders(self) -> list[Folder]:
        result = await self._call("Mailbox/get", {"ids": None})
        mailboxes = result.get("list", [])
        self._mailbox_cache = {mb["id"]: mb for mb in mailboxes}
        return build_mailbox_tree(mailboxes)

    async def _mailboxes(self) -> dict[str, dict]:
        if not self._mailbox_cache:
            await self.get_folders()
        return self._mailbox_cache

    def _to_message(self, email: dict, folder: str | None) -> EmailMessage:
        jmap_id = email["id"]
        message_ids = email.get("messageId") or []
        values = email.get("bodyValues") or {}
        senders = email.get("from") or []
        headers = headers_from_pairs(
            (h.get("name", ""), (h.get("value") or "").strip()) for h in email.get("headers") or []
        )
        labels = [
            self._mailbox_cache[mid]["name"]
            for mid, on in (email.get("mailboxIds") or {}).items()
            if on and mid in self._mailbox_cache
        ]
        return EmailMessage(
            id=f"<{message_ids[0]}>" if message_ids else jmap_id,
            uid=int(re.sub(r"\D", "", jmap_id) or 0),
            subject=email.get("subject") or NO_SUBJECT,
            from_addr=_address(senders[0]) if senders else EmailAddress(UNKNOWN_ADDRESS),
            to=[_address(a) for a in email.get("to") or []],
            cc=[_address(a) for a in email.get("cc") or []],
            bcc=[_address(a) for a in email.get("bcc") or []],
            date=parse_utc_date(email.get("receivedAt")) or parse_utc_date(email.get("sentAt")) or now(),
            headers=headers,
            text=_first_body_value(email.get("textBody"), values),
            html=_first_body_value(email.get("htmlBody"), values),
            attachments=[
                Attachment(
                    filename=a.get("name") or "attachment",
                    content_type=a.get("type") or "application/octet-stream",
                    size=a.get("size") or 0,
                    content_id=a.get("cid"),
                    blob_id=a.get("blobId"),
                )
                for a in email.get("attachments") or []
            ],
            labels=labels,
            folder=folder,
            flags=keywords_to_flags(email.get("keywords")),
            native_id=jmap_id,
        )

    async def _get_emails(self, ids: list[str], folder: str | None) -> list[EmailMessage]:
        messages = []
        chunk = self.max_objects_in_get
        for i in range(0, len(ids), chunk):
            result = await self._call("Email/get", {
                "ids": ids[i:i + chunk],
                "properties": EMAIL_PROPERTIES,
                "fetchTextBodyValues": True,
                "fetchHTMLBodyValues": True,
                "fetchAllBodyValues": True,
            })
            messages.extend(self._to_message(email, folder) for email in result.get("list", []))
        return messages

    async def get_messages(self, folder: str, limit: int = 0) -> list[EmailMessage]:
        if folder not in await self._mailboxes():
            raise NotFoundError(f"Mailbox not found: {folder}")

        ids: list[str] = []
        position = 0
        page_size = self.settings.jmap_page_size
        while True:
            want = min(page_size, limit - len(ids)) if limit > 0 else page_size
            result = await self._call("Email/query", {
                "filter": {"inMailbox": folder},
                "sort": [{"property": "receivedAt", "isAscending": False}],
                "position": position,
                "limit": want,
                "calculateTotal": True,
            })
            batch = result.get("ids", [])
            ids.extend(batch)
            position += len(batch)
            total = result.get("total")
            if not batch or (limit > 0 and len(ids) >= limit) or (total is not None and position >= total):
                break
        logger.debug(f"JMAP: {len(ids)} messages in {folder}")
        return await self._get_emails(ids, folder)

    async def _resolve_message_id(self, message_id: str) -> str:
        result = await self._call("Email/query", {
            "filter": {"header": ["Message-ID", message_id.strip().strip("<>")]},
            "limit": 1,
        })
        ids = result.get("ids", [])
        if not ids:
            raise NotFoundError(f"Message not found: {message_id}")
        return ids[0]

    async def get_message(self, folder: str, id: str) -> EmailMessage:
        await self._mailboxes()
        jmap_id = await self._resolve_message_id(id) if "@" in id else id
        messages = await self._get_emails([jmap_id], folder)
        if not messages:
            raise NotFoundError(f"Message not found: {id}")
        return messages[0]

    async def _upload_blob(self, raw: bytes) -> str:
        url = self.session["uploadUrl"].replace("{accountId}", self.account_id)
        try:
            resp = await self.client.post(url, content=raw, headers={"Content-Type": "message/rfc822"})
            resp.raise_for_status()
            return resp.json()["blobId"]
        except httpx.HTTPError as e:
            raise ProviderError(f"Blob upload failed: {e}", str(e)) from e
        except (ValueError, KeyError) as e:
            raise ProviderError(f"Blob upload returned no blobId: {e}", str(e)) from e

    async def upload_messages(self, folder: str, messages: list[EmailMessage]) -> None:
        self._ensure_connected()
        for message in messages:
            if not message.raw:
                raise InvalidArgumentError(f"Message {message.id} has no raw content to upload")

        for message in messages:
            blob_id = await self._upload_blob(message.raw)
            result = await self._call("Email/import", {
                "emails": {
                    "import-1": {
                        "blobId": blob_id,
                        "mailboxIds": {folder: True},
                        "keywords": flags_to_keywords(message.flags),
                        "receivedAt": format_utc_date(message.date),
                    },
                },
            })
            failure = (result.get("notCreated") or {}).get("import-1")
            if failure:
                description = failure.get("description") or failure.get("type") or "Unknown error"
                raise ProviderError(f"Email import failed: {description}", description)

    async def create_folder(self, path: str) -> None:
        result = await self._call("Mailbox/set", {
            "create": {"new-mailbox": {"name": path, "parentId": None}},
        })
        failure = (result.get("notCreated") or {}).get("new-mailbox")
        if failure:
            description = failure.get("description") or failure.get("type") or "Unknown error"
            raise ProviderError(f"Failed to create folder {path}: {description}", description)
        self._mailbox_cache = {}

    async def delete_folder(self, path: str) -> None:
        result = await self._call("Mailbox/set", {"destroy": [path]})
        failure = (result.get("notDestroyed") or {}).get(path)
        if failure:
            description = failure.get("description") or failure.get("type") or "Unknown error"
            raise ProviderError(f"Failed to delete folder {path}: {description}", description)
        self._mailbox_cache = {}

    async def get_total_message_count(self) -> int:
        return sum(f.message_count or 0 for f in flatten_folders(await self.get_folders()))

    async def _download(self, blob_id: str, content_type: str, name: str) -> bytes:
        url = (
            self.session["downloadUrl"]
            .replace("{accountId}", quote(self.account_id, safe=""))
            .replace("{blobId}", quote(blob_id, safe=""))
            .replace("{type}", quote(content_type, safe=""))
            .replace("{name}", quote(name, safe=""))
        )
        try:
            resp = await self.client.get(url)
            resp.raise_for_status()
        except httpx.HTTPStatusError as e:
            if e.response.status_code == 404:
                raise NotFoundError(f"Blob not found: {blob_id}") from e
            raise ProviderError(f"Download failed: {e}", str(e)) from e
        except httpx.HTTPError as e:
            raise ProviderError(f"Download failed: {e}", str(e)) from e
        return resp.content

    async def fetch_raw(self, message: EmailMessage) -> bytes:
        self._ensure_connected()
        if message.raw:
            return message.raw
        jmap_id = message.native_id or await self._resolve_message_id(message.id)
        result = await self._call("Email/get", {"ids": [jmap_id], "properties": ["blobId"]})
        found = result.get("list", [])
        if not found:
            raise NotFoundError(f"Message not found: {message.id}")
        return await self._download(found[0]["blobId"], "message/rfc822", "message.eml")

    async def fetch_attachment(self, message: EmailMessage, attachment: Attachment) -> bytes:
        self._ensure_connected()
        if attachment.content is not None:
            return attachment.content
        return await self._download(attachment.blob_id, attachment.content_type, attachment.filename)
