"""Gmail provider using the Gmail REST API with OAuth2 refresh tokens."""

import base64
import re
from datetime import datetime, timezone

import httplib2
from google.auth.exceptions import GoogleAuthError
from google.oauth2.credentials import Credentials
from google_auth_httplib2 import AuthorizedHttp
from google_auth_oauthlib.flow import Flow
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError
from loguru import logger

from ..errors import (
    InvalidArgumentError,
    MailbakError,
    MailConnectionError,
    NotFoundError,
    ParseError,
    ProviderError,
)
from ..models import (
    NO_SUBJECT,
    Attachment,
    EmailMessage,
    Folder,
    GmailAccount,
    ProviderType,
    now,
)
from ..parsing import (
    decode_header_value,
    headers_from_pairs,
    parse_address,
    parse_address_list,
    parse_date,
    parse_rfc822,
)
from .base import EmailProvider, ProviderSettings


SCOPES = [
    "https://www.googleapis.com/auth/gmail.readonly",
    "https://www.googleapis.com/auth/gmail.modify",
    "https://www.googleapis.com/auth/gmail.labels",
]
AUTH_URI = "https://accounts.google.com/o/oauth2/auth"
TOKEN_URI = "https://oauth2.googleapis.com/token"
# Loopback redirect; the code is copied from the browser's address bar
REDIRECT_URI = "http://localhost"

MAX_PAGE_SIZE = 500
USER_ID = "me"

CHARSET_RE = re.compile(r'charset="?([^";\s]+)"?', re.IGNORECASE)


def b64url_decode(data: str) -> bytes:
    return base64.urlsafe_b64decode(data + "=" * (-len(data) % 4))


def b64url_encode(raw: bytes) -> str:
    """base64url without padding (RFC 4648 section 5)."""
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def gmail_flags(label_ids: list[str]) -> list[str]:
    """Map Gmail system labels to IMAP-style flags."""
    flags = []
    if "UNREAD" not in label_ids:
        flags.append("\\Seen")
    if "STARRED" in label_ids:
        flags.append("\\Flagged")
    if "DRAFT" in label_ids:
        flags.append("\\Draft")
    return flags


def gmail_uid(message_id: str) -> int:
    """Gmail ids are hex strings."""
    try:
        return int(message_id, 16)
    except ValueError:
        return 0


def _part_header(part: dict, name: str) -> str | None:
    lname = name.lower()
    for h in part.get("headers", []) or []:
        if h.get("name", "").lower() == lname:
            return h.get("value")
    return None


def _decode_part(part: dict) -> str:
    data = b64url_decode(part["body"]["data"])
    m = CHARSET_RE.search(_part_header(part, "Content-Type") or "")
    charset = m.group(1) if m else "utf-8"
    try:
        return data.decode(charset, errors="replace")
    except LookupError:
        return data.decode("utf-8", errors="replace")


def find_body_part(part: dict, mime_type: str) -> dict | None:
    """First part of `mime_type` with inline data, depth-first."""
    if (
        part.get("mimeType") == mime_type
        and not part.get("filename")
        and (part.get("body") or {}).get("data")
    ):
        return part
    for child in part.get("parts", []) or []:
        found = find_body_part(child, mime_type)
        if found:
            return found
    return None


def extract_attachments(part: dict) -> list[Attachment]:
    attachments = []
    body = part.get("body") or {}
    if part.get("filename") and body.get("attachmentId"):
        attachments.append(Attachment(
            filename=part["filename"],
            content_type=part.get("mimeType") or "application/octet-stream",
            size=body.get("size", 0),
            content_id=_part_header(part, "Content-ID"),
            blob_id=body["attachmentId"],
        ))
    for child in part.get("parts", []) or []:
        attachments.extend(extract_attachments(child))
    return attachments


def http_error(e: HttpError, what: str) -> MailbakError:
    """Translate a Gmail API error; 404 means the target does not exist."""
    if e.resp.status == 404:
        return NotFoundError(f"{what}: not found")
    reason = e.reason or str(e)
    return ProviderError(f"{what} failed: {reason}", reason)


class GmailAuthFlow:
    """OAuth2 consent flow yielding a refresh token for offline access."""

    def __init__(self, client_id: str, client_secret: str, redirect_uri: str = REDIRECT_URI):
        client_config = {
            "installed": {
                "client_id": client_id,
                "client_secret": client_secret,
                "auth_uri": AUTH_URI,
                "token_uri": TOKEN_URI,
                "redirect_uris": [redirect_uri],
            }
        }
        self.flow = Flow.from_client_config(client_config, scopes=SCOPES, redirect_uri=redirect_uri)

    def authorization_url(self) -> str:
        url, _state = self.flow.authorization_url(access_type="offline", prompt="consent")
        return url

    def exchange_code(self, code: str) -> str:
        """Exchange an authorization code for a refresh token."""
        try:
            self.flow.fetch_token(code=code.strip())
        except Exception as e:
            raise MailConnectionError(f"Failed to exchange authorization code: {e}") from e
        refresh_token = self.flow.credentials.refresh_token
        if not refresh_token:
            raise MailConnectionError("No refresh token received. Ensure access_type=offline is set.")
        return refresh_token


class GmailProvider(EmailProvider):
    """Gmail provider; folders are labels, `path` is the label id.

    `service` injects a prebuilt Gmail API resource instead of building one
    from the refresh token.
    """

    def __init__(
        self,
        account: GmailAccount,
        client_id: str,
        client_secret: str,
        settings: ProviderSettings | None = None,
        service=None,
    ):
        super().__init__(settings)
        self.account = account
        self.client_id = client_id
        self.client_secret = client_secret
        self._injected_service = service
        self._service = None

    @property
    def provider_type(self) -> ProviderType:
        return ProviderType.GMAIL

    @property
    def service(self):
        self._ensure_connected()
        return self._service

    def _build_service(self):
        creds = Credentials(
            token=None,
            refresh_token=self.account.refresh_token,
            client_id=self.client_id,
            client_secret=self.client_secret,
            token_uri=TOKEN_URI,
            scopes=SCOPES,
        )
        http = AuthorizedHttp(creds, http=httplib2.Http(timeout=self.settings.request_timeout))
        return build("gmail", "v1", http=http, cache_discovery=False)

    async def _execute(self, request, what: str):
        try:
            return await self._run(request.execute)
        except HttpError as e:
            raise http_error(e, what) from e
        except (GoogleAuthError, httplib2.HttpLib2Error, OSError) as e:
            raise ProviderError(f"{what} failed: {e}", str(e)) from e

    async def connect(self) -> None:
        if not self.account.refresh_token and self._injected_service is None:
            raise MailConnectionError(f"Gmail account {self.account.email} has no refresh token")
        try:
            service = self._injected_service or await self._run(self._build_service)
            profile = await self._execute(service.users().getProfile(userId=USER_ID), "Get profile")
        except (MailbakError, GoogleAuthError, httplib2.HttpLib2Error, OSError) as e:
            self._service = None
            self.connected = False
            raise MailConnectionError(f"Failed to connect to Gmail: {e}") from e
        self._service = service
        self.connected = True
        logger.debug(f"Connected to Gmail API as {profile.get('emailAddress', self.account.email)}")

    async def disconnect(self) -> None:
        self._service = None
        self.connected = False

    async def test_connection(self) -> bool:
        try:
            await self.connect()
        except Exception as e:
            logger.debug(f"Gmail connection test failed: {e}")
            return False
        # The API session stays bound to the instance
        return True

    async def get_folders(self) -> list[Folder]:
        labels = self.service.users().labels()
        resp = await self._execute(labels.list(userId=USER_ID), "List labels")
        folders = []
        for label in resp.get("labels", []):
            detail = await self._execute(labels.get(userId=USER_ID, id=label["id"]), f"Get label {label['id']}")
            folders.append(Folder(
                name=detail.get("name") or label.get("name", ""),
                path=label["id"],
                delimiter="/",
                flags=[label.get("type", "")],
                message_count=detail.get("messagesTotal"),
                unread_count=detail.get("messagesUnread"),
            ))
        return folders

    async def _list_ids(self, folder: str, limit: int) -> list[str]:
        ids: list[str] = []
        page_token = None
        while True:
            page_size = min(MAX_PAGE_SIZE, limit - len(ids)) if limit > 0 else MAX_PAGE_SIZE
            kwargs = {"userId": USER_ID, "labelIds": [folder], "maxResults": page_size}
            if page_token:
                kwargs["pageToken"] = page_token
            resp = await self._execute(self.service.users().messages().list(**kwargs), f"List messages in {folder}")
            ids.extend(m["id"] for m in resp.get("messages", []))
            page_token = resp.get("nextPageToken")
            if not page_token or (limit > 0 and len(ids) >= limit):
                break
        return ids[:limit] if limit > 0 else ids

    def _to_message(self, data: dict, folder: str | None) -> EmailMessage:
        gmail_id = data["id"]
        labels = data.get("labelIds", [])
        flags = gmail_flags(labels)
        uid = gmail_uid(gmail_id)
        internal = None
        if data.get("internalDate"):
            internal = datetime.fromtimestamp(int(data["internalDate"]) / 1000, tz=timezone.utc)

        if data.get("raw"):
            message = parse_rfc822(b64url_decode(data["raw"]), uid=uid, folder=folder, flags=flags, native_id=gmail_id)
            message.labels = labels
            if internal:
                message.date = internal
            return message

        payload = data.get("payload") or {}
        headers = headers_from_pairs((h.get("name", ""), h.get("value", "")) for h in payload.get("headers", []))
        message = EmailMessage(id=gmail_id, uid=uid, headers=headers)
        message.id = message.header("Message-ID") or gmail_id
        message.subject = decode_header_value(message.header("Subject")) or NO_SUBJECT
        message.from_addr = parse_address(message.header("From"))
        message.to = parse_address_list(message.header("To"))
        message.cc = parse_address_list(message.header("Cc"))
        message.bcc = parse_address_list(message.header("Bcc"))
        message.date = internal or parse_date(message.header("Date")) or now()

        text_part = find_body_part(payload, "text/plain")
        html_part = find_body_part(payload, "text/html")
        message.text = _decode_part(text_part) if text_part else None
        message.html = _decode_part(html_part) if html_part else None
        message.attachments = extract_attachments(payload)
        message.labels = labels
        message.folder = folder
        message.flags = flags
        message.native_id = gmail_id
        return message

    async def _fetch(self, gmail_id: str, folder: str | None) -> EmailMessage:
        fmt = "raw" if self.settings.gmail_fetch_raw else "full"
        request = self.service.users().messages().get(userId=USER_ID, id=gmail_id, format=fmt)
        data = await self._execute(request, f"Get message {gmail_id}")
        return self._to_message(data, folder)

    async def get_messages(self, folder: str, limit: int = 0) -> list[EmailMessage]:
        ids = await self._list_ids(folder, limit)
        logger.debug(f"Gmail: {len(ids)} messages in {folder}")
        messages = []
        for gmail_id in ids:
            try:
                messages.append(await self._fetch(gmail_id, folder))
            except (ProviderError, NotFoundError, ParseError) as e:
                logger.warning(f"Skipping Gmail message {gmail_id}: {e}")
        return messages

    async def _resolve_message_id(self, message_id: str) -> str:
        q = f"rfc822msgid:{message_id.strip().strip('<>')}"
        resp = await self._execute(
            self.service.users().messages().list(userId=USER_ID, q=q, maxResults=1),
            f"Search {message_id}",
        )
        found = resp.get("messages") or []
        if not found:
            raise NotFoundError(f"Message not found: {message_id}")
        return found[0]["id"]

    async def get_message(self, folder: str, id: str) -> EmailMessage:
        self._ensure_connected()
        gmail_id = await self._resolve_message_id(id) if "@" in id else id
        return await self._fetch(gmail_id, folder)

    async def upload_messages(self, folder: str, messages: list[EmailMessage]) -> None:
        self._ensure_connected()
        for message in messages:
            if not message.raw:
                raise InvalidArgumentError(f"Message {message.id} has no raw content to upload")

        for message in messages:
            body = {"raw": b64url_encode(message.raw), "labelIds": [folder]}
            request = self.service.users().messages().import_(
                userId=USER_ID, body=body, internalDateSource="dateHeader",
            )
            await self._execute(request, f"Import {message.id} into {folder}")

    async def create_folder(self, path: str) -> None:
        body = {"name": path, "labelListVisibility": "labelShow", "messageListVisibility": "show"}
        await self._execute(self.service.users().labels().create(userId=USER_ID, body=body), f"Create label {path}")

    async def delete_folder(self, path: str) -> None:
        await self._execute(self.service.users().labels().delete(userId=USER_ID, id=path), f"Delete label {path}")

    async def get_total_message_count(self) -> int:
        # Labels overlap, so the profile total is the only non-double-counted figure
        profile = await self._execute(self.service.users().getProfile(userId=USER_ID), "Get profile")
        return int(profile.get("messagesTotal", 0))

    async def fetch_raw(self, message: EmailMessage) -> bytes:
        self._ensure_connected()
        if message.raw:
            return message.raw
        gmail_id = message.native_id or await self._resolve_message_id(message.id)
        request = self.service.users().messages().get(userId=USER_ID, id=gmail_id, format="raw")
        data = await self._execute(request, f"Get raw message {gmail_id}")
        return b64url_decode(data["raw"])

    async def fetch_attachment(self, message: EmailMessage, attachment: Attachment) -> bytes:
        self._ensure_connected()
        if attachment.content is not None:
            return attachment.content
        request = self.service.users().messages().attachments().get(
            userId=USER_ID, messageId=message.native_id, id=attachment.blob_id,
        )
        data = await self._execute(request, f"Get attachment {attachment.filename}")
        return b64url_decode(data.get("data", ""))
