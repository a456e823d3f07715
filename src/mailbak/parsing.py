"""RFC822 parsing and normalization into the canonical model."""

from datetime import datetime, timezone
from email import policy
from email.header import decode_header, make_header
from email.message import EmailMessage as MimeMessage
from email.parser import BytesParser
from email.utils import getaddresses, parsedate_to_datetime
from typing import Iterable

from .errors import ParseError
from .models import (
    NO_SUBJECT,
    UNKNOWN_ADDRESS,
    Attachment,
    EmailAddress,
    EmailMessage,
    add_header,
    now,
)


def decode_header_value(value: str | None) -> str:
    """Decode RFC 2047 encoded words in a header value."""
    if not value:
        return ""
    try:
        return str(make_header(decode_header(value)))
    except (LookupError, UnicodeDecodeError, ValueError):
        return value


def parse_address_list(value: str | None) -> list[EmailAddress]:
    """Parse a comma-separated address header, keeping header order."""
    if not value:
        return []
    result = []
    for name, addr in getaddresses([value]):
        if not addr:
            continue
        name = decode_header_value(name) if name else ""
        result.append(EmailAddress(addr, name or None))
    return result


def parse_address(value: str | None) -> EmailAddress:
    """First address of a header, or the `unknown` sentinel."""
    addresses = parse_address_list(value)
    return addresses[0] if addresses else EmailAddress(UNKNOWN_ADDRESS)


def ensure_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def parse_date(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return ensure_utc(parsedate_to_datetime(value))
    except (TypeError, ValueError, IndexError):
        return None


def headers_from_pairs(pairs: Iterable[tuple[str, str]]) -> dict[str, str | list[str]]:
    headers: dict[str, str | list[str]] = {}
    for name, value in pairs:
        add_header(headers, name, value)
    return headers


def _part_text(part: MimeMessage) -> str:
    try:
        content = part.get_content()
    except (LookupError, UnicodeDecodeError, KeyError):
        payload = part.get_payload(decode=True) or b""
        return payload.decode("utf-8", errors="replace")
    if isinstance(content, bytes):
        return content.decode(part.get_content_charset() or "utf-8", errors="replace")
    return content


def _is_body_part(part: MimeMessage) -> bool:
    return part.get_content_type() in ("text/plain", "text/html") and not part.is_attachment()


def extract_bodies(msg: MimeMessage) -> tuple[str | None, str | None]:
    """Return (text, html): the first text/plain and first text/html body parts."""
    text = html = None
    for part in msg.walk():
        if part.is_multipart() or not _is_body_part(part):
            continue
        if part.get_content_type() == "text/plain" and text is None:
            text = _part_text(part)
        elif part.get_content_type() == "text/html" and html is None:
            html = _part_text(part)
    return text, html


def extract_attachments(msg: MimeMessage) -> list[Attachment]:
    attachments = []
    for part in msg.walk():
        if part.is_multipart():
            continue
        filename = part.get_filename()
        if _is_body_part(part) and not filename:
            continue
        if not (part.is_attachment() or filename or part.get_content_maintype() != "text"):
            continue
        content = part.get_payload(decode=True) or b""
        attachments.append(Attachment(
            filename=decode_header_value(filename) if filename else f"attachment-{len(attachments) + 1}",
            content_type=part.get_content_type(),
            size=len(content),
            content=content,
            content_id=part.get("Content-ID"),
        ))
    return attachments


def parse_rfc822(
    raw: bytes,
    uid: int = 0,
    folder: str | None = None,
    flags: list[str] | None = None,
    native_id: str | None = None,
) -> EmailMessage:
    """Parse raw RFC822 bytes into an EmailMessage, keeping `raw` as-is.

    Raises ParseError when the bytes cannot be understood as a message.
    """
    if not raw or not raw.strip():
        raise ParseError(f"Empty message (uid {uid})")
    try:
        msg = BytesParser(policy=policy.default).parsebytes(raw)
        headers = headers_from_pairs((name, str(value)) for name, value in msg.items())
        if not headers:
            raise ParseError(f"No headers found (uid {uid})")
        text, html = extract_bodies(msg)
        message = EmailMessage(
            id=str(msg.get("Message-ID") or "").strip() or native_id or str(uid),
            uid=uid,
            subject=str(msg.get("Subject") or "") or NO_SUBJECT,
            from_addr=parse_address(str(msg.get("From") or "")),
            to=parse_address_list(str(msg.get("To") or "")),
            cc=parse_address_list(str(msg.get("Cc") or "")),
            bcc=parse_address_list(str(msg.get("Bcc") or "")),
            # Messages without a usable Date fall back to "now"
            date=parse_date(str(msg.get("Date") or "")) or now(),
            headers=headers,
            text=text,
            html=html,
            attachments=extract_attachments(msg),
            raw=raw,
            folder=folder,
            flags=list(flags) if flags is not None else [],
            native_id=native_id,
        )
    except ParseError:
        raise
    except Exception as e:
        raise ParseError(f"Failed to parse message (uid {uid}): {e}") from e
    return message
