"""Rebuild RFC822 bytes from the structured model when `raw` is missing."""

import base64
import uuid
from email.header import Header
from email.utils import format_datetime, formataddr

from ..models import EmailAddress, EmailMessage
from ..parsing import ensure_utc


# Headers written from model fields; skipped when copying the remaining headers
MANAGED_HEADERS = {
    "from", "to", "cc", "subject", "date", "message-id",
    "mime-version", "content-type", "content-transfer-encoding",
}


def encode_header(value: str) -> str:
    if value.isascii():
        return value
    return Header(value, "utf-8").encode()


def format_address(addr: EmailAddress) -> str:
    return formataddr((addr.name or "", addr.address))


def format_addresses(addrs: list[EmailAddress]) -> str:
    return ", ".join(format_address(a) for a in addrs)


def _body(message: EmailMessage) -> tuple[str, str]:
    """(content type, body) of the single body part; HTML preferred."""
    if message.html:
        return "text/html", message.html
    return "text/plain", message.text or ""


def compose_message(message: EmailMessage, attachments: bool = True) -> bytes:
    """RFC822 bytes for `message`.

    With `attachments`, attachments whose content is known are added as
    base64 parts of a multipart/mixed body.
    """
    parts = [a for a in message.attachments if a.content is not None] if attachments else []
    boundary = f"----=_Part_{uuid.uuid4().hex}" if parts else None
    content_type, body = _body(message)

    lines = [f"From: {format_address(message.from_addr)}"]
    lines.append(f"To: {format_addresses(message.to)}")
    if message.cc:
        lines.append(f"Cc: {format_addresses(message.cc)}")
    lines.append(f"Subject: {encode_header(message.subject)}")
    lines.append(f"Date: {format_datetime(ensure_utc(message.date))}")
    lines.append(f"Message-ID: {message.id}")
    lines.append("MIME-Version: 1.0")
    if boundary:
        lines.append(f'Content-Type: multipart/mixed; boundary="{boundary}"')
    else:
        lines.append(f"Content-Type: {content_type}; charset=utf-8")
        lines.append("Content-Transfer-Encoding: 8bit")

    for name, value in message.headers.items():
        if name.lower() in MANAGED_HEADERS:
            continue
        for v in value if isinstance(value, list) else [value]:
            lines.append(f"{name}: {encode_header(v)}")

    lines.append("")
    if not boundary:
        lines.append(body)
        return "\n".join(lines).encode("utf-8")

    lines.extend([
        f"--{boundary}",
        f"Content-Type: {content_type}; charset=utf-8",
        "Content-Transfer-Encoding: 8bit",
        "",
        body,
    ])
    for attachment in parts:
        filename = attachment.filename.replace('"', "'")
        lines.extend([
            f"--{boundary}",
            f"Content-Type: {attachment.content_type}",
            "Content-Transfer-Encoding: base64",
            f'Content-Disposition: attachment; filename="{encode_header(filename)}"',
        ])
        if attachment.content_id:
            lines.append(f"Content-ID: {attachment.content_id}")
        lines.append("")
        lines.append(base64.encodebytes(attachment.content).decode("ascii").rstrip("\n"))
    lines.append(f"--{boundary}--")
    lines.append("")
    return "\n".join(lines).encode("utf-8")
