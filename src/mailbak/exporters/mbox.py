"""MBOX (mboxrd) export and import."""

import re
from datetime import timezone
from pathlib import Path

from loguru import logger

from ..errors import ParseError
from ..models import NO_SUBJECT, UNKNOWN_ADDRESS, EmailMessage, add_header, now
from ..naming import sanitize_folder_name
from ..parsing import (
    decode_header_value,
    ensure_utc,
    parse_address,
    parse_address_list,
    parse_date,
)
from .compose import compose_message


ESCAPE_RE = re.compile(rb"^(>*From )", re.MULTILINE)
UNESCAPE_RE = re.compile(rb"^>(>*From )", re.MULTILINE)
ENTRY_RE = re.compile(rb"^From ", re.MULTILINE)


def escape_from_lines(content: bytes) -> bytes:
    """mboxrd quoting: every line matching `>*From ` gets one more `>`."""
    return ESCAPE_RE.sub(rb">\1", content)


def unescape_from_lines(content: bytes) -> bytes:
    return UNESCAPE_RE.sub(rb"\1", content)


def envelope_line(message: EmailMessage) -> bytes:
    sender = (message.from_addr.address or UNKNOWN_ADDRESS).replace(" ", "_")
    date = ensure_utc(message.date).astimezone(timezone.utc)
    return f"From {sender} {date.ctime()}\n".encode("utf-8")


def mbox_entry(message: EmailMessage) -> bytes:
    """Envelope line, escaped content, blank separator line."""
    content = escape_from_lines(message.raw or compose_message(message))
    if not content.endswith(b"\n"):
        content += b"\n"
    return envelope_line(message) + content + b"\n"


class MboxExporter:
    """Write messages to MBOX files."""

    def export(self, messages: list[EmailMessage], path: Path | str) -> Path:
        path = Path(path)
        logger.debug(f"Exporting {len(messages)} messages to MBOX: {path}")
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "wb") as f:
            for message in messages:
                f.write(mbox_entry(message))
        logger.info(f"Exported {len(messages)} messages to {path}")
        return path

    def export_by_folder(self, messages_by_folder: dict[str, list[EmailMessage]], output_dir: Path | str) -> list[Path]:
        """One `<sanitized folder>.mbox` per folder."""
        output_dir = Path(output_dir)
        return [
            self.export(messages, output_dir / f"{sanitize_folder_name(folder)}.mbox")
            for folder, messages in messages_by_folder.items()
        ]


def parse_header_block(lines: list[str]) -> tuple[dict[str, str | list[str]], int]:
    """Colon-split headers up to the first blank line.

    Returns (headers, index of the first body line). Folded continuation
    lines are joined to the previous header.
    """
    headers: dict[str, str | list[str]] = {}
    name = value = None
    body_start = len(lines)
    for i, line in enumerate(lines):
        if not line.strip():
            body_start = i + 1
            break
        if line[0] in " \t":
            if name is None:
                raise ParseError(f"Continuation line before any header: {line!r}")
            value = f"{value} {line.strip()}"
            continue
        if name is not None:
            add_header(headers, name, value)
        if ":" not in line:
            raise ParseError(f"Malformed header line: {line!r}")
        name, _, value = line.partition(":")
        name, value = name.strip(), value.strip()
        if not name:
            raise ParseError(f"Empty header name: {line!r}")
    if name is not None:
        add_header(headers, name, value)
    if not headers:
        raise ParseError("No headers found")
    return headers, body_start


def _first(value: str | list[str] | None) -> str | None:
    return value[0] if isinstance(value, list) else value


def parse_mbox_entry(raw: bytes, uid: int) -> EmailMessage:
    """Lightweight view of one entry: headers plus a plain-text body."""
    lines = [line.rstrip("\r") for line in raw.decode("utf-8", errors="replace").split("\n")]
    headers, body_start = parse_header_block(lines)
    lookup = {k.lower(): v for k, v in headers.items()}
    body = "\n".join(lines[body_start:]).rstrip("\n")
    return EmailMessage(
        id=_first(lookup.get("message-id")) or str(uid),
        uid=uid,
        subject=decode_header_value(_first(lookup.get("subject"))) or NO_SUBJECT,
        from_addr=parse_address(_first(lookup.get("from"))),
        to=parse_address_list(_first(lookup.get("to"))),
        cc=parse_address_list(_first(lookup.get("cc"))),
        bcc=parse_address_list(_first(lookup.get("bcc"))),
        date=parse_date(_first(lookup.get("date"))) or now(),
        headers=headers,
        text=body,
        raw=raw,
    )


def split_mbox(content: bytes) -> list[bytes]:
    """Entry contents (envelope line and separator removed, unescaped)."""
    entries = []
    for segment in ENTRY_RE.split(content):
        if not segment.strip():
            continue
        newline = segment.find(b"\n")
        body = segment[newline + 1:] if newline >= 0 else b""
        # Drop the blank separator line
        if body.endswith(b"\n\n"):
            body = body[:-1]
        elif body.endswith(b"\r\n\r\n"):
            body = body[:-2]
        entries.append(unescape_from_lines(body))
    return entries


class MboxImporter:
    """Read messages back from an MBOX file."""

    def import_messages(self, path: Path | str) -> list[EmailMessage]:
        path = Path(path)
        logger.debug(f"Importing messages from MBOX: {path}")
        messages = []
        for uid, raw in enumerate(split_mbox(path.read_bytes()), start=1):
            try:
                messages.append(parse_mbox_entry(raw, uid))
            except ParseError as e:
                logger.warning(f"Skipping MBOX entry {uid} in {path}: {e}")
        logger.info(f"Imported {len(messages)} messages from {path}")
        return messages
