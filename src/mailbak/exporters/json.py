"""JSON export of the structured model (no raw bytes, no attachment content)."""

import json
from pathlib import Path
from typing import Any

from loguru import logger

from ..models import EmailMessage
from ..naming import sanitize_folder_name
from ..parsing import ensure_utc


def message_to_dict(message: EmailMessage) -> dict[str, Any]:
    return {
        "id": message.id,
        "uid": message.uid,
        "subject": message.subject,
        "from": message.from_addr.to_dict(),
        "to": [a.to_dict() for a in message.to],
        "cc": [a.to_dict() for a in message.cc],
        "bcc": [a.to_dict() for a in message.bcc],
        "date": ensure_utc(message.date).isoformat(),
        "headers": message.headers,
        "text": message.text,
        "html": message.html,
        "attachments": [
            {
                "filename": a.filename,
                "contentType": a.content_type,
                "size": a.size,
                "contentId": a.content_id,
                # An empty download counts as no content
                "hasContent": bool(a.content),
            }
            for a in message.attachments
        ],
        "labels": message.labels,
        "folder": message.folder,
        "flags": message.flags,
    }


def _write(data, path: Path) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2, ensure_ascii=False)
    return path


class JsonExporter:
    def export(self, messages: list[EmailMessage], path: Path | str) -> Path:
        path = Path(path)
        logger.debug(f"Exporting {len(messages)} messages to JSON: {path}")
        _write([message_to_dict(m) for m in messages], path)
        logger.info(f"Exported {len(messages)} messages to {path}")
        return path

    def export_by_folder(self, messages_by_folder: dict[str, list[EmailMessage]], output_dir: Path | str) -> list[Path]:
        output_dir = Path(output_dir)
        return [
            self.export(messages, output_dir / f"{sanitize_folder_name(folder)}.json")
            for folder, messages in messages_by_folder.items()
        ]

    def export_all(self, messages_by_folder: dict[str, list[EmailMessage]], path: Path | str) -> Path:
        """Single file mapping folder name -> messages."""
        path = Path(path)
        data = {folder: [message_to_dict(m) for m in messages] for folder, messages in messages_by_folder.items()}
        _write(data, path)
        logger.info(f"Exported all messages to {path}")
        return path
