"""EML export (one file per message) and import."""

from pathlib import Path

from loguru import logger

from ..errors import ParseError
from ..models import EmailMessage
from ..naming import eml_filename, sanitize_folder_name
from ..parsing import parse_rfc822
from .compose import compose_message


def unique_name(name: str, used: set[str]) -> str:
    """`name`, or `name` with a numeric suffix if already used."""
    if name not in used:
        return name
    stem, dot, ext = name.rpartition(".")
    n = 2
    while f"{stem}_{n}{dot}{ext}" in used:
        n += 1
    return f"{stem}_{n}{dot}{ext}"


class EmlExporter:
    """Write each message to `<date>_<uid>_<subject>.eml`."""

    def export(self, messages: list[EmailMessage], output_dir: Path | str) -> list[Path]:
        output_dir = Path(output_dir)
        logger.debug(f"Exporting {len(messages)} messages to EML: {output_dir}")
        output_dir.mkdir(parents=True, exist_ok=True)
        used: set[str] = set()
        paths = []
        for message in messages:
            name = unique_name(eml_filename(message), used)
            used.add(name)
            path = output_dir / name
            # Rebuilt messages carry a single body and no attachments
            path.write_bytes(message.raw or compose_message(message, attachments=False))
            paths.append(path)
        logger.info(f"Exported {len(messages)} messages to {output_dir}")
        return paths

    def export_by_folder(self, messages_by_folder: dict[str, list[EmailMessage]], output_dir: Path | str) -> dict[str, list[Path]]:
        """One `<sanitized folder>/` directory per folder."""
        output_dir = Path(output_dir)
        return {
            folder: self.export(messages, output_dir / sanitize_folder_name(folder))
            for folder, messages in messages_by_folder.items()
        }


class EmlImporter:
    """Read `*.eml` files of a directory, in filename order."""

    def import_messages(self, directory: Path | str) -> list[EmailMessage]:
        directory = Path(directory)
        messages = []
        for uid, path in enumerate(sorted(directory.glob("*.eml")), start=1):
            try:
                messages.append(parse_rfc822(path.read_bytes(), uid=uid))
            except ParseError as e:
                logger.warning(f"Skipping {path.name}: {e}")
        logger.info(f"Imported {len(messages)} messages from {directory}")
        return messages
