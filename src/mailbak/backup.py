"""Backup, migration and import orchestration on top of providers and exporters."""

import json
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Callable

from loguru import logger

from .errors import InvalidArgumentError, MailbakError, NotFoundError
from .exporters import EmlExporter, EmlImporter, JsonExporter, MboxExporter, MboxImporter
from .models import EmailMessage, ExportFormat, Folder, ProviderType, flatten_folders, now
from .naming import sanitize_folder_name
from .providers import EmailProvider


SUMMARY_FILE = "summary.json"


class CancelToken:
    """Cooperative cancellation flag, checked between units of work."""

    def __init__(self):
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


@dataclass
class BackupOptions:
    formats: list[ExportFormat]
    output_dir: Path
    # Folder paths or names; None means every selectable folder
    folders: list[str] | None = None
    limit: int = 0
    # Download attachment content for messages without `raw`
    include_attachments: bool = False


@dataclass
class BackupProgress:
    folder: str
    current: int
    total: int
    messages: int = 0
    # False when the folder is starting, True once exported
    finished: bool = False

    @property
    def percentage(self) -> float:
        return 100.0 * self.current / self.total if self.total else 100.0


@dataclass
class FolderStats:
    folder: str
    messages: int = 0
    files: list[Path] = field(default_factory=list)
    error: str | None = None


@dataclass
class BackupResult:
    output_dir: Path
    started_at: datetime
    finished_at: datetime | None = None
    folders: list[FolderStats] = field(default_factory=list)
    cancelled: bool = False

    @property
    def total_messages(self) -> int:
        return sum(f.messages for f in self.folders)

    @property
    def errors(self) -> list[FolderStats]:
        return [f for f in self.folders if f.error]


@dataclass
class TransferProgress:
    folder: str
    current: int
    total: int
    transferred: int = 0
    skipped: int = 0
    failed: int = 0


@dataclass
class TransferStats:
    """Per-folder counts for a migration or import."""
    folder: str
    transferred: int = 0
    skipped: int = 0
    failed: int = 0
    error: str | None = None


@dataclass
class MigrationResult:
    folders: list[TransferStats] = field(default_factory=list)
    cancelled: bool = False

    @property
    def transferred(self) -> int:
        return sum(f.transferred for f in self.folders)

    @property
    def skipped(self) -> int:
        return sum(f.skipped for f in self.folders)

    @property
    def failed(self) -> int:
        return sum(f.failed for f in self.folders)


def folder_display_name(provider: EmailProvider, folder: Folder) -> str:
    """IMAP paths are readable; Gmail label ids and JMAP mailbox ids are not."""
    return folder.path if provider.provider_type == ProviderType.IMAP else folder.name


def select_folders(provider: EmailProvider, folders: list[Folder], wanted: list[str] | None) -> list[Folder]:
    """Selectable folders, filtered to `wanted` paths or names when given."""
    selectable = [f for f in flatten_folders(folders) if f.selectable]
    if not wanted:
        return selectable
    selected = []
    for w in wanted:
        match = next(
            (f for f in selectable if w in (f.path, f.name, folder_display_name(provider, f))),
            None,
        )
        if match is None:
            raise NotFoundError(f"Folder not found: {w}")
        selected.append(match)
    return selected


async def _load_attachments(provider: EmailProvider, messages: list[EmailMessage]) -> None:
    for message in messages:
        if message.raw:
            continue
        for attachment in message.attachments:
            if attachment.content is None and attachment.blob_id:
                attachment.content = await provider.fetch_attachment(message, attachment)


def _export(fmt: ExportFormat, messages: list[EmailMessage], name: str, backup_dir: Path) -> list[Path]:
    safe = sanitize_folder_name(name)
    if fmt == ExportFormat.MBOX:
        return [MboxExporter().export(messages, backup_dir / f"{safe}.mbox")]
    if fmt == ExportFormat.EML:
        return EmlExporter().export(messages, backup_dir / "eml" / safe)
    if fmt == ExportFormat.JSON:
        return [JsonExporter().export(messages, backup_dir / f"{safe}.json")]
    raise InvalidArgumentError(f"Unknown export format: {fmt}")


def write_summary(result: BackupResult, formats: list[ExportFormat]) -> Path:
    path = result.output_dir / SUMMARY_FILE
    data = {
        "startedAt": result.started_at.isoformat(),
        "finishedAt": result.finished_at.isoformat() if result.finished_at else None,
        "formats": [fmt.value for fmt in formats],
        "cancelled": result.cancelled,
        "totalMessages": result.total_messages,
        "folders": [
            {
                "folder": stats.folder,
                "messages": stats.messages,
                "files": [str(p.relative_to(result.output_dir)) for p in stats.files],
                "error": stats.error,
            }
            for stats in result.folders
        ],
    }
    with open(path, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2, ensure_ascii=False)
    return path


async def run_backup(
    provider: EmailProvider,
    options: BackupOptions,
    cancel: CancelToken | None = None,
    on_progress: Callable[[BackupProgress], None] | None = None,
) -> BackupResult:
    """Back up folders of a connected provider into a timestamped directory.

    A folder that fails to fetch is recorded and skipped; cancellation is
    checked between folders and between formats.
    """
    cancel = cancel or CancelToken()
    started = now()
    backup_dir = Path(options.output_dir) / f"backup_{started:%Y%m%d_%H%M%S}"
    backup_dir.mkdir(parents=True, exist_ok=True)
    result = BackupResult(output_dir=backup_dir, started_at=started)

    folders = select_folders(provider, await provider.get_folders(), options.folders)
    logger.info(f"Backing up {len(folders)} folders to {backup_dir}")

    for i, folder in enumerate(folders):
        if cancel.cancelled:
            result.cancelled = True
            break
        name = folder_display_name(provider, folder)
        stats = FolderStats(folder=name)
        result.folders.append(stats)
        if on_progress:
            on_progress(BackupProgress(name, i, len(folders)))

        try:
            messages = await provider.get_messages(folder.path, options.limit)
            if options.include_attachments:
                await _load_attachments(provider, messages)
        except MailbakError as e:
            logger.warning(f"Skipping folder {name}: {e}")
            stats.error = str(e)
            continue
        stats.messages = len(messages)

        for fmt in options.formats:
            if cancel.cancelled:
                result.cancelled = True
                break
            stats.files.extend(_export(fmt, messages, name, backup_dir))

        if on_progress:
            on_progress(BackupProgress(name, i + 1, len(folders), len(messages), finished=True))

    result.finished_at = now()
    write_summary(result, options.formats)
    logger.info(f"Backup finished: {result.total_messages} messages in {len(result.folders)} folders")
    return result


async def resolve_folder(provider: EmailProvider, name: str) -> Folder:
    """Find a folder by display name, path or name, creating it if missing."""
    def find(folders: list[Folder]) -> Folder | None:
        candidates = flatten_folders(folders)
        for f in candidates:
            if name.lower() in (folder_display_name(provider, f).lower(), f.path.lower(), f.name.lower()):
                return f
        return None

    folder = find(await provider.get_folders())
    if folder is not None:
        return folder
    logger.info(f"Creating folder {name}")
    await provider.create_folder(name)
    folder = find(await provider.get_folders())
    if folder is None:
        raise NotFoundError(f"Folder {name} not found after creating it")
    return folder


async def _upload_each(
    provider: EmailProvider,
    target: Folder,
    messages: list[EmailMessage],
    stats: TransferStats,
    cancel: CancelToken,
    on_progress: Callable[[TransferProgress], None] | None,
    source: EmailProvider | None = None,
    existing_ids: set[str] | None = None,
) -> bool:
    """Upload messages one by one, counting outcomes. Returns False if cancelled."""
    for i, message in enumerate(messages, start=1):
        if cancel.cancelled:
            return False
        if existing_ids is not None and message.id in existing_ids:
            stats.skipped += 1
        else:
            try:
                if not message.raw and source is not None:
                    message.raw = await source.fetch_raw(message)
                await provider.upload_messages(target.path, [message])
                stats.transferred += 1
            except MailbakError as e:
                logger.warning(f"Failed to transfer {message.id}: {e}")
                stats.failed += 1
        if on_progress:
            on_progress(TransferProgress(
                stats.folder, i, len(messages), stats.transferred, stats.skipped, stats.failed,
            ))
    return True


async def run_migration(
    source: EmailProvider,
    dest: EmailProvider,
    folders: list[str] | None = None,
    skip_duplicates: bool = True,
    cancel: CancelToken | None = None,
    on_progress: Callable[[TransferProgress], None] | None = None,
) -> MigrationResult:
    """Copy folders from `source` to `dest`, both connected.

    Destination folders are matched by name and created when missing;
    messages whose id already exists there are skipped.
    """
    cancel = cancel or CancelToken()
    result = MigrationResult()

    for folder in select_folders(source, await source.get_folders(), folders):
        if cancel.cancelled:
            result.cancelled = True
            break
        name = folder_display_name(source, folder)
        stats = TransferStats(folder=name)
        result.folders.append(stats)
        try:
            target = await resolve_folder(dest, name)
            messages = await source.get_messages(folder.path)
            existing = None
            if skip_duplicates:
                existing = {m.id for m in await dest.get_messages(target.path)}
        except MailbakError as e:
            logger.warning(f"Skipping folder {name}: {e}")
            stats.error = str(e)
            continue

        logger.info(f"Migrating {len(messages)} messages from {name}")
        if not await _upload_each(dest, target, messages, stats, cancel, on_progress, source, existing):
            result.cancelled = True
            break
    return result


async def import_file(
    provider: EmailProvider,
    path: Path | str,
    folder: str,
    fmt: ExportFormat,
    cancel: CancelToken | None = None,
    on_progress: Callable[[TransferProgress], None] | None = None,
) -> TransferStats:
    """Upload an MBOX file or a directory of EML files into `folder`."""
    path = Path(path)
    if fmt == ExportFormat.MBOX:
        messages = MboxImporter().import_messages(path)
    elif fmt == ExportFormat.EML:
        messages = EmlImporter().import_messages(path)
    else:
        raise InvalidArgumentError(f"Cannot import from {fmt.value}: the file has no message sources")

    target = await resolve_folder(provider, folder)
    stats = TransferStats(folder=folder)
    await _upload_each(provider, target, messages, stats, cancel or CancelToken(), on_progress)
    logger.info(f"Imported {stats.transferred} of {len(messages)} messages into {folder}")
    return stats
