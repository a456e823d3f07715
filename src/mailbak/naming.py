"""Filesystem-safe names for exported folders and messages."""

import re
from datetime import datetime, timezone

from .models import EmailMessage


EML_SUBJECT_MAX_LEN = 50


def sanitize_folder_name(folder: str) -> str:
    """Sanitize a folder path for use as a file or directory name.

    - Replace anything outside [A-Za-z0-9_-] with underscore
    - Collapse runs of underscores
    - Lowercase

    Lossy: "Inbox/Archive" and "Inbox\\Archive" both become "inbox_archive".
    """
    s = re.sub(r"[^a-z0-9_\-]", "_", folder, flags=re.IGNORECASE)
    s = re.sub(r"_+", "_", s)
    return s.lower()


def sanitize_subject(subject: str, max_len: int = EML_SUBJECT_MAX_LEN) -> str:
    """Sanitize a subject for an EML filename (case preserved)."""
    s = re.sub(r"[^a-z0-9_\-\s]", "_", subject, flags=re.IGNORECASE)
    s = re.sub(r"\s+", "_", s)
    s = re.sub(r"_+", "_", s)
    return s[:max_len]


def iso_date(dt: datetime) -> str:
    """YYYY-MM-DD of a datetime, in UTC."""
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc)
    return dt.strftime("%Y-%m-%d")


def eml_filename(message: EmailMessage) -> str:
    """<date>_<uid:06d>_<subject>.eml; sorts by date, then uid."""
    return f"{iso_date(message.date)}_{message.uid:06d}_{sanitize_subject(message.subject)}.eml"
