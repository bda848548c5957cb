"""Helper utilities for the cold backup tool."""
from __future__ import annotations

import os
from datetime import datetime, timezone
from typing import Iterable, Optional

ARCHIVE_TIMESTAMP_FORMAT = "%Y-%m-%dT%H-%M-%S"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def timestamp_for_filename(dt: Optional[datetime] = None) -> str:
    """Format *dt* (default: now) in UTC for use inside an archive name."""

    dt = dt or utc_now()
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc)
    return dt.strftime(ARCHIVE_TIMESTAMP_FORMAT)


def with_trailing_separator(path: str) -> str:
    """Return *path* ending with exactly one path separator.

    rsync copies the *contents* of a source that ends with a separator and the
    directory itself otherwise.
    """

    if not path:
        return path
    return path.rstrip(os.sep) + os.sep


def mask_sensitive(value: str, secrets: Iterable[Optional[str]]) -> str:
    """Replace occurrences of secret values in *value* with '***'."""

    masked = value
    for secret in secrets:
        if secret:
            masked = masked.replace(secret, "***")
    return masked


__all__ = [
    "ARCHIVE_TIMESTAMP_FORMAT",
    "mask_sensitive",
    "timestamp_for_filename",
    "utc_now",
    "with_trailing_separator",
]
