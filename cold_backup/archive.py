"""Stream a directory tree as a gzip-compressed tar archive."""
from __future__ import annotations

import logging
import os
import stat
import tarfile
import threading
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Iterator, Optional, Tuple

from .pipe import DEFAULT_PIPE_CAPACITY, PipeReader, PipeWriter, make_pipe
from .utils import timestamp_for_filename, utc_now

LOGGER = logging.getLogger(__name__)


class ArchiveError(Exception):
    """Raised when the directory cannot be walked or serialised."""


@dataclass(frozen=True)
class ArchiveDescriptor:
    name: str
    created_at: datetime


def archive_name(service: str, env: str, now: Optional[datetime] = None) -> ArchiveDescriptor:
    now = now or utc_now()
    name = f"{service}_backup_{timestamp_for_filename(now)}_{env}.tar.gz"
    return ArchiveDescriptor(name=name, created_at=now)


def iter_entries(root: Path) -> Iterator[Tuple[Path, str]]:
    """Yield ``(path, arcname)`` for every entry below *root* in sorted order."""

    def _raise(exc: OSError) -> None:
        raise exc

    for dirpath, dirnames, filenames in os.walk(root, onerror=_raise):
        dirnames.sort()
        current = Path(dirpath)
        for name in dirnames:
            path = current / name
            yield path, path.relative_to(root).as_posix()
        for name in sorted(filenames):
            path = current / name
            yield path, path.relative_to(root).as_posix()


def write_archive(directory: Path, fileobj, archive_name: str, logger: logging.Logger = LOGGER) -> int:
    """Write *directory* as tar.gz into *fileobj*; returns the number of files."""

    count = 0
    with tarfile.open(name=archive_name, mode="w|gz", fileobj=fileobj) as tar:
        for path, arcname in iter_entries(directory):
            mode = path.lstat().st_mode
            if not (stat.S_ISREG(mode) or stat.S_ISDIR(mode) or stat.S_ISLNK(mode)):
                logger.debug("Skipping special file %s.", path)
                continue
            tar.add(str(path), arcname=arcname, recursive=False)
            if stat.S_ISREG(mode):
                count += 1
    return count


def create_backup(
    directory: str,
    archive_name: str,
    capacity: int = DEFAULT_PIPE_CAPACITY,
    logger: logging.Logger = LOGGER,
) -> PipeReader:
    """Start archiving *directory* in the background and return the read end.

    Archive construction runs in a producer thread bounded by the pipe
    capacity. Errors close the pipe with an :class:`ArchiveError` so the
    consumer sees them on ``read``.
    """

    root = Path(directory)
    if not root.is_dir():
        raise ArchiveError(f"Backup directory '{root}' does not exist or is not a directory.")
    if not os.access(root, os.R_OK | os.X_OK):
        raise ArchiveError(f"Backup directory '{root}' is not readable.")

    reader, writer = make_pipe(capacity)
    thread = threading.Thread(
        target=_produce,
        args=(root, writer, archive_name, logger),
        name="archive-producer",
        daemon=True,
    )
    thread.start()
    return reader


def _produce(root: Path, writer: PipeWriter, archive_name: str, logger: logging.Logger) -> None:
    try:
        count = write_archive(root, writer, archive_name, logger)
    except BrokenPipeError as exc:
        logger.warning("Archive consumer went away before %s was complete.", archive_name)
        writer.close(ArchiveError(f"Archive consumer closed the stream: {exc}"))
    except Exception as exc:  # propagated to the reader
        logger.error("Error creating archive %s: %s", archive_name, exc)
        error = ArchiveError(f"Error creating archive '{archive_name}' from '{root}': {exc}")
        error.__cause__ = exc
        writer.close(error)
    else:
        logger.info("Archive %s written: files=%d.", archive_name, count)
        writer.close()


__all__ = [
    "ArchiveDescriptor",
    "ArchiveError",
    "archive_name",
    "create_backup",
    "iter_entries",
    "write_archive",
]
