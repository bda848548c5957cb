"""Directory synchronisation through the external rsync binary."""
from __future__ import annotations

import logging
import subprocess
from typing import Sequence

from .utils import with_trailing_separator

LOGGER = logging.getLogger(__name__)

DEFAULT_SYNC_COMMAND = ("rsync", "--archive", "--delete")


class SyncError(Exception):
    """Raised when the sync primitive fails."""

    def __init__(self, message: str, returncode: int = -1, stderr: str = "") -> None:
        super().__init__(message)
        self.returncode = returncode
        self.stderr = stderr


def sync_once(
    source: str,
    destination: str,
    command: Sequence[str] = DEFAULT_SYNC_COMMAND,
    logger: logging.Logger = LOGGER,
) -> None:
    """Copy the contents of *source* into *destination* once."""

    cmd = [*command, with_trailing_separator(str(source)), str(destination)]
    logger.info("Running sync: %s", " ".join(cmd))
    try:
        result = subprocess.run(cmd, capture_output=True, text=True, check=False)
    except OSError as exc:
        raise SyncError(f"Could not run '{cmd[0]}': {exc}") from exc
    if result.stdout:
        logger.debug("STDOUT: %s", result.stdout.strip())
    if result.returncode != 0:
        stderr = (result.stderr or "").strip()
        raise SyncError(
            f"Sync '{' '.join(cmd)}' exited with code {result.returncode}: {stderr}",
            returncode=result.returncode,
            stderr=stderr,
        )


__all__ = ["DEFAULT_SYNC_COMMAND", "SyncError", "sync_once"]
