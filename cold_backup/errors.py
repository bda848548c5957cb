"""Exceptions shared by more than one collaborator."""
from __future__ import annotations


class ConnectivityError(Exception):
    """Raised when a remote service (scheduler or object storage) cannot be reached."""


__all__ = ["ConnectivityError"]
