"""Exception taxonomy for the recorder.

Lower components (fetcher, store) raise these to report what happened;
only the recording session decides whether a failure ends the run.
Cancellation is not an error and has no exception here.
"""
from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from archivist.snapshot import StoredId


class ArchivistError(Exception):
    """Base class for all archivist errors."""


class ConfigurationError(ArchivistError, ValueError):
    """Invalid ceiling, interval or locator, rejected before a session starts."""


class FetchError(ArchivistError):
    """The upstream snapshot could not be retrieved."""

    def __init__(
        self,
        message: str,
        *,
        error_class: str = "FetchError",
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.error_class = error_class
        self.status_code = status_code


class StoreError(ArchivistError):
    """A snapshot could not be persisted (disk full, permission denied...)."""

    def __init__(self, message: str, *, path: Path | None = None) -> None:
        super().__init__(message)
        self.path = path


class EvictionError(StoreError):
    """The new snapshot is durable but the oldest one could not be removed."""

    def __init__(self, message: str, *, stored: "StoredId", path: Path | None = None) -> None:
        super().__init__(message, path=path)
        self.stored = stored


class SessionError(ArchivistError):
    """Illegal session lifecycle operation, e.g. restarting a stopped session."""
