"""Snapshot value types shared by the fetcher, the store and the session."""
from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Optional

SNAPSHOT_FILE_PREFIX = "snapshot-"
SNAPSHOT_FILE_SUFFIX = ".json"
_SNAPSHOT_NAME_RE = re.compile(r"^snapshot-(\d{8,})\.json$")


@dataclass(frozen=True)
class FetchedPayload:
    """Raw upstream response handed back by a fetcher."""

    content: bytes
    source_url: str
    content_type: Optional[str] = None
    status_code: int = 200
    latency_ms: int = 0


@dataclass(frozen=True)
class Snapshot:
    """One captured unit of upstream data, immutable after creation."""

    sequence: int
    captured_at: datetime
    source_url: str
    content: bytes
    content_type: Optional[str] = None
    content_hash: str = field(init=False)

    def __post_init__(self) -> None:
        if self.sequence < 0:
            raise ValueError("sequence must be >= 0")
        object.__setattr__(self, "content_hash", hashlib.sha256(self.content).hexdigest())

    @classmethod
    def capture(cls, sequence: int, payload: FetchedPayload, captured_at: datetime) -> "Snapshot":
        return cls(
            sequence=sequence,
            captured_at=captured_at,
            source_url=payload.source_url,
            content=payload.content,
            content_type=payload.content_type,
        )

    def __repr__(self) -> str:
        return f"<Snapshot seq={self.sequence} bytes={len(self.content)} at={self.captured_at.isoformat()}>"


@dataclass(frozen=True, order=True)
class StoredId:
    """Identity of a persisted snapshot; ordering follows the sequence number."""

    sequence: int
    path: Path = field(compare=False)

    @property
    def name(self) -> str:
        return self.path.name


def snapshot_file_name(sequence: int) -> str:
    return f"{SNAPSHOT_FILE_PREFIX}{sequence:08d}{SNAPSHOT_FILE_SUFFIX}"


def parse_snapshot_file_name(name: str) -> int | None:
    """Return the sequence encoded in ``name``, or None for foreign files."""
    match = _SNAPSHOT_NAME_RE.match(name)
    if not match:
        return None
    return int(match.group(1))
