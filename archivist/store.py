"""Durable snapshot store with a FIFO retention ceiling.

Each snapshot becomes one JSON envelope named ``snapshot-<sequence>.json``.
Writes go to a hidden temp file in the same directory which is fsynced and
then renamed over the final name, so a reader either sees the complete
file or nothing.
"""
from __future__ import annotations

import base64
import hashlib
import json
import logging
import os
from collections import deque
from datetime import datetime
from pathlib import Path
from typing import Any

from archivist.errors import EvictionError, StoreError
from archivist.metrics import SNAPSHOT_BYTES_TOTAL, SNAPSHOTS_EVICTED_TOTAL, SNAPSHOTS_STORED_TOTAL
from archivist.snapshot import Snapshot, StoredId, parse_snapshot_file_name, snapshot_file_name

logger = logging.getLogger(__name__)

ENVELOPE_VERSION = 1
TEMP_SUFFIX = ".tmp"


def _canonical_json(document: Any) -> bytes:
    return json.dumps(document, ensure_ascii=False, separators=(",", ":")).encode("utf-8")


def _encode_payload(content: bytes) -> tuple[str, Any, str | None]:
    """Return ``(payload_kind, payload, payload_hash)`` for the envelope."""
    try:
        text = content.decode("utf-8")
    except UnicodeDecodeError:
        return "base64", base64.b64encode(content).decode("ascii"), None
    try:
        document = json.loads(text)
        compact = _canonical_json(document)
    except ValueError:
        return "text", text, None
    return "json", document, hashlib.sha256(compact).hexdigest()


def _decode_payload(kind: str, payload: Any) -> bytes:
    """Bytes for an envelope payload; ``json`` documents come back in compact form."""
    if kind == "json":
        return _canonical_json(payload)
    if kind == "text":
        return payload.encode("utf-8")
    if kind == "base64":
        return base64.b64decode(payload)
    raise ValueError(f"Unknown payload_kind {kind!r}")


def _fsync_directory(directory: Path) -> None:
    if not hasattr(os, "O_DIRECTORY"):
        return
    fd = os.open(directory, os.O_RDONLY | os.O_DIRECTORY)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)


class SnapshotStore:
    """Persists snapshots under ``directory`` keeping at most ``ceiling`` of them."""

    def __init__(self, directory: Path, ceiling: int):
        if ceiling < 1:
            raise ValueError("ceiling must be >= 1")
        self.directory = Path(directory)
        self.ceiling = ceiling
        self._retained: deque[StoredId] = deque()
        self.evicted_count = 0

    @classmethod
    def open(cls, directory: str | Path, ceiling: int, *, clean_temp: bool = True) -> "SnapshotStore":
        """Create ``directory`` if needed and index the snapshots already in it.

        With ``clean_temp=False`` leftover temp files are skipped instead of
        removed, so a read-only listing never touches a session being recorded.
        """
        store = cls(Path(directory), ceiling)
        try:
            store.directory.mkdir(parents=True, exist_ok=True)
            entries = list(store.directory.iterdir())
        except OSError as exc:
            raise StoreError(f"Cannot open store at '{store.directory}': {exc}", path=store.directory) from exc

        found: list[StoredId] = []
        for entry in entries:
            if entry.name.endswith(TEMP_SUFFIX):
                if not clean_temp:
                    continue
                logger.warning("Removing interrupted write %s", entry)
                try:
                    entry.unlink()
                except OSError as exc:
                    raise StoreError(f"Cannot remove stale temp file '{entry}': {exc}", path=entry) from exc
                continue
            sequence = parse_snapshot_file_name(entry.name)
            if sequence is not None:
                found.append(StoredId(sequence, entry))
        store._retained.extend(sorted(found))
        if found:
            logger.info("Opened store %s with %d retained snapshots", store.directory, len(found))
        return store

    def __len__(self) -> int:
        return len(self._retained)

    def retained(self) -> list[StoredId]:
        """Retained identities, oldest first."""
        return list(self._retained)

    @property
    def newest(self) -> StoredId | None:
        return self._retained[-1] if self._retained else None

    def put(self, snapshot: Snapshot) -> StoredId:
        newest = self.newest
        if newest is not None and snapshot.sequence <= newest.sequence:
            raise StoreError(
                f"Sequence {snapshot.sequence} is not after newest retained {newest.sequence}",
                path=newest.path,
            )

        path = self.directory / snapshot_file_name(snapshot.sequence)
        self._write_atomic(path, self._envelope(snapshot))
        stored = StoredId(snapshot.sequence, path)
        self._retained.append(stored)
        SNAPSHOTS_STORED_TOTAL.inc()
        SNAPSHOT_BYTES_TOTAL.inc(len(snapshot.content))
        logger.debug("Stored snapshot %s (%d bytes)", path.name, len(snapshot.content))

        self._enforce_ceiling(stored)
        return stored

    def read(self, stored_id: StoredId) -> Snapshot:
        """Load a persisted snapshot back, verifying its content hash."""
        try:
            with open(stored_id.path, "r", encoding="utf-8") as fh:
                doc = json.load(fh)
            content = _decode_payload(doc["payload_kind"], doc["payload"])
            snapshot = Snapshot(
                sequence=int(doc["sequence"]),
                captured_at=datetime.fromisoformat(doc["captured_at"]),
                source_url=doc["source_url"],
                content=content,
                content_type=doc.get("content_type"),
            )
        except (OSError, ValueError, KeyError, TypeError) as exc:
            raise StoreError(f"Cannot read snapshot '{stored_id.path}': {exc}", path=stored_id.path) from exc
        # A json payload is the parsed document; its compact form carries payload_hash.
        expected = doc.get("payload_hash") if doc.get("payload_kind") == "json" else doc.get("content_hash")
        if snapshot.content_hash != expected:
            raise StoreError(f"Content hash mismatch in '{stored_id.path}'", path=stored_id.path)
        return snapshot

    @staticmethod
    def _envelope(snapshot: Snapshot) -> dict[str, Any]:
        payload_kind, payload, payload_hash = _encode_payload(snapshot.content)
        envelope = {
            "version": ENVELOPE_VERSION,
            "sequence": snapshot.sequence,
            "captured_at": snapshot.captured_at.isoformat(),
            "source_url": snapshot.source_url,
            "content_type": snapshot.content_type,
            "content_hash": snapshot.content_hash,
            "payload_kind": payload_kind,
            "payload": payload,
        }
        if payload_hash is not None:
            envelope["payload_hash"] = payload_hash
        return envelope

    def _write_atomic(self, path: Path, envelope: dict[str, Any]) -> None:
        serialized = json.dumps(envelope, ensure_ascii=False)
        temp_path = path.with_name(f".{path.name}{TEMP_SUFFIX}")
        fd: int | None = None
        try:
            fd = os.open(temp_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o644)
            with os.fdopen(fd, "w", encoding="utf-8") as stream:
                fd = None
                stream.write(serialized)
                stream.write("\n")
                stream.flush()
                os.fsync(stream.fileno())
            os.replace(temp_path, path)
        except OSError as exc:
            raise StoreError(f"Could not persist snapshot at '{path}': {exc}", path=path) from exc
        finally:
            if fd is not None:
                os.close(fd)
            if temp_path.exists():
                try:
                    temp_path.unlink()
                except OSError as exc:
                    logger.error("Could not remove temp file %s: %s", temp_path, exc)

        # The renamed file is already visible here.
        try:
            _fsync_directory(self.directory)
        except OSError as exc:
            logger.warning("Directory fsync failed for %s: %s", self.directory, exc)

    def _enforce_ceiling(self, stored: StoredId) -> None:
        while len(self._retained) > self.ceiling:
            oldest = self._retained.popleft()
            try:
                oldest.path.unlink(missing_ok=True)
            except OSError as exc:
                self._retained.appendleft(oldest)
                raise EvictionError(
                    f"Stored {stored.name} but could not evict {oldest.name}: {exc}",
                    stored=stored,
                    path=oldest.path,
                ) from exc
            self.evicted_count += 1
            SNAPSHOTS_EVICTED_TOTAL.inc()
            logger.info("Evicted snapshot %s (ceiling %d)", oldest.name, self.ceiling)


def list_sessions(storage_dir: str | Path) -> list[Path]:
    """Session directories under ``storage_dir``, oldest first."""
    root = Path(storage_dir)
    if not root.is_dir():
        return []
    return sorted(p for p in root.iterdir() if p.is_dir() and not p.name.startswith("."))
