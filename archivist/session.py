"""Recording session: drives the clock → fetch → store loop.

State machine::

    IDLE --run()--> RUNNING --{ceiling, cancel, fatal error}--> STOPPED

STOPPED is terminal. The session is the only place that decides whether a
fetch or store failure ends the run; fetchers and stores just raise.
"""
from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from archivist.clock import CancelToken, IntervalClock
from archivist.errors import EvictionError, FetchError, SessionError, StoreError
from archivist.fetcher import SnapshotFetcher
from archivist.metrics import SESSIONS_STOPPED_TOTAL
from archivist.schemas.recorder_config import FetchErrorPolicy, RecorderConfig
from archivist.snapshot import Snapshot, StoredId
from archivist.store import SnapshotStore

logger = logging.getLogger(__name__)


class SessionState(str, enum.Enum):
    IDLE = "idle"
    RUNNING = "running"
    STOPPED = "stopped"


class StopReason(str, enum.Enum):
    CEILING_REACHED = "ceiling-reached"
    CANCELLED = "cancelled"
    FETCH_FATAL_ERROR = "fetch-fatal-error"
    STORE_FATAL_ERROR = "store-fatal-error"

    @property
    def is_failure(self) -> bool:
        return self in {StopReason.FETCH_FATAL_ERROR, StopReason.STORE_FATAL_ERROR}


@dataclass(frozen=True)
class SessionSummary:
    reason: StopReason
    stored_count: int
    fetch_errors: int
    evicted_count: int
    last_stored: Optional[StoredId]
    started_at: datetime
    stopped_at: datetime
    error: Optional[str] = None

    @property
    def duration_seconds(self) -> float:
        return (self.stopped_at - self.started_at).total_seconds()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RecordingSession:
    """One run of the recorder, from start to a single terminal stop reason."""

    def __init__(
        self,
        config: RecorderConfig,
        fetcher: SnapshotFetcher,
        store: SnapshotStore,
        *,
        token: CancelToken | None = None,
        clock: IntervalClock | None = None,
    ):
        self.config = config
        self.token = token or (clock.token if clock else CancelToken())
        self.clock = clock or IntervalClock(config.interval_seconds, self.token)
        self._fetcher: SnapshotFetcher | None = fetcher
        self._store: SnapshotStore | None = store
        self._state = SessionState.IDLE
        self._sequence = 0
        self._fetch_errors = 0
        self._consecutive_fetch_errors = 0
        self._last_stored: StoredId | None = None
        self._stop_reason: StopReason | None = None
        self._stop_error: str | None = None
        self._started_at: datetime | None = None
        self._summary: SessionSummary | None = None

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def stop_reason(self) -> StopReason | None:
        return self._stop_reason

    @property
    def stored_count(self) -> int:
        return self._sequence

    @property
    def summary(self) -> SessionSummary | None:
        return self._summary

    def cancel(self, reason: str = "cancelled") -> None:
        """Request a stop; honoured at the next wait, never mid-fetch or mid-store."""
        self.token.cancel(reason)

    async def run(self) -> SessionSummary:
        if self._state is not SessionState.IDLE:
            raise SessionError(f"Session already {self._state.value}; create a new session")
        self._state = SessionState.RUNNING
        self._started_at = _utcnow()
        logger.info(
            "Recording %s every %d ms into %s (ceiling %d)",
            self.config.source_url,
            self.config.interval_ms,
            self._store.directory if self._store else "-",
            self.config.ceiling,
        )
        try:
            await self.clock.run(self._on_tick)
        except Exception as exc:
            logger.exception("Recording loop failed")
            self._request_stop(StopReason.FETCH_FATAL_ERROR, repr(exc))
        finally:
            self.clock.stop()
        if self._stop_reason is None:
            # Clock returned without a terminal tick: cancelled at the wait point.
            self._request_stop(StopReason.CANCELLED)
        return self._finish()

    async def _on_tick(self) -> None:
        fetcher, store = self._fetcher, self._store
        if fetcher is None or store is None:
            return

        try:
            payload = await fetcher.fetch()
        except FetchError as exc:
            self._handle_fetch_error(exc)
            return
        except Exception as exc:
            self._fetch_errors += 1
            logger.exception("Fetcher raised an unexpected error, stopping")
            self._request_stop(StopReason.FETCH_FATAL_ERROR, repr(exc))
            return
        self._consecutive_fetch_errors = 0

        snapshot = Snapshot.capture(self._sequence, payload, _utcnow())
        try:
            stored = store.put(snapshot)
        except EvictionError as exc:
            self._record_stored(exc.stored)
            logger.error("Retention failure after snapshot %d: %s", snapshot.sequence, exc)
            self._request_stop(StopReason.STORE_FATAL_ERROR, str(exc))
            return
        except StoreError as exc:
            logger.error("Persisting snapshot %d failed: %s", snapshot.sequence, exc)
            self._request_stop(StopReason.STORE_FATAL_ERROR, str(exc))
            return
        except Exception as exc:
            logger.exception("Store raised an unexpected error on snapshot %d", snapshot.sequence)
            self._request_stop(StopReason.STORE_FATAL_ERROR, repr(exc))
            return

        self._record_stored(stored)
        if self.token.cancelled:
            self._request_stop(StopReason.CANCELLED)
        elif self.config.stop_at_ceiling and self._sequence >= self.config.ceiling:
            self._request_stop(StopReason.CEILING_REACHED)

    def _record_stored(self, stored: StoredId) -> None:
        self._last_stored = stored
        self._sequence += 1
        logger.info("Snapshot %d stored as %s", stored.sequence, stored.name)

    def _handle_fetch_error(self, exc: FetchError) -> None:
        self._fetch_errors += 1
        self._consecutive_fetch_errors += 1
        limit = self.config.max_consecutive_fetch_errors
        if self.config.fetch_error_policy == FetchErrorPolicy.FATAL:
            logger.error("Fetch failed (%s), stopping: %s", exc.error_class, exc)
            self._request_stop(StopReason.FETCH_FATAL_ERROR, str(exc))
        elif limit is not None and self._consecutive_fetch_errors >= limit:
            logger.error(
                "Fetch failed %d times in a row (%s), stopping: %s",
                self._consecutive_fetch_errors,
                exc.error_class,
                exc,
            )
            self._request_stop(StopReason.FETCH_FATAL_ERROR, str(exc))
        else:
            logger.warning("Fetch failed (%s), retrying next tick: %s", exc.error_class, exc)

    def _request_stop(self, reason: StopReason, error: str | None = None) -> None:
        if self._stop_reason is not None:
            return
        self._stop_reason = reason
        self._stop_error = error
        self.clock.stop()

    def _finish(self) -> SessionSummary:
        if self._summary is not None:
            return self._summary
        reason = self._stop_reason or StopReason.CANCELLED
        evicted = self._store.evicted_count if self._store else 0
        self._fetcher = None
        self._store = None
        self._state = SessionState.STOPPED
        self._summary = SessionSummary(
            reason=reason,
            stored_count=self._sequence,
            fetch_errors=self._fetch_errors,
            evicted_count=evicted,
            last_stored=self._last_stored,
            started_at=self._started_at or _utcnow(),
            stopped_at=_utcnow(),
            error=self._stop_error,
        )
        SESSIONS_STOPPED_TOTAL.labels(reason=reason.value).inc()
        log = logger.error if reason.is_failure else logger.info
        if reason is StopReason.CANCELLED and self.token.reason:
            logger.info("Cancelled by %s", self.token.reason)
        log(
            "Session stopped: %s after %d snapshots (%d fetch errors, %d evicted)",
            reason.value,
            self._sequence,
            self._fetch_errors,
            evicted,
        )
        return self._summary
