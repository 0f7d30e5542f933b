from __future__ import annotations

import asyncio
import json
import os

import pytest

import archivist.store as store_module
from archivist.errors import FetchError, SessionError
from archivist.schemas.recorder_config import FetchErrorPolicy, RecorderConfig
from archivist.session import RecordingSession, SessionState, StopReason
from archivist.snapshot import FetchedPayload, snapshot_file_name
from archivist.store import SnapshotStore

FEED_URL = "https://data.vatsim.net/v3/vatsim-data.json"


class _ScriptedFetcher:
    """Returns a JSON payload per call unless the script says to raise."""

    def __init__(self, outcomes=None, on_call=None):
        self.outcomes = list(outcomes or [])
        self.on_call = on_call
        self.calls = 0

    async def fetch(self) -> FetchedPayload:
        n = self.calls
        self.calls += 1
        if self.on_call:
            self.on_call(n)
        outcome = self.outcomes[n] if n < len(self.outcomes) else None
        if isinstance(outcome, Exception):
            raise outcome
        return FetchedPayload(
            content=json.dumps({"general": {"call": n}}).encode(),
            source_url=FEED_URL,
            content_type="application/json",
        )


def _config(tmp_path, **overrides) -> RecorderConfig:
    values = {
        "source_url": FEED_URL,
        "storage_dir": tmp_path / "session",
        "ceiling": 5,
        "interval_ms": 1,
    }
    values.update(overrides)
    return RecorderConfig.build(**values)


def _session(config: RecorderConfig, fetcher) -> tuple[RecordingSession, SnapshotStore]:
    store = SnapshotStore.open(config.storage_dir, config.ceiling)
    return RecordingSession(config, fetcher, store), store


def _sequences(store: SnapshotStore) -> list[int]:
    return [i.sequence for i in store.retained()]


def test_ceiling_reached_after_three_fetches(tmp_path) -> None:
    config = _config(tmp_path, ceiling=3, interval_ms=100)
    fetcher = _ScriptedFetcher()
    session, store = _session(config, fetcher)

    summary = asyncio.run(session.run())

    assert _sequences(store) == [0, 1, 2]
    assert summary.reason == StopReason.CEILING_REACHED
    assert summary.stored_count == 3
    assert summary.last_stored is not None and summary.last_stored.sequence == 2
    assert session.state == SessionState.STOPPED
    assert fetcher.calls == 3


def test_stays_running_below_ceiling(tmp_path) -> None:
    config = _config(tmp_path, ceiling=10)
    observed: list[tuple[SessionState, list[int]]] = []

    def on_call(n: int) -> None:
        observed.append((session.state, _sequences(store)))
        if n == 3:
            session.cancel("test")

    session, store = _session(config, _ScriptedFetcher(on_call=on_call))
    summary = asyncio.run(session.run())

    for n, (state, sequences) in enumerate(observed):
        assert state == SessionState.RUNNING
        assert sequences == list(range(n))
    assert summary.stored_count == 4
    assert summary.reason == StopReason.CANCELLED


def test_cancel_after_snapshot_one_keeps_zero_and_one(tmp_path) -> None:
    config = _config(tmp_path, ceiling=5)

    def on_call(n: int) -> None:
        if n == 1:
            # arrives while snapshot 1 is in flight; it must still be stored
            session.cancel("SIGINT")

    fetcher = _ScriptedFetcher(on_call=on_call)
    session, store = _session(config, fetcher)
    summary = asyncio.run(session.run())

    assert _sequences(store) == [0, 1]
    assert summary.reason == StopReason.CANCELLED
    assert summary.stored_count == 2
    assert fetcher.calls == 2


def test_double_cancellation_yields_one_summary(tmp_path) -> None:
    config = _config(tmp_path, ceiling=5)

    def on_call(n: int) -> None:
        session.cancel("SIGINT")
        session.cancel("SIGINT")

    session, store = _session(config, _ScriptedFetcher(on_call=on_call))
    summary = asyncio.run(session.run())
    session.cancel("SIGTERM")

    assert summary.reason == StopReason.CANCELLED
    assert summary.stored_count == 1
    assert session.summary is summary
    assert session.token.reason == "SIGINT"
    with pytest.raises(SessionError):
        asyncio.run(session.run())
    assert session.summary is summary


def test_cancel_before_first_tick_stores_nothing(tmp_path) -> None:
    config = _config(tmp_path, interval_ms=10_000)
    fetcher = _ScriptedFetcher()
    session, store = _session(config, fetcher)
    session.cancel("SIGINT")

    summary = asyncio.run(session.run())

    assert summary.reason == StopReason.CANCELLED
    assert summary.stored_count == 0
    assert summary.last_stored is None
    assert fetcher.calls == 0
    assert len(store) == 0


def test_store_failure_on_snapshot_two_is_fatal(tmp_path, monkeypatch) -> None:
    config = _config(tmp_path, ceiling=5)
    real_replace = os.replace

    def _failing_replace(src, dst, *args, **kwargs):
        if str(dst).endswith(snapshot_file_name(2)):
            raise OSError(28, "No space left on device")
        return real_replace(src, dst, *args, **kwargs)

    monkeypatch.setattr(store_module.os, "replace", _failing_replace)
    fetcher = _ScriptedFetcher()
    session, store = _session(config, fetcher)
    summary = asyncio.run(session.run())

    assert _sequences(store) == [0, 1]
    assert sorted(p.name for p in config.storage_dir.iterdir()) == [snapshot_file_name(0), snapshot_file_name(1)]
    assert summary.reason == StopReason.STORE_FATAL_ERROR
    assert summary.stored_count == 2
    assert "No space left" in (summary.error or "")
    assert fetcher.calls == 3


def test_eviction_failure_counts_stored_snapshot_then_stops(tmp_path, monkeypatch) -> None:
    config = _config(tmp_path, ceiling=2, stop_at_ceiling=False)

    def _failing_unlink(self, missing_ok=False):
        raise PermissionError(13, "Permission denied")

    monkeypatch.setattr(store_module.Path, "unlink", _failing_unlink)
    session, store = _session(config, _ScriptedFetcher())
    summary = asyncio.run(session.run())

    assert summary.reason == StopReason.STORE_FATAL_ERROR
    assert summary.stored_count == 3
    assert _sequences(store) == [0, 1, 2]


def test_recoverable_fetch_errors_consume_no_sequence(tmp_path) -> None:
    config = _config(tmp_path, ceiling=3)
    fetcher = _ScriptedFetcher(outcomes=[FetchError("boom"), None, FetchError("boom"), None, None])
    session, store = _session(config, fetcher)

    summary = asyncio.run(session.run())

    assert summary.reason == StopReason.CEILING_REACHED
    assert summary.stored_count == 3
    assert summary.fetch_errors == 2
    assert _sequences(store) == [0, 1, 2]
    assert fetcher.calls == 5


def test_strict_policy_stops_on_first_fetch_error(tmp_path) -> None:
    config = _config(tmp_path, fetch_error_policy=FetchErrorPolicy.FATAL)
    fetcher = _ScriptedFetcher(outcomes=[None, FetchError("HTTP error 503", status_code=503)])
    session, store = _session(config, fetcher)

    summary = asyncio.run(session.run())

    assert summary.reason == StopReason.FETCH_FATAL_ERROR
    assert summary.stored_count == 1
    assert summary.error == "HTTP error 503"
    assert _sequences(store) == [0]


def test_consecutive_fetch_errors_escalate(tmp_path) -> None:
    config = _config(tmp_path, max_consecutive_fetch_errors=2)
    err = FetchError("timeout", error_class="ReadTimeout")
    fetcher = _ScriptedFetcher(outcomes=[None, err, None, err, err, None])
    session, store = _session(config, fetcher)

    summary = asyncio.run(session.run())

    assert summary.reason == StopReason.FETCH_FATAL_ERROR
    assert summary.stored_count == 2
    assert summary.fetch_errors == 3
    assert fetcher.calls == 5


def test_continuous_mode_keeps_latest_ceiling_snapshots(tmp_path) -> None:
    config = _config(tmp_path, ceiling=3, stop_at_ceiling=False)

    def on_call(n: int) -> None:
        if n == 6:
            session.cancel("test")

    session, store = _session(config, _ScriptedFetcher(on_call=on_call))
    summary = asyncio.run(session.run())

    assert summary.reason == StopReason.CANCELLED
    assert summary.stored_count == 7
    assert summary.evicted_count == 4
    assert _sequences(store) == [4, 5, 6]


def test_new_session_restarts_sequence_at_zero(tmp_path) -> None:
    first_config = _config(tmp_path, ceiling=2, storage_dir=tmp_path / "first")
    first, first_store = _session(first_config, _ScriptedFetcher())
    asyncio.run(first.run())

    second_config = _config(tmp_path, ceiling=2, storage_dir=tmp_path / "second")
    second, second_store = _session(second_config, _ScriptedFetcher())
    summary = asyncio.run(second.run())

    assert _sequences(first_store) == [0, 1]
    assert _sequences(second_store) == [0, 1]
    assert summary.stored_count == 2


def test_stored_payload_matches_fetch(tmp_path) -> None:
    config = _config(tmp_path, ceiling=1)
    session, store = _session(config, _ScriptedFetcher())
    summary = asyncio.run(session.run())

    snapshot = store.read(summary.last_stored)
    assert snapshot.sequence == 0
    assert json.loads(snapshot.content) == {"general": {"call": 0}}
    assert snapshot.source_url == FEED_URL
    assert snapshot.captured_at.tzinfo is not None


def test_unexpected_fetcher_error_still_yields_summary(tmp_path) -> None:
    config = _config(tmp_path, ceiling=5)
    fetcher = _ScriptedFetcher(outcomes=[None, RuntimeError("unexpected")])
    session, store = _session(config, fetcher)

    summary = asyncio.run(session.run())

    assert session.state == SessionState.STOPPED
    assert session.summary is summary
    assert summary.reason == StopReason.FETCH_FATAL_ERROR
    assert summary.stored_count == 1
    assert "unexpected" in (summary.error or "")
    assert _sequences(store) == [0]


def test_unexpected_store_error_is_store_fatal(tmp_path, monkeypatch) -> None:
    config = _config(tmp_path, ceiling=5)
    session, store = _session(config, _ScriptedFetcher())
    real_put = store.put

    def _put(snapshot):
        if snapshot.sequence == 1:
            raise TypeError("bad envelope")
        return real_put(snapshot)

    monkeypatch.setattr(store, "put", _put)
    summary = asyncio.run(session.run())

    assert session.state == SessionState.STOPPED
    assert summary.reason == StopReason.STORE_FATAL_ERROR
    assert summary.stored_count == 1
    assert "bad envelope" in (summary.error or "")
