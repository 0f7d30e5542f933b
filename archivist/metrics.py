"""Prometheus metrics for the recording loop."""
from __future__ import annotations

from pathlib import Path

from prometheus_client import REGISTRY, Counter, Histogram, write_to_textfile


FETCH_ATTEMPTS_TOTAL = Counter(
    "archivist_fetch_attempts_total",
    "Total fetch attempts by outcome",
    ["status_class", "error_class"],
)

FETCH_LATENCY_SECONDS = Histogram(
    "archivist_fetch_latency_seconds",
    "Upstream fetch latency",
    buckets=(0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10, 20, 40, 60),
)

SNAPSHOTS_STORED_TOTAL = Counter(
    "archivist_snapshots_stored_total",
    "Snapshots durably persisted",
)

SNAPSHOT_BYTES_TOTAL = Counter(
    "archivist_snapshot_bytes_total",
    "Payload bytes persisted",
)

SNAPSHOTS_EVICTED_TOTAL = Counter(
    "archivist_snapshots_evicted_total",
    "Snapshots removed by the retention ceiling",
)

SESSIONS_STOPPED_TOTAL = Counter(
    "archivist_sessions_stopped_total",
    "Recording sessions by stop reason",
    ["reason"],
)


def status_class_for(status_code: int | None) -> str:
    status_code = status_code or 0
    return (
        "2xx" if 200 <= status_code < 300 else
        "3xx" if 300 <= status_code < 400 else
        "4xx" if 400 <= status_code < 500 else
        "5xx" if 500 <= status_code < 600 else
        "other"
    )


def write_metrics_textfile(path: str | Path) -> None:
    """Dump the default registry in node-exporter textfile format."""
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    write_to_textfile(str(target), REGISTRY)
