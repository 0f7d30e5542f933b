"""Command-line entry point: ``archivist record | config | list``."""
from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Sequence

import yaml
from pydantic import ValidationError

from archivist import COPYRIGHT, LICENSE, PRODUCT_NAME, __version__
from archivist.clock import CancelToken, install_signal_handlers
from archivist.config import DEFAULT_OPTIONS_FILE, Settings, load_settings, save_options
from archivist.errors import ConfigurationError, StoreError
from archivist.fetcher import HttpSnapshotFetcher
from archivist.logging_config import setup_logging
from archivist.metrics import write_metrics_textfile
from archivist.schemas.recorder_config import FetchErrorPolicy, RecorderConfig
from archivist.session import RecordingSession, SessionSummary
from archivist.store import SnapshotStore, list_sessions

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CONFIG = 2


def banner() -> str:
    return f"{PRODUCT_NAME} {__version__}\n{COPYRIGHT}\n{LICENSE}"


def _add_settings_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--options", type=Path, default=None, help=f"YAML options file (default {DEFAULT_OPTIONS_FILE})")
    parser.add_argument("--source-url", default=None, help="Feed URL to record")
    parser.add_argument("--storage-dir", type=Path, default=None, help="Directory holding session folders")
    parser.add_argument("--max-snapshots", type=int, default=None, help="Retention ceiling and stop count")
    parser.add_argument("--interval-ms", type=int, default=None, help="Delay between fetches in milliseconds")
    parser.add_argument(
        "--strict",
        action="store_const",
        const=FetchErrorPolicy.FATAL,
        default=None,
        dest="fetch_error_policy",
        help="Stop on the first fetch error",
    )
    parser.add_argument(
        "--continuous",
        action="store_const",
        const=False,
        default=None,
        dest="stop_at_ceiling",
        help="Keep recording past the ceiling, evicting the oldest snapshots",
    )
    parser.add_argument("--max-fetch-errors", type=int, default=None, help="Consecutive fetch errors tolerated")
    parser.add_argument("--log-level", default=None)
    parser.add_argument("--log-format", choices=["json", "text"], default=None)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="archivist",
        description="Command line tool for recording VATSIM network traffic",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--version", action="version", version=banner())
    sub = parser.add_subparsers(dest="command", required=True)

    record = sub.add_parser("record", help="Poll the feed and store snapshots")
    _add_settings_arguments(record)

    config = sub.add_parser("config", help="Show or save the resolved options")
    config.add_argument("action", choices=["show", "save"])
    _add_settings_arguments(config)

    ls = sub.add_parser("list", help="List recorded sessions or the snapshots of one session")
    ls.add_argument("--options", type=Path, default=None)
    ls.add_argument("--storage-dir", type=Path, default=None)
    ls.add_argument("--session", default=None, help="Session folder name")
    return parser


def _resolve_settings(args: argparse.Namespace) -> Settings:
    return load_settings(
        args.options,
        SOURCE_URL=getattr(args, "source_url", None),
        STORAGE_DIR=getattr(args, "storage_dir", None),
        MAX_SNAPSHOTS=getattr(args, "max_snapshots", None),
        INTERVAL_MS=getattr(args, "interval_ms", None),
        FETCH_ERROR_POLICY=getattr(args, "fetch_error_policy", None),
        STOP_AT_CEILING=getattr(args, "stop_at_ceiling", None),
        MAX_CONSECUTIVE_FETCH_ERRORS=getattr(args, "max_fetch_errors", None),
        APP_LOG_LEVEL=getattr(args, "log_level", None),
        LOG_FORMAT=getattr(args, "log_format", None),
    )


def new_session_dir(storage_dir: Path, now: datetime | None = None) -> Path:
    """Create a fresh ``<storage_dir>/<UTC stamp>`` folder, suffixing on collision."""
    stamp = (now or datetime.now(timezone.utc)).strftime("%Y%m%dT%H%M%SZ")
    storage_dir.mkdir(parents=True, exist_ok=True)
    candidate = storage_dir / stamp
    suffix = 1
    while True:
        try:
            candidate.mkdir()
            return candidate
        except FileExistsError:
            suffix += 1
            candidate = storage_dir / f"{stamp}-{suffix}"


def summary_payload(summary: SessionSummary, session_dir: Path) -> dict[str, Any]:
    return {
        "status": "fail" if summary.reason.is_failure else "ok",
        "reason": summary.reason.value,
        "stored": summary.stored_count,
        "fetch_errors": summary.fetch_errors,
        "evicted": summary.evicted_count,
        "last_snapshot": summary.last_stored.name if summary.last_stored else None,
        "session_dir": str(session_dir),
        "duration_s": round(summary.duration_seconds, 3),
        "error": summary.error,
    }


async def record(settings: Settings, config: RecorderConfig) -> SessionSummary:
    """Run one recording session with signal-driven cancellation."""
    store = SnapshotStore.open(config.storage_dir, config.ceiling)
    token = CancelToken()
    uninstall = install_signal_handlers(token)
    try:
        async with HttpSnapshotFetcher(
            config.source_url,
            timeout_seconds=settings.FETCH_TIMEOUT_S,
            max_bytes=settings.FETCH_MAX_BYTES,
            user_agent=settings.USER_AGENT,
        ) as fetcher:
            session = RecordingSession(config, fetcher, store, token=token)
            return await session.run()
    finally:
        uninstall()


def _cmd_record(args: argparse.Namespace) -> int:
    try:
        settings = _resolve_settings(args)
        base_config = settings.recorder_config()
    except (ConfigurationError, ValidationError) as exc:
        print(json.dumps({"status": "error", "reason": str(exc)}), file=sys.stderr)
        return EXIT_CONFIG

    setup_logging(settings.APP_LOG_LEVEL, settings.LOG_FORMAT, stream=sys.stderr)
    print(banner(), file=sys.stderr)

    try:
        session_dir = new_session_dir(base_config.storage_dir)
        summary = asyncio.run(record(settings, base_config.model_copy(update={"storage_dir": session_dir})))
    except (OSError, StoreError) as exc:
        logger.error("Cannot start recording: %s", exc)
        print(json.dumps({"status": "error", "reason": str(exc)}), file=sys.stderr)
        return EXIT_FAILED

    if settings.METRICS_TEXTFILE:
        write_metrics_textfile(settings.METRICS_TEXTFILE)

    print(json.dumps(summary_payload(summary, session_dir), ensure_ascii=False))
    return EXIT_FAILED if summary.reason.is_failure else EXIT_OK


def _cmd_config(args: argparse.Namespace) -> int:
    try:
        settings = _resolve_settings(args)
        settings.recorder_config()
    except (ConfigurationError, ValidationError) as exc:
        print(json.dumps({"status": "error", "reason": str(exc)}), file=sys.stderr)
        return EXIT_CONFIG

    if args.action == "save":
        path = save_options(settings, args.options or DEFAULT_OPTIONS_FILE)
        print(json.dumps({"status": "ok", "output": str(path)}))
    else:
        print(yaml.safe_dump(settings.model_dump(mode="json"), sort_keys=False), end="")
    return EXIT_OK


def _cmd_list(args: argparse.Namespace) -> int:
    try:
        settings = load_settings(args.options, STORAGE_DIR=args.storage_dir)
    except ValidationError as exc:
        print(json.dumps({"status": "error", "reason": str(exc)}), file=sys.stderr)
        return EXIT_CONFIG

    root = Path(settings.STORAGE_DIR)
    if args.session is None:
        try:
            sessions = [p.name for p in list_sessions(root)]
        except OSError as exc:
            print(json.dumps({"status": "error", "reason": str(exc)}), file=sys.stderr)
            return EXIT_FAILED
        print(json.dumps({"status": "ok", "storage_dir": str(root), "sessions": sessions}, indent=2))
        return EXIT_OK

    session_dir = root / args.session
    if not session_dir.is_dir():
        print(json.dumps({"status": "error", "reason": f"session not found: {session_dir}"}), file=sys.stderr)
        return EXIT_FAILED
    try:
        store = SnapshotStore.open(session_dir, max(settings.MAX_SNAPSHOTS, 1), clean_temp=False)
    except StoreError as exc:
        print(json.dumps({"status": "error", "reason": str(exc)}), file=sys.stderr)
        return EXIT_FAILED
    snapshots = [{"sequence": s.sequence, "file": s.name} for s in store.retained()]
    print(json.dumps({"status": "ok", "session": args.session, "snapshots": snapshots}, indent=2))
    return EXIT_OK


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    if args.command == "record":
        return _cmd_record(args)
    if args.command == "config":
        return _cmd_config(args)
    return _cmd_list(args)


if __name__ == "__main__":
    raise SystemExit(main())
