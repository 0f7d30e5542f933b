"""Snapshot fetchers.

The recorder only depends on :class:`SnapshotFetcher`; the HTTP
implementation reports every failure as :class:`FetchError` and leaves the
decision to continue or stop to the session.
"""
from __future__ import annotations

import logging
import time
from typing import Protocol, runtime_checkable

import httpx

from archivist.errors import FetchError
from archivist.metrics import FETCH_ATTEMPTS_TOTAL, FETCH_LATENCY_SECONDS, status_class_for
from archivist.snapshot import FetchedPayload

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = "VATPlaybackArchivist/0.1 (+snapshot recorder)"


@runtime_checkable
class SnapshotFetcher(Protocol):
    async def fetch(self) -> FetchedPayload:
        """Retrieve one raw snapshot or raise :class:`FetchError`."""
        ...


class HttpSnapshotFetcher:
    """GETs ``url`` once per call with an httpx async client."""

    def __init__(
        self,
        url: str,
        *,
        timeout_seconds: float = 30,
        max_bytes: int = 50_000_000,
        user_agent: str = DEFAULT_USER_AGENT,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.url = url
        self.max_bytes = max_bytes
        self._client = httpx.AsyncClient(
            headers={"User-Agent": user_agent, "Accept": "application/json"},
            timeout=timeout_seconds,
            follow_redirects=True,
            transport=transport,
        )

    async def __aenter__(self) -> "HttpSnapshotFetcher":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def fetch(self) -> FetchedPayload:
        try:
            payload = await self._fetch_once()
        except FetchError as exc:
            FETCH_ATTEMPTS_TOTAL.labels(
                status_class=status_class_for(exc.status_code),
                error_class=exc.error_class,
            ).inc()
            raise
        FETCH_ATTEMPTS_TOTAL.labels(
            status_class=status_class_for(payload.status_code),
            error_class="NONE",
        ).inc()
        FETCH_LATENCY_SECONDS.observe(max(payload.latency_ms, 0) / 1000.0)
        return payload

    async def _fetch_once(self) -> FetchedPayload:
        started = time.perf_counter()
        try:
            resp = await self._client.get(self.url)
        except httpx.HTTPError as exc:
            raise FetchError(
                f"Request to {self.url} failed: {exc}",
                error_class=type(exc).__name__,
            ) from exc

        try:
            resp.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise FetchError(
                f"HTTP error {resp.status_code} for {self.url}",
                error_class="HTTPStatusError",
                status_code=resp.status_code,
            ) from exc

        content_length = int(resp.headers.get("content-length", "0") or 0)
        if content_length and content_length > self.max_bytes:
            raise FetchError(
                f"Max bytes exceeded by header for {self.url}: {content_length} > {self.max_bytes}",
                error_class="MaxBytesExceeded",
                status_code=resp.status_code,
            )
        raw_bytes = resp.content
        if len(raw_bytes) > self.max_bytes:
            raise FetchError(
                f"Max bytes exceeded after download for {self.url}: {len(raw_bytes)} > {self.max_bytes}",
                error_class="MaxBytesExceeded",
                status_code=resp.status_code,
            )

        latency_ms = int((time.perf_counter() - started) * 1000)
        logger.debug("Fetched %s: %d bytes in %d ms", self.url, len(raw_bytes), latency_ms)
        return FetchedPayload(
            content=raw_bytes,
            source_url=str(resp.url),
            content_type=resp.headers.get("content-type"),
            status_code=resp.status_code,
            latency_ms=latency_ms,
        )
