"""Fixed-interval tick source and cooperative cancellation.

The clock is delay-then-fire: each wait starts after the previous tick's
handler has returned, so ticks never overlap and slow fetches simply push
the schedule back. Cancellation is only observed while waiting.
"""
from __future__ import annotations

import asyncio
import logging
import signal
from typing import Awaitable, Callable, Optional

from archivist.errors import ConfigurationError

logger = logging.getLogger(__name__)

TickHandler = Callable[[], Awaitable[None]]


class CancelToken:
    """One-shot cancellation flag shared by the signal handler and the clock."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> bool:
        """Set the flag; returns False if it was already set."""
        if self._event.is_set():
            return False
        self.reason = reason
        self._event.set()
        logger.info("Cancellation requested (%s)", reason)
        return True

    async def wait(self) -> None:
        await self._event.wait()


def install_signal_handlers(
    token: CancelToken,
    signals: tuple[signal.Signals, ...] = (signal.SIGINT, signal.SIGTERM),
) -> Callable[[], None]:
    """Route process signals to ``token.cancel``; returns an uninstall callable.

    Must be called from inside the running event loop.
    """
    loop = asyncio.get_running_loop()
    via_loop: list[signal.Signals] = []
    previous: dict[signal.Signals, object] = {}

    def _request_stop(sig: signal.Signals) -> None:
        token.cancel(sig.name)

    for sig in signals:
        try:
            loop.add_signal_handler(sig, _request_stop, sig)
            via_loop.append(sig)
        except (NotImplementedError, RuntimeError):
            try:
                previous[sig] = signal.signal(
                    sig, lambda *_args, _sig=sig: loop.call_soon_threadsafe(_request_stop, _sig)
                )
            except (ValueError, AttributeError):
                logger.warning("Cannot install handler for %s", sig.name)

    def _uninstall() -> None:
        for sig in via_loop:
            loop.remove_signal_handler(sig)
        for sig, handler in previous.items():
            signal.signal(sig, handler)

    return _uninstall


class IntervalClock:
    """Emits ticks ``interval_seconds`` apart to a single handler."""

    def __init__(self, interval_seconds: float, token: CancelToken | None = None):
        if interval_seconds <= 0:
            raise ConfigurationError("interval must be > 0")
        self.interval_seconds = interval_seconds
        self.token = token or CancelToken()
        self.ticks = 0
        self._stopped = False

    @property
    def stopped(self) -> bool:
        return self._stopped

    def stop(self) -> None:
        self._stopped = True

    async def _wait_interval(self) -> bool:
        """Sleep one interval; True if the tick should fire."""
        if self.token.cancelled:
            return False
        try:
            await asyncio.wait_for(self.token.wait(), timeout=self.interval_seconds)
        except asyncio.TimeoutError:
            return not self._stopped
        return False

    async def run(self, handler: TickHandler) -> None:
        """Drive ``handler`` until :meth:`stop` or cancellation."""
        while not self._stopped:
            if not await self._wait_interval():
                break
            self.ticks += 1
            await handler()
        self._stopped = True
