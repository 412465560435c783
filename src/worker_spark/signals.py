"""Signal flags bridging OS signals to the main loop.

Handlers only record the request and set the latch; reloading, querying and
invoking all happen on the loop. SIGHUP requests a configuration reload,
SIGTERM and SIGINT request shutdown.
"""

from __future__ import annotations

import signal
from types import FrameType
from typing import Any

import structlog

from worker_spark.latch import Latch

logger = structlog.get_logger(__name__)

RELOAD_SIGNALS = (signal.SIGHUP,)
TERMINATE_SIGNALS = (signal.SIGTERM, signal.SIGINT)


class SignalFlags:
    """Process-wide reload/shutdown requests plus the latch that wakes the loop.

    The reload request is a sequence number bumped by the handler and
    compared against the last value the loop consumed, so the loop can read
    and clear it without a lock and without losing a request that lands
    in between.
    """

    def __init__(self, latch: Latch | None = None):
        self._latch = latch or Latch()
        self._reload_seq = 0
        self._reload_seen = 0
        self._shutdown_requested = False
        self._previous: dict[int, Any] = {}

    @property
    def latch(self) -> Latch:
        return self._latch

    def on_reload_signal(self, signum: int | None = None, frame: FrameType | None = None) -> None:
        self._reload_seq += 1
        self._latch.set()

    def on_terminate_signal(self, signum: int | None = None, frame: FrameType | None = None) -> None:
        self._shutdown_requested = True
        self._latch.set()

    def consume_reload(self) -> bool:
        """Return whether a reload was requested since the last call."""
        seq = self._reload_seq
        if seq == self._reload_seen:
            return False
        self._reload_seen = seq
        return True

    def is_shutdown_requested(self) -> bool:
        return self._shutdown_requested

    def install(self) -> bool:
        """Register the handlers. Only possible in the main thread."""
        handlers = {sig: self.on_reload_signal for sig in RELOAD_SIGNALS}
        handlers.update({sig: self.on_terminate_signal for sig in TERMINATE_SIGNALS})
        try:
            for sig, handler in handlers.items():
                self._previous[sig] = signal.signal(sig, handler)
        except ValueError:
            logger.warning("signal_handlers_not_installed", reason="not in main thread")
            self.restore()
            return False
        return True

    def restore(self) -> None:
        """Put back whatever handlers were active before :meth:`install`."""
        for sig, handler in self._previous.items():
            signal.signal(sig, handler if handler is not None else signal.SIG_DFL)
        self._previous.clear()


__all__ = ["RELOAD_SIGNALS", "SignalFlags", "TERMINATE_SIGNALS"]
