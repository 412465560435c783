"""The spark worker's main loop.

::

    WAITING ──wake──► [RELOADING] ──► EXECUTING ──commit──► WAITING
       │                                  │
       └──── host death / shutdown ───────┴──► TERMINATING

Each pass blocks on the latch for ``interval_seconds``, consumes the signal
flags, optionally reloads the configuration, then runs exactly one
check-and-invoke cycle in its own transaction. The loop is single-threaded,
so cycles never overlap.

Exit reasons:
    - ``SHUTDOWN``: SIGTERM/SIGINT was received; status 0.
    - ``FATAL``: a cycle failed; the transaction was rolled back; status 1.
      There is no retry here, the supervisor restarts the process.
    - ``HOST_DEATH``: the host went away while we waited; status 1. The
      caller must exit immediately without any cleanup.
"""

from __future__ import annotations

from contextlib import AbstractContextManager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Protocol

import structlog

from worker_spark.config import ConfigState
from worker_spark.db import QueryScope
from worker_spark.errors import SparkError
from worker_spark.invoker import InvokeStatus, ProcedureInvoker
from worker_spark.latch import HostWatch, WakeEvent
from worker_spark.signals import SignalFlags

logger = structlog.get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class LoopState(str, Enum):
    WAITING = "waiting"
    RELOADING = "reloading"
    EXECUTING = "executing"
    TERMINATING = "terminating"


class ExitReason(str, Enum):
    SHUTDOWN = "shutdown"
    FATAL = "fatal"
    HOST_DEATH = "host_death"

    @property
    def status(self) -> int:
        """Process exit status for this reason."""
        return 0 if self is ExitReason.SHUTDOWN else 1


@dataclass
class LoopStats:
    """Counters for the life of one worker process."""

    cycles: int = 0
    fired: int = 0
    not_found: int = 0
    reloads: int = 0
    started_at: datetime = field(default_factory=_utcnow)
    last_cycle_at: datetime | None = None

    def record(self, status: InvokeStatus) -> None:
        self.cycles += 1
        self.last_cycle_at = _utcnow()
        if status is InvokeStatus.FIRED:
            self.fired += 1
        else:
            self.not_found += 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "cycles": self.cycles,
            "fired": self.fired,
            "not_found": self.not_found,
            "reloads": self.reloads,
            "started_at": self.started_at.isoformat(),
            "last_cycle_at": self.last_cycle_at.isoformat() if self.last_cycle_at else None,
        }


class TransactionalDatabase(Protocol):
    def transaction(self, cycle: int = 0) -> AbstractContextManager[QueryScope]:
        ...


class MainLoop:
    """Waits, reloads and fires, one cycle per wake."""

    def __init__(
        self,
        config_state: ConfigState,
        flags: SignalFlags,
        database: TransactionalDatabase,
        invoker: ProcedureInvoker | None = None,
        host_watch: HostWatch | None = None,
    ):
        self._config_state = config_state
        self._flags = flags
        self._database = database
        self._invoker = invoker or ProcedureInvoker()
        self._host_watch = host_watch
        self._state = LoopState.WAITING
        self._stats = LoopStats()

    @property
    def state(self) -> LoopState:
        return self._state

    @property
    def stats(self) -> LoopStats:
        return self._stats

    def run(self) -> ExitReason:
        """Loop until shutdown, a fatal cycle, or host death."""
        logger.info("spark_worker_started", **self._config_state.current.to_dict())

        try:
            while not self._flags.is_shutdown_requested():
                if not self._wait():
                    return ExitReason.HOST_DEATH

                if self._flags.is_shutdown_requested():
                    break

                if self._flags.consume_reload():
                    self._reload()

                self.run_cycle()
        except SparkError as exc:
            self._state = LoopState.TERMINATING
            logger.critical("spark_worker_fatal", **exc.to_dict(), stats=self._stats.to_dict())
            return ExitReason.FATAL

        self._state = LoopState.TERMINATING
        logger.info("spark_worker_stopped", **self._stats.to_dict())
        return ExitReason.SHUTDOWN

    def run_cycle(self) -> InvokeStatus:
        """One transaction: look up the procedure and fire it if present.

        Raises the cycle's ``SparkError`` after the transaction rolled back.
        """
        config = self._config_state.current
        self._state = LoopState.EXECUTING
        with self._database.transaction(self._stats.cycles + 1) as scope:
            status = self._invoker.execute(scope, config).unwrap()
        self._stats.record(status)
        return status

    def _wait(self) -> bool:
        """Block until the next wake. False means the host is gone."""
        self._state = LoopState.WAITING
        interval = self._config_state.current.interval_seconds
        latch = self._flags.latch

        event = latch.wait(interval, self._host_watch)
        latch.reset()

        if event & WakeEvent.HOST_DEATH:
            self._state = LoopState.TERMINATING
            logger.critical("host_died", action="exiting without cleanup")
            return False

        logger.debug("spark_worker_woke", timeout=bool(event & WakeEvent.TIMEOUT))
        return True

    def _reload(self) -> None:
        self._state = LoopState.RELOADING
        self._config_state.reload()
        self._stats.reloads += 1


__all__ = ["ExitReason", "LoopState", "LoopStats", "MainLoop", "TransactionalDatabase"]
