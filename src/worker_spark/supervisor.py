"""Host lifecycle for the spark worker.

The supervisor plays the part of the database server's process manager:

- It waits until the server has finished recovery before starting the
  worker.
- It owns the write end of the host-death pipe; if the supervisor goes away
  the worker sees EOF on its end and exits at once.
- It restarts the worker ``restart_seconds`` after an unexpected exit
  (non-zero status or killed by a signal). A zero exit is a graceful
  shutdown and is not restarted.
- SIGHUP is forwarded to the worker so it reloads its configuration;
  SIGTERM/SIGINT are forwarded and the supervisor returns once the worker
  has exited.

Exactly one worker is registered.
"""

from __future__ import annotations

import functools
import multiprocessing
import multiprocessing.connection
import os
import signal
import sys
import time
from dataclasses import dataclass, field
from multiprocessing.context import BaseContext
from multiprocessing.process import BaseProcess
from pathlib import Path
from typing import Any, Callable

import structlog

from worker_spark.config import SparkSettings
from worker_spark.db import build_conninfo, server_ready
from worker_spark.latch import MAX_WAIT_SLICE, HostWatch
from worker_spark.signals import SignalFlags
from worker_spark.worker import worker_main

logger = structlog.get_logger(__name__)

WORKER_NAME = "spark worker"


@dataclass(frozen=True)
class WorkerSpec:
    """How to run the worker process.

    ``target`` is called in the child as ``target(host_watch, *args)`` and
    returns the process exit status.
    """

    name: str
    target: Callable[..., int]
    args: tuple[Any, ...] = ()
    restart_seconds: float | None = 1.0


@dataclass
class _WorkerSlot:
    spec: WorkerSpec
    process: BaseProcess | None = None
    restart_at: float | None = None
    starts: int = 0
    exit_codes: list[int] = field(default_factory=list)


def _child_main(spec: WorkerSpec, read_fd: int, write_fd: int) -> None:
    os.close(write_fd)
    # Ignore reloads until the target installs its own handlers.
    signal.signal(signal.SIGHUP, signal.SIG_IGN)
    signal.signal(signal.SIGTERM, signal.SIG_DFL)
    signal.signal(signal.SIGINT, signal.SIG_DFL)
    sys.exit(spec.target(HostWatch(read_fd), *spec.args))


class Supervisor:
    """Starts, watches and restarts the registered worker."""

    def __init__(
        self,
        readiness_check: Callable[[], bool] | None = None,
        recovery_poll_seconds: float = 1.0,
        flags: SignalFlags | None = None,
        mp_context: BaseContext | None = None,
    ):
        self._readiness_check = readiness_check
        self._recovery_poll_seconds = recovery_poll_seconds
        self._flags = flags or SignalFlags()
        self._ctx = mp_context or multiprocessing.get_context("fork")
        self._slot: _WorkerSlot | None = None
        self._stopping = False
        self._host_fds: tuple[int, int] | None = None

    @property
    def flags(self) -> SignalFlags:
        return self._flags

    @property
    def exit_codes(self) -> list[int]:
        """Exit status of every worker process so far, in order."""
        return list(self._slot.exit_codes) if self._slot else []

    @property
    def starts(self) -> int:
        return self._slot.starts if self._slot else 0

    def register(self, spec: WorkerSpec) -> None:
        if self._slot is not None:
            raise ValueError(f"worker {self._slot.spec.name!r} is already registered")
        self._slot = _WorkerSlot(spec)
        logger.debug("worker_registered", name=spec.name, restart_seconds=spec.restart_seconds)

    def run(self) -> int:
        """Supervise until shutdown or until the worker exits for good.

        Returns 0 after a requested shutdown, otherwise the exit status of the
        last worker process (1 if a signal killed it).
        """
        if self._slot is None:
            raise ValueError("no worker registered")

        installed = self._flags.install()
        try:
            if not self._wait_for_recovery():
                logger.info("supervisor_stopped", reason="shutdown before recovery finished")
                return 0

            watch, write_fd = HostWatch.pipe()
            self._host_fds = (watch.fileno(), write_fd)
            try:
                self._start(self._slot)
                self._supervise(self._slot)
            finally:
                os.close(write_fd)
                watch.close()
                self._host_fds = None
        finally:
            if installed:
                self._flags.restore()

        logger.info("supervisor_stopped", starts=self._slot.starts, exit_codes=self._slot.exit_codes)
        if self._stopping or not self._slot.exit_codes:
            return 0
        code = self._slot.exit_codes[-1]
        return code if code >= 0 else 1

    def _wait_for_recovery(self) -> bool:
        if self._readiness_check is None:
            return True

        latch = self._flags.latch
        announced = False
        while not self._flags.is_shutdown_requested():
            if self._readiness_check():
                logger.info("host_ready")
                return True
            if not announced:
                logger.info("waiting_for_recovery", poll_seconds=self._recovery_poll_seconds)
                announced = True
            latch.wait(self._recovery_poll_seconds)
            latch.reset()
        return False

    def _start(self, slot: _WorkerSlot) -> None:
        assert self._host_fds is not None
        read_fd, write_fd = self._host_fds
        process = self._ctx.Process(
            target=_child_main,
            args=(slot.spec, read_fd, write_fd),
            name=slot.spec.name,
        )
        process.start()
        slot.process = process
        slot.restart_at = None
        slot.starts += 1
        logger.info("worker_started", name=slot.spec.name, pid=process.pid, starts=slot.starts)

    def _supervise(self, slot: _WorkerSlot) -> None:
        latch = self._flags.latch
        while slot.process is not None or slot.restart_at is not None:
            waitables: list[Any] = [latch]
            if slot.process is not None:
                waitables.append(slot.process.sentinel)
            timeout = None
            if slot.restart_at is not None:
                timeout = min(max(0.0, slot.restart_at - time.monotonic()), MAX_WAIT_SLICE)

            multiprocessing.connection.wait(waitables, timeout)
            latch.reset()

            if self._flags.is_shutdown_requested() and not self._stopping:
                self._stopping = True
                slot.restart_at = None
                self._forward(slot, signal.SIGTERM)
            if self._flags.consume_reload():
                self._forward(slot, signal.SIGHUP)

            if slot.process is not None and not slot.process.is_alive():
                self._reap(slot)

            if slot.restart_at is not None and slot.restart_at <= time.monotonic():
                self._start(slot)

    def _reap(self, slot: _WorkerSlot) -> None:
        assert slot.process is not None
        process = slot.process
        process.join()
        code = process.exitcode if process.exitcode is not None else 1
        process.close()
        slot.process = None
        slot.exit_codes.append(code)

        log = logger.bind(name=slot.spec.name, exitcode=code)
        if code == 0:
            log.info("worker_exited")
        elif self._stopping:
            log.info("worker_exited", during="shutdown")
        elif slot.spec.restart_seconds is None:
            log.error("worker_crashed", restart=False)
        else:
            slot.restart_at = time.monotonic() + slot.spec.restart_seconds
            log.warning("worker_crashed", restart_in=slot.spec.restart_seconds)

    def _forward(self, slot: _WorkerSlot, signum: int) -> None:
        if slot.process is None or slot.process.pid is None:
            return
        try:
            os.kill(slot.process.pid, signum)
        except ProcessLookupError:
            logger.debug("worker_already_gone", signal=signal.Signals(signum).name)
            return
        logger.info("signal_forwarded", signal=signal.Signals(signum).name, pid=slot.process.pid)


def _run_spark_worker(host_watch: HostWatch, env_file: str | None) -> int:
    return worker_main(env_file, host_watch)


def spark_worker_spec(env_file: str | Path | None = None, restart_seconds: float | None = 1.0) -> WorkerSpec:
    return WorkerSpec(
        name=WORKER_NAME,
        target=_run_spark_worker,
        args=(str(env_file) if env_file is not None else None,),
        restart_seconds=restart_seconds,
    )


def supervisor_for(settings: SparkSettings, env_file: str | Path | None = None, restart: bool = True) -> Supervisor:
    """Build a supervisor with the spark worker registered from settings."""
    conninfo = build_conninfo(settings.dsn, settings.database, settings.connect_timeout)
    supervisor = Supervisor(
        readiness_check=functools.partial(server_ready, conninfo),
        recovery_poll_seconds=settings.recovery_poll_seconds,
    )
    supervisor.register(spark_worker_spec(env_file, settings.restart_seconds if restart else None))
    return supervisor


__all__ = ["Supervisor", "WORKER_NAME", "WorkerSpec", "spark_worker_spec", "supervisor_for"]
