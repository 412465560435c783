"""Worker process entry points.

``worker_main`` is what the supervisor runs in the child process: it
installs the signal handlers, connects, and runs the main loop until it
exits. ``run_once`` performs a single cycle for the CLI.
"""

from __future__ import annotations

import os
from pathlib import Path

import structlog

from worker_spark.config import ConfigState
from worker_spark.db import Database
from worker_spark.errors import ConfigError, SparkError
from worker_spark.invoker import InvokeStatus
from worker_spark.latch import HostWatch
from worker_spark.logging_config import configure_logging
from worker_spark.loop import ExitReason, MainLoop
from worker_spark.result import Err, Ok, Result
from worker_spark.signals import SignalFlags

logger = structlog.get_logger(__name__)


def worker_main(env_file: str | Path | None = None, host_watch: HostWatch | None = None) -> int:
    """Run the spark worker until shutdown. Returns the exit status."""
    flags = SignalFlags()
    flags.install()

    try:
        config_state = ConfigState(env_file)
    except ConfigError as exc:
        configure_logging()
        logger.critical("spark_worker_config_invalid", **exc.to_dict())
        flags.restore()
        return 1

    settings = config_state.settings
    configure_logging(level=settings.log_level, format=settings.log_format)
    logger.debug("spark_worker_start", pid=os.getpid())

    try:
        database = Database.connect(config_state.current, settings.dsn, settings.connect_timeout)
    except SparkError as exc:
        logger.critical("spark_worker_connect_failed", **exc.to_dict())
        flags.restore()
        return 1

    loop = MainLoop(config_state, flags, database, host_watch=host_watch)
    reason = loop.run()

    if reason is ExitReason.HOST_DEATH:
        os._exit(reason.status)

    database.close()
    flags.restore()
    return reason.status


def run_once(
    env_file: str | Path | None = None,
    config_state: ConfigState | None = None,
) -> Result[InvokeStatus]:
    """Run one check-and-invoke cycle and report its outcome.

    Pass ``config_state`` to run with settings that were already loaded.
    Configuration and connection errors are raised; the cycle's own outcome
    is returned.
    """
    config_state = config_state or ConfigState(env_file)
    settings = config_state.settings
    database = Database.connect(config_state.current, settings.dsn, settings.connect_timeout)
    flags = SignalFlags()
    try:
        loop = MainLoop(config_state, flags, database)
        return Ok(loop.run_cycle())
    except SparkError as exc:
        return Err(exc)
    finally:
        database.close()
        flags.latch.close()


__all__ = ["run_once", "worker_main"]
