"""
Logging configuration.

Provides a single entry point for configuring structured logging.
Configuration is read from the arguments or, when omitted, from:

- WORKER_SPARK_LOG_LEVEL: DEBUG | INFO | WARNING | ERROR (default: INFO)
- WORKER_SPARK_LOG_FORMAT: json | console (default: console)

Per-cycle context bound with ``structlog.contextvars`` (``cycle``,
``statement_start``) is merged into every event.

Usage:
    from worker_spark.logging_config import configure_logging
    configure_logging(level="DEBUG", format="json")
"""

import logging
import os
import sys
from typing import Literal

import structlog
from structlog.types import Processor

_configured = False


def configure_logging(
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] | None = None,
    format: Literal["json", "console"] | None = None,
    force: bool = False,
) -> None:
    """
    Configure structured logging for the process.

    Called once at worker or CLI startup. Subsequent calls are no-ops unless
    force=True.
    """
    global _configured

    if _configured and not force:
        return

    log_level = (level or os.environ.get("WORKER_SPARK_LOG_LEVEL", "INFO")).upper()
    log_format = (format or os.environ.get("WORKER_SPARK_LOG_FORMAT", "console")).lower()

    processors: list[Processor] = [
        structlog.stdlib.filter_by_level,
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(
            structlog.dev.ConsoleRenderer(
                colors=sys.stderr.isatty(),
                exception_formatter=structlog.dev.plain_traceback,
            )
        )

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=getattr(logging, log_level),
        force=True,
    )
    logging.getLogger("worker_spark").setLevel(getattr(logging, log_level))

    _configured = True


def is_configured() -> bool:
    """Check if logging has been configured."""
    return _configured


def reset_logging() -> None:
    """Forget the configuration (for tests)."""
    global _configured
    structlog.reset_defaults()
    _configured = False
