"""Configuration management using Pydantic Settings.

Options are read from ``WORKER_SPARK_*`` environment variables and an
optional ``.env`` file. The four tunables the worker acts on are copied into
an immutable :class:`Config` snapshot; a new snapshot only becomes active
when the main loop calls :meth:`ConfigState.reload` at the top of a cycle.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, replace
from pathlib import Path
from typing import Any, Callable, Literal

import structlog
from pydantic import Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from worker_spark.errors import InvalidConfigError

logger = structlog.get_logger(__name__)

DEFAULT_INTERVAL = 10
MIN_INTERVAL = 1
MAX_INTERVAL = 2**31 - 1


class SparkSettings(BaseSettings):
    """Host settings for the spark worker."""

    model_config = SettingsConfigDict(
        env_prefix="WORKER_SPARK_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    # Tunables
    interval: int = Field(
        default=DEFAULT_INTERVAL,
        description="Duration between each spark (in seconds).",
    )
    database: str | None = Field(
        default=None,
        description="Name of the database where the spark procedure is.",
    )
    schema_name: str | None = Field(
        default=None,
        validation_alias="worker_spark_schema",
        description="Name of the schema where the spark procedure is.",
    )
    procedure: str | None = Field(
        default=None,
        description="Name of the spark procedure.",
    )

    # Connection
    dsn: str = ""
    connect_timeout: int = 10

    # Host lifecycle
    restart_seconds: float | None = 1.0
    recovery_poll_seconds: float = 1.0

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    log_format: Literal["json", "console"] = "console"

    @field_validator("interval", mode="before")
    @classmethod
    def _clamp_interval(cls, value: Any) -> int:
        if isinstance(value, str):
            value = value.strip()
        try:
            seconds = int(value)
        except (TypeError, ValueError):
            raise ValueError(f"interval must be a whole number of seconds, got {value!r}") from None
        return max(MIN_INTERVAL, min(seconds, MAX_INTERVAL))

    @field_validator("log_level", mode="before")
    @classmethod
    def _upper_level(cls, value: Any) -> Any:
        return value.upper() if isinstance(value, str) else value


@dataclass(frozen=True)
class Config:
    """Immutable snapshot of the options one cycle runs with."""

    interval_seconds: int = DEFAULT_INTERVAL
    database: str | None = None
    schema: str | None = None
    procedure: str | None = None

    @classmethod
    def from_settings(cls, settings: SparkSettings) -> Config:
        return cls(
            interval_seconds=settings.interval,
            database=settings.database,
            schema=settings.schema_name,
            procedure=settings.procedure,
        )

    @property
    def qualified_name(self) -> str:
        """``schema.procedure`` as it appears in log lines."""
        return f"{self.schema}.{self.procedure}"

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class ConfigState:
    """Holds the active :class:`Config` and swaps it on reload.

    Args:
        env_file: ``.env`` file to read besides the environment. ``None``
            uses the settings default (``.env`` in the working directory).
        settings_factory: Override for how settings are read (tests).
    """

    def __init__(
        self,
        env_file: str | Path | None = None,
        settings_factory: Callable[[], SparkSettings] | None = None,
    ):
        self._env_file = env_file
        self._settings_factory = settings_factory
        self._settings = self.read_settings()
        self._current = Config.from_settings(self._settings)

    @property
    def current(self) -> Config:
        return self._current

    @property
    def settings(self) -> SparkSettings:
        """The settings the current snapshot was taken from."""
        return self._settings

    def read_settings(self) -> SparkSettings:
        """Read settings from the host, raising ``InvalidConfigError``."""
        try:
            if self._settings_factory is not None:
                return self._settings_factory()
            if self._env_file is not None:
                return SparkSettings(_env_file=self._env_file)
            return SparkSettings()
        except ValidationError as exc:
            first = exc.errors()[0]
            key = ".".join(str(part) for part in first.get("loc", ())) or "settings"
            raise InvalidConfigError(key, first.get("input"), first.get("msg"), cause=exc) from exc

    def load(self) -> Config:
        """Read a fresh snapshot without activating it."""
        return Config.from_settings(self.read_settings())

    def reload(self) -> Config:
        """Re-read settings and make the result the active snapshot.

        An unreadable configuration is logged and the previous snapshot stays
        active. The database is bound to the open connection, so a changed
        ``database`` only takes effect after a restart.
        """
        try:
            settings = self.read_settings()
        except InvalidConfigError as exc:
            logger.error("config_reload_failed", **exc.to_dict())
            return self._current

        previous = self._current
        config = Config.from_settings(settings)
        if config.database != previous.database:
            logger.warning(
                "database_change_requires_restart",
                active=previous.database,
                requested=config.database,
            )
            config = replace(config, database=previous.database)

        changes = {
            key: {"from": old, "to": new}
            for key, old, new in (
                (field, getattr(previous, field), getattr(config, field))
                for field in ("interval_seconds", "schema", "procedure")
            )
            if old != new
        }
        self._settings = settings
        self._current = config
        logger.info("config_reloaded", changes=changes)
        return config


__all__ = [
    "Config",
    "ConfigState",
    "DEFAULT_INTERVAL",
    "MAX_INTERVAL",
    "MIN_INTERVAL",
    "SparkSettings",
]
