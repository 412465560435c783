"""PostgreSQL connection and per-cycle transaction scope using psycopg3."""

from __future__ import annotations

from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Protocol

import psycopg
import structlog
from psycopg import sql
from psycopg.conninfo import make_conninfo

from worker_spark.config import Config
from worker_spark.errors import (
    DatabaseConnectionError,
    DatabaseError,
    MissingConfigError,
    QueryError,
)

logger = structlog.get_logger(__name__)

APPLICATION_NAME = "spark worker"

Query = str | sql.Composable


class ResultKind(str, Enum):
    """Shape of what a statement returned."""

    ROWS = "rows"  # a result set, possibly empty
    COMMAND = "command"  # no result set (utility statement, CALL without OUT params)


@dataclass(frozen=True)
class QueryResult:
    kind: ResultKind
    status: str | None = None
    rows: list[tuple[Any, ...]] = field(default_factory=list)

    @property
    def rowcount(self) -> int:
        return len(self.rows)


class QueryScope(Protocol):
    """What the invoker needs from a transaction: run one statement."""

    def execute(self, query: Query, params: Sequence[Any] | None = None) -> QueryResult:
        ...


class TransactionScope:
    """One open transaction on the worker's connection.

    ``started_at`` is stamped when the scope is created and ``statement_start``
    again before every statement.
    """

    def __init__(self, conn: psycopg.Connection, cycle: int = 0):
        self._conn = conn
        self.cycle = cycle
        self.started_at = datetime.now(UTC)
        self.statement_start = self.started_at

    def execute(self, query: Query, params: Sequence[Any] | None = None) -> QueryResult:
        self.statement_start = datetime.now(UTC)
        try:
            with self._conn.cursor() as cur:
                cur.execute(query, params)
                if cur.description is None:
                    return QueryResult(ResultKind.COMMAND, cur.statusmessage)
                return QueryResult(ResultKind.ROWS, cur.statusmessage, cur.fetchall())
        except psycopg.Error as exc:
            raise QueryError(f"cannot query the database: {exc}", cause=exc) from exc


def build_conninfo(
    dsn: str = "",
    database: str | None = None,
    connect_timeout: int | None = None,
) -> str:
    """Merge the base DSN with the configured database and our app name."""
    params: dict[str, Any] = {"application_name": APPLICATION_NAME}
    if database is not None:
        params["dbname"] = database
    if connect_timeout is not None:
        params["connect_timeout"] = connect_timeout
    return make_conninfo(dsn, **params)


class Database:
    """The worker's single database connection.

    Statements only run inside :meth:`transaction`; the connection itself is
    in autocommit mode so nothing is left open between cycles.
    """

    def __init__(self, conn: psycopg.Connection):
        self._conn = conn
        self._in_transaction = False

    @classmethod
    def connect(cls, config: Config, dsn: str = "", connect_timeout: int | None = 10) -> Database:
        if not config.database:
            raise MissingConfigError("database", "WORKER_SPARK_DATABASE must be set to open a connection")

        conninfo = build_conninfo(dsn, config.database, connect_timeout)
        try:
            conn = psycopg.connect(conninfo, autocommit=True)
        except psycopg.Error as exc:
            raise DatabaseConnectionError(
                f"could not connect to database {config.database}: {exc}",
                cause=exc,
            ).with_context(database=config.database) from exc

        logger.info("database_connected", database=config.database)
        return cls(conn)

    @property
    def closed(self) -> bool:
        return self._conn.closed

    @contextmanager
    def transaction(self, cycle: int = 0) -> Iterator[TransactionScope]:
        """Run the block in one transaction; commit on success, roll back on error."""
        if self._in_transaction:
            raise DatabaseError("a transaction scope is already open")

        scope = TransactionScope(self._conn, cycle)
        self._in_transaction = True
        try:
            with structlog.contextvars.bound_contextvars(
                cycle=cycle,
                statement_start=scope.started_at.isoformat(),
            ):
                with self._conn.transaction():
                    yield scope
        except psycopg.Error as exc:
            raise DatabaseError(f"transaction failed: {exc}", cause=exc) from exc
        finally:
            self._in_transaction = False

    def close(self) -> None:
        if not self._conn.closed:
            self._conn.close()
            logger.debug("database_closed")


def server_ready(conninfo: str) -> bool:
    """True once the server accepts connections and has left recovery."""
    try:
        with psycopg.connect(conninfo, autocommit=True) as conn:
            row = conn.execute("SELECT pg_is_in_recovery()").fetchone()
    except psycopg.Error as exc:
        logger.debug("server_not_ready", error=str(exc))
        return False

    in_recovery = bool(row[0]) if row else True
    if in_recovery:
        logger.debug("server_in_recovery")
    return not in_recovery


__all__ = [
    "APPLICATION_NAME",
    "Database",
    "Query",
    "QueryResult",
    "QueryScope",
    "ResultKind",
    "TransactionScope",
    "build_conninfo",
    "server_ready",
]
