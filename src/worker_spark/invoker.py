"""Existence check and invocation of the spark procedure.

One call to :meth:`ProcedureInvoker.execute` runs inside the cycle's
transaction:

1. Look the procedure up in ``pg_proc`` by schema and name (``LIMIT 1``;
   overloads don't matter, only whether one exists).
2. If found, invoke it with no arguments and discard what it returns.
3. If not found, do nothing. That is a normal outcome, not an error.

A statement that fails, or that comes back with a result of the wrong kind,
is returned as ``Err`` and ends the worker process.
"""

from __future__ import annotations

from enum import Enum

import structlog
from psycopg import sql

from worker_spark.config import Config
from worker_spark.db import QueryResult, QueryScope, ResultKind
from worker_spark.errors import QueryError, UnexpectedResultError
from worker_spark.result import Err, Ok, Result

logger = structlog.get_logger(__name__)

LOOKUP_SQL = """
    SELECT p.prokind
    FROM pg_catalog.pg_proc p
    JOIN pg_catalog.pg_namespace n ON p.pronamespace = n.oid
    WHERE n.nspname = %s AND p.proname = %s
    LIMIT 1
"""

PROKIND_PROCEDURE = "p"


class InvokeStatus(str, Enum):
    FIRED = "fired"
    NOT_FOUND = "not_found"


def invocation(config: Config, prokind: str | None) -> sql.Composed:
    """Build the zero-argument call for a function or a procedure."""
    target = sql.Identifier(config.schema or "", config.procedure or "")
    if prokind == PROKIND_PROCEDURE:
        return sql.SQL("CALL {}()").format(target)
    return sql.SQL("SELECT {}()").format(target)


class ProcedureInvoker:
    """Checks for the configured procedure and fires it when present."""

    def execute(self, scope: QueryScope, config: Config) -> Result[InvokeStatus]:
        log = logger.bind(database=config.database, schema=config.schema, procedure=config.procedure)

        log.debug("looking_for_procedure")
        try:
            found = scope.execute(LOOKUP_SQL, (config.schema, config.procedure))
        except QueryError as exc:
            return Err(exc.with_context(schema=config.schema, procedure=config.procedure))
        if found.kind is not ResultKind.ROWS:
            return Err(self._unexpected("catalog lookup", found, config))

        if not found.rows:
            log.debug("procedure_not_found", qualified_name=config.qualified_name)
            return Ok(InvokeStatus.NOT_FOUND)

        prokind = found.rows[0][0]
        statement = invocation(config, prokind)
        log.debug("firing_procedure", prokind=prokind)
        try:
            fired = scope.execute(statement)
        except QueryError as exc:
            return Err(exc.with_context(schema=config.schema, procedure=config.procedure))
        if not self._fired_as_expected(fired, prokind):
            return Err(self._unexpected("procedure invocation", fired, config))

        log.debug("procedure_fired", status=fired.status)
        return Ok(InvokeStatus.FIRED)

    @staticmethod
    def _fired_as_expected(result: QueryResult, prokind: str | None) -> bool:
        if result.kind is ResultKind.ROWS:
            return True
        # CALL without OUT parameters returns no result set.
        return prokind == PROKIND_PROCEDURE and result.status == "CALL"

    @staticmethod
    def _unexpected(statement: str, result: QueryResult, config: Config) -> UnexpectedResultError:
        error = UnexpectedResultError(
            statement,
            expected=ResultKind.ROWS.value,
            actual=result.kind.value,
            status=result.status,
        )
        error.with_context(database=config.database, schema=config.schema, procedure=config.procedure)
        return error


__all__ = ["InvokeStatus", "LOOKUP_SQL", "ProcedureInvoker", "invocation"]
