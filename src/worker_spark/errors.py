"""
Structured error types for the spark worker.

Every failure the worker can raise is a ``SparkError`` carrying a category,
structured context (which database, schema and procedure it concerned) and
the chained underlying exception. The worker never retries inside the
process: an error that reaches the main loop ends the process and the
supervisor's restart policy takes over.

Hierarchy::

    SparkError
    ├── ConfigError
    │   ├── MissingConfigError
    │   └── InvalidConfigError
    └── DatabaseError
        ├── DatabaseConnectionError
        └── QueryError
            └── UnexpectedResultError

Usage:
    from worker_spark.errors import QueryError

    try:
        cursor.execute(query)
    except psycopg.Error as exc:
        raise QueryError("cannot query the database", cause=exc) from exc
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """Standard error categories for classification in logs."""

    CONFIG = "CONFIG"
    DATABASE = "DATABASE"
    INTERNAL = "INTERNAL"


@dataclass
class ErrorContext:
    """Where an error happened: the target the worker was pointed at."""

    database: str | None = None
    schema: str | None = None
    procedure: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary, dropping unset fields."""
        result: dict[str, Any] = {}
        if self.database is not None:
            result["database"] = self.database
        if self.schema is not None:
            result["schema"] = self.schema
        if self.procedure is not None:
            result["procedure"] = self.procedure
        if self.metadata:
            result.update(self.metadata)
        return result


class SparkError(Exception):
    """
    Base exception for all spark worker errors.

    Subclasses set ``default_category``; callers can override it per
    instance. ``cause`` is also set as ``__cause__`` so tracebacks show the
    original driver error.
    """

    default_category: ErrorCategory = ErrorCategory.INTERNAL

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        context: ErrorContext | None = None,
        cause: Exception | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.context = context or ErrorContext()
        self.cause = cause

        if cause is not None:
            self.__cause__ = cause

    def with_context(self, **kwargs: Any) -> SparkError:
        """
        Add context to this error (fluent API).

        Usage:
            raise QueryError("lookup failed").with_context(schema="public")
        """
        for key, value in kwargs.items():
            if key != "metadata" and hasattr(self.context, key):
                setattr(self.context, key, value)
            else:
                self.context.metadata[key] = value
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for structured logging."""
        result: dict[str, Any] = {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "category": self.category.value,
        }
        context_dict = self.context.to_dict()
        if context_dict:
            result["context"] = context_dict
        if self.cause is not None:
            result["cause"] = str(self.cause)
        return result

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, category={self.category.value})"


# =============================================================================
# CONFIGURATION ERRORS
# =============================================================================


class ConfigError(SparkError):
    """Configuration could not be read or is invalid."""

    default_category = ErrorCategory.CONFIG


class MissingConfigError(ConfigError):
    """A required option has no value."""

    def __init__(self, key: str, message: str | None = None):
        super().__init__(message or f"Missing required configuration: {key}")
        self.key = key


class InvalidConfigError(ConfigError):
    """An option has a value that cannot be used."""

    def __init__(self, key: str, value: Any, message: str | None = None, cause: Exception | None = None):
        super().__init__(message or f"Invalid value for {key}: {value!r}", cause=cause)
        self.key = key
        self.value = value


# =============================================================================
# DATABASE ERRORS
# =============================================================================


class DatabaseError(SparkError):
    """Database query or transaction error."""

    default_category = ErrorCategory.DATABASE


class DatabaseConnectionError(DatabaseError):
    """The worker could not open its database connection."""

    pass


class QueryError(DatabaseError):
    """A statement failed inside the worker's transaction."""

    pass


class UnexpectedResultError(QueryError):
    """A statement returned a result of a kind the worker did not expect.

    This is always fatal for the worker process.
    """

    def __init__(self, statement: str, expected: str, actual: str, status: str | None = None):
        super().__init__(
            f"cannot query the database: expected {expected} result from {statement}, got {actual}"
            + (f" ({status})" if status else "")
        )
        self.statement = statement
        self.expected = expected
        self.actual = actual
        self.status = status


__all__ = [
    "ConfigError",
    "DatabaseConnectionError",
    "DatabaseError",
    "ErrorCategory",
    "ErrorContext",
    "InvalidConfigError",
    "MissingConfigError",
    "QueryError",
    "SparkError",
    "UnexpectedResultError",
]
