"""Tests for the SparkError hierarchy and the Result envelope."""

import pytest

from worker_spark.errors import (
    ConfigError,
    DatabaseError,
    ErrorCategory,
    InvalidConfigError,
    MissingConfigError,
    QueryError,
    SparkError,
    UnexpectedResultError,
)
from worker_spark.result import Err, Ok


class TestSparkError:
    def test_default_categories(self):
        assert SparkError("x").category is ErrorCategory.INTERNAL
        assert MissingConfigError("database").category is ErrorCategory.CONFIG
        assert QueryError("x").category is ErrorCategory.DATABASE

    def test_hierarchy(self):
        assert issubclass(InvalidConfigError, ConfigError)
        assert issubclass(UnexpectedResultError, QueryError)
        assert issubclass(QueryError, DatabaseError)

    def test_with_context(self):
        error = QueryError("lookup failed").with_context(schema="public", procedure="spark", attempt=2)

        assert error.context.schema == "public"
        assert error.context.metadata == {"attempt": 2}
        assert error.to_dict()["context"] == {"schema": "public", "procedure": "spark", "attempt": 2}

    def test_cause_is_chained(self):
        cause = RuntimeError("driver")
        error = DatabaseError("transaction failed", cause=cause)

        assert error.__cause__ is cause
        assert error.to_dict()["cause"] == "driver"

    def test_to_dict_without_context(self):
        assert SparkError("x").to_dict() == {
            "error_type": "SparkError",
            "message": "x",
            "category": "INTERNAL",
        }

    def test_missing_config_message(self):
        assert str(MissingConfigError("database")) == "Missing required configuration: database"

    def test_invalid_config_keeps_value(self):
        error = InvalidConfigError("interval", "soon")

        assert error.key == "interval"
        assert error.value == "soon"
        assert "soon" in str(error)

    def test_unexpected_result_message(self):
        error = UnexpectedResultError("catalog lookup", expected="rows", actual="command", status="SET")

        assert str(error) == (
            "cannot query the database: expected rows result from catalog lookup, got command (SET)"
        )


class TestResult:
    def test_ok_unwrap(self):
        assert Ok(3).unwrap() == 3

    def test_err_unwrap_raises(self):
        error = QueryError("boom")

        with pytest.raises(QueryError) as exc_info:
            Err(error).unwrap()

        assert exc_info.value is error

    def test_equality(self):
        error = QueryError("boom")

        assert Ok("fired") == Ok("fired")
        assert Err(error) == Err(error)
        assert Ok("fired") != Err(error)

    def test_pattern_matching(self):
        match Err(QueryError("boom")):
            case Ok(value):
                matched = value
            case Err(error):
                matched = type(error).__name__

        assert matched == "QueryError"
