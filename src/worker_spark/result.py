"""
Result envelope for the outcome of one check-and-invoke cycle.

``Ok`` carries the cycle's status, ``Err`` carries the error that makes the
cycle fatal. Expected outcomes (including "procedure not found") are values,
never exceptions; only the main loop decides that an ``Err`` ends the
process.

Usage:
    from worker_spark.result import Ok, Err, Result

    match invoker.execute(scope, config):
        case Ok(status):
            stats.record(status)
        case Err(error):
            raise error
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Generic, TypeVar

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class Ok(Generic[T]):
    """Successful result containing a value."""

    value: T

    def unwrap(self) -> T:
        """Get the value. Safe for Ok."""
        return self.value

    def __repr__(self) -> str:
        return f"Ok({self.value!r})"


@dataclass(frozen=True, slots=True)
class Err(Generic[T]):
    """Failed result containing the error."""

    error: Exception

    def unwrap(self) -> T:
        """Raise the error. Use only when you're sure it's Ok."""
        raise self.error

    def __repr__(self) -> str:
        return f"Err({self.error!r})"


Result = Ok[T] | Err[T]


__all__ = ["Err", "Ok", "Result"]
