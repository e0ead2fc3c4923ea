"""
Explicit success/failure values returned across pipeline boundaries.

Services raise typed exceptions internally; the ingestion pipeline and the
flush coordinator convert them into a Result so callers branch on `.ok`
instead of catching.
"""
from dataclasses import dataclass
from typing import Generic, Optional, TypeVar

T = TypeVar("T")
E = TypeVar("E")


@dataclass(frozen=True)
class Result(Generic[T, E]):
    value: Optional[T] = None
    error: Optional[E] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: Optional[T] = None) -> "Result[T, E]":
        return cls(value=value)

    @classmethod
    def failure(cls, error: E) -> "Result[T, E]":
        if error is None:
            raise ValueError("failure() requires an error")
        return cls(error=error)

    def unwrap(self) -> T:
        """Return the value or raise the carried error."""
        if self.error is not None:
            if isinstance(self.error, BaseException):
                raise self.error
            raise RuntimeError(str(self.error))
        return self.value
