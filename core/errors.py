"""
Error taxonomy for the memory core.

Three kinds of failure:
- transient: the resource may recover (store unreachable, query timeout,
  provider rate limit). Retried close to the resource.
- fatal: a bug or bad input. Propagates.
- partial: some retrieval paths failed while others succeeded.

`Result` carries an outcome plus its error kind for callers that want a
value instead of an exception.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Generic, Optional, TypeVar
import asyncio


T = TypeVar("T")


class ErrorKind(str, Enum):
    TRANSIENT = "transient"
    FATAL = "fatal"
    PARTIAL = "partial"


class MemoryCoreError(Exception):
    """Base error of the memory core."""
    kind = ErrorKind.FATAL

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class TransientError(MemoryCoreError):
    kind = ErrorKind.TRANSIENT


class StoreUnavailableError(TransientError):
    """The message store (or its connection pool) cannot serve requests."""


class QueryTimeoutError(TransientError):
    """A store query exceeded its deadline."""


class PoolTimeoutError(TransientError):
    """No pooled connection became available in time."""


class ProviderRateLimitError(TransientError):
    """The embedding provider asked us to slow down."""

    def __init__(self, message: str, retry_after: Optional[float] = None):
        super().__init__(message, {"retry_after": retry_after})
        self.retry_after = retry_after


class HybridSearchError(MemoryCoreError):
    """One or more hybrid search paths failed. `failures` maps path -> error."""
    kind = ErrorKind.PARTIAL

    def __init__(self, failures: Dict[str, BaseException]):
        paths = ", ".join(f"{name}: {err!r}" for name, err in failures.items())
        super().__init__(f"Hybrid search failed ({paths})", {"paths": list(failures)})
        self.failures = failures


def classify_error(exc: BaseException) -> ErrorKind:
    """Map any exception onto an error kind."""
    if isinstance(exc, MemoryCoreError):
        return exc.kind
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError, ConnectionError)):
        return ErrorKind.TRANSIENT
    return ErrorKind.FATAL


@dataclass
class Result(Generic[T]):
    """Success value or classified failure."""
    value: Optional[T] = None
    error: Optional[BaseException] = None
    kind: Optional[ErrorKind] = None

    @classmethod
    def success(cls, value: T) -> "Result[T]":
        return cls(value=value)

    @classmethod
    def failure(cls, error: BaseException, value: Optional[T] = None) -> "Result[T]":
        return cls(value=value, error=error, kind=classify_error(error))

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> T:
        if self.error is not None:
            raise self.error
        return self.value
