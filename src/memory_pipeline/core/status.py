"""
Explicit success-or-error results for the memory pipeline.

Expected failures (unknown memory, provider rate limit, bad chunking
configuration, ...) are never raised. Every pipeline operation returns a
StatusOr that callers inspect before using the value:

    >>> result = registry.lookup("text-embedding-3-small")
    >>> if not result.is_ok:
    ...     logger.warning(f"Lookup failed: {result.status}")
    ... else:
    ...     embedder = result.value

Status codes mirror the HTTP semantics used by the protocol layer.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Generic, Optional, TypeVar


T = TypeVar("T")


class StatusCode(str, Enum):
    """Result codes with their HTTP equivalents."""
    OK = "OK"
    INVALID_ARGUMENT = "INVALID_ARGUMENT"
    NOT_FOUND = "NOT_FOUND"
    ALREADY_EXISTS = "ALREADY_EXISTS"
    RESOURCE_EXHAUSTED = "RESOURCE_EXHAUSTED"
    DEADLINE_EXCEEDED = "DEADLINE_EXCEEDED"
    INTERNAL = "INTERNAL"

    @property
    def http_status(self) -> int:
        return _HTTP_STATUS[self]


_HTTP_STATUS = {
    StatusCode.OK: 200,
    StatusCode.INVALID_ARGUMENT: 400,
    StatusCode.NOT_FOUND: 404,
    StatusCode.ALREADY_EXISTS: 409,
    StatusCode.RESOURCE_EXHAUSTED: 429,
    StatusCode.DEADLINE_EXCEEDED: 504,
    StatusCode.INTERNAL: 500,
}


@dataclass(frozen=True)
class Status:
    """
    Outcome of an operation.

    Attributes:
        code: Result code
        message: Human-readable description (empty for OK)
        transient: True if retrying the same operation may succeed
        retry_after_seconds: Server-provided hint for the next attempt
    """
    code: StatusCode = StatusCode.OK
    message: str = ""
    transient: bool = False
    retry_after_seconds: Optional[float] = None

    @property
    def is_ok(self) -> bool:
        return self.code == StatusCode.OK

    @property
    def permanent(self) -> bool:
        return not self.is_ok and not self.transient

    def with_message(self, prefix: str) -> "Status":
        """Return a copy whose message is prefixed with context."""
        return Status(
            code=self.code,
            message=f"{prefix}: {self.message}" if self.message else prefix,
            transient=self.transient,
            retry_after_seconds=self.retry_after_seconds,
        )

    def __str__(self) -> str:
        if self.is_ok:
            return "OK"
        return f"{self.code.value}: {self.message}"

    # Factories

    @classmethod
    def success(cls) -> "Status":
        return _OK

    @classmethod
    def invalid_argument(cls, message: str) -> "Status":
        return cls(StatusCode.INVALID_ARGUMENT, message)

    @classmethod
    def not_found(cls, message: str) -> "Status":
        return cls(StatusCode.NOT_FOUND, message)

    @classmethod
    def already_exists(cls, message: str) -> "Status":
        return cls(StatusCode.ALREADY_EXISTS, message)

    @classmethod
    def resource_exhausted(
        cls, message: str, retry_after_seconds: Optional[float] = None
    ) -> "Status":
        return cls(
            StatusCode.RESOURCE_EXHAUSTED,
            message,
            transient=True,
            retry_after_seconds=retry_after_seconds,
        )

    @classmethod
    def deadline_exceeded(cls, message: str) -> "Status":
        return cls(StatusCode.DEADLINE_EXCEEDED, message, transient=True)

    @classmethod
    def internal(cls, message: str, transient: bool = False) -> "Status":
        return cls(StatusCode.INTERNAL, message, transient=transient)


_OK = Status()


class StatusOrError(RuntimeError):
    """Raised when the value of a failed StatusOr is accessed."""

    def __init__(self, status: Status):
        super().__init__(f"StatusOr holds an error: {status}")
        self.status = status


@dataclass(frozen=True)
class StatusOr(Generic[T]):
    """
    Either a value or a non-OK Status.

    Use the factories instead of the constructor:

        >>> StatusOr.of_value(42).value
        42
        >>> StatusOr.of_status(Status.not_found("memory m1")).is_ok
        False
    """
    _value: Optional[T] = None
    status: Status = field(default_factory=Status.success)

    @classmethod
    def of_value(cls, value: T) -> "StatusOr[T]":
        return cls(_value=value, status=_OK)

    @classmethod
    def of_status(cls, status: Status) -> "StatusOr[T]":
        if status.is_ok:
            raise ValueError("of_status requires a non-OK status")
        return cls(_value=None, status=status)

    @property
    def is_ok(self) -> bool:
        return self.status.is_ok

    @property
    def value(self) -> T:
        if not self.status.is_ok:
            raise StatusOrError(self.status)
        return self._value

    def __repr__(self) -> str:
        if self.is_ok:
            return f"StatusOr(value={self._value!r})"
        return f"StatusOr(status={self.status})"
