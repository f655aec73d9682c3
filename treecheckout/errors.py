"""Result types and the checkout error taxonomy.

Every public operation returns a Result instead of raising, so callers
decide how to surface failures:

    result = checkout_at(repo, options, dfd, "co", commit)
    if result.is_err():
        print(format_error(result.unwrap_err()))

Error codes
-----------
content_missing   A referenced object is absent from the store
corrupt           An object failed integrity verification on read
io_failure        The destination filesystem rejected an operation
filter_failed     The caller-supplied filter raised or returned garbage
cancelled         The caller cancelled the checkout
invalid_argument  Bad checksum, subpath or option combination
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Generic, TypeVar, Union

T = TypeVar("T")
E = TypeVar("E")


class ErrorCode(str, Enum):
    """Stable error codes for CheckoutError."""

    CONTENT_MISSING = "content_missing"
    CORRUPT = "corrupt"
    IO_FAILURE = "io_failure"
    FILTER_FAILED = "filter_failed"
    CANCELLED = "cancelled"
    INVALID_ARGUMENT = "invalid_argument"


@dataclass(frozen=True)
class CheckoutError:
    """A failure surfaced to the caller of a checkout or store operation."""

    code: ErrorCode
    message: str
    path: str | None = None  # Path relative to the checkout root, if any
    context: dict[str, Any] = field(default_factory=dict)

    def __str__(self) -> str:
        return format_error(self)


@dataclass(frozen=True)
class Ok(Generic[T]):
    """Successful result."""

    value: T

    def is_ok(self) -> bool:
        return True

    def is_err(self) -> bool:
        return False

    def unwrap(self) -> T:
        return self.value

    def unwrap_err(self):
        raise ValueError(f"Called unwrap_err() on Ok: {self.value!r}")


@dataclass(frozen=True)
class Err(Generic[E]):
    """Failed result."""

    error: E

    def is_ok(self) -> bool:
        return False

    def is_err(self) -> bool:
        return True

    def unwrap(self):
        raise ValueError(f"Called unwrap() on Err: {self.error}")

    def unwrap_err(self) -> E:
        return self.error


Result = Union[Ok[T], Err[E]]


def ok(value: T) -> Ok[T]:
    """Wrap a value in Ok."""
    return Ok(value)


def err(error: E) -> Err[E]:
    """Wrap an error in Err."""
    return Err(error)


class CorruptObjectError(Exception):
    """Raised by content streams when the data read does not match its checksum."""

    def __init__(self, checksum: str, actual: str):
        super().__init__(f"Corrupted object {checksum}; actual checksum {actual}")
        self.checksum = checksum
        self.actual = actual


def format_error(error: CheckoutError) -> str:
    """Render an error for humans, e.g. '[io_failure] File exists (/etc/motd)'."""
    code = error.code.value if isinstance(error.code, ErrorCode) else str(error.code)
    text = f"[{code}] {error.message}"
    if error.path:
        text += f" ({error.path})"
    return text


def content_missing(message: str, path: str | None = None, **context: Any) -> Err[CheckoutError]:
    return err(CheckoutError(ErrorCode.CONTENT_MISSING, message, path, context))


def corrupt(message: str, path: str | None = None, **context: Any) -> Err[CheckoutError]:
    return err(CheckoutError(ErrorCode.CORRUPT, message, path, context))


def io_failure(message: str, path: str | None = None, **context: Any) -> Err[CheckoutError]:
    return err(CheckoutError(ErrorCode.IO_FAILURE, message, path, context))


def invalid_argument(message: str, path: str | None = None, **context: Any) -> Err[CheckoutError]:
    return err(CheckoutError(ErrorCode.INVALID_ARGUMENT, message, path, context))


def with_path(result: Err[CheckoutError], path: str) -> Err[CheckoutError]:
    """Attach the relative path to an error that does not have one yet."""
    error = result.unwrap_err()
    if error.path is not None:
        return result
    return err(CheckoutError(error.code, error.message, path, error.context))
