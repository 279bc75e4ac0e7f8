"""Result type shared by every core operation.

Core services never raise for business failures. They return ``Ok(value)``
or ``Err(DomainError)`` and the HTTP layer decides how to render the error.
Matching is always done on ``ErrorKind`` / ``reason``, never on ``detail``.
"""

from dataclasses import dataclass
from enum import StrEnum
from typing import Generic, TypeVar

T = TypeVar("T")


class ErrorKind(StrEnum):
    BAD_REQUEST = "bad_request"
    NOT_FOUND = "not_found"
    FORBIDDEN = "forbidden"
    UNPROCESSABLE_STATE = "unprocessable_state"


@dataclass(frozen=True)
class DomainError:
    kind: ErrorKind
    reason: str
    detail: str
    field: str | None = None


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class Err:
    error: DomainError

    @property
    def ok(self) -> bool:
        return False


Result = Ok[T] | Err


def bad_request(reason: str, detail: str, field: str | None = None) -> Err:
    return Err(DomainError(ErrorKind.BAD_REQUEST, reason, detail, field))


def not_found(reason: str, detail: str, field: str | None = None) -> Err:
    return Err(DomainError(ErrorKind.NOT_FOUND, reason, detail, field))


def forbidden(reason: str, detail: str, field: str | None = None) -> Err:
    return Err(DomainError(ErrorKind.FORBIDDEN, reason, detail, field))


def unprocessable(reason: str, detail: str, field: str | None = None) -> Err:
    return Err(DomainError(ErrorKind.UNPROCESSABLE_STATE, reason, detail, field))
