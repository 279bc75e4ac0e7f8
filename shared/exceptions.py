"""RFC 9457 Problem Details exception hierarchy.

All API errors extend ProblemDetailError and are converted to
application/problem+json responses by the exception handler middleware.
Core services return Results; `unwrap` is the single crossing point where
a DomainError becomes an exception.
"""

from typing import TypeVar

from shared.result import DomainError, Err, ErrorKind, Result

T = TypeVar("T")

PROBLEM_BASE = "https://api.goodnight.app/problems"


class ProblemDetailError(Exception):
    def __init__(
        self,
        type_uri: str,
        title: str,
        status: int,
        detail: str,
        violations: list[dict] | None = None,
        reason: str | None = None,
    ):
        self.type_uri = type_uri
        self.title = title
        self.status = status
        self.detail = detail
        self.violations = violations
        self.reason = reason
        super().__init__(detail)


class BadRequestError(ProblemDetailError):
    def __init__(self, detail: str, reason: str | None = None):
        super().__init__(
            type_uri=f"{PROBLEM_BASE}/bad-request",
            title="Bad Request",
            status=400,
            detail=detail,
            reason=reason,
        )


class NotFoundError(ProblemDetailError):
    def __init__(self, detail: str, reason: str | None = None):
        super().__init__(
            type_uri=f"{PROBLEM_BASE}/not-found",
            title="Not Found",
            status=404,
            detail=detail,
            reason=reason,
        )


class ForbiddenError(ProblemDetailError):
    def __init__(self, detail: str, reason: str | None = None):
        super().__init__(
            type_uri=f"{PROBLEM_BASE}/forbidden",
            title="Forbidden",
            status=403,
            detail=detail,
            reason=reason,
        )


class UnprocessableStateError(ProblemDetailError):
    def __init__(self, detail: str, reason: str | None = None):
        super().__init__(
            type_uri=f"{PROBLEM_BASE}/unprocessable-state",
            title="Unprocessable State",
            status=422,
            detail=detail,
            reason=reason,
        )


_ERRORS_BY_KIND: dict[ErrorKind, type[ProblemDetailError]] = {
    ErrorKind.BAD_REQUEST: BadRequestError,
    ErrorKind.NOT_FOUND: NotFoundError,
    ErrorKind.FORBIDDEN: ForbiddenError,
    ErrorKind.UNPROCESSABLE_STATE: UnprocessableStateError,
}


def problem_for(error: DomainError) -> ProblemDetailError:
    return _ERRORS_BY_KIND[error.kind](error.detail, reason=error.reason)


def unwrap(result: Result[T]) -> T:
    """Return the Ok value or raise the ProblemDetailError for its kind."""
    if isinstance(result, Err):
        raise problem_for(result.error)
    return result.value
