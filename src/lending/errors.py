"""Tagged error hierarchy for the underwriting core.

Every error carries a stable ``kind`` so callers branch on it instead of on
class names. ``public_message`` is what a boundary layer may show an end
caller; for internal failures it never contains the underlying message.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    REJECTED = "rejected"
    VALIDATION = "validation"
    UPSTREAM = "upstream"
    INTERNAL = "internal"


_HTTP_STATUS = {
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.CONFLICT: 409,
    ErrorKind.REJECTED: 400,
    ErrorKind.VALIDATION: 400,
    ErrorKind.UPSTREAM: 502,
    ErrorKind.INTERNAL: 500,
}


class LendingError(Exception):
    kind: ErrorKind = ErrorKind.INTERNAL

    def __init__(self, message: str, context: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.context = dict(context or {})
        self.timestamp = datetime.now(timezone.utc)

    @property
    def http_status(self) -> int:
        return _HTTP_STATUS[self.kind]

    @property
    def public_message(self) -> str:
        return self.message

    def to_response(self) -> dict[str, Any]:
        return {
            "error": {
                "kind": self.kind.value,
                "message": self.public_message,
                "timestamp": self.timestamp.isoformat(),
            }
        }


class NotFoundError(LendingError):
    kind = ErrorKind.NOT_FOUND


class ConflictError(LendingError):
    kind = ErrorKind.CONFLICT


class RejectionError(LendingError):
    kind = ErrorKind.REJECTED


class ValidationError(LendingError):
    kind = ErrorKind.VALIDATION


class UpstreamError(LendingError):
    kind = ErrorKind.UPSTREAM


class InternalError(LendingError):
    kind = ErrorKind.INTERNAL

    @property
    def public_message(self) -> str:
        return "Internal error. Please try again later."


def wrap_unexpected(exc: BaseException, message: str, **context: Any) -> LendingError:
    """Return ``exc`` untouched if it is already a domain error, else an InternalError."""
    if isinstance(exc, LendingError):
        return exc
    return InternalError(f"{message}: {exc}", context=context)
