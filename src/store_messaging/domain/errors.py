"""Error taxonomy for the messaging subsystem."""

from enum import Enum


class ErrorKind(str, Enum):
    FORBIDDEN = "forbidden"
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    TRANSIENT = "transient"
    CONFLICT = "conflict"


class MessagingError(Exception):
    """Base class for errors surfaced to callers of the messaging API."""

    kind: ErrorKind
    status_code: int = 500
    retryable: bool = False

    def __init__(self, detail: str) -> None:
        super().__init__(detail)
        self.detail = detail


class ForbiddenError(MessagingError):
    """Viewer is neither the thread's customer nor the store owner."""

    kind = ErrorKind.FORBIDDEN
    status_code = 403


class MessageValidationError(MessagingError):
    """Empty body, missing target customer, or malformed input."""

    kind = ErrorKind.VALIDATION
    status_code = 422


class NotFoundError(MessagingError):
    kind = ErrorKind.NOT_FOUND
    status_code = 404


class TransientError(MessagingError):
    """Storage or notifier unavailable. Safe to retry."""

    kind = ErrorKind.TRANSIENT
    status_code = 503
    retryable = True


class ConflictError(MessagingError):
    # Reserved for multi-writer edits; the append-only log never raises it.
    kind = ErrorKind.CONFLICT
    status_code = 409
