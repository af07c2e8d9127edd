from __future__ import annotations

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """Closed set of failure kinds returned by the lifecycle flows."""

    BAD_INPUT = "bad_input"
    NOT_FOUND = "not_found"
    INVALID_CREDENTIAL = "invalid_credential"
    EXPIRED = "expired"
    DUPLICATE_SESSION = "duplicate_session"
    SESSION_LIMIT_EXCEEDED = "session_limit_exceeded"
    ALREADY_EXISTS = "already_exists"
    INVALID_SECRET = "invalid_secret"
    NO_INVITATION = "no_invitation"
    FORBIDDEN = "forbidden"
    STORAGE_ERROR = "storage_error"
    INTERNAL = "internal"


class ServiceError(Exception):
    """Base class for lifecycle failures mapped to HTTP responses.

    Each subclass pins one :class:`ErrorKind` together with its HTTP
    ``status_code`` and the stable ``error_code`` sent to clients. Kinds with
    ``opaque = True`` are logged with full context and reported to clients
    without their message.
    """

    kind: ErrorKind = ErrorKind.BAD_INPUT
    status_code: int = 400
    error_code: str = "BAD_REQUEST"
    opaque: bool = False

    def __init__(
        self,
        message: str,
        *,
        detail: Optional[dict] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class BadInputError(ServiceError):
    kind = ErrorKind.BAD_INPUT
    status_code = 400
    error_code = "BAD_REQUEST"


class NotFoundError(ServiceError):
    kind = ErrorKind.NOT_FOUND
    status_code = 404
    error_code = "NOT_FOUND"


class InvalidCredentialError(ServiceError):
    """Password mismatch, pending invitation, or bad access-credential signature (401)."""

    kind = ErrorKind.INVALID_CREDENTIAL
    status_code = 401
    error_code = "INVALID_CREDENTIAL"


class ExpiredError(ServiceError):
    """Access credential or refresh session past its deadline (403)."""

    kind = ErrorKind.EXPIRED
    status_code = 403
    error_code = "TOKEN_EXPIRED"


class DuplicateSessionError(ServiceError):
    kind = ErrorKind.DUPLICATE_SESSION
    status_code = 409
    error_code = "DUPLICATE_SESSION"


class SessionLimitExceededError(ServiceError):
    kind = ErrorKind.SESSION_LIMIT_EXCEEDED
    status_code = 400
    error_code = "NEED_PASSWORD_RESET"


class AlreadyExistsError(ServiceError):
    kind = ErrorKind.ALREADY_EXISTS
    status_code = 409
    error_code = "ALREADY_EXISTS"


class InvalidSecretError(ServiceError):
    kind = ErrorKind.INVALID_SECRET
    status_code = 401
    error_code = "INVALID_SECRET"


class NoInvitationError(ServiceError):
    kind = ErrorKind.NO_INVITATION
    status_code = 400
    error_code = "NO_INVITATION_FOR_USER"


class ForbiddenError(ServiceError):
    kind = ErrorKind.FORBIDDEN
    status_code = 403
    error_code = "NOT_ENOUGH_RIGHTS"


class StorageFailure(ServiceError):
    """Persistence failed underneath a flow (500, opaque)."""

    kind = ErrorKind.STORAGE_ERROR
    status_code = 500
    error_code = "SERVER_ERROR"
    opaque = True


class InternalError(ServiceError):
    """Data-integrity violation that correct issuance never produces (500, opaque)."""

    kind = ErrorKind.INTERNAL
    status_code = 500
    error_code = "SERVER_ERROR"
    opaque = True


ERRORS_BY_KIND: dict[ErrorKind, type[ServiceError]] = {
    cls.kind: cls
    for cls in (
        BadInputError,
        NotFoundError,
        InvalidCredentialError,
        ExpiredError,
        DuplicateSessionError,
        SessionLimitExceededError,
        AlreadyExistsError,
        InvalidSecretError,
        NoInvitationError,
        ForbiddenError,
        StorageFailure,
        InternalError,
    )
}


__all__ = [
    "ErrorKind",
    "ServiceError",
    "BadInputError",
    "NotFoundError",
    "InvalidCredentialError",
    "ExpiredError",
    "DuplicateSessionError",
    "SessionLimitExceededError",
    "AlreadyExistsError",
    "InvalidSecretError",
    "NoInvitationError",
    "ForbiddenError",
    "StorageFailure",
    "InternalError",
    "ERRORS_BY_KIND",
]
