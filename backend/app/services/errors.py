"""Service-layer errors mapped to HTTP responses by the app's exception handlers."""


class AuthError(Exception):
    """Base class for every failure this service reports to a caller."""

    status_code: int = 500
    code: str = "INTERNAL_ERROR"

    def __init__(self, message: str, *, code: str | None = None, detail: dict | None = None) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.detail = detail or {}


class ValidationError(AuthError):
    """Malformed or missing input (400)."""

    status_code = 400
    code = "VALIDATION_ERROR"


class NotFound(AuthError):
    status_code = 404
    code = "NOT_FOUND"


class Forbidden(AuthError):
    status_code = 403
    code = "FORBIDDEN"


class Conflict(AuthError):
    status_code = 409
    code = "CONFLICT"


class RateLimited(AuthError):
    status_code = 429
    code = "RATE_LIMITED"


class Unauthenticated(AuthError):
    """Bad, expired or revoked credential, or a rejected SSO assertion (401)."""

    status_code = 401
    code = "UNAUTHENTICATED"


class Internal(AuthError):
    status_code = 500
    code = "INTERNAL_ERROR"


class PersistenceError(Internal):
    """A write could not be confirmed by the store."""

    code = "PERSISTENCE_ERROR"


class UserNotFound(NotFound):
    code = "USER_NOT_FOUND"


class SessionNotFound(NotFound):
    code = "SESSION_NOT_FOUND"


class UserBanned(Forbidden):
    code = "USER_BANNED"


class InvalidTransition(Conflict):
    """Attempt to move a session's step counter backwards."""

    code = "INVALID_TRANSITION"


class AlreadyCompleted(Conflict):
    code = "ALREADY_COMPLETED"


class SessionExpired(Unauthenticated):
    code = "SESSION_EXPIRED"


class SsoRejected(Unauthenticated):
    """An SSO assertion failed verification; ``reason`` names the failed check."""

    code = "SSO_REJECTED"

    def __init__(self, reason, message: str | None = None) -> None:
        self.reason = reason
        super().__init__(message or f"SSO assertion rejected: {reason.value}", code=reason.name)
