"""Authentication error taxonomy.

Every user-facing failure is an ``AuthError`` carrying its HTTP status and a
stable ``error_code`` the client can branch on. ``main.py`` turns these into
JSON responses; nothing in the service layer builds HTTP responses itself.
"""

from typing import List, Optional


class AuthError(Exception):
    status_code: int = 400
    error_code: str = "AUTH_ERROR"
    default_detail: str = "Authentication error"

    def __init__(
        self,
        detail: Optional[str] = None,
        retry_after: Optional[int] = None,
        errors: Optional[List[str]] = None,
    ):
        self.detail = detail or self.default_detail
        self.retry_after = retry_after
        self.errors = errors
        super().__init__(self.detail)

    def to_dict(self) -> dict:
        body = {"detail": self.detail, "errorCode": self.error_code}
        if self.retry_after is not None:
            body["retryAfter"] = self.retry_after
        if self.errors:
            body["errors"] = list(self.errors)
        return body


class InvalidCredentials(AuthError):
    """Wrong e-mail or password. Never says which."""

    status_code = 401
    error_code = "INVALID_CREDENTIALS"
    default_detail = "Invalid credentials"


class RateLimited(AuthError):
    status_code = 429
    error_code = "RATE_LIMITED"
    default_detail = "Too many failed attempts"


class AccountLocked(AuthError):
    status_code = 423
    error_code = "ACCOUNT_LOCKED"
    default_detail = "Account temporarily locked due to multiple failed login attempts"


class InvalidToken(AuthError):
    """Refresh token absent, expired or never issued."""

    status_code = 401
    error_code = "INVALID_TOKEN"
    default_detail = "Invalid or expired refresh token"


class SessionCompromised(AuthError):
    """A revoked refresh token was presented again; its family is gone."""

    status_code = 401
    error_code = "SESSION_COMPROMISED"
    default_detail = "Your session has been terminated for security reasons. Please log in again."


class SetupAlreadyCompleted(AuthError):
    status_code = 403
    error_code = "SETUP_COMPLETED"
    default_detail = "Setup has already been completed"


class PasswordMismatch(AuthError):
    status_code = 400
    error_code = "PASSWORD_MISMATCH"
    default_detail = "Password and confirmation do not match"


class PasswordReuse(AuthError):
    status_code = 400
    error_code = "PASSWORD_REUSE"
    default_detail = "New password must be different from the current password"


class WeakPassword(AuthError):
    status_code = 400
    error_code = "WEAK_PASSWORD"
    default_detail = "Password does not meet the strength requirements"


class PasswordHashError(ValueError):
    """Stored hash cannot be interpreted. A configuration or data bug, not a user error."""


class UnsupportedAlgorithm(PasswordHashError):
    def __init__(self, algorithm: str):
        self.algorithm = algorithm
        super().__init__(f"Unsupported hash algorithm: {algorithm}")


class MalformedHash(PasswordHashError):
    def __init__(self, message: str = "Invalid hash format"):
        super().__init__(message)
