"""
auth/errors.py -- Exception taxonomy for authentication flows.

Every error carries the HTTP status it maps to and a machine-readable code.
The orchestrator raises these; api/main.py translates them into the standard
error envelope at the outermost boundary. Nothing below the API layer builds
HTTP responses.

InvalidTokenError and TokenExpiredError default to 400 (verification and
password-reset links). The refresh flow raises them with status_code=401
because a bad refresh token means "not authenticated", not "bad input".

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations


class AuthError(Exception):
    """Base class for all errors raised by the auth package."""

    status_code: int = 500
    code: str = "server_error"
    default_message: str = "An unexpected error occurred."

    def __init__(self, message: str | None = None, *, status_code: int | None = None) -> None:
        self.message = message or self.default_message
        if status_code is not None:
            self.status_code = status_code
        super().__init__(self.message)


class ValidationError(AuthError):
    status_code = 400
    code = "validation_error"
    default_message = "Request validation failed."


class DuplicateKeyError(AuthError):
    """Raised when a username or email is already registered.

    field names the colliding attribute so the caller can tell the user which
    one to change. Registration is the only place this surfaces; it is not an
    enumeration risk there because the user chose both values.
    """

    status_code = 400
    code = "duplicate_key"
    default_message = "A user with those details already exists."

    def __init__(self, message: str | None = None, *, field: str | None = None) -> None:
        self.field = field
        super().__init__(message)


class InvalidCredentialsError(AuthError):
    """Generic login failure. Never says whether the email exists."""

    status_code = 401
    code = "invalid_credentials"
    default_message = "Invalid credentials."


class AccountLockedError(AuthError):
    status_code = 423
    code = "account_locked"

    def __init__(self, minutes_remaining: int) -> None:
        self.minutes_remaining = minutes_remaining
        super().__init__(
            "Account is locked due to too many failed login attempts. "
            f"Please try again in {minutes_remaining} minutes."
        )


class InvalidTokenError(AuthError):
    status_code = 400
    code = "invalid_token"
    default_message = "Invalid token."


class TokenExpiredError(InvalidTokenError):
    code = "token_expired"
    default_message = "Token expired."


class NotFoundError(AuthError):
    status_code = 404
    code = "not_found"
    default_message = "Resource not found."


class ServerError(AuthError):
    pass


class EmailDeliveryError(Exception):
    """Raised by an EmailSender when the transport fails.

    Not an AuthError: flows always catch it and log, so it never reaches the
    client.
    """
