"""
auth/errors.py -- Typed business errors for the credential and session core.

Every error carries the HTTP status it maps to and a stable machine-readable
code. api/main.py registers a single exception handler for AuthError that
renders the shared {"error": {code, message, detail}} envelope, so the core
raises these directly and never builds HTTP responses itself.

Layer rule: no imports from api/, cache/, or notify/.
"""

from __future__ import annotations


class AuthError(Exception):
    """Base class for every error the session core surfaces to clients."""

    status_code: int = 500
    code: str = "internal_error"
    default_message: str = "An unexpected error occurred."

    def __init__(self, message: str | None = None, *, detail: str | None = None) -> None:
        self.message = message or self.default_message
        self.detail = detail
        super().__init__(self.message)


# ---------------------------------------------------------------------------
# 400
# ---------------------------------------------------------------------------


class ValidationError(AuthError):
    status_code = 400
    code = "validation_error"
    default_message = "Validation failed."


class InvalidOrExpiredToken(ValidationError):
    """A verification or password-reset token is unknown, used, or expired."""

    code = "invalid_or_expired_token"
    default_message = "Invalid or expired token."


# ---------------------------------------------------------------------------
# 401
# ---------------------------------------------------------------------------


class AuthenticationError(AuthError):
    status_code = 401
    code = "unauthorized"
    default_message = "Authentication required."


class InvalidCredentials(AuthenticationError):
    # Same message for unknown email and wrong password (anti-enumeration).
    code = "bad_credentials"
    default_message = "Invalid email or password."


class InvalidSignature(AuthenticationError):
    code = "invalid_token"
    default_message = "Invalid token."


class MalformedToken(AuthenticationError):
    code = "malformed_token"
    default_message = "Malformed token."


class TokenExpired(AuthenticationError):
    code = "token_expired"
    default_message = "Token expired."


class InvalidRefreshToken(AuthenticationError):
    code = "invalid_refresh_token"
    default_message = "Invalid refresh token."


# ---------------------------------------------------------------------------
# 403
# ---------------------------------------------------------------------------


class AuthorizationError(AuthError):
    status_code = 403
    code = "forbidden"
    default_message = "You do not have permission to perform this action."


class AccountInactiveError(AuthorizationError):
    code = "account_inactive"
    default_message = "Your account has been deactivated."


class EmailNotVerifiedError(AuthorizationError):
    code = "email_not_verified"
    default_message = (
        "Please verify your email before logging in. Check your inbox for the verification link."
    )


# ---------------------------------------------------------------------------
# 404 / 409 / 429 / 500
# ---------------------------------------------------------------------------


class NotFoundError(AuthError):
    status_code = 404
    code = "not_found"
    default_message = "Not found."


class ConflictError(AuthError):
    status_code = 409
    code = "conflict"
    default_message = "A user with that email already exists."


class RateLimitedError(AuthError):
    status_code = 429
    code = "rate_limited"
    default_message = "Too many requests from this client, please try again later."

    def __init__(self, retry_after: int, message: str | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class InternalError(AuthError):
    """The 500 envelope for an unexpected exception (see generic_exception_handler)."""
