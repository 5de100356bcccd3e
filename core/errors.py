"""
core/errors.py -- Error taxonomy for the auth core.

Every failure the core reports to a caller is an AuthError subclass. Each one
carries a stable machine-readable ``code`` (used in the API error envelope)
and the HTTP status the API layer maps it to, so route handlers never need a
per-exception if/else ladder.

Credential-adjacent errors are terminal and safe to show to the user, with
one rule: InvalidCredentials is raised for both "unknown identifier" and
"wrong password" with the same message, so a caller cannot enumerate
accounts.

Infrastructure failures (store or cache unreachable, timeouts) are raised as
Unavailable and never conflated with credential errors.
"""

from __future__ import annotations

from datetime import datetime


class AuthError(Exception):
    """Base class for all errors raised by the auth core."""

    code: str = "auth_error"
    status_code: int = 400
    message: str = "Authentication error."

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.message)
        if message is not None:
            self.message = message

    @property
    def detail(self) -> str | None:
        return None


class InvalidCredentials(AuthError):
    code = "invalid_credentials"
    status_code = 401
    message = "Invalid username or password."


class AccountDisabled(AuthError):
    code = "account_disabled"
    status_code = 403
    message = "Account is disabled."


class AccountLocked(AuthError):
    """Raised while locked_until is in the future. Carries the unlock time."""

    code = "account_locked"
    status_code = 423
    message = "Account is temporarily locked."

    def __init__(self, locked_until: datetime) -> None:
        self.locked_until = locked_until
        super().__init__(f"Account is locked until {locked_until.isoformat()}.")

    @property
    def detail(self) -> str | None:
        return self.locked_until.isoformat()


class TwoFactorRequired(AuthError):
    code = "two_factor_required"
    status_code = 401
    message = "Two-factor code required."


class InvalidTwoFactorCode(AuthError):
    code = "invalid_two_factor_code"
    status_code = 401
    message = "Invalid two-factor code."


class WeakPassword(AuthError):
    """Raised when a password fails the configured strength policy."""

    code = "weak_password"
    status_code = 400
    message = "Password does not meet the strength policy."

    def __init__(self, violations: list[str]) -> None:
        self.violations = list(violations)
        super().__init__("Password does not meet the strength policy: " + "; ".join(self.violations) + ".")

    @property
    def detail(self) -> str | None:
        return "; ".join(self.violations)


class DuplicateIdentity(AuthError):
    code = "duplicate_identity"
    status_code = 409
    message = "Username or email already exists."


class InvalidToken(AuthError):
    code = "invalid_token"
    status_code = 401
    message = "Invalid or expired token."


class InvalidRefreshToken(AuthError):
    code = "invalid_refresh_token"
    status_code = 401
    message = "Invalid or expired refresh token."


class PermissionDenied(AuthError):
    code = "permission_denied"
    status_code = 403
    message = "Insufficient permissions."


class Unavailable(AuthError):
    """The relational store or the session cache could not be reached."""

    code = "unavailable"
    status_code = 503
    message = "Authentication backend unavailable."
