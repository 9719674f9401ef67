"""
auth/errors.py -- Error taxonomy for the authentication subsystem.

Every failure a flow can report to the transport layer is an AuthError
subclass carrying a machine-readable code, an HTTP status and a message safe
to show the client. api/main.py maps them to the standard error envelope with
a single exception handler; nothing in auth/ knows about HTTP responses.

InvalidCredentials deliberately has one message for "unknown username" and
"wrong password" so the response never reveals whether an account exists.

Layer rule: stdlib only.
"""

from __future__ import annotations

from typing import Any


class AuthError(Exception):
    """Base class for all typed authentication failures."""

    code: str = "auth_error"
    status_code: int = 400
    default_message: str = "Authentication failed."

    def __init__(self, message: str | None = None, details: dict[str, Any] | None = None) -> None:
        self.message = message or self.default_message
        self.details = details
        # Non-blocking writes attempted before the failure (see auth.flows.SideEffectResult).
        self.side_effects: tuple = ()
        super().__init__(self.message)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(code={self.code!r}, message={self.message!r})"


class AuthValidationError(AuthError):
    """Malformed input rejected before any flow logic runs."""

    code = "validation_error"
    status_code = 422
    default_message = "Request validation failed."


class InvalidCredentials(AuthError):
    code = "invalid_credentials"
    status_code = 401
    default_message = "Invalid credentials."


class AccountLocked(AuthError):
    """Too many failed logins. details["locked_until"] holds the ISO timestamp."""

    code = "account_locked"
    status_code = 423
    default_message = "Account is locked due to too many failed login attempts."


class AccountNotActive(AuthError):
    code = "account_not_active"
    status_code = 401
    default_message = "Account is not active."


class InvalidToken(AuthError):
    """Structural, signature, temporal or revocation failure of a token."""

    code = "invalid_token"
    status_code = 401
    default_message = "Invalid or expired token."


class MissingHeader(InvalidToken):
    code = "missing_authorization"
    default_message = "Authorization header is required."


class MalformedHeader(InvalidToken):
    code = "malformed_authorization"
    default_message = "Authorization header must start with 'Bearer '."


class InvalidTokenType(AuthError):
    """A valid token of the wrong kind (access where refresh is required, or vice versa)."""

    code = "invalid_token_type"
    status_code = 401
    default_message = "Invalid token type."


class UserNotFound(AuthError):
    code = "user_not_found"
    status_code = 401
    default_message = "User not found."


class VersionConflict(AuthError):
    """Optimistic-lock check failed: the row changed since it was read.

    Transient -- the client may retry the request.
    """

    code = "concurrent_modification"
    status_code = 409
    default_message = "The record was modified concurrently. Please retry."

    def __init__(self, entity: str, entity_id: str, expected_version: int) -> None:
        super().__init__(details={"entity": entity, "id": entity_id, "expected_version": expected_version})
        self.entity = entity
        self.entity_id = entity_id
        self.expected_version = expected_version


class AuthSystemError(AuthError):
    """Hashing, signing or store failure not attributable to caller input."""

    code = "internal_error"
    status_code = 500
    default_message = "An unexpected error occurred."
