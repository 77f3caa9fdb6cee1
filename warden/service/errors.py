from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer errors mapped to HTTP responses.

    Each subclass carries an HTTP ``status_code`` and a stable ``error_code``
    that clients can switch on. Core services hand these back inside a
    ``Failure`` result; routes raise them so the registered exception
    handlers render the error envelope.
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class InvalidLengthError(ValidationError):
    """PKCE verifier length outside 43..128."""
    pass


class UsernameTakenError(ServiceError):
    """Username already registered, compared case-insensitively (409)."""
    status_code = 409
    error_code = "username_taken"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidCredentialsError(AuthenticationError):
    """Unknown user or wrong password; the two are never distinguished."""
    error_code = "invalid_credentials"

    def __init__(self, message: str = "invalid username or password", **kwargs) -> None:
        super().__init__(message, **kwargs)


class IncorrectPasswordError(AuthenticationError):
    """Current password did not match during a password change."""
    error_code = "incorrect_password"

    def __init__(self, message: str = "current password is incorrect", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidTokenError(AuthenticationError):
    """Malformed, expired, revoked or foreign token. One kind externally."""

    def __init__(self, message: str = "invalid or expired token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class LockedOutError(ServiceError):
    """Too many failed logins for this identifier (429)."""
    status_code = 429
    error_code = "locked_out"

    def __init__(self, remaining_minutes: int, **kwargs) -> None:
        super().__init__(
            f"too many failed attempts; try again in {remaining_minutes} minute(s)",
            detail={"remaining_minutes": remaining_minutes},
            **kwargs,
        )
        self.remaining_minutes = remaining_minutes


class OAuthError(AuthenticationError):
    """Federation failure. The message is generic; specifics go to the server log."""
    error_code = "oauth_failed"

    def __init__(self, reason: str, message: str = "sign-in with provider failed", **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.reason = reason


class InvalidStateError(OAuthError):
    """OAuth state unknown, expired or already consumed."""

    def __init__(self, reason: str = "invalid_state", **kwargs) -> None:
        super().__init__(reason, **kwargs)


class ExchangeFailedError(OAuthError):
    """Provider rejected or failed the authorization code exchange."""

    def __init__(self, reason: str = "exchange_failed", **kwargs) -> None:
        super().__init__(reason, **kwargs)


class ProfileFetchFailedError(OAuthError):
    """Provider user-info request failed or returned an unusable profile."""

    def __init__(self, reason: str = "profile_fetch_failed", **kwargs) -> None:
        super().__init__(reason, **kwargs)


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class AuthDisabledError(ForbiddenError):
    """Credential operations are unavailable while auth mode is disabled."""
    error_code = "auth_disabled"

    def __init__(self, message: str = "authentication is disabled", **kwargs) -> None:
        super().__init__(message, **kwargs)


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class OAuthNotConfiguredError(ServiceError):
    """Provider credentials are not configured (501)."""
    status_code = 501
    error_code = "not_configured"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class ConfigurationError(ServiceError):
    """Settings unusable for the configured auth mode; fatal at startup."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "InvalidLengthError",
    "UsernameTakenError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "IncorrectPasswordError",
    "InvalidTokenError",
    "LockedOutError",
    "OAuthError",
    "InvalidStateError",
    "ExchangeFailedError",
    "ProfileFetchFailedError",
    "ForbiddenError",
    "AuthDisabledError",
    "NotFoundError",
    "OAuthNotConfiguredError",
    "ServerError",
    "ConfigurationError",
]
