from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions handed to the transport layer.

    Every error carries a stable ``error_code`` and the HTTP ``status_code``
    the transport should answer with:
    - validation_error (400)
    - unauthorized (401)
    - forbidden / account_inactive (403)
    - not_found (404)
    - conflict (409)
    - server_error (500)
    - service_unavailable (503, retryable)
    """

    status_code: int = 400
    error_code: str = "validation_error"
    retryable: bool = False

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

    def to_dict(self) -> dict:
        body = {"error": self.message, "code": self.error_code}
        if self.detail:
            body["detail"] = dict(self.detail)
        return body


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidCredentialsError(AuthenticationError):
    """Unknown identifier or wrong password; the two are never distinguished."""

    def __init__(self, message: str = "Invalid credentials", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidTokenError(AuthenticationError):
    """Bearer token is malformed, forged, expired or of the wrong kind."""

    def __init__(self, message: str = "Invalid or expired token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidStateError(AuthenticationError):
    """OAuth state unknown, expired or already consumed."""

    def __init__(self, message: str = "Invalid or expired state", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class AccountInactiveError(ForbiddenError):
    error_code = "account_inactive"

    def __init__(self, message: str = "Account is deactivated", **kwargs) -> None:
        super().__init__(message, **kwargs)


class UnverifiedEmailError(ForbiddenError):
    """Provider did not verify the email that would link to a local account."""
    error_code = "email_unverified"

    def __init__(
        self, message: str = "Provider email is not verified", **kwargs
    ) -> None:
        super().__init__(message, **kwargs)


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class EmailTakenError(ConflictError):
    error_code = "email_taken"

    def __init__(self, message: str = "Email already in use", **kwargs) -> None:
        super().__init__(message, **kwargs)


class UsernameTakenError(ConflictError):
    error_code = "username_taken"

    def __init__(self, message: str = "Username already taken", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class ServiceUnavailableError(ServiceError):
    """A backing resource (database pool, identity provider) failed (503).

    Callers may retry the operation.
    """
    status_code = 503
    error_code = "service_unavailable"
    retryable = True


class OAuthNotConfiguredError(ServiceUnavailableError):
    error_code = "oauth_not_configured"

    def __init__(self, message: str = "Google OAuth not configured", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ExchangeFailedError(ServiceUnavailableError):
    error_code = "oauth_exchange_failed"

    def __init__(
        self, message: str = "Failed to exchange authorization code", **kwargs
    ) -> None:
        super().__init__(message, **kwargs)


class ProfileFetchFailedError(ServiceUnavailableError):
    error_code = "oauth_profile_failed"

    def __init__(self, message: str = "Failed to get user info", **kwargs) -> None:
        super().__init__(message, **kwargs)


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "InvalidTokenError",
    "InvalidStateError",
    "ForbiddenError",
    "AccountInactiveError",
    "UnverifiedEmailError",
    "NotFoundError",
    "ConflictError",
    "EmailTakenError",
    "UsernameTakenError",
    "ServerError",
    "ServiceUnavailableError",
    "OAuthNotConfiguredError",
    "ExchangeFailedError",
    "ProfileFetchFailedError",
]
