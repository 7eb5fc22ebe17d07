from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code:
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - validation_error (400)
    - conflict (409)
    - server_error (500)
    - unavailable (503)
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


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


# Credentials and tokens


class InvalidCredentials(AuthenticationError):
    """Wrong password or unknown identifier; callers cannot tell which."""

    def __init__(self, message: str = "invalid credentials", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidToken(AuthenticationError):
    """Token is structurally unusable or was not issued by us."""

    def __init__(self, message: str = "invalid token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class MalformedToken(InvalidToken):
    def __init__(self, message: str = "malformed token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidSignature(InvalidToken):
    def __init__(self, message: str = "token signature mismatch", **kwargs) -> None:
        super().__init__(message, **kwargs)


class TokenExpired(AuthenticationError):
    """Well-formed token past its ``exp``."""

    def __init__(self, message: str = "token expired", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidRefreshToken(AuthenticationError):
    """Expired, unknown, or already rotated refresh token."""

    def __init__(self, message: str = "invalid refresh token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class TokenBlacklisted(AuthenticationError):
    def __init__(self, message: str = "token has been revoked", **kwargs) -> None:
        super().__init__(message, **kwargs)


# Accounts


class AccountNotFound(NotFoundError):
    def __init__(self, message: str = "account not found", **kwargs) -> None:
        super().__init__(message, **kwargs)


class AccountUnavailable(ServerError):
    """The account directory failed to answer."""
    status_code = 503
    error_code = "unavailable"

    def __init__(self, message: str = "account store unavailable", **kwargs) -> None:
        super().__init__(message, **kwargs)


class DuplicateIdentity(ConflictError):
    """An email, phone, or username is already taken."""


class InvalidRole(ValidationError):
    pass


class InvalidChannel(ValidationError):
    pass


class MissingEmail(ValidationError):
    def __init__(self, message: str = "identity provider returned no email", **kwargs) -> None:
        super().__init__(message, **kwargs)


class MissingPhoneOrChannel(ValidationError):
    def __init__(self, message: str = "phone and channel are required", **kwargs) -> None:
        super().__init__(message, **kwargs)


class UsernameGenerationExhausted(ServerError):
    def __init__(self, message: str = "could not generate a unique username", **kwargs) -> None:
        super().__init__(message, **kwargs)


__all__ = [
    "AccountNotFound",
    "AccountUnavailable",
    "AuthenticationError",
    "ConflictError",
    "DuplicateIdentity",
    "ForbiddenError",
    "InvalidChannel",
    "InvalidCredentials",
    "InvalidRefreshToken",
    "InvalidRole",
    "InvalidSignature",
    "InvalidToken",
    "MalformedToken",
    "MissingEmail",
    "MissingPhoneOrChannel",
    "NotFoundError",
    "ServerError",
    "ServiceError",
    "TokenBlacklisted",
    "TokenExpired",
    "UsernameGenerationExhausted",
    "ValidationError",
]
