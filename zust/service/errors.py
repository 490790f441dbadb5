from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code that clients can branch on:
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


class BadRequestError(ValidationError):
    """Alias for ValidationError - request is malformed or invalid."""
    pass


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions or inactive account (403)."""
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


class StorageUnavailable(ServiceError):
    """Persistence layer could not be reached; the client may retry (503)."""
    status_code = 503
    error_code = "unavailable"

    def __init__(self, message: str = "Service temporarily unavailable", **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.detail.setdefault("retryable", True)


# Token failures. Expired and stale tokens are 401 so clients know to refresh
# or log in again; everything else about a bad token is a 400.


class TokenError(ServiceError):
    status_code = 400
    error_code = "validation_error"


class TokenExpiredError(TokenError):
    status_code = 401
    error_code = "unauthorized"


class TokenMalformedError(TokenError):
    pass


class TokenSignatureError(TokenError):
    pass


class InvalidClaimsError(TokenError):
    pass


class StaleVersionError(TokenError):
    status_code = 401
    error_code = "unauthorized"


class WrongTokenKindError(TokenError):
    pass


class InvalidTokenKindError(ValueError):
    """Raised when asked to mint a token of a kind other than access/refresh."""


# Federation failures. The upstream body is logged, never returned.


class ExternalExchangeFailed(ServerError):
    """Provider rejected or failed the authorization-code exchange."""


class ExternalFetchFailed(ServerError):
    """Provider rejected or failed the profile fetch."""


__all__ = [
    "ServiceError",
    "ValidationError",
    "BadRequestError",
    "AuthenticationError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "ServerError",
    "StorageUnavailable",
    "TokenError",
    "TokenExpiredError",
    "TokenMalformedError",
    "TokenSignatureError",
    "InvalidClaimsError",
    "StaleVersionError",
    "WrongTokenKindError",
    "InvalidTokenKindError",
    "ExternalExchangeFailed",
    "ExternalFetchFailed",
]
