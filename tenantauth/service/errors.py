from __future__ import annotations

from typing import Optional

from tenantauth.storage.models import PermissionLevel


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass fixes an HTTP ``status_code`` and a stable ``error_code`` that
    clients can branch on without parsing the message.
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


class TokenInvalidSignatureError(AuthenticationError):
    """Access token is malformed or its signature does not verify."""
    error_code = "invalid_token"


class TokenExpiredError(AuthenticationError):
    """Access token signature is valid but the token is past its expiry."""
    error_code = "token_expired"


class RefreshTokenNotFoundError(AuthenticationError):
    error_code = "invalid_refresh_token"


class RefreshTokenExpiredError(AuthenticationError):
    error_code = "refresh_token_expired"


class RefreshTokenReusedError(AuthenticationError):
    """A superseded refresh token was presented again.

    Terminal: the rest of the rotation chain has been revoked and the client
    must authenticate from scratch. Never retry.
    """
    error_code = "refresh_token_reused"


class TenantNotFoundError(ServiceError):
    status_code = 404
    error_code = "tenant_not_found"


class TenantInactiveError(ServiceError):
    status_code = 403
    error_code = "tenant_inactive"


class PermissionDeniedError(ServiceError):
    """Principal's resolved level on a resource is below the required level (403)."""

    status_code = 403
    error_code = "forbidden"

    def __init__(
        self,
        resource: str,
        required_level: PermissionLevel,
        actual_level: PermissionLevel,
    ) -> None:
        required = PermissionLevel(required_level)
        actual = PermissionLevel(actual_level)
        super().__init__(
            f"{required.name.lower()} permission required on {resource}",
            detail={
                "resource": resource,
                "required_level": int(required),
                "actual_level": int(actual),
            },
        )
        self.resource = resource
        self.required_level = required
        self.actual_level = actual


class StoreUnavailableError(ServiceError):
    """Backing store timed out or refused the call; safe to retry (503)."""

    status_code = 503
    error_code = "store_unavailable"
    retryable = True


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "TokenInvalidSignatureError",
    "TokenExpiredError",
    "RefreshTokenNotFoundError",
    "RefreshTokenExpiredError",
    "RefreshTokenReusedError",
    "TenantNotFoundError",
    "TenantInactiveError",
    "PermissionDeniedError",
    "StoreUnavailableError",
]
