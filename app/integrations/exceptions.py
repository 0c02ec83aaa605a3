"""
Integration exception taxonomy.

Every failure a provider adapter or the orchestrator reports is one of these
classes. Each carries the HTTP status the API layer should answer with, a
stable machine-readable ``error_code``, the provider key and a timestamp.
The FastAPI handler in app/main.py renders ``to_dict()`` directly.
"""
from datetime import datetime
from typing import Any, Dict, Iterable, Optional

from app.core.time_utils import serialize_datetime, utc_now


class IntegrationException(Exception):
    """Base exception for all integration errors."""

    status_code: int = 500
    error_code: str = "INTEGRATION_ERROR"

    def __init__(
        self,
        message: str,
        provider: Optional[str] = None,
        *,
        status_code: Optional[int] = None,
        error_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.provider = provider
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.details = details or {}
        self.timestamp: datetime = utc_now()

    def to_dict(self) -> Dict[str, Any]:
        payload = {
            "status_code": self.status_code,
            "message": self.message,
            "error": "Integration Error",
            "provider": self.provider,
            "error_code": self.error_code,
            "timestamp": serialize_datetime(self.timestamp),
        }
        if self.details:
            payload["details"] = self.details
        return payload


class ProviderNotFoundException(IntegrationException):
    """Raised when a provider key is not registered."""
    status_code = 404
    error_code = "PROVIDER_NOT_FOUND"

    def __init__(self, provider: str):
        super().__init__(
            f"Integration provider '{provider}' is not supported or not found", provider
        )


class ProviderNotConnectedException(IntegrationException):
    """Raised when an operation needs a connected link."""
    status_code = 412
    error_code = "PROVIDER_NOT_CONNECTED"

    def __init__(self, provider: str, user_id: Optional[str] = None):
        super().__init__(f"User is not connected to {provider}. Please connect first.", provider)
        self.user_id = user_id


class OAuthAuthenticationException(IntegrationException):
    """Raised when the provider rejects the authorization (error callback, bad code)."""
    status_code = 401
    error_code = "OAUTH_AUTH_FAILED"

    def __init__(self, provider: str, reason: Optional[str] = None):
        message = (
            f"OAuth authentication failed for {provider}: {reason}"
            if reason else f"OAuth authentication failed for {provider}"
        )
        super().__init__(message, provider)
        self.reason = reason


class InvalidTokenException(IntegrationException):
    """Raised when there is no usable access token."""
    status_code = 401
    error_code = "INVALID_TOKEN"

    def __init__(self, provider: str, reason: Optional[str] = None):
        message = f"Access token for {provider} is invalid or expired. Please reconnect."
        super().__init__(message, provider, details={"reason": reason} if reason else None)


class RefreshTokenException(IntegrationException):
    """Raised when the provider refuses a token refresh."""
    status_code = 401
    error_code = "REFRESH_TOKEN_FAILED"

    def __init__(self, provider: str, reason: Optional[str] = None):
        super().__init__(
            f"Unable to refresh access token for {provider}. Please reconnect.",
            provider,
            details={"reason": reason} if reason else None,
        )


class ProviderAPIException(IntegrationException):
    """Raised when a provider API call fails (5xx, transport error, unexpected 4xx)."""
    status_code = 502
    error_code = "PROVIDER_API_ERROR"

    def __init__(
        self,
        provider: str,
        operation: str,
        reason: Optional[str] = None,
        upstream_status: Optional[int] = None,
    ):
        message = (
            f"{provider} API error during {operation}: {reason}"
            if reason else f"{provider} API error during {operation}"
        )
        super().__init__(
            message,
            provider,
            details={"upstream_status": upstream_status} if upstream_status else None,
        )
        self.operation = operation
        # None when the request never got an HTTP answer (timeout, DNS, reset)
        self.upstream_status = upstream_status


class DataSyncException(IntegrationException):
    """Raised when a sync fails for a reason outside the rest of the taxonomy."""
    status_code = 500
    error_code = "DATA_SYNC_FAILED"

    def __init__(self, provider: str, reason: Optional[str] = None):
        message = (
            f"Failed to sync data from {provider}: {reason}"
            if reason else f"Failed to sync data from {provider}"
        )
        super().__init__(message, provider)


class ConfigurationException(IntegrationException):
    """Raised when required provider configuration is missing."""
    status_code = 500
    error_code = "MISSING_CONFIGURATION"

    def __init__(self, provider: str, missing_config: str):
        super().__init__(
            f"Missing required configuration for {provider}: {missing_config}", provider
        )
        self.missing_config = missing_config


class InvalidCallbackException(IntegrationException):
    """Raised when a callback payload or its state is malformed."""
    status_code = 400
    error_code = "INVALID_CALLBACK"

    def __init__(self, provider: str, reason: str):
        super().__init__(f"Invalid callback payload for {provider}: {reason}", provider)
        self.reason = reason


class RateLimitException(IntegrationException):
    """Raised when the provider answers 429."""
    status_code = 429
    error_code = "RATE_LIMIT_EXCEEDED"

    def __init__(self, provider: str, retry_after: Optional[int] = None):
        message = (
            f"Rate limit exceeded for {provider}. Retry after {retry_after} seconds."
            if retry_after else f"Rate limit exceeded for {provider}. Please try again later."
        )
        super().__init__(
            message, provider, details={"retry_after": retry_after} if retry_after else None
        )
        self.retry_after = retry_after


class UserDataNotFoundException(IntegrationException):
    """Raised when user-scoped data the caller asked for does not exist."""
    status_code = 404
    error_code = "USER_DATA_NOT_FOUND"

    def __init__(self, provider: str, data_type: str):
        super().__init__(f"No {data_type} data found for {provider}", provider)
        self.data_type = data_type


class InsufficientPermissionsException(IntegrationException):
    """Raised when the granted scopes do not cover a resource."""
    status_code = 403
    error_code = "INSUFFICIENT_PERMISSIONS"

    def __init__(self, provider: str, required_scopes: Iterable[str]):
        scopes = list(required_scopes)
        super().__init__(
            f"Insufficient permissions for {provider}. Required scopes: {', '.join(scopes)}",
            provider,
        )
        self.required_scopes = scopes


class InvalidUploadTokenException(IntegrationException):
    """Raised when a device upload token is unknown or expired."""
    status_code = 401
    error_code = "INVALID_UPLOAD_TOKEN"

    def __init__(self, provider: str):
        super().__init__(f"Invalid or expired upload token for {provider}", provider)


class DataValidationException(IntegrationException):
    """Raised when submitted data fails validation."""
    status_code = 400
    error_code = "DATA_VALIDATION_FAILED"

    def __init__(self, provider: str, reason: str):
        super().__init__(f"Data validation failed for {provider}: {reason}", provider)
        self.reason = reason
