"""
Unit tests for the integration exception taxonomy.
"""
import pytest

from app.integrations.exceptions import (
    ConfigurationException,
    DataSyncException,
    IntegrationException,
    InvalidCallbackException,
    InvalidTokenException,
    ProviderAPIException,
    ProviderNotConnectedException,
    ProviderNotFoundException,
    RateLimitException,
    RefreshTokenException,
    UserDataNotFoundException,
)


@pytest.mark.parametrize("exc,status,code", [
    (ProviderNotFoundException("myspace"), 404, "PROVIDER_NOT_FOUND"),
    (ProviderNotConnectedException("spotify"), 412, "PROVIDER_NOT_CONNECTED"),
    (InvalidTokenException("spotify"), 401, "INVALID_TOKEN"),
    (RefreshTokenException("spotify"), 401, "REFRESH_TOKEN_FAILED"),
    (ProviderAPIException("spotify", "playlists"), 502, "PROVIDER_API_ERROR"),
    (DataSyncException("spotify"), 500, "DATA_SYNC_FAILED"),
    (ConfigurationException("spotify", "SPOTIFY_CLIENT_ID"), 500, "MISSING_CONFIGURATION"),
    (InvalidCallbackException("spotify", "no code"), 400, "INVALID_CALLBACK"),
    (RateLimitException("spotify", 30), 429, "RATE_LIMIT_EXCEEDED"),
    (UserDataNotFoundException("spotify", "user profile"), 404, "USER_DATA_NOT_FOUND"),
])
def test_status_and_error_codes(exc, status, code):
    assert isinstance(exc, IntegrationException)
    assert exc.status_code == status
    assert exc.error_code == code
    assert exc.to_dict()["status_code"] == status


def test_to_dict_shape():
    exc = RateLimitException("strava", retry_after=42)
    payload = exc.to_dict()

    assert payload["provider"] == "strava"
    assert payload["error"] == "Integration Error"
    assert payload["error_code"] == "RATE_LIMIT_EXCEEDED"
    assert payload["details"] == {"retry_after": 42}
    assert payload["timestamp"].endswith("Z")
    assert "42 seconds" in payload["message"]


def test_provider_api_exception_keeps_upstream_status():
    exc = ProviderAPIException("plaid", "transactions", "HTTP 503", upstream_status=503)

    assert exc.upstream_status == 503
    assert exc.details == {"upstream_status": 503}
    assert "transactions" in exc.message


def test_transport_failure_has_no_upstream_status():
    exc = ProviderAPIException("plaid", "transactions", "request timed out")
    assert exc.upstream_status is None
    assert "details" not in exc.to_dict()
