"""
Unit tests for app.core.config settings validation.
"""
import pytest
from pydantic import ValidationError

from app.core.config import DEFAULT_SQLITE_URL, Settings

SECRET = "test-secret-key-for-testing-only-32-chars"


def make_settings(**kwargs):
    """Create Settings without loading values from .env or environment."""
    kwargs.setdefault("secret_key", SECRET)
    return Settings(_env_file=None, **kwargs)


class TestDatabaseUrl:
    def test_blank_url_defaults_to_sqlite(self):
        settings = make_settings(database_url="  ")
        assert settings.database_url == DEFAULT_SQLITE_URL
        assert settings.database_type == "sqlite"

    def test_postgres_components_build_url(self):
        settings = make_settings(
            postgres_host="db",
            postgres_user="listsync",
            postgres_password="pw",
            postgres_db="listsync",
        )
        assert settings.database_type == "postgresql"
        assert settings.effective_database_url == "postgresql://listsync:pw@db:5432/listsync"

    def test_explicit_postgres_url_wins(self):
        settings = make_settings(postgres_url="postgresql://u:p@host:6543/x", postgres_host="db")
        assert settings.effective_database_url == "postgresql://u:p@host:6543/x"


class TestIntegrationSettings:
    def test_plaid_env_normalized(self):
        assert make_settings(plaid_env=" Production ").plaid_env == "production"

    def test_plaid_env_rejects_unknown(self):
        with pytest.raises(ValidationError) as exc_info:
            make_settings(plaid_env="staging")
        assert "PLAID_ENV must be one of" in str(exc_info.value)

    @pytest.mark.parametrize("value", [0, -1, 3601])
    def test_timeouts_bounded(self, value):
        with pytest.raises(ValidationError):
            make_settings(integration_sync_timeout_seconds=value)

    def test_gmail_credentials_win_over_google(self):
        settings = make_settings(
            gmail_client_id="gmail-id",
            google_client_id="google-id",
            google_client_secret="google-secret",
        )
        assert settings.google_oauth_client_id == "gmail-id"
        assert settings.google_oauth_client_secret == "google-secret"


class TestSecretAndCelery:
    def test_missing_secret_generated_in_development(self):
        settings = Settings(_env_file=None, secret_key="")
        assert len(settings.secret_key) >= 32

    def test_missing_secret_rejected_in_production(self):
        with pytest.raises(ValidationError, match="SECRET_KEY must be set in production"):
            Settings(_env_file=None, environment="production", secret_key="")

    def test_celery_defaults_to_redis_url(self):
        settings = make_settings(redis_url="redis://localhost:6379/0")
        assert settings.celery_broker_url == "redis://localhost:6379/0"
        assert settings.celery_result_backend == "redis://localhost:6379/0"

    def test_cors_origins_parsed_from_string(self):
        settings = make_settings(cors_origins="https://a.example, https://b.example,")
        assert settings.cors_origins == ["https://a.example", "https://b.example"]

    def test_production_rejects_debug(self):
        with pytest.raises(ValidationError, match="DEBUG must be False"):
            make_settings(environment="production", debug=True)
