"""
Application configuration using pydantic-settings.
"""
import logging
import secrets
from pathlib import Path
from typing import List, Optional

from pydantic import field_validator, model_validator, ValidationInfo
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

# Insecure default that should never be used in production
_INSECURE_DEFAULT_SECRET = "your-super-secret-key-change-in-production"
DEFAULT_SQLITE_URL = "sqlite:///./data/listsync.db"

# Define the project root directory
PROJECT_ROOT = Path(__file__).parent.parent.parent.resolve()


class Settings(BaseSettings):
    """Application settings."""

    # Application
    app_name: str = "ListSync Integration Service"
    app_version: str = "0.1.0"
    debug: bool = False
    environment: str = "development"

    # API
    api_v1_prefix: str = "/api/v1"
    enable_cors: bool = False
    cors_origins: Optional[List[str]] = None

    # Database Configuration
    # Primary database URL (defaults to SQLite)
    database_url: str = DEFAULT_SQLITE_URL

    # PostgreSQL override (optional)
    postgres_url: Optional[str] = None
    postgres_user: Optional[str] = None
    postgres_password: Optional[str] = None
    postgres_db: Optional[str] = None
    postgres_host: Optional[str] = None
    postgres_port: Optional[int] = None

    # Security
    secret_key: str = ""  # Must be set via environment variable
    algorithm: str = "HS256"  # Algorithm of the externally issued user JWTs

    # Redis / Celery
    redis_url: Optional[str] = None  # e.g., "redis://localhost:6379/0"
    celery_broker_url: Optional[str] = None
    celery_result_backend: Optional[str] = None
    celery_task_serializer: str = "json"
    celery_result_serializer: str = "json"
    celery_accept_content: List[str] = ["json"]
    celery_timezone: str = "UTC"
    celery_enable_utc: bool = True

    # Integrations (shared)
    integration_http_timeout_seconds: float = 15.0
    integration_sync_timeout_seconds: float = 300.0
    integration_token_refresh_skew_seconds: int = 60
    integration_sync_interval_hours: int = 6
    integration_signed_state: bool = False  # Legacy "<prefix><userId>-<ms>" state when False
    integration_state_max_age_seconds: int = 900

    # Spotify
    spotify_client_id: Optional[str] = None
    spotify_client_secret: Optional[str] = None
    spotify_redirect_uri: Optional[str] = None
    spotify_default_days: int = 30

    # Apple Music
    apple_music_team_id: Optional[str] = None
    apple_music_key_id: Optional[str] = None
    apple_music_private_key: Optional[str] = None
    apple_music_app_name: str = "ListSync"
    apple_music_callback_url: str = "myapp://integrations/apple_music/callback"
    apple_music_default_days: int = 30
    apple_music_use_mock_data: bool = False

    # Strava
    strava_client_id: Optional[str] = None
    strava_client_secret: Optional[str] = None
    strava_redirect_uri: Optional[str] = None
    strava_default_days: int = 30

    # Plaid
    plaid_client_id: Optional[str] = None
    plaid_secret: Optional[str] = None
    plaid_env: str = "sandbox"
    plaid_redirect_uri: Optional[str] = None
    plaid_webhook_url: Optional[str] = None
    plaid_client_name: str = "ListSync"
    plaid_default_days: int = 30

    # Apple Health
    apple_health_upload_endpoint: Optional[str] = None
    apple_health_default_days: int = 30
    apple_health_upload_token_ttl_seconds: int = 3600

    # Gmail / Google
    gmail_client_id: Optional[str] = None
    gmail_client_secret: Optional[str] = None
    gmail_redirect_uri: Optional[str] = None
    gmail_default_days: int = 30
    google_client_id: Optional[str] = None
    google_client_secret: Optional[str] = None
    google_redirect_uri: Optional[str] = None
    google_contacts_redirect_uri: Optional[str] = None

    # Location services
    google_maps_api_key: Optional[str] = None
    location_submission_retention_days: int = 7

    # Goodreads
    goodreads_default_days: int = 365

    # Application configuration
    app_port: int = 8000

    # Logging
    log_level: str = "INFO"
    log_file: Optional[str] = None
    log_dir: str = "./data/logs"

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    @property
    def database_type(self) -> str:
        """Detect database type from configuration."""
        if self.postgres_url or (self.postgres_host and self.postgres_user):
            return "postgresql"

        if self.database_url.startswith(("postgresql", "postgres")):
            return "postgresql"

        return "sqlite"

    @property
    def effective_database_url(self) -> str:
        """Get the effective database URL based on configuration hierarchy."""
        # Priority 1: Explicit PostgreSQL URL
        if self.postgres_url:
            return self.postgres_url

        # Priority 2: PostgreSQL components (Docker environment)
        if self.postgres_host and self.postgres_user and self.postgres_db:
            password = self.postgres_password or ""
            port = self.postgres_port or 5432
            return f"postgresql://{self.postgres_user}:{password}@{self.postgres_host}:{port}/{self.postgres_db}"

        # Priority 3: Primary database URL (defaults to SQLite)
        return self.database_url

    @property
    def google_oauth_client_id(self) -> Optional[str]:
        """Gmail credentials win over the generic Google ones."""
        return self.gmail_client_id or self.google_client_id

    @property
    def google_oauth_client_secret(self) -> Optional[str]:
        return self.gmail_client_secret or self.google_client_secret

    @field_validator('secret_key')
    @classmethod
    def validate_secret_key(cls, v: str, info: ValidationInfo) -> str:
        """Validate SECRET_KEY is set and secure."""
        if not v:
            env = info.data.get('environment', 'development')
            if env == 'production':
                raise ValueError(
                    "SECRET_KEY must be set in production! "
                    "Generate one with: python -c 'import secrets; print(secrets.token_urlsafe(32))'"
                )
            logger.warning(
                "SECRET_KEY not set! Using auto-generated key for development. "
                "Stored provider tokens will not decrypt after a restart."
            )
            return secrets.token_urlsafe(32)

        if v == _INSECURE_DEFAULT_SECRET:
            logger.warning("Using insecure default SECRET_KEY!")
        elif len(v) < 32:
            logger.warning(
                f"SECRET_KEY is only {len(v)} characters long. "
                "Recommend at least 32 characters for security."
            )

        return v

    @field_validator('cors_origins', mode='before')
    @classmethod
    def parse_cors_origins(cls, v):
        """Parse CORS origins from string or list."""
        if v is None:
            return []

        if isinstance(v, str):
            if not v.strip():
                return []
            return [origin.strip() for origin in v.split(',') if origin.strip()]

        if isinstance(v, list):
            return v

        return []

    @field_validator('database_url')
    @classmethod
    def validate_database_url(cls, v: str) -> str:
        """Validate primary database URL."""
        if not v or not v.strip():
            logger.info(
                "DATABASE_URL not provided; defaulting to SQLite at %s", DEFAULT_SQLITE_URL
            )
            return DEFAULT_SQLITE_URL

        url = v.strip()
        if url.startswith(("sqlite", "postgresql", "postgres")):
            return url

        logger.warning(
            "DATABASE_URL uses unsupported or untested dialect '%s'. Proceed with caution.",
            url.split("://", 1)[0]
        )
        return url

    @field_validator('plaid_env')
    @classmethod
    def validate_plaid_env(cls, v: str) -> str:
        """PLAID_ENV selects the API host."""
        v = v.lower().strip()
        if v not in ("sandbox", "development", "production"):
            raise ValueError(
                f"PLAID_ENV must be one of sandbox, development, production. Got: {v}"
            )
        return v

    @field_validator('integration_http_timeout_seconds', 'integration_sync_timeout_seconds')
    @classmethod
    def validate_timeout_settings(cls, v: float) -> float:
        """Validate timeout settings are reasonable."""
        if v <= 0:
            raise ValueError("Timeout must be positive")
        if v > 3600:
            raise ValueError("Timeout cannot exceed 3600 seconds (1 hour)")
        return v

    @field_validator('celery_broker_url', 'celery_result_backend')
    @classmethod
    def validate_celery_urls(cls, v: Optional[str], info: ValidationInfo) -> Optional[str]:
        """Auto-configure Celery from redis_url if not explicitly set."""
        if v:
            return v

        redis_url = info.data.get('redis_url')
        if redis_url:
            logger.info(
                f"{info.field_name.upper()} not set. Defaulting to REDIS_URL: {redis_url}"
            )
            return redis_url

        return v

    @model_validator(mode='after')
    def validate_production_settings(self) -> 'Settings':
        """Production validation."""
        if self.environment != "production":
            return self

        errors = []
        if self.debug:
            errors.append("DEBUG must be False in production.")
        if self.enable_cors and not self.cors_origins:
            errors.append("CORS_ORIGINS must be configured when CORS is enabled.")

        if not self.celery_broker_url:
            logger.warning(
                "Production configuration warning: CELERY_BROKER_URL not configured. "
                "Scheduled integration sync requires Celery with Redis."
            )
        if not self.integration_signed_state:
            logger.warning(
                "Production configuration warning: INTEGRATION_SIGNED_STATE is off; "
                "callbacks accept unsigned legacy state."
            )

        if errors:
            error_message = "Production configuration validation failed:\n" + "\n".join(f"  - {e}" for e in errors)
            raise ValueError(error_message)

        return self


# Create settings instance
settings = Settings()


def get_settings() -> Settings:
    """Get settings instance."""
    return settings
