"""
Database models for provider integrations.

Models:
- Integration: one row per provider (created lazily by name)
- UserIntegration: a user's link to a provider (PENDING / CONNECTED / DISCONNECTED)
- UserIntegrationHistory: connect / sync timestamps for a link
- OAuthCredential: the stored token for (user, provider), encrypted at rest
- LocationDataSubmission: raw coordinates pushed by the mobile client, consumed by sync

All tokens are encrypted using Fernet before storage and decrypted on retrieval
(see app/integrations/token_store.py).
"""
import uuid
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import Column, DateTime, ForeignKey, String, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSONB
from sqlmodel import Field, Index, JSON

from app.core.time_utils import utc_now
from app.models.base import BaseModel
from app.models.enums import IntegrationStatus


def JSONType():
    return JSONB().with_variant(JSON, "sqlite")


class Integration(BaseModel, table=True):
    """
    A supported provider.

    Fields:
        name: Provider key (e.g., "spotify", "apple_health")
        label: Display name
        popularity: Incremented every time any user is marked connected
    """
    __tablename__ = "integration"

    name: str = Field(
        sa_column=Column(String(50), nullable=False, unique=True, index=True),
        description="Provider key"
    )
    label: Optional[str] = Field(default=None, max_length=50)
    popularity: Optional[int] = Field(default=0)


class UserIntegration(BaseModel, table=True):
    """
    User's link to an integration.

    Created PENDING on the first connect attempt, flipped to CONNECTED by a
    successful callback and to DISCONNECTED by an explicit disconnect.
    """
    __tablename__ = "user_integration"

    user_id: uuid.UUID = Field(
        sa_column=Column(
            ForeignKey("user.id", ondelete="CASCADE"),
            nullable=False,
            index=True
        )
    )
    integration_id: uuid.UUID = Field(
        sa_column=Column(
            ForeignKey("integration.id", ondelete="CASCADE"),
            nullable=False,
            index=True
        )
    )
    status: IntegrationStatus = Field(
        default=IntegrationStatus.PENDING,
        sa_column=Column(String(50), nullable=False, default=IntegrationStatus.PENDING.value),
    )

    __table_args__ = (
        # One link per user per provider
        UniqueConstraint("user_id", "integration_id", name="uq_user_integration"),
        # Scheduled sync scans links by status
        Index("idx_user_integration_status", "status"),
    )


class UserIntegrationHistory(BaseModel, table=True):
    """Connect and sync timestamps for one link."""
    __tablename__ = "user_integration_history"

    user_integration_id: uuid.UUID = Field(
        sa_column=Column(
            ForeignKey("user_integration.id", ondelete="CASCADE"),
            nullable=False,
            unique=True,
        )
    )
    first_connected_at: Optional[datetime] = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )
    last_connected_at: Optional[datetime] = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )
    last_synced_at: Optional[datetime] = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )


class OAuthCredential(BaseModel, table=True):
    """
    Stored provider token for (user, provider).

    Security:
        - access/refresh tokens are Fernet ciphertext (core/encryption.py)
        - Changing SECRET_KEY invalidates all stored tokens
        - Never expose these columns in API responses
    """
    __tablename__ = "oauth_credential"

    user_id: uuid.UUID = Field(
        sa_column=Column(
            ForeignKey("user.id", ondelete="CASCADE"),
            nullable=False,
            index=True
        )
    )
    provider: str = Field(
        sa_column=Column(String(50), nullable=False, index=True),
        description="Provider key"
    )
    access_token_encrypted: str = Field(
        sa_column=Column(Text, nullable=False),
        description="Encrypted access token"
    )
    refresh_token_encrypted: Optional[str] = Field(
        default=None,
        sa_column=Column(Text, nullable=True),
        description="Encrypted refresh token"
    )
    expires_at: int = Field(description="Access token expiry (Unix epoch seconds)")
    scope: Optional[str] = Field(default=None, sa_column=Column(Text, nullable=True))
    provider_user_id: Optional[str] = Field(default=None, max_length=255)

    __table_args__ = (
        UniqueConstraint("user_id", "provider", name="uq_oauth_credential_user_provider"),
    )


class LocationDataSubmission(BaseModel, table=True):
    """A batch of coordinates submitted by the device, waiting to be geocoded."""
    __tablename__ = "location_data_submission"

    user_id: uuid.UUID = Field(
        sa_column=Column(
            ForeignKey("user.id", ondelete="CASCADE"),
            nullable=False,
        )
    )
    integration_id: uuid.UUID = Field(
        sa_column=Column(
            ForeignKey("integration.id", ondelete="CASCADE"),
            nullable=False,
        )
    )
    location_data: Dict[str, Any] = Field(
        sa_column=Column(JSONType(), nullable=False),
        description="Submitted coordinates and device metadata"
    )
    submitted_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )
    processed: bool = Field(default=False)
    processed_at: Optional[datetime] = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )

    __table_args__ = (
        Index("idx_location_submission_user_processed", "user_id", "integration_id", "processed"),
    )
