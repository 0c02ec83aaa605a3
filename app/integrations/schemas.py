"""
Pydantic schemas for integration results, API requests and responses.

Adapter results:
- ConnectResponse: What the client needs to start an authorization
- SyncResult: Outcome of one sync run
- StatusResult: Connection state of one provider for one user

Request Schemas:
- AppleHealthUploadRequest, AppleMusicAuthorizeRequest
- LocationSubmitRequest, GoodreadsImportRequest

Response Schemas:
- IntegrationStatusItem / AllIntegrationStatusesResponse
- CallbackResponse, DisconnectResponse, ConnectedUserDataResponse

Design Principles:
- Never expose stored tokens in responses
- ``details`` carries provider-specific extras without widening the schema
"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator


# ================================================================================
# ADAPTER RESULTS
# ================================================================================

class ConnectResponse(BaseModel):
    """
    Result of starting a connection.

    OAuth providers return ``redirect_url``; Plaid returns ``link_token``;
    device providers (Apple Health) return a deep link in ``redirect_url``.
    """
    provider: str
    state: str
    redirect_url: Optional[str] = Field(default=None, description="Authorization URL or deep link")
    link_token: Optional[str] = Field(default=None, description="Provider-issued client token")


class SyncResult(BaseModel):
    """Outcome of a sync run."""
    ok: bool
    synced_at: Optional[datetime] = None
    details: Dict[str, Any] = Field(default_factory=dict)


class StatusResult(BaseModel):
    """Connection state for one user and provider."""
    connected: bool
    last_synced_at: Optional[datetime] = None
    details: Dict[str, Any] = Field(default_factory=dict)


# ================================================================================
# REQUEST SCHEMAS
# ================================================================================

class AppleHealthUploadRequest(BaseModel):
    """HealthKit export pushed by the device with its upload token."""
    upload_token: str = Field(..., min_length=1, description="Token issued by /connect")
    health_data: Dict[str, Any] = Field(
        default_factory=dict,
        description="HealthKit payload: workouts, healthMetrics, steps, heartRate, sleep"
    )


class AppleMusicAuthorizeRequest(BaseModel):
    """MusicKit user token obtained on the device."""
    music_user_token: str = Field(..., min_length=1)
    state: Optional[str] = Field(default=None, description="State from /connect (synthesized when absent)")


class LocationSubmitRequest(BaseModel):
    """Batch of coordinates recorded by the device."""
    locations: List[Dict[str, Any]] = Field(..., min_length=1)


class GoodreadsImportRequest(BaseModel):
    """Goodreads library export (CSV text)."""
    csv_data: str = Field(..., min_length=1)

    @field_validator('csv_data')
    @classmethod
    def require_header(cls, v: str) -> str:
        first_line = v.lstrip().splitlines()[0] if v.strip() else ""
        if "Title" not in first_line:
            raise ValueError("CSV must start with the Goodreads export header row")
        return v


# ================================================================================
# RESPONSE SCHEMAS
# ================================================================================

class IntegrationStatusItem(BaseModel):
    """One provider in the all-statuses overview."""
    provider: str
    provider_name: str
    connected: bool
    last_synced_at: Optional[datetime] = None
    popularity: Optional[int] = None
    details: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None


class AllIntegrationStatusesResponse(BaseModel):
    """Statuses for every provider, ranked by popularity and grouped by list."""
    user_id: str
    top_integrations: List[IntegrationStatusItem]
    integrations_by_list: Dict[str, List[IntegrationStatusItem]]
    total_integrations: int
    connected_integrations: int


class CallbackResponse(BaseModel):
    """Result of a completed callback, optionally with the user's synced data."""
    ok: bool
    message: str
    data: Optional[Dict[str, Any]] = None


class DisconnectResponse(BaseModel):
    status_code: int
    connection_status: str = Field(..., description="'disconnected' or 'not_connected'")
    message: str


class ConnectedUserDataResponse(BaseModel):
    ok: bool
    connected: bool
    message: str
    data: Optional[Dict[str, Any]] = None


class SyncResponse(BaseModel):
    provider: str
    ok: bool
    synced_at: Optional[datetime] = None
    details: Dict[str, Any] = Field(default_factory=dict)
