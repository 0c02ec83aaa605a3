"""
FastAPI router for integration endpoints.

Endpoints:
- GET /integrations/status: All providers, ranked and grouped
- POST /integrations/{provider}/connect: Start an authorization
- GET|POST /integrations/{provider}/callback: Complete an authorization
- POST /integrations/{provider}/sync: Sync now (or queue it with ?background=true)
- GET /integrations/{provider}/status: One provider's status
- GET /integrations/{provider}/config: Mobile client configuration
- GET /integrations/{provider}/data: Synced data for a connected provider
- DELETE /integrations/{provider}/disconnect: Disconnect a provider
- POST /integrations/apple_health/upload, /apple_music/authorize,
  /location_services/locations, /goodreads/import: device and import flows

Authentication:
- Every endpoint except the callback requires a valid bearer JWT
- The callback is identified by its state parameter

Errors:
- IntegrationException subclasses propagate to the handler in app/main.py
"""
import uuid
from typing import Annotated, Any, Dict

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import JSONResponse

from app.api.dependencies import get_current_user_id, get_integrations_service
from app.core.celery_app import celery_app
from app.core.logging_config import log_info
from app.integrations.schemas import (
    AllIntegrationStatusesResponse,
    AppleHealthUploadRequest,
    AppleMusicAuthorizeRequest,
    CallbackResponse,
    ConnectedUserDataResponse,
    ConnectResponse,
    DisconnectResponse,
    GoodreadsImportRequest,
    LocationSubmitRequest,
    StatusResult,
    SyncResponse,
)
from app.integrations.service import IntegrationsService

router = APIRouter(prefix="/integrations", tags=["integrations"])

CurrentUserId = Annotated[uuid.UUID, Depends(get_current_user_id)]
Service = Annotated[IntegrationsService, Depends(get_integrations_service)]


async def _callback_payload(request: Request) -> Dict[str, Any]:
    """Query parameters, overlaid with a JSON or form body on POST."""
    payload: Dict[str, Any] = dict(request.query_params)
    if request.method != "POST":
        return payload
    content_type = request.headers.get("content-type", "")
    if content_type.startswith("application/json"):
        body = await request.json()
        if isinstance(body, dict):
            payload.update(body)
    elif content_type.startswith(("application/x-www-form-urlencoded", "multipart/form-data")):
        form = await request.form()
        payload.update({key: value for key, value in form.items() if isinstance(value, str)})
    return payload


@router.get(
    "/status",
    response_model=AllIntegrationStatusesResponse,
    responses={401: {"description": "Not authenticated"}},
)
async def get_all_statuses(user_id: CurrentUserId, service: Service) -> Dict[str, Any]:
    """Status of every provider: top three by popularity, the rest grouped by list."""
    return await service.get_all_statuses(user_id)


# ================================================================================
# DEVICE AND IMPORT FLOWS
# ================================================================================

@router.post(
    "/apple_health/upload",
    responses={401: {"description": "Invalid or expired upload token"}},
)
async def upload_apple_health(
    request: AppleHealthUploadRequest, user_id: CurrentUserId, service: Service
) -> Dict[str, Any]:
    return await service.handle_apple_health_upload(user_id, request.upload_token, request.health_data)


@router.post("/apple_music/authorize")
async def authorize_apple_music(
    request: AppleMusicAuthorizeRequest, user_id: CurrentUserId, service: Service
) -> Dict[str, Any]:
    return await service.handle_apple_music_authorization(user_id, request.music_user_token, request.state)


@router.post("/location_services/locations")
async def submit_locations(
    request: LocationSubmitRequest, user_id: CurrentUserId, service: Service
) -> Dict[str, Any]:
    return await service.submit_locations(user_id, request.locations)


@router.post("/goodreads/import")
async def import_goodreads(
    request: GoodreadsImportRequest, user_id: CurrentUserId, service: Service
) -> Dict[str, Any]:
    return await service.import_goodreads_csv(user_id, request.csv_data)


# ================================================================================
# PER-PROVIDER
# ================================================================================

@router.post(
    "/{provider}/connect",
    response_model=ConnectResponse,
    responses={
        404: {"description": "Unknown provider"},
        500: {"description": "Provider is not configured"},
    },
)
async def connect(provider: str, user_id: CurrentUserId, service: Service) -> ConnectResponse:
    """Start an authorization; returns a redirect URL, link token or deep link."""
    return await service.create_connection(provider, user_id)


@router.api_route(
    "/{provider}/callback",
    methods=["GET", "POST"],
    response_model=CallbackResponse,
    responses={
        400: {"description": "Malformed callback or state"},
        401: {"description": "Provider rejected the authorization"},
    },
)
async def callback(provider: str, request: Request, service: Service) -> Dict[str, Any]:
    """Complete an authorization; returns the user's synced data where available."""
    payload = await _callback_payload(request)
    return await service.handle_callback_with_user_data(provider, payload)


@router.post(
    "/{provider}/sync",
    response_model=SyncResponse,
    responses={
        202: {"description": "Sync queued"},
        401: {"description": "Stored token is invalid"},
        429: {"description": "Provider rate limit"},
    },
)
async def sync(
    provider: str,
    user_id: CurrentUserId,
    service: Service,
    background: Annotated[bool, Query()] = False,
):
    """Sync one provider now, or queue it on the worker."""
    service.get_provider_or_throw(provider)
    if background:
        task = celery_app.send_task(
            "app.integrations.tasks.sync_provider_task",
            args=[str(user_id), provider],
        )
        log_info("Queued provider sync", provider=provider, user_id=str(user_id), task_id=task.id)
        return JSONResponse(
            status_code=status.HTTP_202_ACCEPTED,
            content={"provider": provider, "queued": True, "task_id": task.id},
        )

    result = await service.sync(provider, user_id)
    return SyncResponse(provider=provider, ok=result.ok, synced_at=result.synced_at, details=result.details)


@router.get("/{provider}/status", response_model=StatusResult)
async def get_status(provider: str, user_id: CurrentUserId, service: Service) -> StatusResult:
    return await service.status(provider, user_id)


@router.get("/{provider}/config")
async def get_config(provider: str, user_id: CurrentUserId, service: Service) -> Dict[str, Any]:
    return await service.get_integration_config(provider, user_id)


@router.get("/{provider}/data", response_model=ConnectedUserDataResponse)
async def get_data(
    provider: str,
    user_id: CurrentUserId,
    service: Service,
    force_sync: Annotated[bool, Query()] = True,
) -> Dict[str, Any]:
    return await service.get_connected_user_data(provider, user_id, force_sync=force_sync)


@router.delete("/{provider}/disconnect", response_model=DisconnectResponse)
async def disconnect(provider: str, user_id: CurrentUserId, service: Service) -> JSONResponse:
    """Disconnect; answers 400 with ``not_connected`` when there is no connected link."""
    result = await service.disconnect(provider, user_id)
    return JSONResponse(status_code=result["status_code"], content=result)
