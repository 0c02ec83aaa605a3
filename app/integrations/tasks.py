"""
Background tasks for integration synchronization.

Architecture:
- sync_provider_task: Sync a specific provider for a user
- sync_all_providers_task: Sync every CONNECTED link (scheduled job)
- Task wrapper: one event loop and one AsyncSession per task run

Scheduling:
    Celery Beat runs sync_all_providers_task every
    INTEGRATION_SYNC_INTERVAL_HOURS (see app/core/celery_app.py).
"""
import asyncio
import uuid
from typing import Any, Awaitable, Callable, Dict

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlmodel.ext.asyncio.session import AsyncSession

from app.core.celery_app import celery_app
from app.core.config import settings
from app.core.http_client import close_http_client, reset_http_client
from app.core.logging_config import log_error, log_info
from app.integrations.exceptions import IntegrationException
from app.integrations.persistence import IntegrationPersistence
from app.integrations.service import build_integrations_service


def _build_async_database_url() -> str:
    url = make_url(settings.effective_database_url)
    if url.drivername.startswith("sqlite"):
        drivername = "sqlite+aiosqlite"
    elif url.drivername.startswith("postgres"):
        drivername = "postgresql+asyncpg"
    else:
        drivername = url.drivername
    return url.set(drivername=drivername).render_as_string(hide_password=False)


async_engine = create_async_engine(_build_async_database_url(), echo=False)
async_session_factory = sessionmaker(async_engine, class_=AsyncSession, expire_on_commit=False)


async def _run_with_session(task_func: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
    try:
        async with async_session_factory() as session:
            return await task_func(session, *args, **kwargs)
    finally:
        await close_http_client()


def _run_async(task_func: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
    log_info(f"Starting background task: {task_func.__name__}")
    # The shared client is bound to the loop that created it
    reset_http_client()
    try:
        result = asyncio.run(_run_with_session(task_func, *args, **kwargs))
        log_info(f"Completed background task: {task_func.__name__}")
        return result
    except Exception as e:
        log_error(e, task_name=task_func.__name__)
        raise


async def _sync_provider_task(session: AsyncSession, user_id: uuid.UUID, provider: str) -> Dict[str, Any]:
    """Sync one provider for one user; taxonomy failures are logged and reported, not raised."""
    service = build_integrations_service(session)
    log_info(f"Syncing {provider} for user {user_id}")
    try:
        result = await service.sync(provider, user_id)
    except IntegrationException as e:
        log_error(e, user_id=str(user_id), provider=provider, error_code=e.error_code)
        return {"provider": provider, "ok": False, "error": e.to_dict()}
    log_info(f"Successfully synced {provider} for user {user_id}")
    return {"provider": provider, "ok": True, "synced_at": result.synced_at.isoformat() if result.synced_at else None}


async def _sync_all_providers_task(session: AsyncSession) -> Dict[str, int]:
    """
    Sync every CONNECTED link sequentially.

    Individual failures are logged and counted; they never stop the batch.
    """
    links = await IntegrationPersistence(session).list_connected_links()
    log_info("Starting scheduled sync for all connected integrations", links=len(links))
    summary = {"total": len(links), "succeeded": 0, "failed": 0}
    for user_id, provider in links:
        outcome = await _sync_provider_task(session, user_id, provider)
        summary["succeeded" if outcome["ok"] else "failed"] += 1
    log_info("Completed scheduled sync for all integrations", **summary)
    return summary


@celery_app.task(name="app.integrations.tasks.sync_provider_task")
def sync_provider_task(user_id: str, provider: str) -> Dict[str, Any]:
    try:
        user_uuid = uuid.UUID(str(user_id))
    except ValueError as e:
        log_error(e, provider=provider, user_id=user_id)
        return {"provider": provider, "ok": False, "error": "invalid user id"}

    return _run_async(_sync_provider_task, user_id=user_uuid, provider=provider)


@celery_app.task(name="app.integrations.tasks.sync_all_providers_task")
def sync_all_providers_task() -> Dict[str, int]:
    return _run_async(_sync_all_providers_task)
