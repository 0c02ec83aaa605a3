"""
Async compat helpers for SQLModel sessions.

The API runs on a sync ``Session`` (FastAPI dependency) while Celery workers
use an ``AsyncSession``. Integration code awaits these helpers and works with
either.
"""
from inspect import isawaitable

from sqlmodel import Session
from sqlmodel.ext.asyncio.session import AsyncSession

AnySession = Session | AsyncSession


async def execute(session: AnySession, statement):
    result = session.exec(statement)
    if isawaitable(result):
        return await result
    return result


async def commit(session: AnySession) -> None:
    result = session.commit()
    if isawaitable(result):
        await result


async def flush(session: AnySession) -> None:
    result = session.flush()
    if isawaitable(result):
        await result


async def refresh(session: AnySession, instance) -> None:
    result = session.refresh(instance)
    if isawaitable(result):
        await result


async def rollback(session: AnySession) -> None:
    result = session.rollback()
    if isawaitable(result):
        await result


async def delete(session: AnySession, instance) -> None:
    result = session.delete(instance)
    if isawaitable(result):
        await result


async def get(session: AnySession, model, ident):
    result = session.get(model, ident)
    if isawaitable(result):
        return await result
    return result
