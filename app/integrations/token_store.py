"""
Token storage for provider credentials.

``TokenStore`` is the interface adapters depend on; ``DbTokenStore`` persists
Fernet-encrypted tokens in ``oauth_credential`` and ``InMemoryTokenStore``
backs tests and local experiments.

``RefreshLocks`` hands out one ``asyncio.Lock`` per (user, provider) so the
read-check-refresh-write cycle of a token runs once even when a scheduled sync
and a user-triggered sync overlap.
"""
import asyncio
import uuid
import weakref
from abc import ABC, abstractmethod
from typing import Dict, Optional, Tuple

from pydantic import BaseModel, Field
from sqlmodel import select

from app.core.encryption import decrypt_token, encrypt_token, is_encrypted
from app.core.logging_config import log_warning
from app.core.time_utils import epoch_seconds
from app.integrations import db
from app.integrations.db import AnySession
from app.models.integration import OAuthCredential
from app.models.enums import RecordStatus

LockMap = weakref.WeakValueDictionary[Tuple[str, str], asyncio.Lock]


class StoredToken(BaseModel):
    """Credential for one (user, provider)."""

    access_token: str = Field(..., min_length=1)
    refresh_token: Optional[str] = None
    expires_at: int = Field(..., description="Unix epoch seconds")
    scope: Optional[str] = None
    provider_user_id: Optional[str] = None

    def seconds_remaining(self, now: Optional[int] = None) -> int:
        return self.expires_at - (now if now is not None else epoch_seconds())


class TokenStore(ABC):
    """Persistence of provider credentials keyed by (user_id, provider)."""

    @abstractmethod
    async def get(self, user_id: uuid.UUID, provider: str) -> Optional[StoredToken]:
        """Return the stored token or None."""

    async def _reencrypt(self, row: OAuthCredential) -> None:
        log_warning("Re-encrypting plaintext credential", provider=row.provider, user_id=str(row.user_id))
        if row.access_token_encrypted and not is_encrypted(row.access_token_encrypted):
            row.access_token_encrypted = encrypt_token(row.access_token_encrypted)
        if row.refresh_token_encrypted and not is_encrypted(row.refresh_token_encrypted):
            row.refresh_token_encrypted = encrypt_token(row.refresh_token_encrypted)
        self.session.add(row)
        await db.commit(self.session)

    @abstractmethod
    async def set(self, user_id: uuid.UUID, provider: str, token: StoredToken) -> None:
        """Insert or replace the token."""

    @abstractmethod
    async def delete(self, user_id: uuid.UUID, provider: str) -> None:
        """Remove the token; no-op when absent."""


class InMemoryTokenStore(TokenStore):
    """Process-local store. Not for production use."""

    def __init__(self):
        self._tokens: Dict[Tuple[str, str], StoredToken] = {}

    @staticmethod
    def _key(user_id: uuid.UUID, provider: str) -> Tuple[str, str]:
        return provider, str(user_id)

    async def get(self, user_id: uuid.UUID, provider: str) -> Optional[StoredToken]:
        token = self._tokens.get(self._key(user_id, provider))
        return token.model_copy() if token else None

    async def set(self, user_id: uuid.UUID, provider: str, token: StoredToken) -> None:
        self._tokens[self._key(user_id, provider)] = token.model_copy()

    async def delete(self, user_id: uuid.UUID, provider: str) -> None:
        self._tokens.pop(self._key(user_id, provider), None)


class DbTokenStore(TokenStore):
    """
    Encrypted store backed by the ``oauth_credential`` table.

    Tokens are encrypted with Fernet on write and decrypted on read. Each
    ``set`` commits so a refreshed token is durable before it is used.
    Rows written as plaintext before encryption was introduced are read as
    is and re-encrypted in place.
    """

    def __init__(self, session: AnySession):
        self.session = session

    async def _find(self, user_id: uuid.UUID, provider: str) -> Optional[OAuthCredential]:
        result = await db.execute(
            self.session,
            select(OAuthCredential).where(
                OAuthCredential.user_id == user_id,
                OAuthCredential.provider == provider,
                OAuthCredential.rec_seq == 0,
                OAuthCredential.rec_status == RecordStatus.ACTIVE.value,
            ),
        )
        return result.first()

    async def get(self, user_id: uuid.UUID, provider: str) -> Optional[StoredToken]:
        row = await self._find(user_id, provider)
        if row is None:
            return None
        stored = (row.access_token_encrypted, row.refresh_token_encrypted)
        if any(value and not is_encrypted(value) for value in stored):
            await self._reencrypt(row)
        return StoredToken(
            access_token=decrypt_token(row.access_token_encrypted),
            refresh_token=decrypt_token(row.refresh_token_encrypted) if row.refresh_token_encrypted else None,
            expires_at=row.expires_at,
            scope=row.scope,
            provider_user_id=row.provider_user_id,
        )

    async def set(self, user_id: uuid.UUID, provider: str, token: StoredToken) -> None:
        row = await self._find(user_id, provider)
        if row is None:
            row = OAuthCredential(
                user_id=user_id,
                provider=provider,
                access_token_encrypted="",
                expires_at=token.expires_at,
            )
        row.access_token_encrypted = encrypt_token(token.access_token)
        row.refresh_token_encrypted = encrypt_token(token.refresh_token) if token.refresh_token else None
        row.expires_at = token.expires_at
        row.scope = token.scope
        row.provider_user_id = token.provider_user_id
        self.session.add(row)
        await db.commit(self.session)

    async def delete(self, user_id: uuid.UUID, provider: str) -> None:
        row = await self._find(user_id, provider)
        if row is None:
            return
        await db.delete(self.session, row)
        await db.commit(self.session)


class RefreshLocks:
    """
    Keyed asyncio locks, one per (user, provider), scoped to the running loop.

    Celery tasks call ``asyncio.run`` per task, so a lock created on one loop
    must never be awaited on another; locks are therefore stored per loop and
    dropped with it. Within a loop a lock lives only while a holder or waiter
    still references it.
    """

    def __init__(self):
        self._by_loop: "weakref.WeakKeyDictionary[asyncio.AbstractEventLoop, LockMap]" = (
            weakref.WeakKeyDictionary()
        )

    def _locks(self) -> "LockMap":
        return self._by_loop.setdefault(asyncio.get_running_loop(), weakref.WeakValueDictionary())

    def get(self, user_id: uuid.UUID, provider: str) -> asyncio.Lock:
        locks = self._locks()
        key = (provider, str(user_id))
        lock = locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            locks[key] = lock
        return lock

    def retained(self) -> int:
        """Locks currently alive on the running loop."""
        return len(self._locks())


refresh_locks = RefreshLocks()
