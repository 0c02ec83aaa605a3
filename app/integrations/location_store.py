"""
Queue of raw coordinate batches submitted by the mobile client.

Submissions are stored unprocessed. The location sync geocodes every pending
batch, marks exactly those batches processed once geocoding succeeded and
purges processed rows past the retention window.
"""
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

from sqlmodel import select

from app.core.config import settings
from app.core.logging_config import log_info
from app.core.time_utils import utc_now
from app.integrations import db
from app.integrations.db import AnySession
from app.integrations.persistence import IntegrationPersistence
from app.models.integration import LocationDataSubmission


class LocationBatch:
    """A pending submission as handed to the sync."""

    __slots__ = ("id", "locations", "submitted_at")

    def __init__(self, id: uuid.UUID, locations: List[Dict[str, Any]], submitted_at: datetime):
        self.id = id
        self.locations = locations
        self.submitted_at = submitted_at

    @classmethod
    def from_submission(cls, submission: LocationDataSubmission) -> "LocationBatch":
        locations = (submission.location_data or {}).get("locations")
        return cls(
            id=submission.id,
            locations=locations if isinstance(locations, list) else [],
            submitted_at=submission.submitted_at,
        )


class LocationDataStore:
    """Stores and drains location submissions for one session."""

    def __init__(self, session: AnySession, persistence: Optional[IntegrationPersistence] = None):
        self.session = session
        self.persistence = persistence or IntegrationPersistence(session)

    async def _integration_id(self, provider: str) -> Optional[uuid.UUID]:
        integration = await self.persistence.get_integration(provider)
        return integration.id if integration else None

    def _pending(self, user_id: uuid.UUID, integration_id: uuid.UUID):
        return select(LocationDataSubmission).where(
            LocationDataSubmission.user_id == user_id,
            LocationDataSubmission.integration_id == integration_id,
            LocationDataSubmission.processed == False,  # noqa: E712
        )

    async def get(self, user_id: uuid.UUID, provider: str) -> Optional[LocationBatch]:
        """Newest unprocessed batch, or None."""
        integration_id = await self._integration_id(provider)
        if integration_id is None:
            return None
        result = await db.execute(
            self.session,
            self._pending(user_id, integration_id).order_by(LocationDataSubmission.submitted_at.desc()),
        )
        submission = result.first()
        return LocationBatch.from_submission(submission) if submission else None

    async def pending(self, user_id: uuid.UUID, provider: str) -> List[LocationBatch]:
        """Every unprocessed batch, oldest first."""
        integration_id = await self._integration_id(provider)
        if integration_id is None:
            return []
        result = await db.execute(
            self.session,
            self._pending(user_id, integration_id).order_by(LocationDataSubmission.submitted_at.asc()),
        )
        return [LocationBatch.from_submission(submission) for submission in result.all()]

    async def set(
        self,
        user_id: uuid.UUID,
        provider: str,
        locations: List[Dict[str, Any]],
        submitted_at: Optional[datetime] = None,
    ) -> LocationDataSubmission:
        integration = await self.persistence.ensure_integration(provider)
        submission = LocationDataSubmission(
            user_id=user_id,
            integration_id=integration.id,
            location_data={"locations": locations},
            submitted_at=submitted_at or utc_now(),
            processed=False,
        )
        self.session.add(submission)
        await db.commit(self.session)
        await db.refresh(self.session, submission)
        return submission

    async def mark_processed(
        self, user_id: uuid.UUID, provider: str, submission_ids: Optional[Iterable[uuid.UUID]] = None
    ) -> int:
        """Mark pending batches processed; only ``submission_ids`` when given."""
        integration_id = await self._integration_id(provider)
        if integration_id is None:
            return 0
        statement = self._pending(user_id, integration_id)
        if submission_ids is not None:
            ids = list(submission_ids)
            if not ids:
                return 0
            statement = statement.where(LocationDataSubmission.id.in_(ids))
        result = await db.execute(self.session, statement)
        now = utc_now()
        count = 0
        for submission in result.all():
            submission.processed = True
            submission.processed_at = now
            self.session.add(submission)
            count += 1
        if count:
            await db.commit(self.session)
        return count

    async def delete_processed(
        self, user_id: uuid.UUID, provider: str, older_than_days: Optional[int] = None
    ) -> int:
        """Purge processed batches whose processing is older than the retention window."""
        integration_id = await self._integration_id(provider)
        if integration_id is None:
            return 0
        days = settings.location_submission_retention_days if older_than_days is None else older_than_days
        cutoff = utc_now() - timedelta(days=days)
        result = await db.execute(
            self.session,
            select(LocationDataSubmission).where(
                LocationDataSubmission.user_id == user_id,
                LocationDataSubmission.integration_id == integration_id,
                LocationDataSubmission.processed == True,  # noqa: E712
                LocationDataSubmission.processed_at < cutoff,
            ),
        )
        stale = result.all()
        for submission in stale:
            await db.delete(self.session, submission)
        if stale:
            await db.commit(self.session)
            log_info("Purged processed location submissions", user_id=str(user_id), count=len(stale))
        return len(stale)
