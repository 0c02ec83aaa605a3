"""
Base model shared by every table.
"""
import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, String
from sqlmodel import Field, SQLModel

from app.core.time_utils import utc_now
from app.models.enums import RecordStatus


class BaseModel(SQLModel):
    """
    UUID primary key, timestamps and record versioning.

    ``rec_seq`` and ``rec_status`` mirror the versioned-record convention of the
    shared list store: live rows are ``rec_seq == 0`` and ``rec_status == ACTIVE``.
    Column types are given with ``sa_type`` (not ``sa_column``) so every table
    gets its own Column objects.
    """

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True, nullable=False)
    rec_seq: int = Field(default=0, nullable=False)
    rec_status: RecordStatus = Field(
        default=RecordStatus.ACTIVE,
        sa_type=String(1),
        nullable=False,
    )
    created_at: datetime = Field(
        default_factory=utc_now,
        sa_type=DateTime(timezone=True),
        nullable=False,
    )
    updated_at: Optional[datetime] = Field(
        default_factory=utc_now,
        sa_type=DateTime(timezone=True),
        sa_column_kwargs={"onupdate": utc_now},
    )
