"""
Unified list / item store that provider syncs write into.

A ``List`` is a global bucket ("Music", "Activity", "Books"...). A user gets a
``UserList`` per list, categories live under the list, and synced records are
``ListItem`` rows whose ``attributes["external"]`` identifies the provider record.
"""
import uuid
from typing import Any, Dict, Optional

from sqlalchemy import Column, ForeignKey, String, UniqueConstraint
from sqlmodel import Field, Index

from app.models.base import BaseModel
from app.models.integration import JSONType


class ItemList(BaseModel, table=True):
    """Global list, unique by name."""
    __tablename__ = "list"

    name: str = Field(sa_column=Column(String(50), nullable=False, unique=True, index=True))


class UserList(BaseModel, table=True):
    """A user's instance of a list."""
    __tablename__ = "user_list"

    user_id: uuid.UUID = Field(
        sa_column=Column(
            ForeignKey("user.id", ondelete="CASCADE"),
            nullable=False,
            index=True
        )
    )
    list_id: uuid.UUID = Field(
        sa_column=Column(
            ForeignKey("list.id", ondelete="CASCADE"),
            nullable=False,
        )
    )
    custom_name: Optional[str] = Field(default=None, max_length=50)

    __table_args__ = (
        UniqueConstraint("user_id", "list_id", name="uq_user_list"),
    )


class ItemCategory(BaseModel, table=True):
    """Category within a list, unique by (list, name)."""
    __tablename__ = "item_category"

    list_id: uuid.UUID = Field(
        sa_column=Column(
            ForeignKey("list.id", ondelete="CASCADE"),
            nullable=False,
        )
    )
    name: str = Field(sa_column=Column(String(100), nullable=False))

    __table_args__ = (
        UniqueConstraint("list_id", "name", name="uq_item_category_list_name"),
    )


class ListItem(BaseModel, table=True):
    """
    One synced record.

    ``external_provider`` / ``external_id`` duplicate ``attributes["external"]``
    so the dedup lookup is indexed and the unique constraint can reject a
    concurrent duplicate insert. Items without an external identity leave
    both NULL (NULLs never collide in the constraint).
    """
    __tablename__ = "list_item"

    list_id: uuid.UUID = Field(
        sa_column=Column(
            ForeignKey("list.id", ondelete="CASCADE"),
            nullable=False,
        )
    )
    user_list_id: uuid.UUID = Field(
        sa_column=Column(
            ForeignKey("user_list.id", ondelete="CASCADE"),
            nullable=False,
            index=True
        )
    )
    category_id: Optional[uuid.UUID] = Field(
        default=None,
        sa_column=Column(
            ForeignKey("item_category.id", ondelete="SET NULL"),
            nullable=True,
        )
    )
    title: str = Field(sa_column=Column(String(500), nullable=False))
    notes: Optional[str] = Field(default=None, max_length=500)
    starred: bool = Field(default=False)
    attributes: Dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSONType(), nullable=False),
    )
    attribute_data_type: Dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSONType(), nullable=False),
    )
    external_provider: Optional[str] = Field(default=None, max_length=50)
    external_id: Optional[str] = Field(default=None, max_length=255)

    __table_args__ = (
        UniqueConstraint(
            "list_id", "user_list_id", "title", "external_provider", "external_id",
            name="uq_list_item_external_identity",
        ),
        Index("idx_list_item_external", "external_provider", "external_id"),
        Index("idx_list_item_category", "category_id"),
    )

    def get_external(self) -> Dict[str, Any]:
        external = (self.attributes or {}).get("external")
        return external if isinstance(external, dict) else {}
