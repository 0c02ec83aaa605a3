"""
User profile model.

Accounts are owned by the identity service; this table is the read side the
integration service needs to answer "connected user data" requests.
"""
from datetime import date
from typing import Optional

from sqlalchemy import Column, String
from sqlmodel import Field

from .base import BaseModel
from .enums import Gender


class User(BaseModel, table=True):
    """
    User profile
    """
    __tablename__ = "user"

    email: Optional[str] = Field(
        default=None,
        sa_column=Column(String(255), nullable=True, index=True)
    )
    phone_number: str = Field(default="", sa_column=Column(String(32), nullable=False, default=""))
    first_name: Optional[str] = Field(default=None, max_length=50)
    last_name: Optional[str] = Field(default=None, max_length=50)
    username: Optional[str] = Field(default=None, max_length=50)
    date_of_birth: Optional[date] = None
    gender: Optional[Gender] = Field(default=None, sa_column=Column(String(32), nullable=True))
    is_profile_complete: bool = Field(default=False)

    def to_profile(self) -> dict:
        """Public profile fields returned alongside synced data."""
        return {
            "user_id": str(self.id),
            "first_name": self.first_name,
            "last_name": self.last_name,
            "username": self.username,
            "email": self.email,
            "phone_number": self.phone_number,
            "date_of_birth": self.date_of_birth.isoformat() if self.date_of_birth else None,
            "gender": self.gender.value if isinstance(self.gender, Gender) else self.gender,
            "is_profile_complete": self.is_profile_complete,
        }
