# Import all models for easy access
from .base import BaseModel
from .integration import (
    Integration,
    LocationDataSubmission,
    OAuthCredential,
    UserIntegration,
    UserIntegrationHistory,
)
from .lists import ItemCategory, ItemList, ListItem, UserList
from .user import User

__all__ = [
    "BaseModel",
    "User",
    "Integration",
    "UserIntegration",
    "UserIntegrationHistory",
    "OAuthCredential",
    "LocationDataSubmission",
    "ItemList",
    "UserList",
    "ItemCategory",
    "ListItem",
]
