"""
Enums and constants for the application.
"""
from enum import Enum


class RecordStatus(str, Enum):
    """Record status for versioned rows."""
    ACTIVE = "A"
    INACTIVE = "I"


class IntegrationStatus(str, Enum):
    """Lifecycle of a user's link to a provider."""
    PENDING = "PENDING"
    CONNECTED = "CONNECTED"
    DISCONNECTED = "DISCONNECTED"


class Gender(str, Enum):
    """Profile gender values."""
    MALE = "male"
    FEMALE = "female"
    OTHER = "other"
    PREFER_NOT_TO_SAY = "prefer_not_to_say"
