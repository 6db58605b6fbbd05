"""Enumeration types for the screening match service."""
from enum import Enum


class WaitlistStatus(str, Enum):
    """Lifecycle of a patient's request for a funded screening."""
    PENDING = "PENDING"
    MATCHED = "MATCHED"
    CLAIMED = "CLAIMED"
    EXPIRED = "EXPIRED"


class CampaignStatus(str, Enum):
    """Donation campaign status."""
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"
    PENDING = "PENDING"
    SUSPENDED = "SUSPENDED"
    DELETED = "DELETED"


class Gender(str, Enum):
    """Gender values used for campaign targeting."""
    MALE = "MALE"
    FEMALE = "FEMALE"


class ExecutionStatus(str, Enum):
    """Status of a matching run audit record."""
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class LogLevel(str, Enum):
    """Severity of an execution log entry."""
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"


class NotificationType(str, Enum):
    """Notifications emitted by matching and expiry."""
    MATCHED = "MATCHED"
    PATIENT_MATCHED = "PATIENT_MATCHED"
    ALLOCATION_EXPIRED = "ALLOCATION_EXPIRED"
