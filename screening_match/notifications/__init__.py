"""Notification dispatch for matching outcomes."""
from .dispatcher import (
    NotificationDispatcher,
    StoredNotificationDispatcher,
    matched_patient_message,
    matched_donor_message,
    expired_message,
)

__all__ = [
    "NotificationDispatcher",
    "StoredNotificationDispatcher",
    "matched_patient_message",
    "matched_donor_message",
    "expired_message",
]
