"""Notification dispatch used by the matching engine.

Dispatch is best-effort: callers log and count failures, they never undo
committed work because a notification could not be written.
"""
from typing import Any, Dict, List, Optional, Protocol, Sequence

from sqlalchemy.ext.asyncio import async_sessionmaker

from screening_match.config.logging_config import get_logger
from screening_match.models.enums import NotificationType
from screening_match.storage.database import get_session_factory
from screening_match.storage.models import NotificationModel

logger = get_logger(__name__)


class NotificationDispatcher(Protocol):
    async def notify(
        self,
        type: NotificationType,
        title: str,
        message: str,
        recipient_ids: Sequence[str],
        data: Optional[Dict[str, Any]] = None,
        send_email: bool = False,
    ) -> None:
        ...


class StoredNotificationDispatcher:
    """Writes one notification row per recipient; email delivery is picked up elsewhere."""

    def __init__(self, session_factory: Optional[async_sessionmaker] = None):
        self._session_factory = session_factory or get_session_factory()

    async def notify(
        self,
        type: NotificationType,
        title: str,
        message: str,
        recipient_ids: Sequence[str],
        data: Optional[Dict[str, Any]] = None,
        send_email: bool = False,
    ) -> None:
        rows: List[NotificationModel] = [
            NotificationModel(
                type=type.value,
                title=title,
                message=message,
                recipient_id=recipient_id,
                data=data or {},
                send_email=send_email,
            )
            for recipient_id in recipient_ids
        ]
        if not rows:
            return
        async with self._session_factory() as session:
            async with session.begin():
                session.add_all(rows)
        if send_email:
            logger.info("Email notification queued", type=type.value, recipients=len(rows))


def matched_patient_message(screening_type_name: str) -> Dict[str, Any]:
    return {
        "type": NotificationType.MATCHED,
        "title": "You have been matched to a donation campaign!",
        "message": (
            f"You have been matched for a free screening: {screening_type_name}. "
            "Please check your appointments for details."
        ),
        "send_email": True,
    }


def matched_donor_message(screening_type_name: str) -> Dict[str, Any]:
    return {
        "type": NotificationType.PATIENT_MATCHED,
        "title": "A patient has been matched to your campaign!",
        "message": f"A patient has been matched for a screening: {screening_type_name}.",
        "send_email": False,
    }


def expired_message(screening_type_name: str) -> Dict[str, Any]:
    return {
        "type": NotificationType.ALLOCATION_EXPIRED,
        "title": "Your screening allocation has expired",
        "message": (
            f"Your allocation for {screening_type_name} has expired due to inactivity. "
            "You can rejoin the waitlist if you're still interested."
        ),
        "send_email": True,
    }
