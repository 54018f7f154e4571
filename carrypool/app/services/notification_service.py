"""
Notification Service.

Writes lifecycle events to the notification outbox. Formatting and
delivery (email/SMS/push) belong to the notification layer.
"""

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import update
from datetime import datetime
from typing import Optional, Dict, Any, Iterable, List

from carrypool.app.models.notification import Notification, NotificationEvent


class NotificationService:

    @staticmethod
    async def emit(
        db: AsyncSession,
        event_type: NotificationEvent,
        user_ids: Iterable[int],
        payload: Optional[Dict[str, Any]] = None
    ) -> List[Notification]:
        """Queue one event for each distinct recipient."""
        notifications = [
            Notification(user_id=uid, event_type=event_type, payload=payload)
            for uid in dict.fromkeys(user_ids)
        ]
        if notifications:
            db.add_all(notifications)
            await db.flush()  # Caller commits
        return notifications

    @staticmethod
    async def mark_read(db: AsyncSession, notification_id: int, user_id: int) -> bool:
        """Mark a notification as read."""
        stmt = update(Notification).where(
            Notification.id == notification_id,
            Notification.user_id == user_id
        ).values(
            is_read=True,
            read_at=datetime.utcnow()
        )
        result = await db.execute(stmt)
        return result.rowcount > 0
