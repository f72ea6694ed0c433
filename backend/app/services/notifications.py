"""
In-app notifications for buyers, sellers and admins.
"""
from typing import List, Dict, Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.exceptions import ServiceError
from backend.app.models.notification import Notification


class NotificationServiceError(ServiceError):
    """Base exception for notification service errors."""


class NotificationNotFoundError(NotificationServiceError):
    def __init__(self, notification_id: int):
        super().__init__(f"Notification {notification_id} not found", 404)


def notification_to_dict(notification: Notification) -> Dict[str, Any]:
    return {
        "id": notification.id,
        "type": notification.type,
        "title": notification.title,
        "message": notification.message,
        "is_read": notification.is_read,
        "created_at": notification.created_at.isoformat() if notification.created_at else None,
    }


class NotificationService:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def notify(self, user_id: int, type: str, title: str, message: str) -> Notification:
        """Queue a notification in the current transaction (caller commits)."""
        notification = Notification(user_id=user_id, type=type, title=title, message=message)
        self.session.add(notification)
        await self.session.flush()
        return notification

    async def list_for_user(self, user_id: int) -> List[Dict[str, Any]]:
        result = await self.session.execute(
            select(Notification)
            .where(Notification.user_id == user_id)
            .order_by(Notification.created_at.desc(), Notification.id.desc())
        )
        return [notification_to_dict(n) for n in result.scalars().all()]

    async def mark_read(self, user_id: int, notification_id: int) -> Dict[str, Any]:
        notification = await self.session.get(Notification, notification_id)
        if not notification or notification.user_id != user_id:
            raise NotificationNotFoundError(notification_id)
        notification.is_read = True
        return notification_to_dict(notification)
