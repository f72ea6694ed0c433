"""In-app notifications for the signed-in user."""
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.api.deps import get_session
from backend.app.core.auth import get_current_user
from backend.app.models.user import User
from backend.app.services.notifications import NotificationService, NotificationServiceError

router = APIRouter()


@router.get("")
async def list_notifications(
    session: AsyncSession = Depends(get_session),
    user: User = Depends(get_current_user),
):
    return await NotificationService(session).list_for_user(user.id)


@router.post("/{notification_id}/read")
async def mark_read(
    notification_id: int,
    session: AsyncSession = Depends(get_session),
    user: User = Depends(get_current_user),
):
    service = NotificationService(session)
    try:
        notification = await service.mark_read(user.id, notification_id)
        await session.commit()
        return notification
    except NotificationServiceError as e:
        await session.rollback()
        raise HTTPException(status_code=e.status_code, detail=e.message)
