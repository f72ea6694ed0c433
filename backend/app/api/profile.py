"""The signed-in user's profile."""
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.api.deps import get_session
from backend.app.core.auth import get_current_user
from backend.app.models.user import User
from backend.app.schemas import ProfileUpdate
from backend.app.services.profile import ProfileService, ProfileServiceError

router = APIRouter()


@router.get("")
async def get_profile(
    session: AsyncSession = Depends(get_session),
    user: User = Depends(get_current_user),
):
    return await ProfileService(session).get_profile(user)


@router.put("")
async def update_profile(
    data: ProfileUpdate,
    session: AsyncSession = Depends(get_session),
    user: User = Depends(get_current_user),
):
    service = ProfileService(session)
    try:
        profile = await service.update_profile(user, data.model_dump(exclude_unset=True))
        await session.commit()
        return profile
    except ProfileServiceError as e:
        await session.rollback()
        raise HTTPException(status_code=e.status_code, detail=e.message)
