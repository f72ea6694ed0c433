"""Category listing and admin creation."""
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.api.deps import get_cache, get_session
from backend.app.core.auth import require_admin
from backend.app.schemas import CategoryCreate
from backend.app.services.cache import CacheService
from backend.app.services.categories import CategoryService, CategoryServiceError

router = APIRouter()


@router.get("")
async def list_categories(
    session: AsyncSession = Depends(get_session),
    cache: CacheService = Depends(get_cache),
):
    """Categories by name with active product counts (cached for an hour)."""
    return await CategoryService(session, cache).list_categories()


@router.post("", status_code=201, dependencies=[Depends(require_admin)])
async def create_category(
    data: CategoryCreate,
    session: AsyncSession = Depends(get_session),
    cache: CacheService = Depends(get_cache),
):
    service = CategoryService(session, cache)
    try:
        category = await service.create_category(data.name, data.description, data.image)
        await session.commit()
        return category
    except CategoryServiceError as e:
        await session.rollback()
        raise HTTPException(status_code=e.status_code, detail=e.message)
