"""Product detail and verified-purchase reviews."""
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.api.deps import get_session
from backend.app.core.auth import get_current_user, get_current_user_optional
from backend.app.models.user import User
from backend.app.schemas import ReviewCreate
from backend.app.services.products import ProductService, ProductServiceError
from backend.app.services.reviews import ReviewService, ReviewServiceError

router = APIRouter()


@router.get("/{product_id}")
async def get_product(product_id: int, session: AsyncSession = Depends(get_session)):
    """Product with category, seller and reviews."""
    try:
        return await ProductService(session).get_product_detail(product_id)
    except ProductServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.get("/{product_id}/review")
async def get_reviews(
    product_id: int,
    session: AsyncSession = Depends(get_session),
    user: Optional[User] = Depends(get_current_user_optional),
):
    """Reviews plus whether the caller may review (token optional)."""
    try:
        await ProductService(session).get_product(product_id)
    except ProductServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    return await ReviewService(session).get_review_state(product_id, user)


@router.post("/{product_id}/review")
async def submit_review(
    product_id: int,
    data: ReviewCreate,
    session: AsyncSession = Depends(get_session),
    user: User = Depends(get_current_user),
):
    """Create or update the caller's review."""
    service = ReviewService(session)
    try:
        result = await service.submit_review(user, product_id, data.rating, data.comment)
        await session.commit()
        return result
    except ReviewServiceError as e:
        await session.rollback()
        raise HTTPException(status_code=e.status_code, detail=e.message)
