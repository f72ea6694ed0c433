"""Public sellers directory."""
from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.api.deps import get_session
from backend.app.services.sellers import SellerService

router = APIRouter()


@router.get("")
async def list_sellers(
    all: Optional[str] = None,
    session: AsyncSession = Depends(get_session),
):
    """Approved sellers as ``{id, business_name}`` when ``?all=1`` is given."""
    if all not in ("1", "true"):
        return []
    return await SellerService(session).list_approved()
