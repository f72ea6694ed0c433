"""Admin moderation of sellers and product curation."""
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.api.deps import get_session
from backend.app.core.auth import require_admin
from backend.app.schemas import FeaturedUpdate, FlashSaleUpdate, SellerReject, SellerStatusUpdate
from backend.app.services.products import ProductService, ProductServiceError
from backend.app.services.sellers import SellerService, SellerServiceError

router = APIRouter(dependencies=[Depends(require_admin)])


@router.put("/sellers/{seller_id}")
async def update_seller_status(
    seller_id: int,
    data: SellerStatusUpdate,
    session: AsyncSession = Depends(get_session),
):
    """Set moderation status and/or freeze the seller account."""
    service = SellerService(session)
    try:
        seller = await service.set_status(seller_id, status=data.status, frozen=data.frozen, reason=data.reason)
        await session.commit()
        return {"success": True, "seller": seller}
    except SellerServiceError as e:
        await session.rollback()
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.post("/sellers/{seller_id}/reject")
async def reject_seller(
    seller_id: int,
    data: SellerReject,
    session: AsyncSession = Depends(get_session),
):
    service = SellerService(session)
    try:
        seller = await service.reject(seller_id, reason=data.reason)
        await session.commit()
        return {"success": True, "seller": seller}
    except SellerServiceError as e:
        await session.rollback()
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.put("/products/{product_id}/featured")
async def set_featured(
    product_id: int,
    data: FeaturedUpdate,
    session: AsyncSession = Depends(get_session),
):
    if not isinstance(data.is_featured, bool):
        raise HTTPException(status_code=400, detail="is_featured must be a boolean")

    service = ProductService(session)
    try:
        product = await service.set_featured(product_id, data.is_featured)
        await session.commit()
    except ProductServiceError as e:
        await session.rollback()
        raise HTTPException(status_code=e.status_code, detail=e.message)

    wording = "added to" if data.is_featured else "removed from"
    return {"success": True, "message": f"Product {wording} featured", "product": product}


@router.put("/products/{product_id}/flash-sale")
async def set_flash_sale(
    product_id: int,
    data: FlashSaleUpdate,
    session: AsyncSession = Depends(get_session),
):
    service = ProductService(session)
    try:
        product = await service.set_flash_sale(product_id, bool(data.flash_sale))
        await session.commit()
    except ProductServiceError as e:
        await session.rollback()
        raise HTTPException(status_code=e.status_code, detail=e.message)

    wording = "added to" if product["flash_sale"] else "removed from"
    return {"success": True, "message": f"Product {wording} flash sale", "product": product}
