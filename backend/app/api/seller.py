"""Seller workspace: own products and orders containing them."""
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.api.deps import get_session
from backend.app.core.auth import get_seller_profile
from backend.app.models.seller import SellerProfile
from backend.app.schemas import OrderStatusUpdate, ProductCreate, ProductUpdate
from backend.app.services.products import (
    ProductService,
    ProductServiceError,
    ensure_can_manage_products,
)
from backend.app.services.sellers import SellerService, SellerServiceError

router = APIRouter()


# --- Products ---

@router.get("/products")
async def list_products(
    session: AsyncSession = Depends(get_session),
    seller: SellerProfile = Depends(get_seller_profile),
):
    try:
        ensure_can_manage_products(seller)
    except ProductServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    return await ProductService(session).list_seller_products(seller)


@router.post("/products", status_code=201)
async def create_product(
    data: ProductCreate,
    session: AsyncSession = Depends(get_session),
    seller: SellerProfile = Depends(get_seller_profile),
):
    service = ProductService(session)
    try:
        product = await service.create_product(seller, data.model_dump())
        await session.commit()
        return product
    except ProductServiceError as e:
        await session.rollback()
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.put("/products/{product_id}")
async def update_product(
    product_id: int,
    data: ProductUpdate,
    session: AsyncSession = Depends(get_session),
    seller: SellerProfile = Depends(get_seller_profile),
):
    service = ProductService(session)
    try:
        product = await service.update_product(seller, product_id, data.model_dump(exclude_unset=True))
        await session.commit()
        return product
    except ProductServiceError as e:
        await session.rollback()
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.delete("/products/{product_id}")
async def delete_product(
    product_id: int,
    session: AsyncSession = Depends(get_session),
    seller: SellerProfile = Depends(get_seller_profile),
):
    service = ProductService(session)
    try:
        await service.delete_product(seller, product_id)
        await session.commit()
        return {"success": True, "message": "Product deleted"}
    except ProductServiceError as e:
        await session.rollback()
        raise HTTPException(status_code=e.status_code, detail=e.message)


# --- Orders ---

@router.get("/orders")
async def list_orders(
    session: AsyncSession = Depends(get_session),
    seller: SellerProfile = Depends(get_seller_profile),
):
    """Orders with this seller's items only, newest first."""
    return await SellerService(session).list_orders(seller)


@router.put("/orders/{order_id}")
async def update_order_status(
    order_id: int,
    data: OrderStatusUpdate,
    session: AsyncSession = Depends(get_session),
    seller: SellerProfile = Depends(get_seller_profile),
):
    service = SellerService(session)
    try:
        order = await service.update_order_status(seller, order_id, data.status)
        await session.commit()
        return order
    except SellerServiceError as e:
        await session.rollback()
        raise HTTPException(status_code=e.status_code, detail=e.message)
