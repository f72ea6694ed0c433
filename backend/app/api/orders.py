"""Buyer orders: history and order placement (COD or M-Pesa)."""
from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.api.deps import get_session
from backend.app.core.auth import get_current_user
from backend.app.core.constants import PAYMENT_METHOD_MPESA
from backend.app.core.exceptions import ServiceError
from backend.app.core.limiter import limiter
from backend.app.models.user import User
from backend.app.schemas import OrderCreate
from backend.app.services.mpesa import validate_phone_number
from backend.app.services.orders import OrderService
from backend.app.services.payment import PaymentService, PaymentGatewayError

router = APIRouter()


@router.get("")
async def list_orders(
    session: AsyncSession = Depends(get_session),
    user: User = Depends(get_current_user),
):
    """The buyer's orders, newest first, with items and estimated delivery."""
    return await OrderService(session).list_user_orders(user.id)


@router.post("", status_code=201)
@limiter.limit("20/minute")
async def create_order(
    request: Request,
    data: OrderCreate,
    session: AsyncSession = Depends(get_session),
    user: User = Depends(get_current_user),
):
    """
    Place an order. Prices come from the catalogue, never from the client.

    For MPESA with ``payment_details.mpesa_number`` an STK Push is sent right away.
    """
    payment_method = (data.payment_method or "").upper()
    mpesa_number = data.payment_details.mpesa_number if data.payment_details else None
    if payment_method == PAYMENT_METHOD_MPESA and mpesa_number and not validate_phone_number(mpesa_number):
        raise HTTPException(status_code=400, detail="Please provide a valid M-Pesa phone number (e.g. 07XXXXXXXX)")

    service = OrderService(session)
    try:
        order = await service.create_order(
            user=user,
            items=[item.model_dump() for item in data.items],
            payment_method=payment_method,
            shipping_address=data.shipping_address,
            customer_info=data.customer_info,
        )
        if payment_method == PAYMENT_METHOD_MPESA and mpesa_number:
            await PaymentService(session).start_payment(order, mpesa_number, order.customer_name or "Customer")
        await session.commit()
        return {"order": await service.serialize_order(order), "message": "Order placed successfully"}
    except PaymentGatewayError as e:
        await session.commit()
        return JSONResponse(status_code=e.status_code, content={"detail": e.message, "order_id": e.order_id})
    except ServiceError as e:
        await session.rollback()
        raise HTTPException(status_code=e.status_code, detail=e.message)
