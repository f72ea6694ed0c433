"""M-Pesa checkout: create an order from the cart and send the STK Push."""
from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.api.deps import get_session
from backend.app.core.auth import get_current_user
from backend.app.core.exceptions import ServiceError
from backend.app.core.limiter import limiter
from backend.app.models.user import User
from backend.app.schemas import CheckoutBody
from backend.app.services.payment import PaymentService, PaymentGatewayError

router = APIRouter()


@router.post("")
@limiter.limit("10/minute")
async def checkout(
    request: Request,
    data: CheckoutBody,
    session: AsyncSession = Depends(get_session),
    user: User = Depends(get_current_user),
):
    """
    Place an M-Pesa order and prompt the buyer's phone.

    Rate limited to 10 requests per minute per IP address.
    On a gateway failure the order is kept as FAILED and its id is returned
    with the error.
    """
    service = PaymentService(session)
    try:
        result = await service.checkout(
            user=user,
            items=[item.model_dump() for item in data.items],
            phone=data.phone,
            customer_name=data.customer_name,
            customer_email=data.customer_email,
        )
        await session.commit()
        return result
    except PaymentGatewayError as e:
        # Keep the FAILED order so the buyer can see what happened
        await session.commit()
        return JSONResponse(status_code=e.status_code, content={"detail": e.message, "order_id": e.order_id})
    except ServiceError as e:
        await session.rollback()
        raise HTTPException(status_code=e.status_code, detail=e.message)
