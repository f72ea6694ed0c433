"""Daraja STK callback and payment status polling."""
import json
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.api.deps import get_session
from backend.app.core.auth import get_current_user
from backend.app.core.logging import get_logger
from backend.app.core.metrics import mpesa_callbacks_total
from backend.app.core.settings import get_settings
from backend.app.models.user import User
from backend.app.services.mpesa import extract_callback_details, verify_callback_signature
from backend.app.services.payment import PaymentService, PaymentServiceError

router = APIRouter()
logger = get_logger(__name__)

CALLBACK_ACK = {"ResultCode": 0, "ResultDesc": "Accepted"}


@router.post("/callback")
async def mpesa_callback(
    request: Request,
    session: AsyncSession = Depends(get_session),
):
    """
    Daraja STK Push callback.

    Well-formed callbacks are always acknowledged so Safaricom stops retrying;
    unknown orders and duplicates are logged and ignored.
    """
    body = await request.body()

    secret = get_settings().MPESA_CALLBACK_SECRET
    if secret:
        signature = request.headers.get("X-Mpesa-Signature", "")
        if not verify_callback_signature(body, signature, secret):
            logger.warning("Callback with invalid signature rejected")
            mpesa_callbacks_total.labels(result="invalid_signature").inc()
            raise HTTPException(status_code=401, detail="Invalid signature")

    try:
        payload = json.loads(body)
    except ValueError:
        mpesa_callbacks_total.labels(result="malformed").inc()
        raise HTTPException(status_code=400, detail="Invalid JSON")

    try:
        details = extract_callback_details(payload)
    except ValueError:
        logger.warning("Malformed STK callback payload")
        mpesa_callbacks_total.labels(result="malformed").inc()
        raise HTTPException(status_code=400, detail="Invalid callback payload")

    logger.info(
        "STK callback received",
        merchant_request_id=details.merchant_request_id,
        checkout_request_id=details.checkout_request_id,
        result_code=details.result_code,
    )

    try:
        await PaymentService(session).handle_callback(details)
        await session.commit()
    except Exception as exc:
        await session.rollback()
        logger.error(
            "Callback processing failed",
            checkout_request_id=details.checkout_request_id,
            error=str(exc),
        )
        mpesa_callbacks_total.labels(result="error").inc()

    return CALLBACK_ACK


@router.get("/callback")
async def mpesa_callback_probe():
    """Reachability check for the callback URL."""
    return {
        "message": "M-Pesa callback endpoint is active",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@router.get("/status/{order_id}")
async def get_payment_status(
    order_id: int,
    session: AsyncSession = Depends(get_session),
    user: User = Depends(get_current_user),
):
    """
    Payment status for the buyer's order.

    While the payment is pending Daraja is queried, and a final answer is
    applied to the order before responding.
    """
    service = PaymentService(session)
    try:
        result = await service.get_payment_status(user, order_id)
        await session.commit()
        return result
    except PaymentServiceError as e:
        await session.rollback()
        raise HTTPException(status_code=e.status_code, detail=e.message)
