"""
Payment service - M-Pesa STK Push payments for marketplace orders.

An order's payment moves PENDING -> PAID or PENDING -> FAILED exactly once.
The outcome arrives either through the Daraja callback or through a status
poll (STK query); whichever comes first wins and the other is a no-op.

On PAID the order is CONFIRMED, stock is decremented and sellers/buyer are
notified. On FAILED the order is CANCELLED.
"""
import re
from datetime import datetime
from decimal import Decimal
from typing import Optional, Dict, Any, List

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select

from backend.app.core.constants import (
    FINAL_PAYMENT_STATUSES,
    NOTIFY_ORDER,
    NOTIFY_PAYMENT,
    ORDER_CANCELLED,
    ORDER_CONFIRMED,
    ORDER_PENDING,
    PAYMENT_FAILED,
    PAYMENT_METHOD_MPESA,
    PAYMENT_PAID,
)
from backend.app.core.exceptions import ServiceError
from backend.app.core.logging import get_logger
from backend.app.core.metrics import (
    mpesa_callbacks_total,
    mpesa_stk_push_total,
    payments_completed_total,
)
from backend.app.models.order import Order, OrderItem
from backend.app.models.product import Product
from backend.app.models.seller import SellerProfile
from backend.app.models.user import User
from backend.app.services.mpesa import (
    CallbackDetails,
    MpesaClient,
    MpesaError,
    STKPushResult,
    format_amount,
    format_phone_number,
    get_mpesa_client,
    validate_phone_number,
    whole_shillings,
)
from backend.app.services.notifications import NotificationService
from backend.app.services.orders import OrderService

logger = get_logger(__name__)

EMAIL_PATTERN = re.compile(r"^\S+@\S+\.\S+$")
CANCELLED_RESULT_CODE = "1032"
# STK query result codes that end the payment; anything else is still in flight
FINAL_FAILURE_RESULT_CODES = {"1", "1037", "2001", "1019", "1025"}


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class PaymentServiceError(ServiceError):
    """Base exception for payment service errors."""


class CheckoutValidationError(PaymentServiceError):
    def __init__(self, message: str):
        super().__init__(message, 400)


class PaymentOrderNotFoundError(PaymentServiceError):
    def __init__(self, order_id: int):
        super().__init__(f"Order {order_id} not found", 404)


class PaymentGatewayError(PaymentServiceError):
    """STK Push could not be started; the order has been marked FAILED."""

    def __init__(self, message: str, order_id: int):
        self.order_id = order_id
        super().__init__(message, 400)


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------

class PaymentService:
    """M-Pesa payment operations. The caller is responsible for ``session.commit()``."""

    def __init__(self, session: AsyncSession, client: Optional[MpesaClient] = None):
        self.session = session
        self.client = client or get_mpesa_client()

    # -- helpers -------------------------------------------------------------

    async def _lock_order(self, order_id: int) -> Optional[Order]:
        result = await self.session.execute(
            select(Order)
            .where(Order.id == order_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def _find_callback_order(self, details: CallbackDetails) -> Optional[Order]:
        """Match by merchant request id, falling back to the checkout request id."""
        for column, value in (
            (Order.mpesa_merchant_request_id, details.merchant_request_id),
            (Order.mpesa_checkout_request_id, details.checkout_request_id),
        ):
            if not value:
                continue
            result = await self.session.execute(
                select(Order)
                .where(column == value)
                .with_for_update()
                .execution_options(populate_existing=True)
            )
            order = result.scalars().first()
            if order:
                return order
        return None

    async def _decrement_stock(self, order_id: int) -> None:
        result = await self.session.execute(
            select(OrderItem.product_id, OrderItem.quantity).where(OrderItem.order_id == order_id)
        )
        quantities: Dict[int, int] = {}
        for product_id, quantity in result.all():
            quantities[product_id] = quantities.get(product_id, 0) + quantity
        if not quantities:
            return

        products = await self.session.execute(
            select(Product).where(Product.id.in_(list(quantities))).with_for_update()
        )
        for product in products.scalars().all():
            product.stock = max(0, (product.stock or 0) - quantities[product.id])

    async def _seller_user_ids(self, order_id: int) -> List[int]:
        result = await self.session.execute(
            select(SellerProfile.user_id)
            .join(Product, Product.seller_id == SellerProfile.id)
            .join(OrderItem, OrderItem.product_id == Product.id)
            .where(OrderItem.order_id == order_id)
            .distinct()
        )
        return list(result.scalars().all())

    async def _mark_paid(
        self,
        order: Order,
        transaction_id: Optional[str] = None,
        result_desc: Optional[str] = None,
        paid_at: Optional[datetime] = None,
    ) -> bool:
        """Apply PENDING -> PAID. Returns False when the payment is already final."""
        if order.payment_status in FINAL_PAYMENT_STATUSES:
            return False

        order.payment_status = PAYMENT_PAID
        if order.status == ORDER_PENDING:
            order.status = ORDER_CONFIRMED
        if transaction_id:
            order.mpesa_transaction_id = transaction_id
        order.mpesa_result_code = "0"
        order.mpesa_result_desc = result_desc
        order.mpesa_payment_timestamp = paid_at or datetime.now()

        await self._decrement_stock(order.id)

        notifications = NotificationService(self.session)
        total = format_amount(order.total)
        for seller_user_id in await self._seller_user_ids(order.id):
            await notifications.notify(
                seller_user_id,
                NOTIFY_ORDER,
                "New Order Received",
                f"You have received a new order #{order.id} for {total}",
            )
        await notifications.notify(
            order.user_id,
            NOTIFY_PAYMENT,
            "Payment Received",
            f"Your payment of {total} for order #{order.id} was received.",
        )

        payments_completed_total.labels(payment_status=PAYMENT_PAID).inc()
        logger.info(
            "Order paid",
            order_id=order.id,
            transaction_id=order.mpesa_transaction_id,
            total=str(order.total),
        )
        return True

    async def _mark_failed(
        self,
        order: Order,
        result_code: Optional[str] = None,
        result_desc: Optional[str] = None,
        notify: bool = True,
    ) -> bool:
        """Apply PENDING -> FAILED. Returns False when the payment is already final."""
        if order.payment_status in FINAL_PAYMENT_STATUSES:
            return False

        order.payment_status = PAYMENT_FAILED
        if order.status == ORDER_PENDING:
            order.status = ORDER_CANCELLED
        order.mpesa_result_code = result_code
        order.mpesa_result_desc = result_desc

        if notify:
            await NotificationService(self.session).notify(
                order.user_id,
                NOTIFY_PAYMENT,
                "Payment Failed",
                f"Payment for order #{order.id} was not completed: {result_desc or 'unknown reason'}",
            )
        else:
            await self.session.flush()

        payments_completed_total.labels(payment_status=PAYMENT_FAILED).inc()
        logger.info(
            "Order payment failed",
            order_id=order.id,
            result_code=result_code,
            result_desc=result_desc,
        )
        return True

    @staticmethod
    def _parse_transaction_date(value: Optional[str]) -> Optional[datetime]:
        # Daraja sends TransactionDate as YYYYMMDDHHMMSS
        if not value:
            return None
        try:
            return datetime.strptime(value, "%Y%m%d%H%M%S")
        except ValueError:
            return None

    # -- STK Push ------------------------------------------------------------

    async def start_payment(self, order: Order, phone: str, customer_name: str) -> STKPushResult:
        """
        Send the STK Push for an order and remember Daraja's request ids.

        Raises:
            PaymentGatewayError: Daraja refused or was unreachable (order marked FAILED)
        """
        try:
            result = await self.client.initiate_stk_push(
                phone_number=phone,
                amount=order.total,
                order_reference=str(order.id),
                customer_name=customer_name,
            )
        except MpesaError as exc:
            mpesa_stk_push_total.labels(outcome="error").inc()
            logger.error(
                "STK Push failed",
                order_id=order.id,
                error=exc.message,
                error_code=exc.error_code,
            )
            await self._mark_failed(order, result_code=exc.error_code, result_desc=exc.message, notify=False)
            raise PaymentGatewayError(exc.message, order.id) from exc

        order.mpesa_phone_number = format_phone_number(phone)
        order.mpesa_merchant_request_id = result.merchant_request_id
        order.mpesa_checkout_request_id = result.checkout_request_id
        order.mpesa_requested_at = datetime.now()
        await self.session.flush()

        mpesa_stk_push_total.labels(outcome="simulated" if result.simulated else "accepted").inc()
        logger.info(
            "Payment started",
            order_id=order.id,
            checkout_request_id=result.checkout_request_id,
            simulated=result.simulated,
        )
        return result

    async def checkout(
        self,
        user: User,
        items: List[Dict[str, Any]],
        phone: Optional[str],
        customer_name: Optional[str],
        customer_email: Optional[str],
    ) -> Dict[str, Any]:
        """
        Create an M-Pesa order from the cart and prompt the buyer's phone.

        Raises:
            CheckoutValidationError: bad phone, name or email
            OrderServiceError: cart problems (empty, unknown product, stock)
            PaymentGatewayError: STK Push failed; the FAILED order is kept
        """
        if not items:
            raise CheckoutValidationError("Cart is empty")
        if not phone or not validate_phone_number(phone):
            raise CheckoutValidationError("Please provide a valid M-Pesa phone number (e.g. 07XXXXXXXX)")
        name = (customer_name or "").strip()
        if not name:
            raise CheckoutValidationError("Please provide your full name")
        email = (customer_email or "").strip()
        if not EMAIL_PATTERN.match(email):
            raise CheckoutValidationError("Please provide a valid email address")

        order = await OrderService(self.session).create_order(
            user=user,
            items=items,
            payment_method=PAYMENT_METHOD_MPESA,
            customer_name=name,
            customer_email=email,
            phone=format_phone_number(phone),
        )

        result = await self.start_payment(order, phone, name)

        if result.simulated:
            delay = self.client.config.simulation_delay_seconds
            message = (
                "Development mode: payment is simulated. "
                f"Check the payment status in {delay} seconds."
            )
        else:
            message = result.customer_message or "Please check your phone to complete the payment."

        return {
            "success": True,
            "order_id": order.id,
            "checkout_request_id": result.checkout_request_id,
            "message": message,
            "amount": float(order.total),
            "dev_mode": result.simulated,
        }

    # -- Callback ------------------------------------------------------------

    async def handle_callback(self, details: CallbackDetails) -> str:
        """
        Apply a Daraja STK callback.

        Returns the outcome label: ``paid``, ``failed``, ``duplicate`` or
        ``unknown_order``. The caller is responsible for ``session.commit()``.
        """
        order = await self._find_callback_order(details)
        if not order:
            logger.warning(
                "Callback for unknown order",
                merchant_request_id=details.merchant_request_id,
                checkout_request_id=details.checkout_request_id,
            )
            outcome = "unknown_order"
        elif order.payment_status in FINAL_PAYMENT_STATUSES:
            logger.info(
                "Duplicate callback ignored",
                order_id=order.id,
                payment_status=order.payment_status,
                result_code=details.result_code,
            )
            outcome = "duplicate"
        elif details.result_code == 0:
            if details.amount is not None and details.amount != Decimal(whole_shillings(order.total)):
                logger.warning(
                    "Callback amount mismatch",
                    order_id=order.id,
                    expected=whole_shillings(order.total),
                    received=str(details.amount),
                )
            await self._mark_paid(
                order,
                transaction_id=details.transaction_id,
                result_desc=details.result_desc,
                paid_at=self._parse_transaction_date(details.transaction_date),
            )
            outcome = "paid"
        else:
            await self._mark_failed(
                order,
                result_code=str(details.result_code),
                result_desc=details.result_desc,
            )
            outcome = "failed"

        mpesa_callbacks_total.labels(result=outcome).inc()
        return outcome

    # -- Status polling ------------------------------------------------------

    def _status_response(self, order: Order, message: str) -> Dict[str, Any]:
        return {
            "order_id": order.id,
            "payment_status": order.payment_status,
            "order_status": order.status,
            "transaction_id": order.mpesa_transaction_id,
            "payment_timestamp": (
                order.mpesa_payment_timestamp.isoformat() if order.mpesa_payment_timestamp else None
            ),
            "total": float(order.total),
            "message": message,
        }

    async def get_payment_status(self, user: User, order_id: int) -> Dict[str, Any]:
        """
        Report an order's payment state, reconciling with Daraja while it is pending.

        Raises:
            PaymentOrderNotFoundError: no such order for this user
        """
        result = await self.session.execute(
            select(Order).where(Order.id == order_id, Order.user_id == user.id)
        )
        order = result.scalar_one_or_none()
        if not order:
            raise PaymentOrderNotFoundError(order_id)

        if order.payment_status == PAYMENT_PAID:
            return self._status_response(order, "Payment completed successfully")
        if order.payment_status == PAYMENT_FAILED:
            return self._status_response(order, "Payment failed")
        if not order.mpesa_checkout_request_id:
            return self._status_response(order, "Payment is being processed")

        try:
            query = await self.client.query_stk_push(order.mpesa_checkout_request_id)
        except MpesaError as exc:
            logger.error(
                "STK query failed",
                order_id=order.id,
                checkout_request_id=order.mpesa_checkout_request_id,
                error=exc.message,
            )
            return self._status_response(order, "Unable to check payment status. Please try again later.")

        if query.is_pending:
            return self._status_response(order, "Payment is being processed. Please check your phone.")

        # A callback may have settled the order while Daraja was being queried
        order = await self._lock_order(order.id)
        if order.payment_status == PAYMENT_PAID:
            return self._status_response(order, "Payment completed successfully")
        if order.payment_status == PAYMENT_FAILED:
            return self._status_response(order, "Payment failed")

        if query.result_code == "0":
            await self._mark_paid(order, result_desc=query.result_desc)
            return self._status_response(order, "Payment completed successfully")

        if query.result_code == CANCELLED_RESULT_CODE:
            await self._mark_failed(order, result_code=query.result_code, result_desc="Payment was cancelled")
            return self._status_response(order, "Payment was cancelled")

        if query.result_code in FINAL_FAILURE_RESULT_CODES:
            await self._mark_failed(order, result_code=query.result_code, result_desc=query.result_desc)
            return self._status_response(order, f"Payment failed: {query.result_desc}")

        logger.info(
            "STK query still in progress",
            order_id=order.id,
            result_code=query.result_code,
            result_desc=query.result_desc,
        )
        return self._status_response(order, "Payment is being processed. Please check your phone.")
