# backend/app/services/orders.py
"""
Order service - pricing, order creation and the buyer's order history.
"""

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
from typing import Optional, List, Dict, Any
from decimal import Decimal
from datetime import datetime, timedelta

from backend.app.core.constants import (
    ORDER_PENDING,
    PAYMENT_PENDING,
    PAYMENT_METHODS,
    SELLER_APPROVED,
)
from backend.app.core.exceptions import ServiceError
from backend.app.core.logging import get_logger
from backend.app.core.metrics import orders_created_total
from backend.app.core.settings import get_settings
from backend.app.models.order import Order, OrderItem
from backend.app.models.product import Product
from backend.app.models.seller import SellerProfile
from backend.app.models.user import User

logger = get_logger(__name__)

ESTIMATED_DELIVERY_DAYS = 2


class OrderServiceError(ServiceError):
    """Base exception for order service errors."""


class EmptyOrderError(OrderServiceError):
    def __init__(self):
        super().__init__("Cart is empty", 400)


class InvalidQuantityError(OrderServiceError):
    def __init__(self, product_id: int):
        super().__init__(f"Invalid quantity for product {product_id}", 400)


class ProductNotFoundError(OrderServiceError):
    def __init__(self, product_id: int):
        super().__init__(f"Product {product_id} not found", 404)


class ProductUnavailableError(OrderServiceError):
    def __init__(self, product_name: str):
        super().__init__(f"{product_name} is no longer available", 400)


class SellerUnavailableError(OrderServiceError):
    def __init__(self, product_name: str):
        super().__init__(f"The seller of {product_name} is not accepting orders", 400)


class InsufficientStockError(OrderServiceError):
    def __init__(self, product_name: str, available: int):
        super().__init__(f"Only {available} of {product_name} left in stock", 409)


class InvalidPaymentMethodError(OrderServiceError):
    def __init__(self, payment_method: str):
        super().__init__(f"Unsupported payment method '{payment_method}'", 400)


def calculate_delivery_fee(subtotal: Decimal) -> Decimal:
    """Free delivery above the threshold, flat fee otherwise."""
    settings = get_settings()
    if subtotal > settings.FREE_DELIVERY_THRESHOLD:
        return Decimal("0")
    return Decimal(settings.DELIVERY_FEE)


def _money(value) -> Optional[float]:
    return float(value) if value is not None else None


def order_summary(order: Order) -> Dict[str, Any]:
    """Order fields shared by buyer, seller and payment views."""
    created_at = order.created_at
    return {
        "id": order.id,
        "user_id": order.user_id,
        "status": order.status,
        "payment_method": order.payment_method,
        "payment_status": order.payment_status,
        "subtotal": _money(order.subtotal),
        "delivery_fee": _money(order.delivery_fee),
        "total": _money(order.total),
        "shipping_address": order.shipping_address,
        "customer_name": order.customer_name,
        "customer_email": order.customer_email,
        "customer_info": order.customer_info,
        "mpesa_checkout_request_id": order.mpesa_checkout_request_id,
        "mpesa_transaction_id": order.mpesa_transaction_id,
        "mpesa_payment_timestamp": (
            order.mpesa_payment_timestamp.isoformat() if order.mpesa_payment_timestamp else None
        ),
        "created_at": created_at.isoformat() if created_at else None,
        "estimated_delivery": (
            (created_at + timedelta(days=ESTIMATED_DELIVERY_DAYS)).isoformat() if created_at else None
        ),
    }


class OrderService:
    """Service class for order operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def price_items(self, items: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """
        Resolve cart lines against the catalogue.

        Each input line is ``{"product_id": int, "quantity": int}``; repeated
        products are merged. Returns ``{"product", "quantity", "price"}`` lines
        where ``price`` is the current database price.

        Raises:
            EmptyOrderError, InvalidQuantityError, ProductNotFoundError,
            ProductUnavailableError, SellerUnavailableError, InsufficientStockError
        """
        if not items:
            raise EmptyOrderError()

        quantities: Dict[int, int] = {}
        for item in items:
            product_id = item.get("product_id")
            quantity = item.get("quantity")
            if not isinstance(quantity, int) or quantity < 1:
                raise InvalidQuantityError(product_id)
            quantities[product_id] = quantities.get(product_id, 0) + quantity

        result = await self.session.execute(
            select(Product, SellerProfile)
            .join(SellerProfile, Product.seller_id == SellerProfile.id)
            .where(Product.id.in_(list(quantities)))
        )
        found = {product.id: (product, seller) for product, seller in result.all()}

        lines = []
        for product_id, quantity in quantities.items():
            if product_id not in found:
                raise ProductNotFoundError(product_id)
            product, seller = found[product_id]
            if not product.is_active:
                raise ProductUnavailableError(product.name)
            if seller.status != SELLER_APPROVED or seller.frozen:
                raise SellerUnavailableError(product.name)
            if product.stock < quantity:
                raise InsufficientStockError(product.name, product.stock)
            lines.append({"product": product, "quantity": quantity, "price": Decimal(product.price)})
        return lines

    async def create_order(
        self,
        user: User,
        items: List[Dict[str, Any]],
        payment_method: str,
        shipping_address: Optional[dict] = None,
        customer_name: Optional[str] = None,
        customer_email: Optional[str] = None,
        phone: Optional[str] = None,
        customer_info: Optional[dict] = None,
    ) -> Order:
        """
        Create a PENDING order with price snapshots for every line.

        The order is flushed, not committed; the caller owns the transaction.
        """
        if payment_method not in PAYMENT_METHODS:
            raise InvalidPaymentMethodError(payment_method)

        lines = await self.price_items(items)
        subtotal = sum((line["price"] * line["quantity"] for line in lines), Decimal("0"))
        delivery_fee = calculate_delivery_fee(subtotal)

        order = Order(
            user_id=user.id,
            subtotal=subtotal,
            delivery_fee=delivery_fee,
            total=subtotal + delivery_fee,
            status=ORDER_PENDING,
            payment_method=payment_method,
            payment_status=PAYMENT_PENDING,
            shipping_address=shipping_address,
            customer_name=customer_name or user.name,
            customer_email=customer_email or user.email,
            customer_info=customer_info,
            mpesa_phone_number=phone,
        )
        self.session.add(order)
        await self.session.flush()

        for line in lines:
            self.session.add(OrderItem(
                order_id=order.id,
                product_id=line["product"].id,
                quantity=line["quantity"],
                price=line["price"],
            ))
        await self.session.flush()

        orders_created_total.labels(payment_method=payment_method).inc()
        logger.info(
            "Order created",
            order_id=order.id,
            user_id=user.id,
            payment_method=payment_method,
            total=str(order.total),
            items=len(lines),
        )
        return order

    async def get_order_items(self, order_ids: List[int]) -> Dict[int, List[Dict[str, Any]]]:
        """Order lines with product and seller details, keyed by order id."""
        if not order_ids:
            return {}
        result = await self.session.execute(
            select(OrderItem, Product, SellerProfile)
            .join(Product, OrderItem.product_id == Product.id)
            .join(SellerProfile, Product.seller_id == SellerProfile.id)
            .where(OrderItem.order_id.in_(order_ids))
            .order_by(OrderItem.id)
        )
        grouped: Dict[int, List[Dict[str, Any]]] = {}
        for item, product, seller in result.all():
            grouped.setdefault(item.order_id, []).append({
                "id": item.id,
                "product_id": product.id,
                "quantity": item.quantity,
                "price": _money(item.price),
                "product": {
                    "id": product.id,
                    "name": product.name,
                    "images": product.images or [],
                    "seller": {"id": seller.id, "business_name": seller.business_name},
                },
            })
        return grouped

    async def serialize_order(self, order: Order) -> Dict[str, Any]:
        items = await self.get_order_items([order.id])
        return {**order_summary(order), "items": items.get(order.id, [])}

    async def list_user_orders(self, user_id: int) -> List[Dict[str, Any]]:
        """The user's orders, newest first."""
        result = await self.session.execute(
            select(Order)
            .where(Order.user_id == user_id)
            .order_by(Order.created_at.desc(), Order.id.desc())
        )
        orders = result.scalars().all()
        items = await self.get_order_items([o.id for o in orders])
        return [{**order_summary(o), "items": items.get(o.id, [])} for o in orders]
