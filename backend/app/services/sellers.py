# backend/app/services/sellers.py
"""
Seller service - seller-side order handling, admin moderation and the public sellers directory.
"""
from typing import Optional, List, Dict, Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.constants import (
    FINAL_ORDER_STATUSES,
    NOTIFY_ACCOUNT_FREEZE,
    NOTIFY_ACCOUNT_UNFREEZE,
    NOTIFY_ORDER_STATUS,
    NOTIFY_SELLER_STATUS,
    ROLE_ADMIN,
    ROLE_SELLER,
    SELLER_APPROVED,
    SELLER_ORDER_STATUSES,
    SELLER_REJECTED,
    SELLER_STATUSES,
)
from backend.app.core.exceptions import ServiceError
from backend.app.core.logging import get_logger
from backend.app.models.order import Order, OrderItem
from backend.app.models.product import Product
from backend.app.models.seller import SellerProfile
from backend.app.models.user import User
from backend.app.services.notifications import NotificationService
from backend.app.services.orders import order_summary

logger = get_logger(__name__)

ORDER_STATUS_MESSAGES = {
    "PENDING": "is pending",
    "PREPARING": "is being prepared",
    "READY": "is ready",
    "DELIVERED": "has been delivered",
    "CANCELLED": "has been cancelled",
}


class SellerServiceError(ServiceError):
    """Base exception for seller service errors."""


class SellerNotFoundError(SellerServiceError):
    def __init__(self, seller_id: int):
        super().__init__(f"Seller {seller_id} not found", 404)


class InvalidSellerStatusError(SellerServiceError):
    def __init__(self):
        super().__init__("Invalid status", 400)


class SellerOrderNotFoundError(SellerServiceError):
    def __init__(self, order_id: int):
        super().__init__(f"Order {order_id} not found", 404)


class OrderLockedError(SellerServiceError):
    def __init__(self, order_id: int, status: str):
        super().__init__(f"Order {order_id} is {status} and can no longer be changed", 409)


def seller_to_dict(seller: SellerProfile) -> Dict[str, Any]:
    return {
        "id": seller.id,
        "user_id": seller.user_id,
        "business_name": seller.business_name,
        "description": seller.description,
        "phone": seller.phone,
        "address": seller.address,
        "logo": seller.logo,
        "status": seller.status,
        "frozen": seller.frozen,
        "freeze_reason": seller.freeze_reason,
        "rejection_reason": seller.rejection_reason,
    }


class SellerService:
    """Service class for seller operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_seller(self, seller_id: int) -> SellerProfile:
        seller = await self.session.get(SellerProfile, seller_id)
        if not seller:
            raise SellerNotFoundError(seller_id)
        return seller

    # ----- Seller orders -----

    async def list_orders(self, seller: SellerProfile) -> List[Dict[str, Any]]:
        """
        Orders containing the seller's products, newest first.

        Each order carries only this seller's lines and a seller-scoped total.
        """
        result = await self.session.execute(
            select(Order, OrderItem, Product, User)
            .join(OrderItem, OrderItem.order_id == Order.id)
            .join(Product, OrderItem.product_id == Product.id)
            .join(User, Order.user_id == User.id)
            .where(Product.seller_id == seller.id)
            .order_by(Order.created_at.desc(), Order.id.desc(), OrderItem.id)
        )

        grouped: Dict[int, Dict[str, Any]] = {}
        for order, item, product, buyer in result.all():
            entry = grouped.get(order.id)
            if entry is None:
                entry = {
                    **order_summary(order),
                    "items": [],
                    "seller_total": 0.0,
                    "buyer": {
                        "id": buyer.id,
                        "name": buyer.name,
                        "email": buyer.email,
                        "phone": buyer.phone,
                        "address": buyer.address,
                    },
                }
                grouped[order.id] = entry
            line_total = float(item.price) * item.quantity
            entry["items"].append({
                "id": item.id,
                "product_id": product.id,
                "product_name": product.name,
                "images": product.images or [],
                "quantity": item.quantity,
                "price": float(item.price),
            })
            entry["seller_total"] += line_total
        return list(grouped.values())

    async def update_order_status(self, seller: SellerProfile, order_id: int, status: Optional[str]) -> Dict[str, Any]:
        """
        Move an order containing the seller's products to a new status.

        Raises:
            InvalidSellerStatusError: status not allowed for sellers
            SellerOrderNotFoundError: order has none of this seller's items
            OrderLockedError: order is already CANCELLED or COMPLETED
        """
        if status not in SELLER_ORDER_STATUSES:
            raise InvalidSellerStatusError()

        owns = await self.session.scalar(
            select(OrderItem.id)
            .join(Product, OrderItem.product_id == Product.id)
            .where(OrderItem.order_id == order_id, Product.seller_id == seller.id)
            .limit(1)
        )
        if not owns:
            raise SellerOrderNotFoundError(order_id)

        result = await self.session.execute(
            select(Order).where(Order.id == order_id).with_for_update()
        )
        order = result.scalar_one()
        if order.status in FINAL_ORDER_STATUSES:
            raise OrderLockedError(order_id, order.status)

        old_status = order.status
        order.status = status
        await NotificationService(self.session).notify(
            order.user_id,
            NOTIFY_ORDER_STATUS,
            "Order Status Updated",
            f"Your order #{order.id} {ORDER_STATUS_MESSAGES.get(status, status.lower())}.",
        )
        logger.info(
            "Seller updated order status",
            order_id=order.id,
            seller_id=seller.id,
            old_status=old_status,
            new_status=status,
        )
        return order_summary(order)

    # ----- Admin moderation -----

    async def set_status(
        self,
        seller_id: int,
        status: Optional[str] = None,
        frozen: Optional[bool] = None,
        reason: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Update moderation status and/or freeze flag, notifying the seller.

        Raises:
            InvalidSellerStatusError, SellerNotFoundError
        """
        if status is None and frozen is None:
            raise InvalidSellerStatusError()
        if status is not None and status not in SELLER_STATUSES:
            raise InvalidSellerStatusError()

        seller = await self.get_seller(seller_id)
        notifications = NotificationService(self.session)

        if status is not None:
            seller.status = status
            if status == SELLER_REJECTED and reason:
                seller.rejection_reason = reason
            if status == SELLER_APPROVED:
                user = await self.session.get(User, seller.user_id)
                if user and user.role != ROLE_ADMIN:
                    user.role = ROLE_SELLER

        if frozen is not None:
            seller.frozen = frozen
            seller.freeze_reason = reason if frozen else None
            if frozen:
                await notifications.notify(
                    seller.user_id,
                    NOTIFY_ACCOUNT_FREEZE,
                    "Account Frozen",
                    f"Your seller account has been frozen. Reason: {reason or 'Not specified'}",
                )
            else:
                await notifications.notify(
                    seller.user_id,
                    NOTIFY_ACCOUNT_UNFREEZE,
                    "Account Unfrozen",
                    "Your seller account has been unfrozen. You can manage your products again.",
                )
        else:
            if status == SELLER_APPROVED:
                title, message = "Seller Account Approved", "Congratulations! Your seller account has been approved."
            elif status == SELLER_REJECTED:
                title = "Seller Account Rejected"
                message = f"Your seller application was rejected. Reason: {reason or 'Not specified'}"
            else:
                title, message = "Seller Account Status Updated", f"Your seller account is under review ({status})."
            await notifications.notify(seller.user_id, NOTIFY_SELLER_STATUS, title, message)

        logger.info("Seller status updated", seller_id=seller.id, status=seller.status, frozen=seller.frozen)
        return seller_to_dict(seller)

    async def reject(self, seller_id: int, reason: Optional[str] = None) -> Dict[str, Any]:
        return await self.set_status(seller_id, status=SELLER_REJECTED, reason=reason)

    # ----- Public directory -----

    async def list_approved(self) -> List[Dict[str, Any]]:
        result = await self.session.execute(
            select(SellerProfile.id, SellerProfile.business_name)
            .where(SellerProfile.status == SELLER_APPROVED)
            .order_by(SellerProfile.business_name)
        )
        return [{"id": seller_id, "business_name": name} for seller_id, name in result.all()]
