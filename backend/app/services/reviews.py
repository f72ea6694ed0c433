"""
Review service - verified-purchase product reviews.

A buyer may review a product once they have a PAID order containing it that
was DELIVERED or COMPLETED. Reviewing again updates the existing review.
"""
from typing import Optional, Dict, Any

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.constants import PAYMENT_PAID, RECEIVED_ORDER_STATUSES
from backend.app.core.exceptions import ServiceError
from backend.app.core.logging import get_logger
from backend.app.models.order import Order, OrderItem
from backend.app.models.product import Product
from backend.app.models.review import Review
from backend.app.models.user import User
from backend.app.services.products import review_to_dict

logger = get_logger(__name__)

MIN_COMMENT_LENGTH = 10


class ReviewServiceError(ServiceError):
    """Base exception for review service errors."""


class InvalidReviewError(ReviewServiceError):
    def __init__(self, message: str):
        super().__init__(message, 400)


class ReviewProductNotFoundError(ReviewServiceError):
    def __init__(self, product_id: int):
        super().__init__(f"Product {product_id} not found", 404)


class ReviewNotAllowedError(ReviewServiceError):
    def __init__(self):
        super().__init__("You can only review products from your delivered orders", 403)


class ReviewService:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def can_review(self, user_id: int, product_id: int) -> bool:
        """True when the user has a paid, received order containing the product."""
        found = await self.session.scalar(
            select(func.count(Order.id))
            .join(OrderItem, OrderItem.order_id == Order.id)
            .where(
                Order.user_id == user_id,
                OrderItem.product_id == product_id,
                Order.payment_status == PAYMENT_PAID,
                Order.status.in_(RECEIVED_ORDER_STATUSES),
            )
        )
        return bool(found)

    async def _get_user_review(self, user_id: int, product_id: int) -> Optional[Review]:
        result = await self.session.execute(
            select(Review).where(Review.user_id == user_id, Review.product_id == product_id)
        )
        return result.scalar_one_or_none()

    async def _refresh_product_rating(self, product: Product) -> None:
        average, count = (await self.session.execute(
            select(func.avg(Review.rating), func.count(Review.id)).where(Review.product_id == product.id)
        )).one()
        product.average_rating = round(float(average), 2) if average is not None else 0
        product.review_count = count or 0

    async def submit_review(self, user: User, product_id: int, rating, comment: Optional[str]) -> Dict[str, Any]:
        """
        Create or update the user's review and recompute the product's rating.

        Raises:
            InvalidReviewError: rating outside 1..5 or comment too short
            ReviewProductNotFoundError: unknown product
            ReviewNotAllowedError: no delivered, paid order with this product
        """
        if isinstance(rating, bool) or not isinstance(rating, int) or not 1 <= rating <= 5:
            raise InvalidReviewError("Rating must be between 1 and 5")
        comment = (comment or "").strip()
        if len(comment) < MIN_COMMENT_LENGTH:
            raise InvalidReviewError(f"Review must be at least {MIN_COMMENT_LENGTH} characters")

        product = await self.session.get(Product, product_id)
        if not product:
            raise ReviewProductNotFoundError(product_id)

        if not await self.can_review(user.id, product_id):
            raise ReviewNotAllowedError()

        review = await self._get_user_review(user.id, product_id)
        if review:
            review.rating = rating
            review.comment = comment
        else:
            review = Review(user_id=user.id, product_id=product_id, rating=rating, comment=comment)
            self.session.add(review)
        await self.session.flush()

        await self._refresh_product_rating(product)
        await self.session.flush()

        logger.info("Review saved", product_id=product_id, user_id=user.id, rating=rating)
        return {
            "success": True,
            "review": review_to_dict(review, user),
            "average_rating": product.average_rating,
            "review_count": product.review_count,
        }

    async def get_review_state(self, product_id: int, user: Optional[User]) -> Dict[str, Any]:
        """Reviews for a product plus the caller's eligibility and own review."""
        result = await self.session.execute(
            select(Review, User)
            .join(User, Review.user_id == User.id)
            .where(Review.product_id == product_id)
            .order_by(Review.created_at.desc(), Review.id.desc())
        )
        reviews = [review_to_dict(review, author) for review, author in result.all()]

        can_review = False
        user_review = None
        if user is not None:
            can_review = await self.can_review(user.id, product_id)
            own = await self._get_user_review(user.id, product_id)
            if own:
                user_review = review_to_dict(own, user)

        return {
            "reviews": reviews,
            "can_review": can_review,
            "has_reviewed": user_review is not None,
            "user_review": user_review,
        }
