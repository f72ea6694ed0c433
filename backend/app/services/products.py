# backend/app/services/products.py
"""
Product service - product detail, seller catalogue management and admin curation.
"""
from decimal import Decimal, InvalidOperation
from typing import Optional, List, Dict, Any

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.constants import SELLER_APPROVED
from backend.app.core.exceptions import ServiceError
from backend.app.core.logging import get_logger
from backend.app.models.category import Category
from backend.app.models.order import OrderItem
from backend.app.models.product import Product
from backend.app.models.review import Review
from backend.app.models.seller import SellerProfile
from backend.app.models.user import User

logger = get_logger(__name__)


class ProductServiceError(ServiceError):
    """Base exception for product service errors."""


class ProductNotFoundError(ProductServiceError):
    def __init__(self, product_id: int):
        super().__init__(f"Product {product_id} not found", 404)


class InvalidProductError(ProductServiceError):
    def __init__(self, message: str):
        super().__init__(message, 400)


class SellerNotApprovedError(ProductServiceError):
    def __init__(self):
        super().__init__(
            "Your seller account is not yet approved. You can add products once an admin approves it.",
            403,
        )


class SellerFrozenError(ProductServiceError):
    def __init__(self):
        super().__init__("Your seller account is frozen. Contact support for details.", 403)


class ProductHasOrdersError(ProductServiceError):
    def __init__(self):
        super().__init__("Cannot delete product with existing orders", 400)


def _money(value) -> Optional[float]:
    return float(value) if value is not None else None


def category_to_dict(category: Optional[Category]) -> Optional[Dict[str, Any]]:
    if category is None:
        return None
    return {"id": category.id, "name": category.name}


def product_to_dict(product: Product, category: Optional[Category] = None) -> Dict[str, Any]:
    return {
        "id": product.id,
        "seller_id": product.seller_id,
        "category_id": product.category_id,
        "category": category_to_dict(category),
        "name": product.name,
        "description": product.description,
        "price": _money(product.price),
        "original_price": _money(product.original_price),
        "stock": product.stock,
        "images": product.images or [],
        "is_active": product.is_active,
        "is_featured": product.is_featured,
        "flash_sale": product.flash_sale,
        "average_rating": product.average_rating or 0,
        "review_count": product.review_count or 0,
        "created_at": product.created_at.isoformat() if product.created_at else None,
    }


def ensure_can_manage_products(seller: SellerProfile) -> None:
    """Only approved, unfrozen sellers may change their catalogue."""
    if seller.frozen:
        raise SellerFrozenError()
    if seller.status != SELLER_APPROVED:
        raise SellerNotApprovedError()


def _parse_price(value, field: str, required: bool) -> Optional[Decimal]:
    if value is None or value == "":
        if required:
            raise InvalidProductError(f"{field} is required")
        return None
    try:
        price = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise InvalidProductError(f"{field} must be a number")
    if price <= 0:
        raise InvalidProductError(f"{field} must be greater than 0")
    return price


def _parse_stock(value) -> int:
    try:
        stock = int(value)
    except (TypeError, ValueError):
        raise InvalidProductError("Stock must be a whole number")
    if stock < 0:
        raise InvalidProductError("Stock cannot be negative")
    return stock


def _parse_images(value) -> List[str]:
    if value is None:
        return []
    if not isinstance(value, list) or not all(isinstance(url, str) for url in value):
        raise InvalidProductError("Images must be a list of URLs")
    return [url.strip() for url in value if url.strip()]


class ProductService:
    """Service class for product operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_product(self, product_id: int) -> Product:
        product = await self.session.get(Product, product_id)
        if not product:
            raise ProductNotFoundError(product_id)
        return product

    async def get_product_detail(self, product_id: int) -> Dict[str, Any]:
        """Product with category, seller and reviews (newest first)."""
        result = await self.session.execute(
            select(Product, Category, SellerProfile, User)
            .outerjoin(Category, Product.category_id == Category.id)
            .join(SellerProfile, Product.seller_id == SellerProfile.id)
            .join(User, SellerProfile.user_id == User.id)
            .where(Product.id == product_id)
        )
        row = result.first()
        if not row:
            raise ProductNotFoundError(product_id)
        product, category, seller, owner = row

        reviews = await self.session.execute(
            select(Review, User)
            .join(User, Review.user_id == User.id)
            .where(Review.product_id == product_id)
            .order_by(Review.created_at.desc(), Review.id.desc())
        )

        data = product_to_dict(product, category)
        data["seller"] = {
            "id": seller.id,
            "business_name": seller.business_name,
            "user": {"id": owner.id, "name": owner.name},
        }
        data["reviews"] = [review_to_dict(review, user) for review, user in reviews.all()]
        return data

    # ----- Seller catalogue -----

    async def list_seller_products(self, seller: SellerProfile) -> List[Dict[str, Any]]:
        """Seller's products, newest first, with review stats and order count."""
        order_counts = (
            select(OrderItem.product_id, func.count(func.distinct(OrderItem.order_id)).label("order_count"))
            .group_by(OrderItem.product_id)
            .subquery()
        )
        result = await self.session.execute(
            select(Product, Category, order_counts.c.order_count)
            .outerjoin(Category, Product.category_id == Category.id)
            .outerjoin(order_counts, order_counts.c.product_id == Product.id)
            .where(Product.seller_id == seller.id)
            .order_by(Product.created_at.desc(), Product.id.desc())
        )
        products = []
        for product, category, order_count in result.all():
            data = product_to_dict(product, category)
            data["order_count"] = order_count or 0
            products.append(data)
        return products

    async def _get_category(self, category_id) -> Category:
        if category_id in (None, ""):
            raise InvalidProductError("Category is required")
        try:
            category = await self.session.get(Category, int(category_id))
        except (TypeError, ValueError):
            category = None
        if not category:
            raise InvalidProductError("Category not found")
        return category

    async def create_product(self, seller: SellerProfile, data: Dict[str, Any]) -> Dict[str, Any]:
        """
        Create an active product for the seller.

        Raises:
            SellerFrozenError, SellerNotApprovedError, InvalidProductError
        """
        ensure_can_manage_products(seller)

        name = (data.get("name") or "").strip()
        description = (data.get("description") or "").strip()
        if not name:
            raise InvalidProductError("Name is required")
        if not description:
            raise InvalidProductError("Description is required")
        price = _parse_price(data.get("price"), "Price", required=True)
        original_price = _parse_price(data.get("original_price"), "Original price", required=False)
        stock = _parse_stock(data.get("stock"))
        category = await self._get_category(data.get("category_id"))

        product = Product(
            seller_id=seller.id,
            category_id=category.id,
            name=name,
            description=description,
            price=price,
            original_price=original_price,
            stock=stock,
            images=_parse_images(data.get("images")),
            is_active=True,
        )
        self.session.add(product)
        await self.session.flush()
        logger.info("Product created", product_id=product.id, seller_id=seller.id)
        return product_to_dict(product, category)

    async def _get_owned_product(self, seller: SellerProfile, product_id: int) -> Product:
        product = await self.session.get(Product, product_id)
        if not product or product.seller_id != seller.id:
            raise ProductNotFoundError(product_id)
        return product

    async def update_product(self, seller: SellerProfile, product_id: int, data: Dict[str, Any]) -> Dict[str, Any]:
        """Partial update; images are kept unless a new list is given."""
        ensure_can_manage_products(seller)
        product = await self._get_owned_product(seller, product_id)

        if "name" in data and data["name"] is not None:
            name = data["name"].strip()
            if not name:
                raise InvalidProductError("Name is required")
            product.name = name
        if "description" in data and data["description"] is not None:
            description = data["description"].strip()
            if not description:
                raise InvalidProductError("Description is required")
            product.description = description
        if data.get("price") is not None:
            product.price = _parse_price(data["price"], "Price", required=True)
        if "original_price" in data:
            product.original_price = _parse_price(data["original_price"], "Original price", required=False)
        if data.get("stock") is not None:
            product.stock = _parse_stock(data["stock"])
        if data.get("category_id") is not None:
            product.category_id = (await self._get_category(data["category_id"])).id
        if data.get("images"):
            product.images = _parse_images(data["images"])
        if data.get("is_active") is not None:
            product.is_active = bool(data["is_active"])

        await self.session.flush()
        category = await self.session.get(Category, product.category_id) if product.category_id else None
        logger.info("Product updated", product_id=product.id, seller_id=seller.id)
        return product_to_dict(product, category)

    async def delete_product(self, seller: SellerProfile, product_id: int) -> None:
        ensure_can_manage_products(seller)
        product = await self._get_owned_product(seller, product_id)

        in_orders = await self.session.scalar(
            select(func.count(OrderItem.id)).where(OrderItem.product_id == product_id)
        )
        if in_orders:
            raise ProductHasOrdersError()

        await self.session.delete(product)
        await self.session.flush()
        logger.info("Product deleted", product_id=product_id, seller_id=seller.id)

    # ----- Admin curation -----

    async def set_featured(self, product_id: int, is_featured: bool) -> Dict[str, Any]:
        product = await self.get_product(product_id)
        product.is_featured = is_featured
        await self.session.flush()
        logger.info("Product featured flag changed", product_id=product_id, is_featured=is_featured)
        return product_to_dict(product)

    async def set_flash_sale(self, product_id: int, flash_sale: bool) -> Dict[str, Any]:
        product = await self.get_product(product_id)
        product.flash_sale = flash_sale
        await self.session.flush()
        logger.info("Product flash sale flag changed", product_id=product_id, flash_sale=flash_sale)
        return product_to_dict(product)


def review_to_dict(review: Review, user: Optional[User] = None) -> Dict[str, Any]:
    data = {
        "id": review.id,
        "product_id": review.product_id,
        "user_id": review.user_id,
        "rating": review.rating,
        "comment": review.comment,
        "created_at": review.created_at.isoformat() if review.created_at else None,
        "updated_at": review.updated_at.isoformat() if review.updated_at else None,
    }
    if user is not None:
        data["user"] = {"id": user.id, "name": user.name, "image": user.image}
    return data
