"""
Category service - category listing (cached) and admin creation.
"""
from typing import Optional, List, Dict, Any

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.exceptions import ServiceError
from backend.app.core.logging import get_logger
from backend.app.models.category import Category
from backend.app.models.product import Product
from backend.app.services.cache import CacheService

logger = get_logger(__name__)


class CategoryServiceError(ServiceError):
    """Base exception for category service errors."""


class CategoryExistsError(CategoryServiceError):
    def __init__(self, name: str):
        super().__init__(f"Category '{name}' already exists", 409)


class InvalidCategoryError(CategoryServiceError):
    def __init__(self, message: str):
        super().__init__(message, 400)


def category_to_dict(category: Category, product_count: int = 0) -> Dict[str, Any]:
    return {
        "id": category.id,
        "name": category.name,
        "description": category.description,
        "image": category.image,
        "product_count": product_count,
    }


class CategoryService:
    def __init__(self, session: AsyncSession, cache: Optional[CacheService] = None):
        self.session = session
        self.cache = cache

    async def list_categories(self) -> List[Dict[str, Any]]:
        """Categories by name with active product counts, served from cache when warm."""
        if self.cache:
            cached = await self.cache.get_categories()
            if cached is not None:
                return cached

        counts = (
            select(Product.category_id, func.count(Product.id).label("product_count"))
            .where(Product.is_active.is_(True))
            .group_by(Product.category_id)
            .subquery()
        )
        result = await self.session.execute(
            select(Category, counts.c.product_count)
            .outerjoin(counts, counts.c.category_id == Category.id)
            .order_by(Category.name)
        )
        categories = [category_to_dict(category, count or 0) for category, count in result.all()]

        if self.cache:
            await self.cache.set_categories(categories)
        return categories

    async def create_category(
        self,
        name: Optional[str],
        description: Optional[str] = None,
        image: Optional[str] = None,
    ) -> Dict[str, Any]:
        name = (name or "").strip()
        if not name:
            raise InvalidCategoryError("Name is required")

        exists = await self.session.scalar(select(Category.id).where(Category.name == name))
        if exists:
            raise CategoryExistsError(name)

        category = Category(name=name, description=description, image=image)
        self.session.add(category)
        await self.session.flush()

        if self.cache:
            await self.cache.invalidate_categories()
        logger.info("Category created", category_id=category.id, name=name)
        return category_to_dict(category)
