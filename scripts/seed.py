#!/usr/bin/env python3
"""
Seed reference and demo data: cake categories, an admin, an approved demo
seller and a few of their products.

Safe to run repeatedly: rows are looked up by name/email and only created
when missing.

Usage:
  python scripts/seed.py
"""
import asyncio
import sys
from pathlib import Path

# Project root on PYTHONPATH
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from sqlalchemy import select

from backend.app.core.constants import ROLE_ADMIN, ROLE_SELLER, SELLER_APPROVED
from backend.app.core.database import async_session
from backend.app.core.logging import get_logger, setup_logging
from backend.app.models.category import Category
from backend.app.models.product import Product
from backend.app.models.seller import SellerProfile
from backend.app.models.user import User

logger = get_logger("seed")

PLACEHOLDER_IMAGE = "/placeholder.svg?height=400&width=400"

CATEGORIES = [
    ("Wedding Cakes", "Elegant multi-tier cakes perfect for your special day"),
    ("Birthday Cakes", "Fun and colorful cakes to celebrate another year"),
    ("Cupcakes", "Individual treats perfect for any occasion"),
    ("Custom Cakes", "Personalized cakes made to your specifications"),
    ("Cheesecakes", "Rich and creamy cheesecakes in various flavors"),
    ("Chocolate Cakes", "Rich and decadent chocolate cakes for chocolate lovers"),
    ("Fruit Cakes", "Fresh and fruity cakes with seasonal fruits"),
    ("Vegan Cakes", "Plant-based cakes made without animal products"),
]

ADMIN = {"email": "admin@landycakes.co.ke", "name": "Admin User"}
SELLER = {
    "email": "maria@sweetdreams.co.ke",
    "name": "Maria Wanjiku",
    "business_name": "Sweet Dreams Bakery",
    "description": "Artisan bakery specializing in custom wedding cakes and gourmet desserts.",
    "phone": "0712345678",
    "address": "Ngong Road, Nairobi",
}

# (name, category, price KSh, stock, featured)
PRODUCTS = [
    ("Elegant Rose Wedding Cake", "Wedding Cakes", 15000, 5, True),
    ("Rainbow Layer Birthday Cake", "Birthday Cakes", 3500, 10, True),
    ("Chocolate Fudge Birthday Cake", "Chocolate Cakes", 3000, 8, False),
    ("Red Velvet Cupcakes (6 pack)", "Cupcakes", 1200, 15, False),
    ("Passion Fruit Cheesecake", "Cheesecakes", 2800, 6, False),
]


async def _get_or_create_user(session, email: str, name: str, role: str) -> User:
    user = await session.scalar(select(User).where(User.email == email))
    if user is None:
        user = User(email=email, name=name, role=role)
        session.add(user)
        await session.flush()
        logger.info("User created", email=email, role=role)
    return user


async def seed() -> None:
    async with async_session() as session:
        categories = {}
        for name, description in CATEGORIES:
            category = await session.scalar(select(Category).where(Category.name == name))
            if category is None:
                category = Category(name=name, description=description, image=PLACEHOLDER_IMAGE)
                session.add(category)
                await session.flush()
                logger.info("Category created", name=name)
            categories[name] = category

        await _get_or_create_user(session, ADMIN["email"], ADMIN["name"], ROLE_ADMIN)

        seller_user = await _get_or_create_user(session, SELLER["email"], SELLER["name"], ROLE_SELLER)
        profile = await session.scalar(select(SellerProfile).where(SellerProfile.user_id == seller_user.id))
        if profile is None:
            profile = SellerProfile(
                user_id=seller_user.id,
                business_name=SELLER["business_name"],
                description=SELLER["description"],
                phone=SELLER["phone"],
                address=SELLER["address"],
                status=SELLER_APPROVED,
            )
            session.add(profile)
            await session.flush()
            logger.info("Seller profile created", business_name=profile.business_name)

        for name, category_name, price, stock, featured in PRODUCTS:
            exists = await session.scalar(
                select(Product.id).where(Product.seller_id == profile.id, Product.name == name)
            )
            if exists:
                continue
            session.add(Product(
                seller_id=profile.id,
                category_id=categories[category_name].id,
                name=name,
                description=f"{name} from {SELLER['business_name']}.",
                price=price,
                stock=stock,
                images=[PLACEHOLDER_IMAGE],
                is_featured=featured,
            ))
            logger.info("Product created", name=name)

        await session.commit()
    logger.info("Seed complete")


if __name__ == "__main__":
    setup_logging(json_format=False)
    asyncio.run(seed())
