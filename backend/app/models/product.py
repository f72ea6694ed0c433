from sqlalchemy import String, ForeignKey, DECIMAL, Text, Boolean, Index, Integer, Float, JSON
from sqlalchemy.orm import Mapped, mapped_column
from typing import Optional, List
from backend.app.core.base import Base, TimestampMixin


class Product(TimestampMixin, Base):
    __tablename__ = 'products'
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    seller_id: Mapped[int] = mapped_column(ForeignKey('seller_profiles.id', ondelete='CASCADE'))
    category_id: Mapped[Optional[int]] = mapped_column(ForeignKey('categories.id', ondelete='SET NULL'), nullable=True)
    name: Mapped[str] = mapped_column(String(255))
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    price: Mapped[float] = mapped_column(DECIMAL(10, 2))
    original_price: Mapped[Optional[float]] = mapped_column(DECIMAL(10, 2), nullable=True)
    stock: Mapped[int] = mapped_column(Integer, default=0)
    images: Mapped[Optional[List[str]]] = mapped_column(JSON(), nullable=True)  # image URLs
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    is_featured: Mapped[bool] = mapped_column(Boolean, default=False)
    flash_sale: Mapped[bool] = mapped_column(Boolean, default=False)
    # Denormalized from reviews, recomputed on every review write
    average_rating: Mapped[float] = mapped_column(Float, default=0)
    review_count: Mapped[int] = mapped_column(Integer, default=0)

    __table_args__ = (
        Index('ix_products_seller_id', 'seller_id'),
        Index('ix_products_category_id', 'category_id'),
        Index('ix_products_is_active', 'is_active'),
        Index('ix_products_seller_active', 'seller_id', 'is_active'),
        Index('ix_products_is_featured', 'is_featured'),
    )
