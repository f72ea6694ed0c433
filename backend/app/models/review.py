from sqlalchemy import ForeignKey, Text, Integer, Index, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column
from backend.app.core.base import Base, TimestampMixin


class Review(TimestampMixin, Base):
    __tablename__ = 'reviews'
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(ForeignKey('users.id', ondelete='CASCADE'))
    product_id: Mapped[int] = mapped_column(ForeignKey('products.id', ondelete='CASCADE'))
    rating: Mapped[int] = mapped_column(Integer)
    comment: Mapped[str] = mapped_column(Text)

    __table_args__ = (
        UniqueConstraint('user_id', 'product_id', name='uq_reviews_user_product'),
        Index('ix_reviews_product_id', 'product_id'),
    )
