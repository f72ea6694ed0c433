from sqlalchemy import String, ForeignKey, Text, Boolean, Index
from sqlalchemy.orm import Mapped, mapped_column
from typing import Optional
from backend.app.core.base import Base, TimestampMixin


class SellerProfile(TimestampMixin, Base):
    __tablename__ = 'seller_profiles'

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(ForeignKey('users.id', ondelete='CASCADE'), unique=True)
    business_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    phone: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    address: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    logo: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    # PENDING -> APPROVED | REJECTED | SUSPENDED (admin moderation)
    status: Mapped[str] = mapped_column(String(20), default='PENDING')
    frozen: Mapped[bool] = mapped_column(Boolean, default=False)
    freeze_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    rejection_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    __table_args__ = (
        Index('ix_seller_profiles_status', 'status'),
    )
