from sqlalchemy import String, ForeignKey, DateTime, DECIMAL, Text, Index, Integer, JSON
from sqlalchemy.orm import Mapped, mapped_column
from datetime import datetime
from typing import Optional
from backend.app.core.base import Base, TimestampMixin


class Order(TimestampMixin, Base):
    __tablename__ = 'orders'
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(ForeignKey('users.id'))
    subtotal: Mapped[float] = mapped_column(DECIMAL(10, 2), default=0)
    delivery_fee: Mapped[float] = mapped_column(DECIMAL(10, 2), default=0)
    total: Mapped[float] = mapped_column(DECIMAL(10, 2))
    status: Mapped[str] = mapped_column(String(20), default='PENDING')
    payment_method: Mapped[str] = mapped_column(String(20), default='MPESA')
    payment_status: Mapped[str] = mapped_column(String(20), default='PENDING')
    shipping_address: Mapped[Optional[dict]] = mapped_column(JSON(), nullable=True)
    customer_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    customer_email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    customer_info: Mapped[Optional[dict]] = mapped_column(JSON(), nullable=True)
    # M-Pesa STK Push tracking
    mpesa_phone_number: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    mpesa_merchant_request_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    mpesa_checkout_request_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    mpesa_transaction_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    mpesa_result_code: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    mpesa_result_desc: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    mpesa_requested_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    mpesa_payment_timestamp: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    __table_args__ = (
        Index('ix_orders_user_id', 'user_id'),
        Index('ix_orders_status', 'status'),
        Index('ix_orders_payment_status', 'payment_status'),
        Index('ix_orders_created_at', 'created_at'),
        Index('ix_orders_user_created', 'user_id', 'created_at'),
        Index('ix_orders_mpesa_merchant_request_id', 'mpesa_merchant_request_id'),
        Index('ix_orders_mpesa_checkout_request_id', 'mpesa_checkout_request_id'),
    )


class OrderItem(Base):
    __tablename__ = 'order_items'
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    order_id: Mapped[int] = mapped_column(ForeignKey('orders.id', ondelete='CASCADE'))
    product_id: Mapped[int] = mapped_column(ForeignKey('products.id'))
    quantity: Mapped[int] = mapped_column(Integer)
    # Unit price at order time
    price: Mapped[float] = mapped_column(DECIMAL(10, 2))

    __table_args__ = (
        Index('ix_order_items_order_id', 'order_id'),
        Index('ix_order_items_product_id', 'product_id'),
    )
