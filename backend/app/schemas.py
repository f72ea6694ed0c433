from pydantic import BaseModel, Field, field_validator
from typing import Any, Optional, List
from backend.app.core.sanitize import sanitize_user_input


def _clean(v: Optional[str], max_length: int) -> Optional[str]:
    if v is None:
        return None
    return sanitize_user_input(v, max_length=max_length)


# --- Cart / orders ---
class CartItem(BaseModel):
    product_id: int
    quantity: int = Field(..., ge=1)


class CheckoutBody(BaseModel):
    items: List[CartItem] = []
    phone: Optional[str] = None
    customer_name: Optional[str] = None
    customer_email: Optional[str] = None

    @field_validator("customer_name", "customer_email")
    @classmethod
    def sanitize_text_fields(cls, v: Optional[str]) -> Optional[str]:
        return _clean(v, 255)


class PaymentDetails(BaseModel):
    mpesa_number: Optional[str] = None


class OrderCreate(BaseModel):
    items: List[CartItem] = []
    shipping_address: Optional[dict] = None
    payment_method: str = "COD"
    payment_details: Optional[PaymentDetails] = None
    customer_info: Optional[dict] = None


# --- Products / reviews ---
class ProductCreate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    price: Optional[Any] = None
    original_price: Optional[Any] = None
    stock: Optional[Any] = 0
    category_id: Optional[Any] = None
    # Image URLs; uploads are handled outside the API
    images: Optional[List[str]] = None

    @field_validator("name", "description")
    @classmethod
    def sanitize_text_fields(cls, v: Optional[str]) -> Optional[str]:
        return _clean(v, 2000)


class ProductUpdate(ProductCreate):
    stock: Optional[Any] = None
    is_active: Optional[bool] = None


class ReviewCreate(BaseModel):
    # Validated in ReviewService so clients get a readable 400
    rating: Optional[Any] = None
    comment: Optional[str] = None

    @field_validator("comment")
    @classmethod
    def sanitize_comment(cls, v: Optional[str]) -> Optional[str]:
        return _clean(v, 2000)


# --- Seller / admin ---
class OrderStatusUpdate(BaseModel):
    status: Optional[str] = None


class SellerStatusUpdate(BaseModel):
    status: Optional[str] = None
    frozen: Optional[bool] = None
    reason: Optional[str] = None

    @field_validator("reason")
    @classmethod
    def sanitize_reason(cls, v: Optional[str]) -> Optional[str]:
        return _clean(v, 1000)


class SellerReject(BaseModel):
    reason: Optional[str] = None

    @field_validator("reason")
    @classmethod
    def sanitize_reason(cls, v: Optional[str]) -> Optional[str]:
        return _clean(v, 1000)


class FeaturedUpdate(BaseModel):
    is_featured: Optional[Any] = None


class FlashSaleUpdate(BaseModel):
    flash_sale: Optional[Any] = None


# --- Profile / categories ---
class ProfileUpdate(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    business_name: Optional[str] = None
    business_description: Optional[str] = None

    @field_validator("name", "email", "phone", "business_name")
    @classmethod
    def sanitize_short_fields(cls, v: Optional[str]) -> Optional[str]:
        return _clean(v, 255)

    @field_validator("address", "business_description")
    @classmethod
    def sanitize_long_fields(cls, v: Optional[str]) -> Optional[str]:
        return _clean(v, 2000)


class CategoryCreate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    image: Optional[str] = None

    @field_validator("name", "description")
    @classmethod
    def sanitize_text_fields(cls, v: Optional[str]) -> Optional[str]:
        return _clean(v, 500)
