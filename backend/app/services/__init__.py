# backend/app/services/__init__.py
"""
Services layer for business logic.
Keeps API endpoints thin and business logic testable and reusable.
"""

from backend.app.services.orders import (
    OrderService,
    OrderServiceError,
    InsufficientStockError,
)
from backend.app.services.payment import (
    PaymentService,
    PaymentServiceError,
    PaymentGatewayError,
)
from backend.app.services.products import ProductService, ProductServiceError
from backend.app.services.reviews import ReviewService, ReviewServiceError
from backend.app.services.sellers import SellerService, SellerServiceError
from backend.app.services.profile import ProfileService, ProfileServiceError
from backend.app.services.categories import CategoryService, CategoryServiceError
from backend.app.services.notifications import NotificationService, NotificationServiceError
from backend.app.services.cache import CacheService

__all__ = [
    # Order service
    "OrderService",
    "OrderServiceError",
    "InsufficientStockError",
    # Payment service
    "PaymentService",
    "PaymentServiceError",
    "PaymentGatewayError",
    # Catalogue
    "ProductService",
    "ProductServiceError",
    "ReviewService",
    "ReviewServiceError",
    "CategoryService",
    "CategoryServiceError",
    # Accounts
    "SellerService",
    "SellerServiceError",
    "ProfileService",
    "ProfileServiceError",
    "NotificationService",
    "NotificationServiceError",
    # Cache service
    "CacheService",
]
