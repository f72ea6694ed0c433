"""
Profile service - the signed-in user's account and seller details.
"""
from typing import Optional, Dict, Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.constants import ROLE_SELLER, SELLER_PENDING
from backend.app.core.exceptions import ServiceError
from backend.app.core.logging import get_logger
from backend.app.models.seller import SellerProfile
from backend.app.models.user import User
from backend.app.services.sellers import seller_to_dict

logger = get_logger(__name__)


class ProfileServiceError(ServiceError):
    """Base exception for profile service errors."""


class ProfileValidationError(ProfileServiceError):
    def __init__(self, message: str):
        super().__init__(message, 400)


def user_to_dict(user: User) -> Dict[str, Any]:
    return {
        "id": user.id,
        "email": user.email,
        "name": user.name,
        "phone": user.phone,
        "address": user.address,
        "image": user.image,
        "role": user.role,
        "created_at": user.created_at.isoformat() if user.created_at else None,
    }


class ProfileService:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def _seller_profile(self, user_id: int) -> Optional[SellerProfile]:
        result = await self.session.execute(select(SellerProfile).where(SellerProfile.user_id == user_id))
        return result.scalar_one_or_none()

    async def get_profile(self, user: User) -> Dict[str, Any]:
        seller = await self._seller_profile(user.id)
        return {**user_to_dict(user), "seller_profile": seller_to_dict(seller) if seller else None}

    async def update_profile(self, user: User, data: Dict[str, Any]) -> Dict[str, Any]:
        """
        Update account fields; sellers also get their seller profile upserted.

        Raises:
            ProfileValidationError: missing name/email or email taken by another user
        """
        name = (data.get("name") or "").strip()
        email = (data.get("email") or "").strip()
        if not name or not email:
            raise ProfileValidationError("Name and email are required")

        if email != user.email:
            taken = await self.session.scalar(
                select(User.id).where(User.email == email, User.id != user.id)
            )
            if taken:
                raise ProfileValidationError("Email is already taken")

        user.name = name
        user.email = email
        if "phone" in data:
            user.phone = data.get("phone") or None
        if "address" in data:
            user.address = data.get("address") or None

        if user.role == ROLE_SELLER:
            seller = await self._seller_profile(user.id)
            if seller is None:
                seller = SellerProfile(user_id=user.id, status=SELLER_PENDING)
                self.session.add(seller)
            if data.get("business_name") is not None:
                seller.business_name = data["business_name"]
            if data.get("business_description") is not None:
                seller.description = data["business_description"]
            seller.phone = user.phone
            seller.address = user.address

        await self.session.flush()
        logger.info("Profile updated", user_id=user.id)
        return await self.get_profile(user)
