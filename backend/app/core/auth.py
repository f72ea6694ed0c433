"""
Bearer token verification.

Tokens are HS256 JWTs issued by the storefront's identity provider and
signed with JWT_SECRET. Claims: ``sub`` (user id), ``role``, ``exp``.
This module only verifies tokens and resolves the user; login and
session handling live outside the API.
"""
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from fastapi import Depends, Header, HTTPException
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.api.deps import get_session
from backend.app.core.constants import ROLE_ADMIN, ROLE_BUYER, ROLE_SELLER
from backend.app.core.settings import get_settings
from backend.app.models.seller import SellerProfile
from backend.app.models.user import User

JWT_ALGORITHM = "HS256"
JWT_EXPIRY_HOURS = 24 * 7  # 7 days


def _jwt_secret() -> str:
    secret = get_settings().JWT_SECRET
    if not secret:
        raise HTTPException(status_code=500, detail="Server configuration error: JWT_SECRET not set")
    return secret


def create_access_token(user_id: int, role: str = ROLE_BUYER, expires_in_hours: int = JWT_EXPIRY_HOURS) -> str:
    """
    Create a signed access token for a user.

    Used by the seed script and tests; production tokens come from the
    identity provider sharing JWT_SECRET.
    """
    now = datetime.now(timezone.utc)
    payload = {
        "sub": str(user_id),
        "role": role,
        "exp": now + timedelta(hours=expires_in_hours),
        "iat": now,
    }
    return jwt.encode(payload, _jwt_secret(), algorithm=JWT_ALGORITHM)


def decode_access_token(token: str) -> Optional[int]:
    """
    Decode a token and return the user id, or None if it is invalid or expired.
    """
    try:
        payload = jwt.decode(token, _jwt_secret(), algorithms=[JWT_ALGORITHM])
        return int(payload["sub"])
    except (jwt.InvalidTokenError, ValueError, KeyError):
        return None


def _extract_bearer(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    parts = authorization.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return None
    return parts[1]


async def get_current_user(
    authorization: Optional[str] = Header(None),
    session: AsyncSession = Depends(get_session),
) -> User:
    """
    FastAPI dependency: resolve the authenticated user from ``Authorization: Bearer``.

        @router.get("/orders")
        async def list_orders(user: User = Depends(get_current_user)):
            ...

    Raises:
        HTTPException 401: missing/invalid token or unknown user
    """
    if not authorization:
        raise HTTPException(status_code=401, detail="Unauthorized")

    token = _extract_bearer(authorization)
    if not token:
        raise HTTPException(
            status_code=401,
            detail="Invalid Authorization header format. Expected: Bearer <token>",
        )

    user_id = decode_access_token(token)
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid or expired token")

    user = await session.get(User, user_id)
    if not user:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return user


async def get_current_user_optional(
    authorization: Optional[str] = Header(None),
    session: AsyncSession = Depends(get_session),
) -> Optional[User]:
    """
    Optional authentication: returns None instead of raising.

    Use where anonymous access is allowed but a signed-in user gets more
    (e.g. review eligibility on the product page).
    """
    token = _extract_bearer(authorization)
    if not token:
        return None
    user_id = decode_access_token(token)
    if not user_id:
        return None
    return await session.get(User, user_id)


async def require_admin(user: User = Depends(get_current_user)) -> User:
    """Dependency: the authenticated user must have role ADMIN."""
    if user.role != ROLE_ADMIN:
        raise HTTPException(status_code=403, detail="Forbidden")
    return user


async def get_seller_profile(
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
) -> SellerProfile:
    """
    Dependency: the authenticated user must be a SELLER with a seller profile.

    Raises:
        HTTPException 403: role is not SELLER
        HTTPException 404: no seller profile yet
    """
    if user.role != ROLE_SELLER:
        raise HTTPException(status_code=403, detail="Forbidden")
    result = await session.execute(select(SellerProfile).where(SellerProfile.user_id == user.id))
    profile = result.scalar_one_or_none()
    if not profile:
        raise HTTPException(status_code=404, detail="Seller profile not found")
    return profile
