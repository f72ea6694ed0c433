import asyncio
import sys

from sqlalchemy import select

from backend.app.core.constants import ROLE_ADMIN
from backend.app.core.database import async_session
from backend.app.models.user import User


async def make_admin(email: str):
    async with async_session() as session:
        user = await session.scalar(select(User).where(User.email == email))

        if user:
            user.role = ROLE_ADMIN
            print(f"User {email} is now ADMIN.")
        else:
            # Account not created yet: add it directly as admin
            session.add(User(email=email, role=ROLE_ADMIN))
            print(f"User {email} created as ADMIN.")

        await session.commit()

if __name__ == "__main__":
    email = sys.argv[1] if len(sys.argv) > 1 else input("Email to promote: ").strip()
    asyncio.run(make_admin(email))
