import asyncio

from backend.app.core.base import Base
from backend.app.core.database import engine
from backend.app.models import user, seller, category, product, order, review, notification  # noqa: F401


async def reset():
    print("Dropping all tables...")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        print("Tables dropped.")

        await conn.run_sync(Base.metadata.create_all)
        print("Schema recreated.")
    await engine.dispose()
    print("Database is ready. Run scripts/seed.py for demo data.")

if __name__ == "__main__":
    asyncio.run(reset())
