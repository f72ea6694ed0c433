"""
Redis Cache Service for caching reference data.
Provides TTL-based caching for the category listing and other lookup data.
"""
import json
from typing import Optional, Any, List
from redis.asyncio import Redis

from backend.app.core.config import REDIS_HOST, REDIS_PORT, REDIS_DB


class CacheService:
    """Service for caching operations using Redis."""
    
    _redis: Optional[Redis] = None
    
    # Default TTL values (in seconds)
    TTL_CATEGORIES = 3600      # 1 hour - categories rarely change
    TTL_DEFAULT = 300          # 5 minutes - default for other data
    
    # Cache keys
    KEY_CATEGORIES = "categories:all"
    
    @classmethod
    async def get_redis(cls) -> Redis:
        """Get or create Redis connection."""
        if cls._redis is None:
            cls._redis = Redis(
                host=REDIS_HOST,
                port=REDIS_PORT,
                db=REDIS_DB,
                decode_responses=True
            )
        return cls._redis
    
    @classmethod
    async def close(cls):
        """Close Redis connection."""
        if cls._redis:
            await cls._redis.aclose()
            cls._redis = None
    
    def __init__(self, redis: Redis):
        self.redis = redis
    
    async def get(self, key: str) -> Optional[Any]:
        """Get value from cache."""
        data = await self.redis.get(key)
        if data:
            return json.loads(data)
        return None
    
    async def set(self, key: str, value: Any, ttl: int = TTL_DEFAULT):
        """Set value in cache with TTL."""
        await self.redis.set(key, json.dumps(value, ensure_ascii=False, default=str), ex=ttl)
    
    async def delete(self, key: str):
        """Delete value from cache."""
        await self.redis.delete(key)
    
    # ----- Convenience methods for reference data -----
    
    async def get_categories(self) -> Optional[List[dict]]:
        """Get cached category listing."""
        return await self.get(self.KEY_CATEGORIES)
    
    async def set_categories(self, categories: List[dict]):
        """Cache category listing."""
        await self.set(self.KEY_CATEGORIES, categories, self.TTL_CATEGORIES)
    
    async def invalidate_categories(self):
        """Invalidate category listing cache."""
        await self.delete(self.KEY_CATEGORIES)
