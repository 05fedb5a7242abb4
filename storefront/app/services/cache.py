"""
Redis-backed shared store.

Anything that must hold across several process instances lives here rather
than in process memory. Today that is the sweep locks that keep two workers
from running the same background sweep at once.
"""
from typing import Optional
from redis.asyncio import Redis
from redis.asyncio.lock import Lock
from redis.exceptions import LockError

from storefront.app.core.logging import get_logger
from storefront.app.core.settings import get_settings

logger = get_logger(__name__)


class CacheService:
    """Shared store operations on Redis."""

    _redis: Optional[Redis] = None

    KEY_LOCK = "lock:{name}"

    @classmethod
    async def get_redis(cls) -> Redis:
        """Get or create Redis connection."""
        if cls._redis is None:
            settings = get_settings()
            cls._redis = Redis(
                host=settings.REDIS_HOST,
                port=settings.REDIS_PORT,
                db=settings.REDIS_DB,
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

    async def ping(self) -> bool:
        return bool(await self.redis.ping())

    # ----- Distributed locks -----

    async def acquire_lock(self, name: str, ttl: int) -> Optional[Lock]:
        """
        Try to take a named lock for `ttl` seconds without waiting.

        Returns the held lock, or None if another instance holds it. The TTL
        bounds how long a crashed holder can block everyone else.
        """
        lock = self.redis.lock(self.KEY_LOCK.format(name=name), timeout=ttl, blocking=False)
        if await lock.acquire():
            return lock
        return None

    async def release_lock(self, lock: Lock) -> bool:
        """
        Release a lock we took. The owner check and delete run as one Lua
        script, so a lock that expired and was taken by someone else stays put.
        """
        try:
            await lock.release()
        except LockError:
            logger.warning("Lock expired before release", lock=lock.name)
            return False
        return True
