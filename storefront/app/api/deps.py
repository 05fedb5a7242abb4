from typing import AsyncGenerator, Optional

from fastapi import Header, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from storefront.app.core.database import async_session
from storefront.app.core.exceptions import ServiceError
from storefront.app.core.logging import get_logger
from storefront.app.core.settings import get_settings
from storefront.app.services.cache import CacheService

logger = get_logger(__name__)


# One database session per request
async def get_session() -> AsyncGenerator[AsyncSession, None]:
    async with async_session() as session:
        yield session


# Session factory for work that needs its own transactions (sweeps)
def get_session_factory() -> async_sessionmaker[AsyncSession]:
    return async_session


# Redis-backed shared store per request
async def get_cache() -> AsyncGenerator[CacheService, None]:
    redis = await CacheService.get_redis()
    yield CacheService(redis)


async def get_user_id(x_user_id: Optional[int] = Header(None, alias="X-User-Id")) -> Optional[int]:
    """Authenticated user id, set by the auth gateway in front of this service."""
    return x_user_id


async def get_cart_token(x_cart_token: Optional[str] = Header(None, alias="X-Cart-Token")) -> Optional[str]:
    """Guest cart token issued when the guest cart was created."""
    return x_cart_token or None


async def require_internal_api_key(
    x_internal_key: Optional[str] = Header(None, alias="X-Internal-Key"),
):
    """Require the internal key for order-service and scheduler calls."""
    settings = get_settings()
    if not settings.INTERNAL_API_KEY:
        # Not configured: allow all (dev mode); production settings refuse to start without it
        logger.warning("INTERNAL_API_KEY not set, internal endpoints are unprotected")
        return
    if not x_internal_key or x_internal_key != settings.INTERNAL_API_KEY:
        raise HTTPException(status_code=401, detail="Invalid or missing internal API key")


async def handle_service_error(session: AsyncSession, e: ServiceError, **context):
    """Roll back, log and convert a service exception to an HTTP exception."""
    await session.rollback()
    logger.warning("Service error", code=e.code, status_code=e.status_code, error=e.message, **context)
    raise HTTPException(status_code=e.status_code, detail=e.to_dict())
