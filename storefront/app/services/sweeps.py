# storefront/app/services/sweeps.py
"""
Periodic maintenance: expire stale checkout sessions, release leftover
holds and mark abandoned carts.

Every sweep takes a Redis lock first so that only one process instance in
the deployment runs it at a time; an instance that doesn't get the lock
skips the round. Each stale session is expired in its own transaction so
one bad row doesn't block the rest.
"""
import time
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from storefront.app.core.base import utcnow
from storefront.app.core.logging import get_logger
from storefront.app.core.metrics import sweep_duration_seconds
from storefront.app.core.settings import get_settings
from storefront.app.services.cache import CacheService
from storefront.app.services.cart import CartService
from storefront.app.services.checkout import CheckoutService
from storefront.app.services.reservations import ReservationManager

logger = get_logger(__name__)

RESERVATION_SWEEP_LOCK = "sweep:reservations"
CART_SWEEP_LOCK = "sweep:carts"


def _lock_ttl(interval_seconds: int) -> int:
    # Long enough to cover a slow run, short enough that a crashed holder frees the next round
    return max(30, interval_seconds * 2)


async def run_reservation_sweep(
    session_factory: async_sessionmaker[AsyncSession],
    cache: CacheService,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Expire stale checkout sessions, then release any active hold past expiry."""
    now = now or utcnow()
    lock = await cache.acquire_lock(
        RESERVATION_SWEEP_LOCK, _lock_ttl(get_settings().RESERVATION_SWEEP_INTERVAL_SECONDS)
    )
    if lock is None:
        logger.info("Reservation sweep skipped, lock held elsewhere")
        return {"skipped": True, "sessions_expired": 0, "reservations_released": 0, "errors": 0}

    started = time.time()
    expired = 0
    errors = 0
    released = 0
    try:
        async with session_factory() as session:
            stale_ids = await CheckoutService(session).find_stale_session_ids(now)

        for checkout_id in stale_ids:
            async with session_factory() as session:
                try:
                    if await CheckoutService(session).expire_session(checkout_id, now):
                        expired += 1
                    await session.commit()
                except Exception as e:
                    await session.rollback()
                    errors += 1
                    logger.error("Reservation sweep: failed to expire session", checkout_id=checkout_id, error=str(e))

        # Holds whose session was handled elsewhere (or never expired) still get released
        async with session_factory() as session:
            try:
                released = await ReservationManager(session).release_expired(now)
                await session.commit()
            except Exception as e:
                await session.rollback()
                errors += 1
                logger.error("Reservation sweep: release_expired failed", error=str(e))
    finally:
        await cache.release_lock(lock)
        sweep_duration_seconds.labels(sweep="reservations").observe(time.time() - started)

    if expired or released or errors:
        logger.info(
            "Reservation sweep finished",
            sessions_expired=expired,
            reservations_released=released,
            errors=errors,
        )
    return {"skipped": False, "sessions_expired": expired, "reservations_released": released, "errors": errors}


async def run_cart_sweep(
    session_factory: async_sessionmaker[AsyncSession],
    cache: CacheService,
    now: Optional[datetime] = None,
    older_than_days: Optional[int] = None,
) -> Dict[str, Any]:
    """Mark carts idle for CART_ABANDON_DAYS as abandoned."""
    settings = get_settings()
    lock = await cache.acquire_lock(CART_SWEEP_LOCK, _lock_ttl(min(settings.CART_SWEEP_INTERVAL_SECONDS, 3600)))
    if lock is None:
        logger.info("Cart sweep skipped, lock held elsewhere")
        return {"skipped": True, "carts_abandoned": 0}

    started = time.time()
    try:
        async with session_factory() as session:
            try:
                count = await CartService(session).mark_abandoned(older_than_days=older_than_days, now=now)
                await session.commit()
            except Exception:
                await session.rollback()
                raise
    finally:
        await cache.release_lock(lock)
        sweep_duration_seconds.labels(sweep="carts").observe(time.time() - started)

    return {"skipped": False, "carts_abandoned": count}
