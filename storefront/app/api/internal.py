"""Sweep triggers for an external scheduler (the in-process sweepers can be switched off)."""
from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from storefront.app.api.deps import get_cache, get_session_factory, require_internal_api_key
from storefront.app.schemas import CartSweepRequest
from storefront.app.services.cache import CacheService
from storefront.app.services.sweeps import run_cart_sweep, run_reservation_sweep

router = APIRouter(dependencies=[Depends(require_internal_api_key)])


@router.post("/sweeps/reservations")
async def sweep_reservations(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    cache: CacheService = Depends(get_cache),
):
    return await run_reservation_sweep(session_factory, cache)


@router.post("/sweeps/carts")
async def sweep_carts(
    data: Optional[CartSweepRequest] = None,
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    cache: CacheService = Depends(get_cache),
):
    return await run_cart_sweep(
        session_factory, cache, older_than_days=data.older_than_days if data else None
    )
