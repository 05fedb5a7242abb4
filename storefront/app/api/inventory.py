"""Inventory reads and the internal stock adjustment endpoint."""
from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.app.api.deps import get_session, handle_service_error, require_internal_api_key
from storefront.app.core.constants import DEFAULT_PAGE_SIZE, MAX_PAGE_SIZE
from storefront.app.core.exceptions import ServiceError
from storefront.app.schemas import StockAdjust
from storefront.app.services.inventory import InventoryService

router = APIRouter()


# Fixed paths first so they aren't captured by /{product_id}
@router.get("/low-stock")
async def low_stock(
    page: int = Query(1, ge=1),
    limit: int = Query(DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE),
    session: AsyncSession = Depends(get_session),
):
    return await InventoryService(session).list_low_stock(page, limit)


@router.get("/out-of-stock")
async def out_of_stock(
    page: int = Query(1, ge=1),
    limit: int = Query(DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE),
    session: AsyncSession = Depends(get_session),
):
    return await InventoryService(session).list_out_of_stock(page, limit)


@router.get("/summary")
async def inventory_summary(session: AsyncSession = Depends(get_session)):
    return await InventoryService(session).get_summary()


@router.get("/{product_id}")
async def stock_status(product_id: int, session: AsyncSession = Depends(get_session)):
    try:
        return await InventoryService(session).get_stock_status(product_id)
    except ServiceError as e:
        await handle_service_error(session, e, product_id=product_id)


@router.get("/{product_id}/history")
async def stock_history(
    product_id: int,
    page: int = Query(1, ge=1),
    limit: int = Query(DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE),
    session: AsyncSession = Depends(get_session),
):
    try:
        return await InventoryService(session).get_history(product_id, page, limit)
    except ServiceError as e:
        await handle_service_error(session, e, product_id=product_id)


@router.get("/{product_id}/verify")
async def verify_ledger(product_id: int, session: AsyncSession = Depends(get_session)):
    """Check that the ledger sums to the stored quantity."""
    try:
        return await InventoryService(session).verify_ledger(product_id)
    except ServiceError as e:
        await handle_service_error(session, e, product_id=product_id)


@router.post("/{product_id}/adjust")
async def adjust_stock(
    product_id: int,
    data: StockAdjust,
    session: AsyncSession = Depends(get_session),
    _auth: None = Depends(require_internal_api_key),
):
    service = InventoryService(session)
    try:
        await service.apply_delta(product_id, data.delta, data.reason, data.note, data.actor_id)
        await session.commit()
        return await service.get_stock_status(product_id)
    except ServiceError as e:
        await handle_service_error(session, e, product_id=product_id, delta=data.delta)
