"""
Tests for the inventory ledger and store.

Tests cover:
- Ledger entries move quantity and always sum to it
- Negative stock, unknown reasons and soft-deleted products are rejected
- Ledger rows can't be updated or deleted
- Availability net of active holds
- Low stock / out of stock listings and summary
"""
import pytest
from datetime import timedelta
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.app.core.base import utcnow
from storefront.app.core.exceptions import (
    InvalidQuantityError,
    InvalidReasonError,
    InventoryNotFoundError,
    LedgerImmutableError,
    NegativeStockError,
    ProductNotFoundError,
    ProductSoftDeletedError,
    ReservedStockError,
)
from storefront.app.models.checkout import InventoryReservation
from storefront.app.models.inventory import InventoryRecord, StockLedgerEntry, StockReason
from storefront.app.services.inventory import InventoryService
from storefront.tests.conftest import create_product


# ============================================
# LEDGER WRITES
# ============================================

@pytest.mark.asyncio
async def test_apply_delta_creates_record_and_entry(test_session: AsyncSession):
    """First delta creates the inventory row and one ledger entry."""
    product = await create_product(test_session, "SKU-1")
    service = InventoryService(test_session)

    record = await service.apply_delta(product.id, 7, StockReason.INITIAL, actor_id=42)
    await test_session.commit()

    assert record.quantity == 7
    assert record.in_stock is True
    entries = (await test_session.execute(
        select(StockLedgerEntry).where(StockLedgerEntry.product_id == product.id)
    )).scalars().all()
    assert len(entries) == 1
    assert entries[0].delta == 7
    assert entries[0].reason == StockReason.INITIAL
    assert entries[0].created_by == 42


@pytest.mark.asyncio
async def test_ledger_sum_matches_quantity(test_session: AsyncSession):
    """Sum of deltas equals the stored quantity after any sequence of changes."""
    product = await create_product(test_session, "SKU-1", stock=10)
    service = InventoryService(test_session)

    await service.apply_delta(product.id, -3, "manual_adjust")
    await service.apply_delta(product.id, 5, StockReason.RETURN)
    await service.set_quantity(product.id, 4, note="cycle count")
    await test_session.commit()

    result = await service.verify_ledger(product.id)
    assert result["quantity"] == 4
    assert result["ledger_sum"] == 4
    assert result["consistent"] is True


@pytest.mark.asyncio
async def test_set_quantity_records_difference(test_session: AsyncSession):
    product = await create_product(test_session, "SKU-1", stock=10)
    service = InventoryService(test_session)

    await service.set_quantity(product.id, 3)
    await test_session.commit()

    history = await service.get_history(product.id)
    latest = history["entries"][0]
    assert latest["delta"] == -7
    assert latest["reason"] == "recount"


@pytest.mark.asyncio
async def test_negative_stock_rejected(test_session: AsyncSession):
    """A delta that would go below zero fails and writes nothing."""
    product = await create_product(test_session, "SKU-1", stock=2)
    product_id = product.id
    service = InventoryService(test_session)

    with pytest.raises(NegativeStockError):
        await service.apply_delta(product_id, -3)
    await test_session.rollback()

    record = await service.get_record(product_id)
    assert record.quantity == 2
    history = await service.get_history(product_id)
    assert history["pagination"]["total"] == 1


@pytest.mark.asyncio
async def test_unknown_reason_rejected(test_session: AsyncSession):
    product = await create_product(test_session, "SKU-1", stock=2)
    with pytest.raises(InvalidReasonError):
        await InventoryService(test_session).apply_delta(product.id, 1, "gift")


@pytest.mark.asyncio
async def test_non_integer_delta_rejected(test_session: AsyncSession):
    product = await create_product(test_session, "SKU-1", stock=2)
    with pytest.raises(InvalidQuantityError):
        await InventoryService(test_session).apply_delta(product.id, 1.5)


@pytest.mark.asyncio
async def test_missing_and_deleted_products_rejected(test_session: AsyncSession):
    product = await create_product(test_session, "SKU-1", stock=2)
    service = InventoryService(test_session)

    with pytest.raises(ProductNotFoundError):
        await service.apply_delta(9999, 1)

    product.deleted_at = utcnow()
    await test_session.commit()
    with pytest.raises(ProductSoftDeletedError):
        await service.apply_delta(product.id, 1)


@pytest.mark.asyncio
async def test_restock_order_uses_order_release(test_session: AsyncSession):
    product = await create_product(test_session, "SKU-1", stock=2)
    service = InventoryService(test_session)

    record = await service.restock_order(product.id, 3, order_ref="ORD-7")
    await test_session.commit()

    assert record.quantity == 5
    latest = (await service.get_history(product.id))["entries"][0]
    assert latest["reason"] == "order_release"
    assert "ORD-7" in latest["note"]


@pytest.mark.asyncio
async def test_set_low_stock_threshold(test_session: AsyncSession):
    product = await create_product(test_session, "SKU-1", stock=8)
    service = InventoryService(test_session)

    await service.set_low_stock_threshold(product.id, 10)
    await test_session.commit()

    status = await service.get_stock_status(product.id)
    assert status["low_stock_threshold"] == 10
    assert status["low_stock"] is True


@pytest.mark.asyncio
async def test_record_missing_raises(test_session: AsyncSession):
    product = await create_product(test_session, "SKU-1")
    with pytest.raises(InventoryNotFoundError):
        await InventoryService(test_session).get_record(product.id)


# ============================================
# IMMUTABILITY
# ============================================

@pytest.mark.asyncio
async def test_ledger_entry_update_rejected(test_session: AsyncSession):
    product = await create_product(test_session, "SKU-1", stock=5)
    entry = (await test_session.execute(
        select(StockLedgerEntry).where(StockLedgerEntry.product_id == product.id)
    )).scalar_one()

    entry.delta = 500
    with pytest.raises(LedgerImmutableError):
        await test_session.flush()
    await test_session.rollback()


@pytest.mark.asyncio
async def test_ledger_entry_delete_rejected(test_session: AsyncSession):
    product = await create_product(test_session, "SKU-1", stock=5)
    entry = (await test_session.execute(
        select(StockLedgerEntry).where(StockLedgerEntry.product_id == product.id)
    )).scalar_one()

    await test_session.delete(entry)
    with pytest.raises(LedgerImmutableError):
        await test_session.flush()
    await test_session.rollback()


# ============================================
# AVAILABILITY
# ============================================

async def _hold(session: AsyncSession, product_id: int, quantity: int, expires_in: timedelta, status: str = "active"):
    session.add(InventoryReservation(
        checkout_id=1,
        cart_item_id=product_id * 100 + quantity,
        product_id=product_id,
        sku="SKU",
        quantity=quantity,
        status=status,
        expires_at=utcnow() + expires_in,
    ))
    await session.commit()


@pytest.mark.asyncio
async def test_available_excludes_active_holds(test_session: AsyncSession):
    product = await create_product(test_session, "SKU-1", stock=10)
    await _hold(test_session, product.id, 4, timedelta(minutes=10))
    await _hold(test_session, product.id, 1, timedelta(minutes=10), status="released")

    service = InventoryService(test_session)
    assert await service.get_available(product.id) == 6
    status = await service.get_stock_status(product.id)
    assert status["quantity"] == 10
    assert status["reserved"] == 4
    assert status["available"] == 6


@pytest.mark.asyncio
async def test_expired_holds_do_not_count(test_session: AsyncSession):
    """A hold past expires_at stops counting even before the sweep releases it."""
    product = await create_product(test_session, "SKU-1", stock=10)
    await _hold(test_session, product.id, 4, timedelta(minutes=-1))

    assert await InventoryService(test_session).get_available(product.id) == 10


@pytest.mark.asyncio
async def test_decrease_cannot_take_held_stock(test_session: AsyncSession):
    """Manual decreases and recounts stop at the units held by live checkouts."""
    product = await create_product(test_session, "SKU-1", stock=10)
    product_id = product.id
    await _hold(test_session, product_id, 8, timedelta(minutes=10))
    service = InventoryService(test_session)

    with pytest.raises(ReservedStockError) as exc_info:
        await service.apply_delta(product_id, -5, "manual_adjust")
    await test_session.rollback()
    assert exc_info.value.extra["reserved"] == 8

    with pytest.raises(ReservedStockError):
        await service.set_quantity(product_id, 7)
    await test_session.rollback()

    # Down to exactly the held amount is fine
    record = await service.apply_delta(product_id, -2, "manual_adjust")
    await test_session.commit()
    assert record.quantity == 8
    assert await service.get_available(product_id) == 0


@pytest.mark.asyncio
async def test_decrease_ignores_expired_holds(test_session: AsyncSession):
    product = await create_product(test_session, "SKU-1", stock=10)
    await _hold(test_session, product.id, 8, timedelta(minutes=-1))

    record = await InventoryService(test_session).apply_delta(product.id, -5, "manual_adjust")
    assert record.quantity == 5


# ============================================
# LISTINGS
# ============================================

@pytest.mark.asyncio
async def test_low_and_out_of_stock_listings(test_session: AsyncSession):
    await create_product(test_session, "PLENTY", stock=50)
    low = await create_product(test_session, "LOW", stock=3)
    empty = await create_product(test_session, "EMPTY", stock=0)
    await create_product(test_session, "DRAFT", stock=0, status="draft")
    service = InventoryService(test_session)

    low_stock = await service.list_low_stock()
    assert [p["product_id"] for p in low_stock["products"]] == [low.id]

    out = await service.list_out_of_stock()
    assert [p["product_id"] for p in out["products"]] == [empty.id]
    assert out["pagination"]["total"] == 1

    summary = await service.get_summary()
    assert summary == {"total_products": 3, "in_stock": 2, "low_stock": 1, "out_of_stock": 1}


@pytest.mark.asyncio
async def test_history_pagination(test_session: AsyncSession):
    product = await create_product(test_session, "SKU-1", stock=1)
    service = InventoryService(test_session)
    for _ in range(4):
        await service.apply_delta(product.id, 1)
    await test_session.commit()

    page = await service.get_history(product.id, page=2, limit=2)
    assert len(page["entries"]) == 2
    assert page["pagination"] == {"total": 5, "page": 2, "limit": 2, "total_pages": 3}

    record = (await test_session.execute(
        select(InventoryRecord).where(InventoryRecord.product_id == product.id)
    )).scalar_one()
    assert record.quantity == 5
