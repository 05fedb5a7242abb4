"""
Concurrent ledger writes and reservations.

These run real concurrent transactions on a file-backed SQLite database,
one connection per session. SQLite has no row locks, so every transaction
opens with BEGIN IMMEDIATE and takes the database write lock up front; the
services see the same "read, check, write, commit" serialisation that
SELECT ... FOR UPDATE gives them on Postgres.
"""
import asyncio
from datetime import timedelta
from typing import AsyncGenerator

import pytest
from sqlalchemy import event, func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from storefront.app.core.base import Base, utcnow
from storefront.app.core.exceptions import InsufficientStockError, NegativeStockError
from storefront.app.models.checkout import CheckoutSession, InventoryReservation
from storefront.app.services.cart import CartService
from storefront.app.services.inventory import InventoryService
from storefront.app.services.reservations import ReservationManager
from storefront.tests.conftest import create_cart, create_product


@pytest.fixture
async def concurrent_factory(tmp_path) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'concurrency.db'}",
        connect_args={"timeout": 30},
    )

    @event.listens_for(engine.sync_engine, "connect")
    def _driver_autocommit(dbapi_connection, connection_record):
        # Let the "begin" hook below issue BEGIN itself
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.mark.asyncio
async def test_concurrent_decrements_never_go_negative(concurrent_factory):
    async with concurrent_factory() as session:
        product = await create_product(session, "CONC-1", stock=5)
        product_id = product.id

    async def take_one() -> bool:
        async with concurrent_factory() as session:
            try:
                await InventoryService(session).apply_delta(product_id, -1, "manual_adjust")
                await session.commit()
                return True
            except NegativeStockError:
                await session.rollback()
                return False

    results = await asyncio.gather(*(take_one() for _ in range(8)))

    assert results.count(True) == 5
    async with concurrent_factory() as session:
        service = InventoryService(session)
        assert (await service.get_record(product_id)).quantity == 0
        ledger = await service.verify_ledger(product_id)
        assert ledger["consistent"] is True
        assert ledger["ledger_sum"] == 0


@pytest.mark.asyncio
@pytest.mark.parametrize("carts,qty,winners", [(2, 6, 1), (5, 3, 3)])
async def test_concurrent_reservations_never_oversell(concurrent_factory, carts: int, qty: int, winners: int):
    """Stock 10: competing checkouts succeed while stock lasts; the rest hold nothing."""
    async with concurrent_factory() as session:
        product = await create_product(session, "TOWEL-001", price="25.99", stock=10)
        product_id = product.id
        pairs = []
        for _ in range(carts):
            cart = await create_cart(session, [("TOWEL-001", qty)])
            checkout = CheckoutSession(
                cart_id=cart.id,
                shipping_address_id=1,
                billing_address_id=1,
                shipping_method="standard",
                subtotal=cart.subtotal,
                grand_total=cart.grand_total,
                currency=cart.currency,
                status="active",
                expires_at=utcnow() + timedelta(minutes=15),
            )
            session.add(checkout)
            await session.commit()
            pairs.append((checkout.id, cart.id))

    async def reserve(checkout_id: int, cart_id: int) -> bool:
        async with concurrent_factory() as session:
            checkout = await session.get(CheckoutSession, checkout_id)
            items = await CartService(session).get_items(cart_id)
            try:
                await ReservationManager(session).reserve_all(checkout, items)
                await session.commit()
                return True
            except InsufficientStockError:
                await session.rollback()
                return False

    results = await asyncio.gather(*(reserve(checkout_id, cart_id) for checkout_id, cart_id in pairs))

    assert results.count(True) == winners
    async with concurrent_factory() as session:
        held = await session.scalar(
            select(func.coalesce(func.sum(InventoryReservation.quantity), 0))
            .where(InventoryReservation.status == "active")
        )
        assert held == winners * qty
        assert held <= 10
        for (checkout_id, _), reserved in zip(pairs, results):
            rows = await session.scalar(
                select(func.count(InventoryReservation.id)).where(InventoryReservation.checkout_id == checkout_id)
            )
            assert rows == (1 if reserved else 0)
        assert (await InventoryService(session).get_record(product_id)).quantity == 10
