"""
Tests for checkout sessions and the background sweeps.

Tests cover:
- Session creation: addresses, tax, shipping, reservation and totals
- Failure at any step leaves nothing behind
- Confirm / release / fail transitions and terminal states
- Lazy expiry on read and the reservation / cart sweeps
"""
import re

import pytest
from datetime import timedelta
from decimal import Decimal
from sqlalchemy import event, select, func, update
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.app.core.base import utcnow
from storefront.app.core.exceptions import (
    AccessDeniedError,
    CartNotFoundError,
    CheckoutClosedError,
    CheckoutExpiredError,
    EmptyCartError,
    InsufficientStockError,
    InvalidAddressError,
    InvalidPostalCodeError,
    ShippingUnavailableError,
    StockNotReservedError,
)
from storefront.app.models.cart import Cart
from storefront.app.models.checkout import Address, CheckoutSession, InventoryReservation
from storefront.app.models.product import Product
from storefront.app.services.cart import CartService
from storefront.app.services.checkout import CheckoutService, get_payment_provider_hints
from storefront.app.services.inventory import InventoryService
from storefront.app.services.sweeps import run_cart_sweep, run_reservation_sweep
from storefront.tests.conftest import US_ADDRESS, create_cart, owner_kwargs


async def start_checkout(session: AsyncSession, cart: Cart, method: str = "standard", address: dict = None) -> dict:
    address = address or US_ADDRESS
    result = await CheckoutService(session).create_session(
        cart.id, address, address, method, **owner_kwargs(cart)
    )
    await session.commit()
    return result


# ============================================
# CREATE
# ============================================

@pytest.mark.asyncio
async def test_create_session_reserves_and_prices(test_session: AsyncSession, towel: Product):
    cart = await create_cart(test_session, [("TOWEL-001", 2)])

    result = await start_checkout(test_session, cart)

    assert result["status"] == "active"
    assert result["stock_reserved"] is True
    assert result["currency"] == "USD"
    # 51.98 at 7.5% CA sales tax; standard shipping is free above 50
    assert result["breakdown"]["subtotal"] == Decimal("51.98")
    assert result["breakdown"]["tax_total"] == Decimal("3.90")
    assert result["breakdown"]["shipping_total"] == Decimal("0.00")
    assert result["amount"] == Decimal("55.88")
    assert result["shipping"]["zone"] == "domestic"
    assert result["tax"]["total_tax_rate"] == Decimal("0.075")
    assert 0 < result["time_remaining"] <= 15 * 60
    assert result["payment_provider_hints"]["primary"] == "stripe"
    assert result["addresses"]["shipping"]["country"] == "US"

    assert await InventoryService(test_session).get_available(towel.id) == 8
    # Cart totals match the session
    assert cart.grand_total == Decimal("55.88")


@pytest.mark.asyncio
async def test_create_session_charges_shipping_below_threshold(test_session: AsyncSession, mug: Product):
    cart = await create_cart(test_session, [("MUG-001", 1)])

    result = await start_checkout(test_session, cart)

    assert result["breakdown"]["shipping_total"] == Decimal("5.99")
    assert result["breakdown"]["tax_total"] == Decimal("0.94")
    assert result["amount"] == Decimal("19.43")


@pytest.mark.asyncio
async def test_create_session_insufficient_stock_leaves_nothing(test_session: AsyncSession, towel: Product):
    cart = await create_cart(test_session, [("TOWEL-001", 10)])
    other = await create_cart(test_session, [("TOWEL-001", 1)])
    await start_checkout(test_session, cart)

    with pytest.raises(InsufficientStockError) as exc_info:
        await CheckoutService(test_session).create_session(
            other.id, US_ADDRESS, US_ADDRESS, "standard", **owner_kwargs(other)
        )
    await test_session.rollback()

    assert exc_info.value.sku == "TOWEL-001"
    sessions = await test_session.scalar(select(func.count(CheckoutSession.id)))
    addresses = await test_session.scalar(select(func.count(Address.id)))
    assert sessions == 1
    assert addresses == 2


@pytest.mark.asyncio
async def test_create_session_validation(test_session: AsyncSession, towel: Product):
    cart = await create_cart(test_session, [("TOWEL-001", 1)])
    empty = await create_cart(test_session)
    service = CheckoutService(test_session)
    owner = owner_kwargs(cart)

    with pytest.raises(EmptyCartError):
        await service.create_session(empty.id, US_ADDRESS, US_ADDRESS, "standard", **owner_kwargs(empty))
    with pytest.raises(CartNotFoundError):
        await service.create_session(cart.id, US_ADDRESS, US_ADDRESS, "standard", cart_token="other")
    with pytest.raises(InvalidAddressError):
        await service.create_session(cart.id, dict(US_ADDRESS, email=None), US_ADDRESS, "standard", **owner)
    with pytest.raises(InvalidPostalCodeError):
        await service.create_session(cart.id, dict(US_ADDRESS, postal_code="ABC"), US_ADDRESS, "standard", **owner)
    with pytest.raises(ShippingUnavailableError):
        await service.create_session(cart.id, US_ADDRESS, US_ADDRESS, "teleport", **owner)


@pytest.mark.asyncio
async def test_user_addresses_are_reused(test_session: AsyncSession, towel: Product):
    cart = await create_cart(test_session, [("TOWEL-001", 1)], user_id=300)
    first = await start_checkout(test_session, cart)
    await CheckoutService(test_session).release_reservations(first["checkout_id"])
    await test_session.commit()

    second = await start_checkout(test_session, cart)

    assert second["addresses"]["shipping"]["id"] == first["addresses"]["shipping"]["id"]


@pytest.mark.asyncio
async def test_shipping_methods_for_cart(test_session: AsyncSession, mug: Product):
    cart = await create_cart(test_session, [("MUG-001", 1)])

    methods = await CheckoutService(test_session).get_shipping_methods(cart.id, US_ADDRESS, **owner_kwargs(cart))

    by_code = {m["code"]: m for m in methods}
    assert set(by_code) == {"standard", "express", "overnight", "pickup"}
    assert by_code["standard"]["cost"] == Decimal("5.99")
    assert by_code["pickup"]["cost"] == Decimal("0.00")


def test_payment_provider_hints():
    assert get_payment_provider_hints("INR")["primary"] == "razorpay"
    assert "upi" in get_payment_provider_hints("INR")["methods"]
    assert get_payment_provider_hints("JPY")["primary"] == "stripe"


# ============================================
# READ
# ============================================

@pytest.mark.asyncio
async def test_get_session_checks_owner(test_session: AsyncSession, towel: Product):
    cart = await create_cart(test_session, [("TOWEL-001", 1)])
    created = await start_checkout(test_session, cart)
    service = CheckoutService(test_session)

    data = await service.get_session(created["checkout_id"], cart_token=cart.cart_token)
    assert data["reservations"][0]["status"] == "active"
    assert data["amount"] == created["amount"]

    with pytest.raises(AccessDeniedError):
        await service.get_session(created["checkout_id"], cart_token="someone-else")
    with pytest.raises(AccessDeniedError):
        await service.get_session(created["checkout_id"], user_id=1)


@pytest.mark.asyncio
async def test_get_session_expires_lazily(test_session: AsyncSession, towel: Product):
    """A session past expires_at reads as expired before any sweep runs."""
    cart = await create_cart(test_session, [("TOWEL-001", 1)])
    created = await start_checkout(test_session, cart)
    await test_session.execute(
        update(CheckoutSession)
        .where(CheckoutSession.id == created["checkout_id"])
        .values(expires_at=utcnow() - timedelta(seconds=1))
    )
    await test_session.commit()

    with pytest.raises(CheckoutExpiredError):
        await CheckoutService(test_session).get_session(created["checkout_id"], cart_token=cart.cart_token)


# ============================================
# TRANSITIONS
# ============================================

@pytest.mark.asyncio
async def test_confirm_completes_session_and_converts_cart(test_session: AsyncSession, towel: Product):
    cart = await create_cart(test_session, [("TOWEL-001", 3)])
    created = await start_checkout(test_session, cart)
    service = CheckoutService(test_session)

    result = await service.confirm_reservations(created["checkout_id"], actor_id=1)
    await test_session.commit()

    assert result == {"checkout_id": created["checkout_id"], "status": "completed", "confirmed": 1}
    record = await InventoryService(test_session).get_record(towel.id)
    assert record.quantity == 7
    assert cart.status == "converted"

    data = await service.get_session(created["checkout_id"], cart_token=cart.cart_token)
    assert data["status"] == "completed"
    assert data["completed_at"] is not None
    assert data["time_remaining"] == 0


@pytest.mark.asyncio
async def test_terminal_sessions_reject_transitions(test_session: AsyncSession, towel: Product):
    cart = await create_cart(test_session, [("TOWEL-001", 1)])
    created = await start_checkout(test_session, cart)
    service = CheckoutService(test_session)
    await service.confirm_reservations(created["checkout_id"])
    await test_session.commit()

    with pytest.raises(CheckoutClosedError):
        await service.confirm_reservations(created["checkout_id"])
    with pytest.raises(CheckoutClosedError):
        await service.release_reservations(created["checkout_id"])
    with pytest.raises(CheckoutClosedError):
        await service.fail_session(created["checkout_id"], "card declined")


@pytest.mark.asyncio
async def test_fail_session_releases_stock(test_session: AsyncSession, towel: Product):
    cart = await create_cart(test_session, [("TOWEL-001", 4)])
    created = await start_checkout(test_session, cart)
    service = CheckoutService(test_session)

    result = await service.fail_session(created["checkout_id"], "card declined")
    await test_session.commit()

    assert result["status"] == "failed"
    assert result["released"] == 1
    assert await InventoryService(test_session).get_available(towel.id) == 10
    row = (await test_session.execute(select(InventoryReservation))).scalar_one()
    assert row.release_reason == "checkout_failed"

    data = await service.get_session(created["checkout_id"], cart_token=cart.cart_token)
    assert data["failure_reason"] == "card declined"
    # The cart is still usable for a new attempt
    assert cart.status == "active"


@pytest.mark.asyncio
async def test_release_keeps_session_open_but_unconfirmable(test_session: AsyncSession, towel: Product):
    cart = await create_cart(test_session, [("TOWEL-001", 2)])
    created = await start_checkout(test_session, cart)
    service = CheckoutService(test_session)

    result = await service.release_reservations(created["checkout_id"])
    await test_session.commit()

    assert result == {"checkout_id": created["checkout_id"], "status": "active", "released": 1}
    with pytest.raises(StockNotReservedError):
        await service.confirm_reservations(created["checkout_id"])


@pytest.mark.asyncio
async def test_new_session_supersedes_earlier_one(test_session: AsyncSession, towel: Product):
    """Resubmitting checkout moves the hold to the new session instead of doubling it."""
    towel_id = towel.id
    cart = await create_cart(test_session, [("TOWEL-001", 5)])
    first = await start_checkout(test_session, cart)

    second = await start_checkout(test_session, cart)

    assert second["stock_reserved"] is True
    assert await InventoryService(test_session).get_available(towel_id) == 5
    earlier = await test_session.get(CheckoutSession, first["checkout_id"])
    assert earlier.status == "failed"
    assert earlier.failure_reason == "superseded"
    rows = (await test_session.execute(
        select(InventoryReservation).where(InventoryReservation.checkout_id == first["checkout_id"])
    )).scalars().all()
    assert [(r.status, r.release_reason) for r in rows] == [("released", "superseded")]
    active = await test_session.scalar(
        select(func.count(CheckoutSession.id)).where(CheckoutSession.status == "active")
    )
    assert active == 1

    with pytest.raises(CheckoutClosedError):
        await CheckoutService(test_session).confirm_reservations(first["checkout_id"])


@pytest.mark.asyncio
async def test_failed_resubmit_keeps_earlier_session(test_session: AsyncSession, towel: Product):
    """If the new session can't reserve, the rollback leaves the earlier hold in place."""
    towel_id = towel.id
    cart = await create_cart(test_session, [("TOWEL-001", 5)])
    other = await create_cart(test_session, [("TOWEL-001", 5)])
    first = await start_checkout(test_session, cart)
    await start_checkout(test_session, other)
    item_id = (await CartService(test_session).get_items(cart.id))[0].id
    await CartService(test_session).update_item(cart.id, item_id, 6, **owner_kwargs(cart))
    await test_session.commit()
    owner = owner_kwargs(cart)

    with pytest.raises(InsufficientStockError):
        await CheckoutService(test_session).create_session(cart.id, US_ADDRESS, US_ADDRESS, "standard", **owner)
    await test_session.rollback()

    earlier = await test_session.get(CheckoutSession, first["checkout_id"])
    assert earlier.status == "active"
    assert earlier.stock_reserved is True
    assert await InventoryService(test_session).get_available(towel_id) == 0


@pytest.mark.asyncio
async def test_release_and_expiry_clear_checkout_quotes(test_session: AsyncSession, towel: Product):
    """Tax and shipping quoted for a session leave the cart with it."""
    released_cart = await create_cart(test_session, [("TOWEL-001", 1)])
    expired_cart = await create_cart(test_session, [("TOWEL-001", 1)])
    released = await start_checkout(test_session, released_cart)
    await start_checkout(test_session, expired_cart)
    # 25.99 + 1.95 CA tax + 5.99 standard shipping
    assert released_cart.grand_total == Decimal("33.93")

    service = CheckoutService(test_session)
    await service.release_reservations(released["checkout_id"])
    await service.expire_stale_sessions(now=utcnow() + timedelta(hours=1))
    await test_session.commit()

    for cart in (released_cart, expired_cart):
        await test_session.refresh(cart)
        assert cart.tax_total == Decimal("0.00")
        assert cart.shipping_total == Decimal("0.00")
        assert cart.grand_total == Decimal("25.99")
        items = await CartService(test_session).get_items(cart.id)
        assert [it.line_tax for it in items] == [Decimal("0.00")]


@pytest.mark.asyncio
async def test_transitions_lock_cart_before_inventory(test_session: AsyncSession, towel: Product):
    """Confirm and fail touch the cart row before any inventory row, like create_session does."""
    confirmed = await start_checkout(test_session, await create_cart(test_session, [("TOWEL-001", 1)]))
    failed = await start_checkout(test_session, await create_cart(test_session, [("TOWEL-001", 1)]))
    service = CheckoutService(test_session)
    statements = []

    def record(conn, cursor, statement, parameters, context, executemany):
        statements.append(statement)

    def first_read(table: str) -> int:
        return next(i for i, sql in enumerate(statements) if re.search(rf"FROM {table}\b", sql))

    engine = test_session.bind.sync_engine
    for transition in (
        lambda: service.confirm_reservations(confirmed["checkout_id"]),
        lambda: service.fail_session(failed["checkout_id"], "payment_declined"),
    ):
        statements.clear()
        event.listen(engine, "before_cursor_execute", record)
        try:
            await transition()
        finally:
            event.remove(engine, "before_cursor_execute", record)
        await test_session.commit()

        assert first_read("carts") < first_read("inventory")


@pytest.mark.asyncio
async def test_confirm_after_expiry_rejected(test_session: AsyncSession, towel: Product):
    cart = await create_cart(test_session, [("TOWEL-001", 2)])
    created = await start_checkout(test_session, cart)
    await test_session.execute(
        update(CheckoutSession)
        .where(CheckoutSession.id == created["checkout_id"])
        .values(expires_at=utcnow() - timedelta(seconds=1))
    )
    await test_session.commit()

    with pytest.raises(CheckoutExpiredError):
        await CheckoutService(test_session).confirm_reservations(created["checkout_id"])
    assert (await InventoryService(test_session).get_record(towel.id)).quantity == 10


# ============================================
# SWEEPS
# ============================================

@pytest.mark.asyncio
async def test_reservation_sweep_expires_sessions(session_factory, test_session: AsyncSession, mock_cache, towel: Product):
    """After expiry the sweep releases the hold and availability is back to 10."""
    cart = await create_cart(test_session, [("TOWEL-001", 10)])
    created = await start_checkout(test_session, cart)
    later = utcnow() + timedelta(minutes=16)

    result = await run_reservation_sweep(session_factory, mock_cache, now=later)

    assert result == {"skipped": False, "sessions_expired": 1, "reservations_released": 0, "errors": 0}
    async with session_factory() as session:
        checkout = await session.get(CheckoutSession, created["checkout_id"])
        assert checkout.status == "expired"
        assert checkout.stock_reserved is False
        row = (await session.execute(select(InventoryReservation))).scalar_one()
        assert row.status == "released"
        assert row.release_reason == "expired"
        assert await InventoryService(session).get_available(towel.id) == 10


@pytest.mark.asyncio
async def test_reservation_sweep_skips_when_locked(session_factory, mock_cache):
    token = await mock_cache.acquire_lock("sweep:reservations", 60)
    assert token is not None

    result = await run_reservation_sweep(session_factory, mock_cache)

    assert result["skipped"] is True
    assert await mock_cache.release_lock(token) is True


@pytest.mark.asyncio
async def test_expire_stale_sessions_in_one_transaction(test_session: AsyncSession, towel: Product, mug: Product):
    first = await create_cart(test_session, [("TOWEL-001", 1)])
    second = await create_cart(test_session, [("MUG-001", 1)])
    await start_checkout(test_session, first)
    await start_checkout(test_session, second)

    count = await CheckoutService(test_session).expire_stale_sessions(now=utcnow() + timedelta(hours=1))
    await test_session.commit()

    assert count == 2
    statuses = (await test_session.execute(select(CheckoutSession.status))).scalars().all()
    assert set(statuses) == {"expired"}


@pytest.mark.asyncio
async def test_cart_sweep_skips_carts_in_checkout(session_factory, test_session: AsyncSession, mock_cache, towel: Product):
    idle = await create_cart(test_session, user_id=1)
    busy = await create_cart(test_session, [("TOWEL-001", 1)], user_id=2)
    await start_checkout(test_session, busy)
    await test_session.execute(
        update(Cart).where(Cart.id.in_([idle.id, busy.id])).values(updated_at=utcnow() - timedelta(days=90))
    )
    await test_session.commit()

    result = await run_cart_sweep(session_factory, mock_cache)

    assert result == {"skipped": False, "carts_abandoned": 1}
    async with session_factory() as session:
        assert (await session.get(Cart, idle.id)).status == "abandoned"
        assert (await session.get(Cart, busy.id)).status == "active"
