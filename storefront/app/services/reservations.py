# storefront/app/services/reservations.py
"""
Reservation manager: time-bound holds on stock for checkout sessions.

    active -> confirmed   (order placed; stock leaves through the ledger)
    active -> released    (expired / cancelled / checkout failed)

Holds don't move InventoryRecord.quantity. They reduce availability
(quantity - active unexpired holds) until confirmed, when an `order_hold`
ledger entry makes the decrement permanent.
"""
from collections import defaultdict
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from sqlalchemy import select, and_
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.app.core.base import utcnow
from storefront.app.core.constants import (
    CHECKOUT_EXPIRED,
    CHECKOUT_TERMINAL_STATUSES,
    RELEASE_REASON_EXPIRED,
    RESERVATION_ACTIVE,
    RESERVATION_CONFIRMED,
    RESERVATION_RELEASED,
)
from storefront.app.core.exceptions import (
    AlreadyReservedError,
    CheckoutClosedError,
    CheckoutExpiredError,
    CheckoutNotFoundError,
    InsufficientStockError,
    InvalidQuantityError,
)
from storefront.app.core.logging import get_logger
from storefront.app.core.metrics import (
    insufficient_stock_total,
    reservations_confirmed_total,
    reservations_created_total,
    reservations_released_total,
)
from storefront.app.models.cart import CartItem
from storefront.app.models.checkout import CheckoutSession, InventoryReservation
from storefront.app.models.inventory import StockReason
from storefront.app.services.inventory import InventoryService, active_hold_totals

logger = get_logger(__name__)


class ReservationManager:
    def __init__(self, session: AsyncSession):
        self.session = session
        self.inventory = InventoryService(session)

    async def _get_checkout(self, checkout_id: int, for_update: bool = False) -> CheckoutSession:
        query = select(CheckoutSession).where(CheckoutSession.id == checkout_id)
        if for_update:
            query = query.with_for_update()
        checkout = (await self.session.execute(query)).scalar_one_or_none()
        if not checkout:
            raise CheckoutNotFoundError(checkout_id)
        return checkout

    async def _reservations(self, checkout_id: int, status: Optional[str] = None) -> List[InventoryReservation]:
        conditions = [InventoryReservation.checkout_id == checkout_id]
        if status:
            conditions.append(InventoryReservation.status == status)
        result = await self.session.execute(
            select(InventoryReservation)
            .where(and_(*conditions))
            .order_by(InventoryReservation.product_id, InventoryReservation.id)
        )
        return list(result.scalars().all())

    async def active_reserved_quantity(
        self,
        product_ids: Iterable[int],
        now: Optional[datetime] = None,
    ) -> Dict[int, int]:
        return await active_hold_totals(self.session, product_ids, now)

    async def reserve_all(self, checkout: CheckoutSession, cart_items: List[CartItem]) -> List[InventoryReservation]:
        """
        Hold stock for every cart line, or for none of them.

        Inventory rows are locked in ascending product_id order, then every
        line is checked against availability before the first reservation
        row is written, so a failure leaves nothing behind. Caller must commit.

        Raises:
            CheckoutClosedError: session is no longer active
            AlreadyReservedError: a line already holds stock in this session
            InsufficientStockError: names the first sku that can't be covered
        """
        if checkout.status in CHECKOUT_TERMINAL_STATUSES:
            raise CheckoutClosedError(checkout.id, checkout.status)
        now = utcnow()
        if checkout.is_expired(now):
            raise CheckoutExpiredError(checkout.id)

        for item in cart_items:
            if item.qty < 1:
                raise InvalidQuantityError(item.qty)

        existing = {r.cart_item_id for r in await self._reservations(checkout.id)}
        for item in cart_items:
            if item.id in existing:
                raise AlreadyReservedError(checkout.id, item.id)

        product_ids = sorted({it.product_id for it in cart_items})
        records = await self.inventory.lock_records(product_ids)
        held = await active_hold_totals(self.session, product_ids, now)

        # Several lines can share a product; check the combined demand
        demand: Dict[int, int] = defaultdict(int)
        for item in sorted(cart_items, key=lambda it: (it.product_id, it.id)):
            demand[item.product_id] += item.qty
            record = records.get(item.product_id)
            on_hand = record.quantity if record else 0
            available = max(0, on_hand - held.get(item.product_id, 0))
            if demand[item.product_id] > available:
                insufficient_stock_total.labels(stage="checkout").inc()
                logger.warning(
                    "Reservation rejected",
                    checkout_id=checkout.id,
                    sku=item.sku,
                    requested=item.qty,
                    available=available,
                )
                raise InsufficientStockError(item.sku, item.qty, available)

        reservations = []
        for item in cart_items:
            reservation = InventoryReservation(
                checkout_id=checkout.id,
                cart_item_id=item.id,
                product_id=item.product_id,
                sku=item.sku,
                quantity=item.qty,
                status=RESERVATION_ACTIVE,
                expires_at=checkout.expires_at,
                created_at=now,
            )
            self.session.add(reservation)
            reservations.append(reservation)

        checkout.stock_reserved = True
        await self.session.flush()

        reservations_created_total.inc(len(reservations))
        logger.info(
            "Stock reserved",
            checkout_id=checkout.id,
            lines=len(reservations),
            expires_at=checkout.expires_at.isoformat(),
        )
        return reservations

    async def confirm_all(self, checkout_id: int, actor_id: Optional[int] = None) -> List[InventoryReservation]:
        """
        Turn every active hold into a permanent decrement.

        Each confirmed reservation appends an `order_hold` ledger entry of
        -quantity. Holds already released (e.g. by the sweep) are left alone.
        Caller must commit.
        """
        checkout = await self._get_checkout(checkout_id, for_update=True)
        now = utcnow()
        if checkout.status == CHECKOUT_EXPIRED or checkout.is_expired(now):
            raise CheckoutExpiredError(checkout_id)
        if checkout.status in CHECKOUT_TERMINAL_STATUSES:
            raise CheckoutClosedError(checkout_id, checkout.status)

        active = await self._reservations(checkout_id, RESERVATION_ACTIVE)
        records = await self.inventory.lock_records(r.product_id for r in active)
        for reservation in active:
            await self.inventory.append_entry(
                records[reservation.product_id],
                -reservation.quantity,
                StockReason.ORDER_HOLD,
                note=f"Checkout {checkout_id}",
                actor_id=actor_id,
            )
            reservation.status = RESERVATION_CONFIRMED
            reservation.confirmed_at = now
        await self.session.flush()

        if active:
            reservations_confirmed_total.inc(len(active))
        logger.info("Reservations confirmed", checkout_id=checkout_id, count=len(active))
        return active

    async def release_all(self, checkout_id: int, reason: str) -> int:
        """
        Release the session's active holds. Confirmed and already released
        rows are untouched, so repeating the call is harmless.
        """
        checkout = await self._get_checkout(checkout_id, for_update=True)
        active = await self._reservations(checkout_id, RESERVATION_ACTIVE)
        # Lock order matches reserve_all/confirm_all
        await self.inventory.lock_records(r.product_id for r in active)

        now = utcnow()
        for reservation in active:
            reservation.status = RESERVATION_RELEASED
            reservation.released_at = now
            reservation.release_reason = reason
        if active:
            checkout.stock_reserved = False
        await self.session.flush()

        if active:
            reservations_released_total.labels(reason=reason).inc(len(active))
            logger.info("Reservations released", checkout_id=checkout_id, count=len(active), reason=reason)
        return len(active)

    async def release_expired(self, now: Optional[datetime] = None) -> int:
        """Sweep: release every active hold past its expires_at."""
        now = now or utcnow()
        result = await self.session.execute(
            select(InventoryReservation)
            .where(
                and_(
                    InventoryReservation.status == RESERVATION_ACTIVE,
                    InventoryReservation.expires_at <= now,
                )
            )
            .order_by(InventoryReservation.product_id, InventoryReservation.id)
        )
        expired = list(result.scalars().all())
        if not expired:
            return 0

        checkout_ids = {r.checkout_id for r in expired}
        for reservation in expired:
            reservation.status = RESERVATION_RELEASED
            reservation.released_at = now
            reservation.release_reason = RELEASE_REASON_EXPIRED

        checkouts = await self.session.execute(
            select(CheckoutSession).where(CheckoutSession.id.in_(checkout_ids))
        )
        for checkout in checkouts.scalars().all():
            checkout.stock_reserved = False
        await self.session.flush()

        reservations_released_total.labels(reason=RELEASE_REASON_EXPIRED).inc(len(expired))
        logger.info("Expired reservations released", count=len(expired), checkouts=len(checkout_ids))
        return len(expired)
