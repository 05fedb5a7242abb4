# storefront/app/services/inventory.py
"""
Inventory ledger and store.

Every quantity change goes through ``InventoryService.apply_delta``: the
inventory row is locked, one immutable ledger entry is appended and the
row's quantity is moved by the same delta, all inside the caller's
transaction. Nothing else writes ``InventoryRecord.quantity``.

Availability for checkout is ``quantity - active unexpired reservations``;
holds never touch the ledger until they are confirmed.
"""
import math
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Union

from sqlalchemy import and_, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.app.core.base import utcnow
from storefront.app.core.constants import DEFAULT_PAGE_SIZE, MAX_PAGE_SIZE, PRODUCT_PUBLISHED, RESERVATION_ACTIVE
from storefront.app.core.exceptions import (
    InvalidQuantityError,
    InvalidReasonError,
    InventoryNotFoundError,
    NegativeStockError,
    ProductNotFoundError,
    ProductSoftDeletedError,
    ReservedStockError,
)
from storefront.app.core.logging import get_logger
from storefront.app.core.metrics import stock_ledger_entries_total
from storefront.app.core.settings import get_settings
from storefront.app.models.checkout import InventoryReservation
from storefront.app.models.inventory import InventoryRecord, StockLedgerEntry, StockReason
from storefront.app.models.product import Product

logger = get_logger(__name__)


async def active_hold_totals(
    session: AsyncSession,
    product_ids: Iterable[int],
    now: Optional[datetime] = None,
) -> Dict[int, int]:
    """
    Sum of quantities held by active reservations per product.

    Reservations past ``expires_at`` are ignored even if the sweep has not
    released them yet.
    """
    ids = list(set(product_ids))
    if not ids:
        return {}
    now = now or utcnow()
    result = await session.execute(
        select(InventoryReservation.product_id, func.coalesce(func.sum(InventoryReservation.quantity), 0))
        .where(
            and_(
                InventoryReservation.product_id.in_(ids),
                InventoryReservation.status == RESERVATION_ACTIVE,
                InventoryReservation.expires_at > now,
            )
        )
        .group_by(InventoryReservation.product_id)
    )
    totals = {pid: 0 for pid in ids}
    for pid, held in result.all():
        totals[pid] = int(held)
    return totals


def _pagination(total: int, page: int, limit: int) -> Dict[str, int]:
    return {
        "total": total,
        "page": page,
        "limit": limit,
        "total_pages": math.ceil(total / limit) if limit else 0,
    }


def _clamp_page(page: int, limit: int) -> tuple[int, int]:
    page = max(1, page)
    limit = max(1, min(limit, MAX_PAGE_SIZE))
    return page, limit


class InventoryService:
    def __init__(self, session: AsyncSession):
        self.session = session

    @staticmethod
    def _coerce_reason(reason: Union[str, StockReason]) -> StockReason:
        try:
            return StockReason(reason)
        except ValueError:
            raise InvalidReasonError(reason)

    async def _get_live_product(self, product_id: int) -> Product:
        product = await self.session.get(Product, product_id)
        if not product:
            raise ProductNotFoundError(product_id)
        if product.deleted_at is not None:
            raise ProductSoftDeletedError(product_id)
        return product

    async def lock_records(self, product_ids: Iterable[int]) -> Dict[int, InventoryRecord]:
        """
        Lock inventory rows with SELECT ... FOR UPDATE.

        Rows are locked in ascending product_id order so concurrent multi-item
        checkouts cannot deadlock each other.
        """
        ids = sorted(set(product_ids))
        if not ids:
            return {}
        result = await self.session.execute(
            select(InventoryRecord)
            .where(InventoryRecord.product_id.in_(ids))
            .order_by(InventoryRecord.product_id)
            .with_for_update()
        )
        return {r.product_id: r for r in result.scalars().all()}

    async def append_entry(
        self,
        record: InventoryRecord,
        delta: int,
        reason: StockReason,
        note: Optional[str] = None,
        actor_id: Optional[int] = None,
    ) -> StockLedgerEntry:
        """
        Append a ledger entry and move the (already locked) record by `delta`.
        Rejects any change that would leave the quantity below zero.
        """
        new_quantity = record.quantity + delta
        if new_quantity < 0:
            raise NegativeStockError(record.product_id, record.quantity, delta)

        entry = StockLedgerEntry(
            product_id=record.product_id,
            delta=delta,
            reason=reason,
            note=note,
            created_by=actor_id,
            created_at=utcnow(),
        )
        self.session.add(entry)
        record.quantity = new_quantity
        record.in_stock = new_quantity > 0
        await self.session.flush()

        stock_ledger_entries_total.labels(reason=reason.value).inc()
        logger.info(
            "Stock ledger entry appended",
            product_id=record.product_id,
            delta=delta,
            reason=reason.value,
            quantity=new_quantity,
            actor_id=actor_id,
        )
        return entry

    async def apply_delta(
        self,
        product_id: int,
        delta: int,
        reason: Union[str, StockReason] = StockReason.MANUAL_ADJUST,
        note: Optional[str] = None,
        actor_id: Optional[int] = None,
    ) -> InventoryRecord:
        """
        Apply a signed stock change for a product.

        Creates the inventory row on first use. Caller must commit the session
        after this returns.

        Raises:
            ProductNotFoundError: product doesn't exist
            ProductSoftDeletedError: product was soft-deleted
            NegativeStockError: quantity would drop below zero
            ReservedStockError: a manual decrease would eat into stock held by
                active checkouts
            InvalidReasonError: reason is not a StockReason
        """
        stock_reason = self._coerce_reason(reason)
        if isinstance(delta, bool) or not isinstance(delta, int):
            raise InvalidQuantityError(delta)
        await self._get_live_product(product_id)

        records = await self.lock_records([product_id])
        record = records.get(product_id)
        if record is None:
            record = InventoryRecord(
                product_id=product_id,
                quantity=0,
                low_stock_threshold=get_settings().LOW_STOCK_THRESHOLD_DEFAULT,
                in_stock=False,
            )
            self.session.add(record)

        # Only confirming a hold may take held units off the shelf
        if delta < 0 and stock_reason != StockReason.ORDER_HOLD:
            held = (await active_hold_totals(self.session, [product_id]))[product_id]
            remaining = record.quantity + delta
            if held and 0 <= remaining < held:
                raise ReservedStockError(product_id, record.quantity, held, delta)

        await self.append_entry(record, delta, stock_reason, note, actor_id)
        return record

    async def set_quantity(
        self,
        product_id: int,
        quantity: int,
        reason: Union[str, StockReason] = StockReason.RECOUNT,
        note: Optional[str] = None,
        actor_id: Optional[int] = None,
    ) -> InventoryRecord:
        """Set an absolute quantity (stock count); recorded as the difference."""
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 0:
            raise InvalidQuantityError(quantity)
        await self._get_live_product(product_id)
        records = await self.lock_records([product_id])
        current = records[product_id].quantity if product_id in records else 0
        return await self.apply_delta(product_id, quantity - current, reason, note, actor_id)

    async def restock_order(
        self,
        product_id: int,
        quantity: int,
        order_ref: str,
        actor_id: Optional[int] = None,
    ) -> InventoryRecord:
        """Return stock from a confirmed order that was cancelled downstream."""
        if quantity < 1:
            raise InvalidQuantityError(quantity)
        return await self.apply_delta(
            product_id,
            quantity,
            StockReason.ORDER_RELEASE,
            note=f"Released from order {order_ref}",
            actor_id=actor_id,
        )

    async def set_low_stock_threshold(self, product_id: int, threshold: int) -> InventoryRecord:
        if threshold < 0:
            raise InvalidQuantityError(threshold)
        records = await self.lock_records([product_id])
        record = records.get(product_id)
        if record is None:
            raise InventoryNotFoundError(product_id)
        record.low_stock_threshold = threshold
        await self.session.flush()
        return record

    # ----- Reads -----

    async def get_record(self, product_id: int) -> InventoryRecord:
        product = await self.session.get(Product, product_id)
        if not product:
            raise ProductNotFoundError(product_id)
        result = await self.session.execute(
            select(InventoryRecord).where(InventoryRecord.product_id == product_id)
        )
        record = result.scalar_one_or_none()
        if record is None:
            raise InventoryNotFoundError(product_id)
        return record

    async def get_available(self, product_id: int, now: Optional[datetime] = None) -> int:
        """On-hand quantity minus active holds."""
        record = await self.get_record(product_id)
        held = await active_hold_totals(self.session, [product_id], now)
        return max(0, record.quantity - held[product_id])

    async def get_stock_status(self, product_id: int) -> Dict[str, Any]:
        record = await self.get_record(product_id)
        held = (await active_hold_totals(self.session, [product_id]))[product_id]
        return {
            "product_id": product_id,
            "quantity": record.quantity,
            "reserved": held,
            "available": max(0, record.quantity - held),
            "in_stock": record.quantity > 0,
            "low_stock": record.low_stock,
            "low_stock_threshold": record.low_stock_threshold,
        }

    async def get_history(self, product_id: int, page: int = 1, limit: int = DEFAULT_PAGE_SIZE) -> Dict[str, Any]:
        """Ledger entries for a product, newest first."""
        product = await self.session.get(Product, product_id)
        if not product:
            raise ProductNotFoundError(product_id)
        page, limit = _clamp_page(page, limit)

        total = await self.session.scalar(
            select(func.count(StockLedgerEntry.id)).where(StockLedgerEntry.product_id == product_id)
        )
        result = await self.session.execute(
            select(StockLedgerEntry)
            .where(StockLedgerEntry.product_id == product_id)
            .order_by(StockLedgerEntry.created_at.desc(), StockLedgerEntry.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )
        entries = [
            {
                "id": e.id,
                "delta": e.delta,
                "reason": e.reason.value,
                "note": e.note,
                "created_by": e.created_by,
                "created_at": e.created_at.isoformat() if e.created_at else None,
            }
            for e in result.scalars().all()
        ]
        return {"entries": entries, "pagination": _pagination(total or 0, page, limit)}

    async def verify_ledger(self, product_id: int) -> Dict[str, Any]:
        """Check that the ledger deltas add up to the stored quantity."""
        record = await self.get_record(product_id)
        ledger_sum = await self.session.scalar(
            select(func.coalesce(func.sum(StockLedgerEntry.delta), 0))
            .where(StockLedgerEntry.product_id == product_id)
        )
        ledger_sum = int(ledger_sum or 0)
        consistent = ledger_sum == record.quantity
        if not consistent:
            logger.error(
                "Stock ledger drift detected",
                product_id=product_id,
                quantity=record.quantity,
                ledger_sum=ledger_sum,
            )
        return {
            "product_id": product_id,
            "quantity": record.quantity,
            "ledger_sum": ledger_sum,
            "consistent": consistent,
        }

    @staticmethod
    def _live_filter(*conditions):
        return and_(
            Product.status == PRODUCT_PUBLISHED,
            Product.deleted_at.is_(None),
            *conditions,
        )

    async def _count_live(self, *conditions) -> int:
        total = await self.session.scalar(
            select(func.count(Product.id))
            .join(InventoryRecord, InventoryRecord.product_id == Product.id)
            .where(self._live_filter(*conditions))
        )
        return int(total or 0)

    async def _list_products(self, conditions: List[Any], page: int, limit: int) -> Dict[str, Any]:
        page, limit = _clamp_page(page, limit)
        total = await self._count_live(*conditions)
        result = await self.session.execute(
            select(Product, InventoryRecord)
            .join(InventoryRecord, InventoryRecord.product_id == Product.id)
            .where(self._live_filter(*conditions))
            .order_by(Product.created_at.desc(), Product.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )
        products = [
            {
                "product_id": p.id,
                "sku": p.sku,
                "name": p.name,
                "quantity": inv.quantity,
                "low_stock_threshold": inv.low_stock_threshold,
            }
            for p, inv in result.all()
        ]
        return {"products": products, "pagination": _pagination(total, page, limit)}

    async def list_low_stock(self, page: int = 1, limit: int = DEFAULT_PAGE_SIZE) -> Dict[str, Any]:
        return await self._list_products(
            [InventoryRecord.quantity > 0, InventoryRecord.quantity <= InventoryRecord.low_stock_threshold],
            page,
            limit,
        )

    async def list_out_of_stock(self, page: int = 1, limit: int = DEFAULT_PAGE_SIZE) -> Dict[str, Any]:
        return await self._list_products([InventoryRecord.quantity == 0], page, limit)

    async def get_summary(self) -> Dict[str, int]:
        """Dashboard counts over published, non-deleted products."""
        total_products = await self.session.scalar(
            select(func.count(Product.id)).where(
                and_(Product.status == PRODUCT_PUBLISHED, Product.deleted_at.is_(None))
            )
        )

        return {
            "total_products": int(total_products or 0),
            "in_stock": await self._count_live(InventoryRecord.quantity > 0),
            "low_stock": await self._count_live(
                InventoryRecord.quantity > 0,
                InventoryRecord.quantity <= InventoryRecord.low_stock_threshold,
            ),
            "out_of_stock": await self._count_live(InventoryRecord.quantity == 0),
        }
