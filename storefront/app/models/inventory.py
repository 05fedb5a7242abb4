"""Inventory records and the append-only stock ledger."""
import enum
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    BigInteger, Boolean, CheckConstraint, DateTime, Enum, ForeignKey, Index, Integer, String, Text, event,
)
from sqlalchemy.orm import Mapped, mapped_column

from storefront.app.core.base import Base, utcnow
from storefront.app.core.exceptions import LedgerImmutableError


class StockReason(str, enum.Enum):
    """Closed set of reasons a stock quantity may change."""
    INITIAL = "initial"
    MANUAL_ADJUST = "manual_adjust"
    ORDER_HOLD = "order_hold"
    ORDER_RELEASE = "order_release"
    RETURN = "return"
    RECOUNT = "recount"


class InventoryRecord(Base):
    """Current on-hand quantity for one product. Written only via ledger entries."""
    __tablename__ = 'inventory'
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    product_id: Mapped[int] = mapped_column(ForeignKey('products.id'), unique=True, nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    low_stock_threshold: Mapped[int] = mapped_column(Integer, default=5, nullable=False)
    in_stock: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        CheckConstraint('quantity >= 0', name='quantity_non_negative'),
        CheckConstraint('low_stock_threshold >= 0', name='threshold_non_negative'),
    )

    @property
    def low_stock(self) -> bool:
        return 0 < self.quantity <= self.low_stock_threshold


class StockLedgerEntry(Base):
    """Immutable audit record of one quantity change."""
    __tablename__ = 'stock_ledger'
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    product_id: Mapped[int] = mapped_column(ForeignKey('products.id'), nullable=False)
    delta: Mapped[int] = mapped_column(Integer, nullable=False)
    reason: Mapped[StockReason] = mapped_column(
        Enum(
            StockReason,
            name='stock_reason',
            native_enum=False,
            length=32,
            values_callable=lambda e: [m.value for m in e],
            validate_strings=True,
        ),
        nullable=False,
    )
    note: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_by: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index('ix_stock_ledger_product_created', 'product_id', 'created_at'),
        Index('ix_stock_ledger_reason', 'reason'),
    )


@event.listens_for(StockLedgerEntry, 'before_update')
def _reject_ledger_update(mapper, connection, target):
    raise LedgerImmutableError(target.id)


@event.listens_for(StockLedgerEntry, 'before_delete')
def _reject_ledger_delete(mapper, connection, target):
    raise LedgerImmutableError(target.id)
