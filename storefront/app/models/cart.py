"""Cart aggregate: one cart per identity (registered user or guest token) and its lines."""
from sqlalchemy import BigInteger, Integer, ForeignKey, DateTime, DECIMAL, String, Index, UniqueConstraint, CheckConstraint
from sqlalchemy.orm import Mapped, mapped_column
from datetime import datetime
from decimal import Decimal
from typing import Optional

from storefront.app.core.base import Base, utcnow


class Cart(Base):
    __tablename__ = 'carts'
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    cart_token: Mapped[Optional[str]] = mapped_column(String(36), unique=True, nullable=True)
    currency: Mapped[str] = mapped_column(String(3), default='INR', nullable=False)
    subtotal: Mapped[Decimal] = mapped_column(DECIMAL(12, 2), default=Decimal("0.00"), nullable=False)
    discount_total: Mapped[Decimal] = mapped_column(DECIMAL(12, 2), default=Decimal("0.00"), nullable=False)
    tax_total: Mapped[Decimal] = mapped_column(DECIMAL(12, 2), default=Decimal("0.00"), nullable=False)
    shipping_total: Mapped[Decimal] = mapped_column(DECIMAL(12, 2), default=Decimal("0.00"), nullable=False)
    grand_total: Mapped[Decimal] = mapped_column(DECIMAL(12, 2), default=Decimal("0.00"), nullable=False)
    status: Mapped[str] = mapped_column(String(20), default='active', nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    # Last activity; the abandoned-cart sweep keys off this
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        CheckConstraint(
            '(user_id IS NULL AND cart_token IS NOT NULL) OR (user_id IS NOT NULL AND cart_token IS NULL)',
            name='owner_xor',
        ),
        CheckConstraint(
            'subtotal >= 0 AND discount_total >= 0 AND tax_total >= 0 '
            'AND shipping_total >= 0 AND grand_total >= 0',
            name='totals_non_negative',
        ),
        Index('ix_carts_user_status', 'user_id', 'status'),
        Index('ix_carts_status_updated', 'status', 'updated_at'),
    )


class CartItem(Base):
    """One line in a cart. Price is a snapshot taken when the line was added or repriced."""
    __tablename__ = 'cart_items'
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    cart_id: Mapped[int] = mapped_column(ForeignKey('carts.id', ondelete='CASCADE'), nullable=False)
    product_id: Mapped[int] = mapped_column(ForeignKey('products.id'), nullable=False)
    sku: Mapped[str] = mapped_column(String(64), nullable=False)
    qty: Mapped[int] = mapped_column(Integer, nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(DECIMAL(12, 2), nullable=False)
    line_subtotal: Mapped[Decimal] = mapped_column(DECIMAL(12, 2), default=Decimal("0.00"), nullable=False)
    line_discount: Mapped[Decimal] = mapped_column(DECIMAL(12, 2), default=Decimal("0.00"), nullable=False)
    line_tax: Mapped[Decimal] = mapped_column(DECIMAL(12, 2), default=Decimal("0.00"), nullable=False)
    line_total: Mapped[Decimal] = mapped_column(DECIMAL(12, 2), default=Decimal("0.00"), nullable=False)

    __table_args__ = (
        UniqueConstraint('cart_id', 'sku', name='uq_cart_items_cart_sku'),
        CheckConstraint('qty >= 1', name='qty_positive'),
        Index('ix_cart_items_cart_id', 'cart_id'),
    )
