"""Addresses, checkout sessions and the inventory reservations they hold."""
from sqlalchemy import (
    BigInteger, Integer, ForeignKey, DateTime, DECIMAL, String, Index, UniqueConstraint, Boolean, Text, CheckConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column
from datetime import datetime
from decimal import Decimal
from typing import Optional

from storefront.app.core.base import Base, utcnow


class Address(Base):
    """Postal address. Never edited once referenced; a changed address is a new row."""
    __tablename__ = 'addresses'
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    type: Mapped[str] = mapped_column(String(10), nullable=False)
    name: Mapped[Optional[str]] = mapped_column(String(120), nullable=True)
    phone: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    email: Mapped[Optional[str]] = mapped_column(String(120), nullable=True)
    line1: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    line2: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    city: Mapped[Optional[str]] = mapped_column(String(120), nullable=True)
    state: Mapped[Optional[str]] = mapped_column(String(120), nullable=True)
    postal_code: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    country: Mapped[str] = mapped_column(String(2), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    __table_args__ = (
        Index('ix_addresses_user_type', 'user_id', 'type'),
    )

    def formatted(self) -> str:
        parts = [self.line1, self.line2, self.city, self.state, self.postal_code, self.country]
        return ", ".join(p for p in parts if p)

    def summary(self) -> dict:
        return {
            "id": self.id,
            "type": self.type,
            "name": self.name,
            "phone": self.phone,
            "email": self.email,
            "address": self.formatted(),
            "country": self.country,
        }


class CheckoutSession(Base):
    __tablename__ = 'checkouts'
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    cart_id: Mapped[int] = mapped_column(ForeignKey('carts.id'), nullable=False)
    shipping_address_id: Mapped[int] = mapped_column(ForeignKey('addresses.id'), nullable=False)
    billing_address_id: Mapped[int] = mapped_column(ForeignKey('addresses.id'), nullable=False)
    shipping_method: Mapped[str] = mapped_column(String(20), nullable=False)
    subtotal: Mapped[Decimal] = mapped_column(DECIMAL(12, 2), default=Decimal("0.00"), nullable=False)
    discount_total: Mapped[Decimal] = mapped_column(DECIMAL(12, 2), default=Decimal("0.00"), nullable=False)
    tax_total: Mapped[Decimal] = mapped_column(DECIMAL(12, 2), default=Decimal("0.00"), nullable=False)
    shipping_total: Mapped[Decimal] = mapped_column(DECIMAL(12, 2), default=Decimal("0.00"), nullable=False)
    grand_total: Mapped[Decimal] = mapped_column(DECIMAL(12, 2), default=Decimal("0.00"), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    stock_reserved: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    status: Mapped[str] = mapped_column(String(20), default='active', nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    failed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    __table_args__ = (
        Index('ix_checkouts_cart_id', 'cart_id'),
        Index('ix_checkouts_status_expires', 'status', 'expires_at'),
    )

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def time_remaining(self, now: datetime) -> int:
        """Seconds until expiry, floored at zero."""
        return max(0, int((self.expires_at - now).total_seconds()))


class InventoryReservation(Base):
    """Time-bound hold on stock for one cart line within one checkout attempt."""
    __tablename__ = 'inventory_reservations'
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    checkout_id: Mapped[int] = mapped_column(ForeignKey('checkouts.id'), nullable=False)
    cart_item_id: Mapped[int] = mapped_column(Integer, nullable=False)
    product_id: Mapped[int] = mapped_column(ForeignKey('products.id'), nullable=False)
    sku: Mapped[str] = mapped_column(String(64), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(20), default='active', nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    confirmed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    released_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    release_reason: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    __table_args__ = (
        UniqueConstraint('checkout_id', 'cart_item_id', name='uq_reservations_checkout_item'),
        CheckConstraint('quantity >= 1', name='quantity_positive'),
        # Availability lookups: active holds per product that have not yet expired
        Index('ix_reservations_product_status_expires', 'product_id', 'status', 'expires_at'),
        Index('ix_reservations_status_expires', 'status', 'expires_at'),
    )
