"""Catalog product, owned by the catalog service. This core only reads it."""
from sqlalchemy import String, DECIMAL, Index, DateTime, Integer
from sqlalchemy.orm import Mapped, mapped_column
from datetime import datetime
from decimal import Decimal
from typing import Optional

from storefront.app.core.base import Base, utcnow


class Product(Base):
    __tablename__ = 'products'
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    sku: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(255))
    price: Mapped[Decimal] = mapped_column(DECIMAL(12, 2))
    currency: Mapped[str] = mapped_column(String(3), default='INR')
    status: Mapped[str] = mapped_column(String(20), default='draft')
    weight: Mapped[Optional[Decimal]] = mapped_column(DECIMAL(8, 3), nullable=True)  # kg
    category_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    __table_args__ = (
        Index('ix_products_status', 'status'),
        Index('ix_products_status_deleted', 'status', 'deleted_at'),
    )

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None
