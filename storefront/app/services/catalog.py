# storefront/app/services/catalog.py
"""Read-only access to the catalog's products table."""
from typing import Dict, Iterable, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.app.core.constants import PRODUCT_PUBLISHED
from storefront.app.models.product import Product


class ProductCatalog:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_id(self, product_id: int) -> Optional[Product]:
        return await self.session.get(Product, product_id)

    async def get_by_sku(self, sku: str) -> Optional[Product]:
        result = await self.session.execute(select(Product).where(Product.sku == sku))
        return result.scalar_one_or_none()

    async def get_many(self, product_ids: Iterable[int]) -> Dict[int, Product]:
        ids = list(set(product_ids))
        if not ids:
            return {}
        result = await self.session.execute(select(Product).where(Product.id.in_(ids)))
        return {p.id: p for p in result.scalars().all()}

    @staticmethod
    def is_published(product: Product) -> bool:
        return product.status == PRODUCT_PUBLISHED and product.deleted_at is None
