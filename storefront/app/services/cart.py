# storefront/app/services/cart.py
"""Cart aggregate: identity, line items, price snapshots and totals."""
import uuid
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import select, update, and_, exists
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.app.core.base import money, utcnow
from storefront.app.core.constants import (
    CART_ABANDONED,
    CART_ACTIVE,
    CART_CONVERTED,
    CHECKOUT_ACTIVE,
    SUPPORTED_CURRENCIES,
)
from storefront.app.core.exceptions import (
    CartItemNotFoundError,
    CartNotFoundError,
    InsufficientStockError,
    InvalidIdentityError,
    InvalidQuantityError,
    ProductNotFoundError,
    ProductUnavailableError,
    UnsupportedCurrencyError,
)
from storefront.app.core.logging import get_logger
from storefront.app.core.metrics import insufficient_stock_total
from storefront.app.core.settings import get_settings
from storefront.app.models.cart import Cart, CartItem
from storefront.app.models.checkout import CheckoutSession
from storefront.app.models.inventory import InventoryRecord
from storefront.app.models.product import Product
from storefront.app.services.catalog import ProductCatalog

logger = get_logger(__name__)


def _is_quantity(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def apply_line_amounts(item: CartItem) -> None:
    """line_total = line_subtotal - line_discount + line_tax."""
    item.line_subtotal = money(Decimal(str(item.unit_price)) * item.qty)
    discount = money(item.line_discount)
    item.line_discount = min(discount, item.line_subtotal)
    item.line_tax = money(item.line_tax)
    item.line_total = money(item.line_subtotal - item.line_discount + item.line_tax)


def serialize_item(item: CartItem) -> Dict[str, Any]:
    return {
        "id": item.id,
        "product_id": item.product_id,
        "sku": item.sku,
        "qty": item.qty,
        "unit_price": item.unit_price,
        "line_subtotal": item.line_subtotal,
        "line_discount": item.line_discount,
        "line_tax": item.line_tax,
        "line_total": item.line_total,
    }


def serialize_cart(cart: Cart, items: List[CartItem]) -> Dict[str, Any]:
    return {
        "id": cart.id,
        "user_id": cart.user_id,
        "cart_token": cart.cart_token,
        "currency": cart.currency,
        "status": cart.status,
        "items": [serialize_item(it) for it in items],
        "item_count": sum(it.qty for it in items),
        "subtotal": cart.subtotal,
        "discount_total": cart.discount_total,
        "tax_total": cart.tax_total,
        "shipping_total": cart.shipping_total,
        "grand_total": cart.grand_total,
        "updated_at": cart.updated_at.isoformat() if cart.updated_at else None,
    }


class CartService:
    def __init__(self, session: AsyncSession):
        self.session = session
        self.catalog = ProductCatalog(session)

    # ----- Identity -----

    async def create_or_get(
        self,
        user_id: Optional[int] = None,
        cart_token: Optional[str] = None,
        currency: Optional[str] = None,
    ) -> Cart:
        """
        Return the active cart for a user or guest token, creating one if needed.

        A guest call without a token (or with a token that no longer maps to an
        active cart) gets a new cart with a fresh token.
        """
        if user_id is not None and cart_token:
            raise InvalidIdentityError()
        currency = (currency or get_settings().DEFAULT_CURRENCY).upper()
        if currency not in SUPPORTED_CURRENCIES:
            raise UnsupportedCurrencyError(currency)

        if user_id is not None:
            cart = await self._find_active(Cart.user_id == user_id)
            if cart:
                return cart
            cart = Cart(user_id=user_id, currency=currency, status=CART_ACTIVE)
        else:
            if cart_token:
                cart = await self._find_active(Cart.cart_token == cart_token)
                if cart:
                    return cart
            cart = Cart(cart_token=str(uuid.uuid4()), currency=currency, status=CART_ACTIVE)

        self.session.add(cart)
        await self.session.flush()
        logger.info("Cart created", cart_id=cart.id, user_id=user_id, guest=user_id is None)
        return cart

    async def _find_active(self, condition) -> Optional[Cart]:
        result = await self.session.execute(
            select(Cart)
            .where(and_(condition, Cart.status == CART_ACTIVE))
            .order_by(Cart.id.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def get_owned_cart(
        self,
        cart_id: int,
        user_id: Optional[int] = None,
        cart_token: Optional[str] = None,
        for_update: bool = False,
    ) -> Cart:
        """
        Load an active cart the caller owns.

        Missing, inactive and foreign carts all raise CartNotFoundError so
        callers can't tell whether someone else's cart id exists.
        """
        query = select(Cart).where(Cart.id == cart_id)
        if for_update:
            query = query.with_for_update()
        cart = (await self.session.execute(query)).scalar_one_or_none()
        if not cart or cart.status != CART_ACTIVE:
            raise CartNotFoundError(cart_id)
        if user_id is not None:
            owned = cart.user_id == user_id
        elif cart_token:
            owned = cart.user_id is None and cart.cart_token == cart_token
        else:
            owned = False
        if not owned:
            raise CartNotFoundError(cart_id)
        return cart

    async def lock_cart(self, cart_id: int) -> Optional[Cart]:
        """SELECT ... FOR UPDATE on a cart in any status, refreshing the loaded instance."""
        result = await self.session.execute(
            select(Cart)
            .where(Cart.id == cart_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_items(self, cart_id: int) -> List[CartItem]:
        result = await self.session.execute(
            select(CartItem).where(CartItem.cart_id == cart_id).order_by(CartItem.id)
        )
        return list(result.scalars().all())

    async def _get_item(self, cart_id: int, item_id: int) -> CartItem:
        item = await self.session.get(CartItem, item_id)
        if not item or item.cart_id != cart_id:
            raise CartItemNotFoundError(item_id)
        return item

    # ----- Totals -----

    async def recompute_totals(self, cart: Cart, items: Optional[List[CartItem]] = None) -> Cart:
        """
        Rebuild line and cart totals from the current lines.

        subtotal = sum(line_subtotal); grand_total = subtotal - discount_total
        + tax_total + shipping_total. Running it twice changes nothing.
        """
        if items is None:
            items = await self.get_items(cart.id)
        for item in items:
            apply_line_amounts(item)

        cart.subtotal = money(sum((it.line_subtotal for it in items), Decimal("0")))
        cart.discount_total = money(sum((it.line_discount for it in items), Decimal("0")))
        cart.tax_total = money(sum((it.line_tax for it in items), Decimal("0")))
        cart.shipping_total = money(cart.shipping_total)
        cart.grand_total = money(max(
            Decimal("0"),
            cart.subtotal - cart.discount_total + cart.tax_total + cart.shipping_total,
        ))
        await self.session.flush()
        return cart

    async def _finish_mutation(self, cart: Cart) -> None:
        cart.updated_at = utcnow()
        await self.recompute_totals(cart)

    # ----- Stock -----

    async def _on_hand(self, product_id: int) -> int:
        """Cart-time check uses on-hand stock; reservations only matter at checkout."""
        quantity = await self.session.scalar(
            select(InventoryRecord.quantity).where(InventoryRecord.product_id == product_id)
        )
        return int(quantity or 0)

    async def _ensure_stock(self, product: Product, requested: int) -> None:
        on_hand = await self._on_hand(product.id)
        if requested > on_hand:
            insufficient_stock_total.labels(stage="cart").inc()
            raise InsufficientStockError(product.sku, requested, on_hand)

    async def _get_sellable_product(self, sku: str) -> Product:
        product = await self.catalog.get_by_sku(sku)
        if not product:
            raise ProductNotFoundError(sku)
        if not self.catalog.is_published(product):
            raise ProductUnavailableError(sku)
        return product

    # ----- Mutations -----

    async def add_item(
        self,
        cart_id: int,
        sku: str,
        qty: int,
        user_id: Optional[int] = None,
        cart_token: Optional[str] = None,
    ) -> CartItem:
        """
        Add `qty` units of a sku. An existing line for the sku is merged and
        the combined quantity re-validated; the price snapshot is refreshed.
        Caller must commit.
        """
        if not _is_quantity(qty) or qty < 1:
            raise InvalidQuantityError(qty)
        cart = await self.get_owned_cart(cart_id, user_id, cart_token, for_update=True)
        product = await self._get_sellable_product(sku)

        result = await self.session.execute(
            select(CartItem).where(and_(CartItem.cart_id == cart.id, CartItem.sku == product.sku))
        )
        item = result.scalar_one_or_none()
        new_qty = qty + (item.qty if item else 0)
        await self._ensure_stock(product, new_qty)

        if item:
            item.qty = new_qty
            item.unit_price = money(product.price)
        else:
            item = CartItem(
                cart_id=cart.id,
                product_id=product.id,
                sku=product.sku,
                qty=new_qty,
                unit_price=money(product.price),
                line_discount=Decimal("0.00"),
                line_tax=Decimal("0.00"),
            )
            self.session.add(item)
        apply_line_amounts(item)
        await self.session.flush()
        await self._finish_mutation(cart)

        logger.info("Cart item added", cart_id=cart.id, sku=product.sku, qty=qty, line_qty=new_qty)
        return item

    async def update_item(
        self,
        cart_id: int,
        item_id: int,
        qty: int,
        user_id: Optional[int] = None,
        cart_token: Optional[str] = None,
    ) -> Optional[CartItem]:
        """Set a line's quantity. 0 removes the line (returns None)."""
        if not _is_quantity(qty) or qty < 0:
            raise InvalidQuantityError(qty)
        cart = await self.get_owned_cart(cart_id, user_id, cart_token, for_update=True)
        item = await self._get_item(cart.id, item_id)

        if qty == 0:
            await self.session.delete(item)
            await self.session.flush()
            await self._finish_mutation(cart)
            return None

        if qty > item.qty:
            product = await self.catalog.get_by_id(item.product_id)
            if not product:
                raise ProductNotFoundError(item.sku)
            if not self.catalog.is_published(product):
                raise ProductUnavailableError(item.sku)
            await self._ensure_stock(product, qty)

        item.qty = qty
        apply_line_amounts(item)
        await self._finish_mutation(cart)
        return item

    async def remove_item(
        self,
        cart_id: int,
        item_id: int,
        user_id: Optional[int] = None,
        cart_token: Optional[str] = None,
    ) -> None:
        cart = await self.get_owned_cart(cart_id, user_id, cart_token, for_update=True)
        item = await self._get_item(cart.id, item_id)
        await self.session.delete(item)
        await self.session.flush()
        await self._finish_mutation(cart)

    async def clear(self, cart_id: int, user_id: Optional[int] = None, cart_token: Optional[str] = None) -> Cart:
        cart = await self.get_owned_cart(cart_id, user_id, cart_token, for_update=True)
        await self._delete_items(cart.id)
        await self._finish_mutation(cart)
        return cart

    async def _delete_items(self, cart_id: int) -> None:
        for item in await self.get_items(cart_id):
            await self.session.delete(item)
        await self.session.flush()

    # ----- Reads -----

    async def get_cart(
        self,
        cart_id: int,
        user_id: Optional[int] = None,
        cart_token: Optional[str] = None,
    ) -> Dict[str, Any]:
        cart = await self.get_owned_cart(cart_id, user_id, cart_token)
        return serialize_cart(cart, await self.get_items(cart.id))

    async def get_summary(self, cart: Cart) -> Dict[str, Any]:
        return serialize_cart(cart, await self.get_items(cart.id))

    # ----- Pricing -----

    async def reprice_items(self, cart: Cart, items: List[CartItem], strict: bool = False) -> List[CartItem]:
        """
        Refresh price snapshots from the catalog and recompute totals.

        With `strict` (checkout), a line whose product is gone or unpublished
        raises instead of keeping its old snapshot.
        """
        products = await self.catalog.get_many(it.product_id for it in items)
        changed = 0
        for item in items:
            product = products.get(item.product_id)
            if not product or not self.catalog.is_published(product):
                if strict:
                    raise ProductUnavailableError(item.sku)
                continue
            price = money(product.price)
            if item.unit_price is None or money(item.unit_price) != price:
                item.unit_price = price
                changed += 1
        await self.recompute_totals(cart, items)
        if changed:
            logger.info("Cart repriced", cart_id=cart.id, changed_lines=changed)
        return items

    async def reprice(self, cart_id: int, user_id: Optional[int] = None, cart_token: Optional[str] = None) -> Dict[str, Any]:
        cart = await self.get_owned_cart(cart_id, user_id, cart_token, for_update=True)
        items = await self.get_items(cart.id)
        await self.reprice_items(cart, items)
        return serialize_cart(cart, items)

    # ----- Lifecycle -----

    async def merge(self, guest_cart_token: str, user_id: int) -> Cart:
        """
        Fold a guest cart into the user's active cart on login.

        Overlapping skus sum their quantities (the user's price snapshot is
        kept); other lines move over with the guest's snapshot. The guest cart
        ends up empty and `converted`. Stock is re-checked at checkout, not here.
        """
        if user_id is None or not guest_cart_token:
            raise InvalidIdentityError("Both guest_cart_token and user_id are required to merge carts")

        result = await self.session.execute(
            select(Cart)
            .where(and_(Cart.cart_token == guest_cart_token, Cart.status == CART_ACTIVE))
            .with_for_update()
        )
        guest = result.scalar_one_or_none()
        if not guest:
            raise CartNotFoundError(guest_cart_token)

        user_cart = await self.create_or_get(user_id=user_id, currency=guest.currency)
        user_items = {it.sku: it for it in await self.get_items(user_cart.id)}
        guest_items = await self.get_items(guest.id)

        for g in guest_items:
            existing = user_items.get(g.sku)
            if existing:
                existing.qty += g.qty
            else:
                moved = CartItem(
                    cart_id=user_cart.id,
                    product_id=g.product_id,
                    sku=g.sku,
                    qty=g.qty,
                    unit_price=g.unit_price,
                    line_discount=g.line_discount,
                    line_tax=g.line_tax,
                )
                self.session.add(moved)
                user_items[g.sku] = moved
            await self.session.delete(g)
        await self.session.flush()

        await self._finish_mutation(user_cart)
        guest.status = CART_CONVERTED
        await self._finish_mutation(guest)

        logger.info(
            "Guest cart merged",
            guest_cart_id=guest.id,
            user_cart_id=user_cart.id,
            user_id=user_id,
            lines=len(guest_items),
        )
        return user_cart

    async def mark_converted(self, cart_id: int) -> Cart:
        """Order placed: empty the cart and close it."""
        cart = await self.session.get(Cart, cart_id)
        if not cart:
            raise CartNotFoundError(cart_id)
        if cart.status == CART_CONVERTED:
            return cart
        await self._delete_items(cart.id)
        cart.status = CART_CONVERTED
        await self._finish_mutation(cart)
        return cart

    async def mark_abandoned(self, older_than_days: Optional[int] = None, now: Optional[datetime] = None) -> int:
        """
        Sweep: active carts with no activity for `older_than_days` become
        `abandoned`. Carts with a live checkout session are skipped.
        """
        now = now or utcnow()
        days = older_than_days if older_than_days is not None else get_settings().CART_ABANDON_DAYS
        cutoff = now - timedelta(days=days)

        live_checkout = exists().where(
            and_(
                CheckoutSession.cart_id == Cart.id,
                CheckoutSession.status == CHECKOUT_ACTIVE,
                CheckoutSession.expires_at > now,
            )
        )
        result = await self.session.execute(
            update(Cart)
            .where(and_(Cart.status == CART_ACTIVE, Cart.updated_at < cutoff, ~live_checkout))
            .values(status=CART_ABANDONED)
            .execution_options(synchronize_session=False)
        )
        count = result.rowcount or 0
        if count:
            logger.info("Abandoned carts marked", count=count, cutoff=cutoff.isoformat())
        return count
