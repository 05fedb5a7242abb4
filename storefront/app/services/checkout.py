# storefront/app/services/checkout.py
"""
Checkout sessions: address capture, tax and shipping, stock reservation and
the session's own state machine.

    active -> completed | failed | expired   (terminal states are final)

All methods flush and leave commit/rollback to the caller, so a failure at
any step (including an insufficient-stock reservation) rolls the whole
session back.
"""
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import select, and_
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.app.core.base import utcnow
from storefront.app.core.constants import (
    CART_ACTIVE,
    CHECKOUT_ACTIVE,
    CHECKOUT_COMPLETED,
    CHECKOUT_EXPIRED,
    CHECKOUT_FAILED,
    CHECKOUT_TERMINAL_STATUSES,
    RELEASE_REASON_CANCELLED,
    RELEASE_REASON_EXPIRED,
    RELEASE_REASON_FAILED,
    RELEASE_REASON_SUPERSEDED,
)
from storefront.app.core.exceptions import (
    AccessDeniedError,
    CheckoutClosedError,
    CheckoutExpiredError,
    CheckoutNotFoundError,
    EmptyCartError,
    StockNotReservedError,
)
from storefront.app.core.logging import get_logger
from storefront.app.core.metrics import checkout_sessions_total
from storefront.app.core.settings import get_settings
from storefront.app.models.cart import Cart, CartItem
from storefront.app.models.checkout import Address, CheckoutSession, InventoryReservation
from storefront.app.services.addresses import AddressService
from storefront.app.services.cart import CartService
from storefront.app.services.reservations import ReservationManager
from storefront.app.services.shipping import ShippingService
from storefront.app.services.tax import TaxService

logger = get_logger(__name__)

PAYMENT_PROVIDER_HINTS = {
    "INR": {"primary": "razorpay", "secondary": "stripe", "methods": ["card", "upi", "netbanking", "wallet"]},
    "USD": {"primary": "stripe", "secondary": "paypal", "methods": ["card", "paypal", "apple_pay", "google_pay"]},
    "EUR": {"primary": "stripe", "secondary": "paypal", "methods": ["card", "paypal", "sepa", "klarna"]},
    "GBP": {"primary": "stripe", "secondary": "paypal", "methods": ["card", "paypal", "apple_pay", "google_pay"]},
    "CAD": {"primary": "stripe", "secondary": "paypal", "methods": ["card", "paypal", "apple_pay", "google_pay"]},
    "AUD": {"primary": "stripe", "secondary": "paypal", "methods": ["card", "paypal", "apple_pay", "google_pay"]},
}


def get_payment_provider_hints(currency: str) -> Dict[str, Any]:
    hints = PAYMENT_PROVIDER_HINTS.get(currency, PAYMENT_PROVIDER_HINTS["USD"])
    return {"primary": hints["primary"], "secondary": hints["secondary"], "methods": list(hints["methods"])}


class CheckoutService:
    def __init__(self, session: AsyncSession):
        self.session = session
        self.carts = CartService(session)
        self.addresses = AddressService(session)
        self.reservations = ReservationManager(session)
        self.tax = TaxService()
        self.shipping = ShippingService()

    # ----- Helpers -----

    async def _get_checkout(self, checkout_id: int, for_update: bool = False) -> CheckoutSession:
        query = select(CheckoutSession).where(CheckoutSession.id == checkout_id)
        if for_update:
            query = query.with_for_update().execution_options(populate_existing=True)
        checkout = (await self.session.execute(query)).scalar_one_or_none()
        if not checkout:
            raise CheckoutNotFoundError(checkout_id)
        return checkout

    async def _lock_for_transition(self, checkout_id: int) -> Tuple[CheckoutSession, Optional[Cart]]:
        """
        Lock the session's cart, then the session itself.

        Every write path takes cart -> checkout -> inventory rows in that
        order, the same as create_session, so two paths can't deadlock.
        """
        cart_id = await self.session.scalar(
            select(CheckoutSession.cart_id).where(CheckoutSession.id == checkout_id)
        )
        if cart_id is None:
            raise CheckoutNotFoundError(checkout_id)
        cart = await self.carts.lock_cart(cart_id)
        checkout = await self._get_checkout(checkout_id, for_update=True)
        return checkout, cart

    async def _clear_quotes(self, cart: Optional[Cart]) -> None:
        """Drop the tax and shipping a released session wrote into its (still active) cart."""
        if cart is None or cart.status != CART_ACTIVE:
            return
        items = await self.carts.get_items(cart.id)
        for item in items:
            item.line_tax = Decimal("0.00")
        cart.shipping_total = Decimal("0.00")
        await self.carts.recompute_totals(cart, items)

    async def _supersede_active(self, cart: Cart) -> None:
        """A cart holds stock for one checkout at a time; earlier active sessions give theirs back."""
        result = await self.session.execute(
            select(CheckoutSession)
            .where(and_(CheckoutSession.cart_id == cart.id, CheckoutSession.status == CHECKOUT_ACTIVE))
            .order_by(CheckoutSession.id)
            .with_for_update()
        )
        now = utcnow()
        for previous in result.scalars().all():
            released = await self.reservations.release_all(previous.id, RELEASE_REASON_SUPERSEDED)
            previous.status = CHECKOUT_FAILED
            previous.failed_at = now
            previous.failure_reason = RELEASE_REASON_SUPERSEDED
            checkout_sessions_total.labels(status=CHECKOUT_FAILED).inc()
            logger.info("Checkout superseded", checkout_id=previous.id, cart_id=cart.id, released=released)
        await self.session.flush()

    @staticmethod
    def _ensure_open(checkout: CheckoutSession) -> None:
        if checkout.status in CHECKOUT_TERMINAL_STATUSES:
            raise CheckoutClosedError(checkout.id, checkout.status)

    async def _weights(self, items: List[CartItem]) -> Dict[int, Optional[Decimal]]:
        products = await self.carts.catalog.get_many(it.product_id for it in items)
        return {pid: p.weight for pid, p in products.items()}

    async def _reservation_rows(self, checkout_id: int) -> List[InventoryReservation]:
        result = await self.session.execute(
            select(InventoryReservation)
            .where(InventoryReservation.checkout_id == checkout_id)
            .order_by(InventoryReservation.id)
        )
        return list(result.scalars().all())

    def _payload(
        self,
        checkout: CheckoutSession,
        shipping_address: Optional[Address],
        billing_address: Optional[Address],
        now: datetime,
    ) -> Dict[str, Any]:
        return {
            "checkout_id": checkout.id,
            "cart_id": checkout.cart_id,
            "status": checkout.status,
            "amount": checkout.grand_total,
            "currency": checkout.currency,
            "stock_reserved": checkout.stock_reserved,
            "expires_at": checkout.expires_at.isoformat(),
            "time_remaining": checkout.time_remaining(now) if checkout.status == CHECKOUT_ACTIVE else 0,
            "breakdown": {
                "subtotal": checkout.subtotal,
                "discount_total": checkout.discount_total,
                "tax_total": checkout.tax_total,
                "shipping_total": checkout.shipping_total,
                "grand_total": checkout.grand_total,
            },
            "addresses": {
                "shipping": shipping_address.summary() if shipping_address else None,
                "billing": billing_address.summary() if billing_address else None,
            },
            "payment_provider_hints": get_payment_provider_hints(checkout.currency),
        }

    # ----- Create -----

    async def create_session(
        self,
        cart_id: int,
        shipping_address: Dict[str, Any],
        billing_address: Dict[str, Any],
        shipping_method: str,
        user_id: Optional[int] = None,
        cart_token: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Open a checkout for a cart and hold stock for every line.

        An earlier active session on the same cart is superseded: its holds are
        released and it fails with reason "superseded".

        Raises:
            CartNotFoundError: cart missing, inactive or not the caller's
            EmptyCartError: nothing to check out
            InvalidAddressError / InvalidPostalCodeError: bad address payload
            ShippingUnavailableError: method can't serve the destination
            ProductUnavailableError: a line's product was unpublished
            InsufficientStockError: a line can't be reserved (names the sku)
        """
        cart = await self.carts.get_owned_cart(cart_id, user_id, cart_token, for_update=True)
        items = await self.carts.get_items(cart.id)
        if not items:
            raise EmptyCartError(cart.id)

        # Validate both before writing either
        AddressService.validate(shipping_address, "shipping")
        AddressService.validate(billing_address, "billing")
        await self._supersede_active(cart)
        ship_to = await self.addresses.create_or_get(shipping_address, "shipping", cart.user_id)
        bill_to = await self.addresses.create_or_get(billing_address, "billing", cart.user_id)

        await self.carts.reprice_items(cart, items, strict=True)

        weights = await self._weights(items)
        quote = self.shipping.calculate_cost(ship_to, items, shipping_method, cart.currency, weights)
        tax = self.tax.calculate_tax(ship_to, items, cart.currency)

        # The cart carries the quoted tax and shipping so its totals match the session
        item_tax = {t["cart_item_id"]: t["tax_amount"] for t in tax["item_taxes"]}
        for item in items:
            item.line_tax = item_tax.get(item.id, Decimal("0.00"))
        cart.shipping_total = quote["shipping_cost"]
        await self.carts.recompute_totals(cart, items)

        now = utcnow()
        checkout = CheckoutSession(
            cart_id=cart.id,
            shipping_address_id=ship_to.id,
            billing_address_id=bill_to.id,
            shipping_method=shipping_method,
            subtotal=cart.subtotal,
            discount_total=cart.discount_total,
            tax_total=cart.tax_total,
            shipping_total=cart.shipping_total,
            grand_total=cart.grand_total,
            currency=cart.currency,
            stock_reserved=False,
            status=CHECKOUT_ACTIVE,
            expires_at=now + timedelta(minutes=get_settings().CHECKOUT_TTL_MINUTES),
            created_at=now,
        )
        self.session.add(checkout)
        await self.session.flush()

        await self.reservations.reserve_all(checkout, items)

        checkout_sessions_total.labels(status=CHECKOUT_ACTIVE).inc()
        logger.info(
            "Checkout session created",
            checkout_id=checkout.id,
            cart_id=cart.id,
            user_id=cart.user_id,
            amount=str(checkout.grand_total),
            currency=checkout.currency,
        )

        payload = self._payload(checkout, ship_to, bill_to, now)
        payload["shipping"] = {
            "method": shipping_method,
            "cost": quote["shipping_cost"],
            "zone": quote["shipping_zone"],
            "estimated_delivery": quote["estimated_delivery"],
        }
        payload["tax"] = tax["breakdown"]
        return payload

    async def get_shipping_methods(
        self,
        cart_id: int,
        address: Dict[str, Any],
        user_id: Optional[int] = None,
        cart_token: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """Quote every method that can serve the address for this cart."""
        cart = await self.carts.get_owned_cart(cart_id, user_id, cart_token)
        items = await self.carts.get_items(cart.id)
        if not items:
            raise EmptyCartError(cart.id)
        destination = Address(type="shipping", **AddressService.validate(address, "shipping"))
        weights = await self._weights(items)

        methods = []
        for method in self.shipping.get_available_methods(destination, items, weights):
            quote = self.shipping.calculate_cost(destination, items, method["code"], cart.currency, weights)
            methods.append(dict(method, cost=quote["shipping_cost"], currency=cart.currency))
        return methods

    # ----- Read -----

    async def get_session(
        self,
        checkout_id: int,
        user_id: Optional[int] = None,
        cart_token: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Read a session the caller owns.

        Expiry is checked here as well as by the sweep: an active session past
        expires_at reads as expired even if the sweep hasn't run yet.
        """
        checkout = await self._get_checkout(checkout_id)
        cart = await self.session.get(Cart, checkout.cart_id)
        if cart is None:
            raise CheckoutNotFoundError(checkout_id)
        if cart.user_id is not None:
            allowed = user_id is not None and cart.user_id == user_id
        else:
            allowed = bool(cart_token) and cart.cart_token == cart_token
        if not allowed:
            logger.warning("Checkout access denied", checkout_id=checkout_id, user_id=user_id)
            raise AccessDeniedError(checkout_id)

        now = utcnow()
        if checkout.status == CHECKOUT_EXPIRED or (
            checkout.status == CHECKOUT_ACTIVE and checkout.is_expired(now)
        ):
            raise CheckoutExpiredError(checkout_id)

        ship_to = await self.session.get(Address, checkout.shipping_address_id)
        bill_to = await self.session.get(Address, checkout.billing_address_id)
        payload = self._payload(checkout, ship_to, bill_to, now)
        payload["shipping"] = {"method": checkout.shipping_method, "cost": checkout.shipping_total}
        payload["completed_at"] = checkout.completed_at.isoformat() if checkout.completed_at else None
        payload["failed_at"] = checkout.failed_at.isoformat() if checkout.failed_at else None
        payload["failure_reason"] = checkout.failure_reason
        payload["reservations"] = [
            {
                "id": r.id,
                "cart_item_id": r.cart_item_id,
                "product_id": r.product_id,
                "sku": r.sku,
                "quantity": r.quantity,
                "status": r.status,
                "release_reason": r.release_reason,
            }
            for r in await self._reservation_rows(checkout.id)
        ]
        return payload

    # ----- Transitions -----

    async def confirm_reservations(self, checkout_id: int, actor_id: Optional[int] = None) -> Dict[str, Any]:
        """
        Order placed: holds become ledger decrements, the session completes and
        the cart is converted.
        """
        checkout, _ = await self._lock_for_transition(checkout_id)
        if checkout.status == CHECKOUT_EXPIRED:
            raise CheckoutExpiredError(checkout_id)
        self._ensure_open(checkout)
        if checkout.is_expired(utcnow()):
            raise CheckoutExpiredError(checkout_id)
        if not checkout.stock_reserved:
            raise StockNotReservedError(checkout_id)

        confirmed = await self.reservations.confirm_all(checkout_id, actor_id=actor_id)
        checkout.status = CHECKOUT_COMPLETED
        checkout.completed_at = utcnow()
        await self.carts.mark_converted(checkout.cart_id)
        await self.session.flush()

        checkout_sessions_total.labels(status=CHECKOUT_COMPLETED).inc()
        logger.info("Checkout completed", checkout_id=checkout_id, reservations=len(confirmed))
        return {"checkout_id": checkout_id, "status": checkout.status, "confirmed": len(confirmed)}

    async def release_reservations(self, checkout_id: int, reason: str = RELEASE_REASON_CANCELLED) -> Dict[str, Any]:
        """Give the stock back. The session stays active; re-reserving needs a new session."""
        checkout, cart = await self._lock_for_transition(checkout_id)
        self._ensure_open(checkout)
        released = await self.reservations.release_all(checkout_id, reason)
        await self._clear_quotes(cart)
        return {"checkout_id": checkout_id, "status": checkout.status, "released": released}

    async def fail_session(self, checkout_id: int, reason: str) -> Dict[str, Any]:
        """Payment or order placement failed: release holds and close the session."""
        checkout, cart = await self._lock_for_transition(checkout_id)
        self._ensure_open(checkout)
        released = await self.reservations.release_all(checkout_id, RELEASE_REASON_FAILED)
        await self._clear_quotes(cart)
        checkout.status = CHECKOUT_FAILED
        checkout.failed_at = utcnow()
        checkout.failure_reason = reason
        await self.session.flush()

        checkout_sessions_total.labels(status=CHECKOUT_FAILED).inc()
        logger.info("Checkout failed", checkout_id=checkout_id, reason=reason, released=released)
        return {"checkout_id": checkout_id, "status": checkout.status, "released": released}

    # ----- Expiry -----

    async def find_stale_session_ids(self, now: Optional[datetime] = None) -> List[int]:
        now = now or utcnow()
        result = await self.session.execute(
            select(CheckoutSession.id)
            .where(and_(CheckoutSession.status == CHECKOUT_ACTIVE, CheckoutSession.expires_at <= now))
            .order_by(CheckoutSession.id)
        )
        return list(result.scalars().all())

    async def expire_session(self, checkout_id: int, now: Optional[datetime] = None) -> bool:
        """Release holds and mark one stale session expired. False if it changed meanwhile."""
        now = now or utcnow()
        checkout, cart = await self._lock_for_transition(checkout_id)
        if checkout.status != CHECKOUT_ACTIVE or not checkout.is_expired(now):
            return False
        await self.reservations.release_all(checkout_id, RELEASE_REASON_EXPIRED)
        await self._clear_quotes(cart)
        checkout.status = CHECKOUT_EXPIRED
        checkout.stock_reserved = False
        await self.session.flush()
        checkout_sessions_total.labels(status=CHECKOUT_EXPIRED).inc()
        return True

    async def expire_stale_sessions(self, now: Optional[datetime] = None) -> int:
        """Sweep: every active session past expiry releases its holds and becomes expired."""
        now = now or utcnow()
        count = 0
        for checkout_id in await self.find_stale_session_ids(now):
            if await self.expire_session(checkout_id, now):
                count += 1
        if count:
            logger.info("Stale checkout sessions expired", count=count)
        return count

