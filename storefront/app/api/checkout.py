"""
Checkout endpoints.

Shoppers create and read sessions; confirm / release / fail are called by
the order service once payment resolves and require X-Internal-Key.
"""
from typing import Optional

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.app.api.deps import (
    get_cart_token,
    get_session,
    get_user_id,
    handle_service_error,
    require_internal_api_key,
)
from storefront.app.core.exceptions import ServiceError
from storefront.app.core.limiter import limiter
from storefront.app.core.logging import bind_request_context, clear_request_context, get_logger
from storefront.app.core.settings import get_settings
from storefront.app.schemas import CheckoutConfirm, CheckoutCreate, CheckoutFail, CheckoutRelease, ShippingMethodsRequest
from storefront.app.services.checkout import CheckoutService

router = APIRouter()
logger = get_logger(__name__)


@router.post("/sessions")
@limiter.limit(get_settings().CHECKOUT_RATE_LIMIT)
async def create_checkout_session(
    request: Request,
    data: CheckoutCreate,
    session: AsyncSession = Depends(get_session),
    user_id: Optional[int] = Depends(get_user_id),
    cart_token: Optional[str] = Depends(get_cart_token),
):
    """
    Open a checkout for a cart: validates addresses, quotes tax and shipping
    and reserves stock for every line. Nothing is persisted if any step fails.
    """
    bind_request_context(cart_id=data.cart_id, user_id=user_id)
    shipping_address = data.shipping_address.model_dump()
    billing_address = (data.billing_address or data.shipping_address).model_dump()
    try:
        result = await CheckoutService(session).create_session(
            data.cart_id,
            shipping_address,
            billing_address,
            data.shipping_method,
            user_id=user_id,
            cart_token=cart_token,
        )
        await session.commit()
        return result
    except ServiceError as e:
        await handle_service_error(session, e)
    finally:
        clear_request_context()


@router.post("/shipping-methods")
async def list_shipping_methods(
    data: ShippingMethodsRequest,
    session: AsyncSession = Depends(get_session),
    user_id: Optional[int] = Depends(get_user_id),
    cart_token: Optional[str] = Depends(get_cart_token),
):
    """Shipping methods (with quotes) that can serve the address for this cart."""
    try:
        methods = await CheckoutService(session).get_shipping_methods(
            data.cart_id, data.address.model_dump(), user_id, cart_token
        )
        return {"methods": methods}
    except ServiceError as e:
        await handle_service_error(session, e, cart_id=data.cart_id)


@router.get("/sessions/{checkout_id}")
async def get_checkout_session(
    checkout_id: int,
    session: AsyncSession = Depends(get_session),
    user_id: Optional[int] = Depends(get_user_id),
    cart_token: Optional[str] = Depends(get_cart_token),
):
    try:
        return await CheckoutService(session).get_session(checkout_id, user_id, cart_token)
    except ServiceError as e:
        await handle_service_error(session, e, checkout_id=checkout_id)


@router.post("/sessions/{checkout_id}/confirm")
async def confirm_checkout_session(
    checkout_id: int,
    data: Optional[CheckoutConfirm] = None,
    session: AsyncSession = Depends(get_session),
    _auth: None = Depends(require_internal_api_key),
):
    """Order placed: reservations become permanent stock decrements."""
    bind_request_context(checkout_id=checkout_id)
    try:
        result = await CheckoutService(session).confirm_reservations(
            checkout_id, actor_id=data.actor_id if data else None
        )
        await session.commit()
        return result
    except ServiceError as e:
        await handle_service_error(session, e)
    finally:
        clear_request_context()


@router.post("/sessions/{checkout_id}/release")
async def release_checkout_session(
    checkout_id: int,
    data: Optional[CheckoutRelease] = None,
    session: AsyncSession = Depends(get_session),
    _auth: None = Depends(require_internal_api_key),
):
    bind_request_context(checkout_id=checkout_id)
    try:
        if data:
            result = await CheckoutService(session).release_reservations(checkout_id, data.reason)
        else:
            result = await CheckoutService(session).release_reservations(checkout_id)
        await session.commit()
        return result
    except ServiceError as e:
        await handle_service_error(session, e)
    finally:
        clear_request_context()


@router.post("/sessions/{checkout_id}/fail")
async def fail_checkout_session(
    checkout_id: int,
    data: CheckoutFail,
    session: AsyncSession = Depends(get_session),
    _auth: None = Depends(require_internal_api_key),
):
    bind_request_context(checkout_id=checkout_id)
    try:
        result = await CheckoutService(session).fail_session(checkout_id, data.reason)
        await session.commit()
        return result
    except ServiceError as e:
        await handle_service_error(session, e)
    finally:
        clear_request_context()
