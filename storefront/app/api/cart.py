"""Cart endpoints. Caller identity comes from X-User-Id (gateway) or X-Cart-Token (guest)."""
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.app.api.deps import get_cart_token, get_session, get_user_id, handle_service_error
from storefront.app.core.exceptions import ServiceError
from storefront.app.core.logging import get_logger
from storefront.app.schemas import CartCreate, CartItemAdd, CartItemUpdate, CartMerge
from storefront.app.services.cart import CartService, serialize_item

router = APIRouter()
logger = get_logger(__name__)


@router.post("")
async def create_or_get_cart(
    data: Optional[CartCreate] = None,
    session: AsyncSession = Depends(get_session),
    user_id: Optional[int] = Depends(get_user_id),
    cart_token: Optional[str] = Depends(get_cart_token),
):
    """Return the caller's active cart, creating one on first interaction."""
    service = CartService(session)
    try:
        # A logged-in user is identified by user id only; a stale guest token is ignored
        cart = await service.create_or_get(
            user_id=user_id,
            cart_token=None if user_id is not None else cart_token,
            currency=data.currency if data else None,
        )
        result = await service.get_summary(cart)
        await session.commit()
        return result
    except ServiceError as e:
        await handle_service_error(session, e, user_id=user_id)


@router.post("/merge")
async def merge_carts(
    data: CartMerge,
    session: AsyncSession = Depends(get_session),
    user_id: Optional[int] = Depends(get_user_id),
):
    """Fold a guest cart into the logged-in user's cart."""
    if user_id is None:
        raise HTTPException(status_code=401, detail="X-User-Id header is required")
    service = CartService(session)
    try:
        cart = await service.merge(data.guest_cart_token, user_id)
        result = await service.get_summary(cart)
        await session.commit()
        return result
    except ServiceError as e:
        await handle_service_error(session, e, user_id=user_id)


@router.get("/{cart_id}")
async def get_cart(
    cart_id: int,
    session: AsyncSession = Depends(get_session),
    user_id: Optional[int] = Depends(get_user_id),
    cart_token: Optional[str] = Depends(get_cart_token),
):
    try:
        return await CartService(session).get_cart(cart_id, user_id, cart_token)
    except ServiceError as e:
        await handle_service_error(session, e, cart_id=cart_id)


@router.post("/{cart_id}/items")
async def add_cart_item(
    cart_id: int,
    data: CartItemAdd,
    session: AsyncSession = Depends(get_session),
    user_id: Optional[int] = Depends(get_user_id),
    cart_token: Optional[str] = Depends(get_cart_token),
):
    service = CartService(session)
    try:
        item = await service.add_item(cart_id, data.sku, data.qty, user_id, cart_token)
        item_data = serialize_item(item)
        cart = await service.get_cart(cart_id, user_id, cart_token)
        await session.commit()
        return {"item": item_data, "cart": cart}
    except ServiceError as e:
        await handle_service_error(session, e, cart_id=cart_id, sku=data.sku)


@router.patch("/{cart_id}/items/{item_id}")
async def update_cart_item(
    cart_id: int,
    item_id: int,
    data: CartItemUpdate,
    session: AsyncSession = Depends(get_session),
    user_id: Optional[int] = Depends(get_user_id),
    cart_token: Optional[str] = Depends(get_cart_token),
):
    """Set a line's quantity; 0 removes the line."""
    service = CartService(session)
    try:
        item = await service.update_item(cart_id, item_id, data.qty, user_id, cart_token)
        item_data = serialize_item(item) if item else None
        cart = await service.get_cart(cart_id, user_id, cart_token)
        await session.commit()
        return {"item": item_data, "cart": cart}
    except ServiceError as e:
        await handle_service_error(session, e, cart_id=cart_id, item_id=item_id)


@router.delete("/{cart_id}/items/{item_id}")
async def remove_cart_item(
    cart_id: int,
    item_id: int,
    session: AsyncSession = Depends(get_session),
    user_id: Optional[int] = Depends(get_user_id),
    cart_token: Optional[str] = Depends(get_cart_token),
):
    service = CartService(session)
    try:
        await service.remove_item(cart_id, item_id, user_id, cart_token)
        cart = await service.get_cart(cart_id, user_id, cart_token)
        await session.commit()
        return cart
    except ServiceError as e:
        await handle_service_error(session, e, cart_id=cart_id, item_id=item_id)


@router.delete("/{cart_id}/items")
async def clear_cart(
    cart_id: int,
    session: AsyncSession = Depends(get_session),
    user_id: Optional[int] = Depends(get_user_id),
    cart_token: Optional[str] = Depends(get_cart_token),
):
    service = CartService(session)
    try:
        cart = await service.clear(cart_id, user_id, cart_token)
        result = await service.get_summary(cart)
        await session.commit()
        return result
    except ServiceError as e:
        await handle_service_error(session, e, cart_id=cart_id)


@router.post("/{cart_id}/reprice")
async def reprice_cart(
    cart_id: int,
    session: AsyncSession = Depends(get_session),
    user_id: Optional[int] = Depends(get_user_id),
    cart_token: Optional[str] = Depends(get_cart_token),
):
    """Refresh price snapshots from the catalog."""
    try:
        result = await CartService(session).reprice(cart_id, user_id, cart_token)
        await session.commit()
        return result
    except ServiceError as e:
        await handle_service_error(session, e, cart_id=cart_id)
