from pydantic import BaseModel, Field, field_validator
from typing import Optional

from storefront.app.models.inventory import StockReason


def _strip(v: Optional[str]) -> Optional[str]:
    if v is None:
        return None
    v = v.strip()
    return v or None


# --- Cart ---
class CartCreate(BaseModel):
    currency: Optional[str] = None


class CartItemAdd(BaseModel):
    sku: str = Field(min_length=1, max_length=64)
    # Range is checked by the service so errors keep the structured shape
    qty: int = 1

    @field_validator("sku")
    @classmethod
    def strip_sku(cls, v: str) -> str:
        return v.strip()


class CartItemUpdate(BaseModel):
    qty: int


class CartMerge(BaseModel):
    guest_cart_token: str = Field(min_length=1, max_length=36)


# --- Addresses / checkout ---
class AddressIn(BaseModel):
    """Free-form postal address; required fields and postal codes are validated by the service."""
    name: Optional[str] = Field(None, max_length=120)
    phone: Optional[str] = Field(None, max_length=20)
    email: Optional[str] = Field(None, max_length=120)
    line1: Optional[str] = Field(None, max_length=255)
    line2: Optional[str] = Field(None, max_length=255)
    city: Optional[str] = Field(None, max_length=120)
    state: Optional[str] = Field(None, max_length=120)
    postal_code: Optional[str] = Field(None, max_length=20)
    country: Optional[str] = Field(None, max_length=2)

    @field_validator("*")
    @classmethod
    def strip_fields(cls, v: Optional[str]) -> Optional[str]:
        return _strip(v)


class CheckoutCreate(BaseModel):
    cart_id: int
    shipping_address: AddressIn
    billing_address: Optional[AddressIn] = None  # defaults to the shipping address
    shipping_method: str = "standard"


class ShippingMethodsRequest(BaseModel):
    cart_id: int
    address: AddressIn


class CheckoutConfirm(BaseModel):
    actor_id: Optional[int] = None


class CheckoutRelease(BaseModel):
    reason: str = Field("cancelled", min_length=1, max_length=64)


class CheckoutFail(BaseModel):
    reason: str = Field(min_length=1, max_length=500)


# --- Inventory ---
class StockAdjust(BaseModel):
    delta: int
    reason: str = StockReason.MANUAL_ADJUST.value
    note: Optional[str] = Field(None, max_length=500)
    actor_id: Optional[int] = None


class CartSweepRequest(BaseModel):
    older_than_days: Optional[int] = Field(None, ge=1)
