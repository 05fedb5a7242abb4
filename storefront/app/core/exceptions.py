"""
Unified exception hierarchy for the checkout core.

Every service error carries an HTTP status and a stable machine-readable
``code`` so routers can return structured errors instead of raw exceptions.
Errors are grouped by category (not found, conflict, validation, expired,
security violation); callers may catch either the concrete error or its
category base.
"""
from typing import Any, Dict, Optional


class ServiceError(Exception):
    """Base exception for all service-layer errors."""

    code = "service_error"

    def __init__(self, message: str, status_code: int = 400, code: Optional[str] = None, **extra: Any):
        self.message = message
        self.status_code = status_code
        if code:
            self.code = code
        self.extra = extra
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"code": self.code, "message": self.message}
        payload.update(self.extra)
        return payload


# ---------------------------------------------------------------------------
# Categories
# ---------------------------------------------------------------------------

class NotFoundError(ServiceError):
    code = "not_found"

    def __init__(self, message: str, **extra: Any):
        super().__init__(message, 404, **extra)


class ConflictError(ServiceError):
    code = "conflict"

    def __init__(self, message: str, **extra: Any):
        super().__init__(message, 409, **extra)


class ValidationError(ServiceError):
    code = "validation_error"

    def __init__(self, message: str, **extra: Any):
        super().__init__(message, 422, **extra)


class ExpiredError(ServiceError):
    code = "expired"

    def __init__(self, message: str, **extra: Any):
        super().__init__(message, 410, **extra)


class SecurityViolationError(ServiceError):
    code = "access_denied"

    def __init__(self, message: str, **extra: Any):
        super().__init__(message, 403, **extra)


# ---------------------------------------------------------------------------
# Not found
# ---------------------------------------------------------------------------

class ProductNotFoundError(NotFoundError):
    code = "product_not_found"

    def __init__(self, ref: Any):
        super().__init__(f"Product {ref} not found", product=str(ref))


class InventoryNotFoundError(NotFoundError):
    code = "inventory_not_found"

    def __init__(self, product_id: int):
        super().__init__(f"No inventory record for product {product_id}", product_id=product_id)


class CartNotFoundError(NotFoundError):
    code = "cart_not_found"

    def __init__(self, cart_id: Any):
        super().__init__(f"Cart {cart_id} not found or access denied", cart_id=cart_id)


class CartItemNotFoundError(NotFoundError):
    code = "cart_item_not_found"

    def __init__(self, item_id: int):
        super().__init__(f"Cart item {item_id} not found", item_id=item_id)


class CheckoutNotFoundError(NotFoundError):
    code = "checkout_not_found"

    def __init__(self, checkout_id: int):
        super().__init__(f"Checkout session {checkout_id} not found", checkout_id=checkout_id)


# ---------------------------------------------------------------------------
# Conflict
# ---------------------------------------------------------------------------

class InsufficientStockError(ConflictError):
    """Always names the offending sku so the caller can ask for a smaller quantity."""
    code = "insufficient_stock"

    def __init__(self, sku: str, requested: int, available: int):
        self.sku = sku
        self.requested = requested
        self.available = available
        super().__init__(
            f"Insufficient stock for {sku}. Available: {available}, Requested: {requested}",
            sku=sku,
            requested=requested,
            available=available,
        )


class NegativeStockError(ConflictError):
    code = "negative_stock"

    def __init__(self, product_id: int, quantity: int, delta: int):
        super().__init__(
            f"Stock for product {product_id} cannot go negative ({quantity} {delta:+d})",
            product_id=product_id,
            quantity=quantity,
            delta=delta,
        )


class ReservedStockError(ConflictError):
    code = "reserved_stock"

    def __init__(self, product_id: int, quantity: int, reserved: int, delta: int):
        super().__init__(
            f"Product {product_id} has {reserved} units held by active checkouts ({quantity} {delta:+d})",
            product_id=product_id,
            quantity=quantity,
            reserved=reserved,
            delta=delta,
        )


class ProductSoftDeletedError(ConflictError):
    code = "product_deleted"

    def __init__(self, product_id: int):
        super().__init__(f"Product {product_id} is soft-deleted", product_id=product_id)


class ProductUnavailableError(ConflictError):
    code = "product_unavailable"

    def __init__(self, sku: str):
        super().__init__(f"Product {sku} is not available", sku=sku)


class AlreadyReservedError(ConflictError):
    code = "already_reserved"

    def __init__(self, checkout_id: int, cart_item_id: int):
        super().__init__(
            f"Cart item {cart_item_id} already has a reservation in checkout {checkout_id}",
            checkout_id=checkout_id,
            cart_item_id=cart_item_id,
        )


class CheckoutClosedError(ConflictError):
    code = "checkout_closed"

    def __init__(self, checkout_id: int, status: str):
        super().__init__(
            f"Checkout session {checkout_id} is {status} and can no longer change",
            checkout_id=checkout_id,
            status=status,
        )


class StockNotReservedError(ConflictError):
    code = "stock_not_reserved"

    def __init__(self, checkout_id: int):
        super().__init__(
            f"Checkout session {checkout_id} holds no stock; start a new checkout",
            checkout_id=checkout_id,
        )


class EmptyCartError(ConflictError):
    code = "empty_cart"

    def __init__(self, cart_id: int):
        super().__init__(f"Cart {cart_id} is empty", cart_id=cart_id)


class LedgerImmutableError(ConflictError):
    code = "ledger_immutable"

    def __init__(self, entry_id: Any):
        super().__init__(f"Stock ledger entry {entry_id} is immutable", entry_id=entry_id)


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

class InvalidQuantityError(ValidationError):
    code = "invalid_quantity"

    def __init__(self, qty: Any):
        super().__init__(f"Invalid quantity: {qty}", qty=qty)


class InvalidAddressError(ValidationError):
    code = "invalid_address"

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message, field=field)


class InvalidPostalCodeError(ValidationError):
    code = "invalid_postal_code"

    def __init__(self, postal_code: Optional[str], country: str):
        super().__init__(
            f"Postal code '{postal_code}' is not valid for {country}",
            postal_code=postal_code,
            country=country,
        )


class UnsupportedCurrencyError(ValidationError):
    code = "unsupported_currency"

    def __init__(self, currency: Any):
        super().__init__(f"Currency {currency} is not supported", currency=currency)


class ShippingUnavailableError(ValidationError):
    code = "shipping_unavailable"

    def __init__(self, method: str, country: Optional[str] = None):
        super().__init__(
            f"Shipping method {method} is not available for this destination",
            method=method,
            country=country,
        )


class InvalidReasonError(ValidationError):
    code = "invalid_reason"

    def __init__(self, reason: Any):
        super().__init__(f"Unknown stock adjustment reason: {reason}", reason=str(reason))


class InvalidIdentityError(ValidationError):
    code = "invalid_identity"

    def __init__(self, message: str = "Exactly one of user_id or cart_token must be provided"):
        super().__init__(message)


# ---------------------------------------------------------------------------
# Expired / security
# ---------------------------------------------------------------------------

class CheckoutExpiredError(ExpiredError):
    code = "checkout_expired"

    def __init__(self, checkout_id: int):
        super().__init__(f"Checkout session {checkout_id} has expired", checkout_id=checkout_id)


class AccessDeniedError(SecurityViolationError):
    def __init__(self, checkout_id: int):
        super().__init__(f"Access denied to checkout session {checkout_id}", checkout_id=checkout_id)
