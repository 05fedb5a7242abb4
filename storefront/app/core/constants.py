"""
Shared constants for the checkout core.
"""
from decimal import Decimal

# ---------------------------------------------------------------------------
# Cart statuses
# ---------------------------------------------------------------------------
CART_ACTIVE = "active"
CART_CONVERTED = "converted"
CART_ABANDONED = "abandoned"
CART_STATUSES = (CART_ACTIVE, CART_CONVERTED, CART_ABANDONED)

# ---------------------------------------------------------------------------
# Checkout session statuses (completed/failed/expired are terminal)
# ---------------------------------------------------------------------------
CHECKOUT_ACTIVE = "active"
CHECKOUT_COMPLETED = "completed"
CHECKOUT_FAILED = "failed"
CHECKOUT_EXPIRED = "expired"
CHECKOUT_STATUSES = (CHECKOUT_ACTIVE, CHECKOUT_COMPLETED, CHECKOUT_FAILED, CHECKOUT_EXPIRED)
CHECKOUT_TERMINAL_STATUSES = (CHECKOUT_COMPLETED, CHECKOUT_FAILED, CHECKOUT_EXPIRED)

# ---------------------------------------------------------------------------
# Reservation statuses
# ---------------------------------------------------------------------------
RESERVATION_ACTIVE = "active"
RESERVATION_CONFIRMED = "confirmed"
RESERVATION_RELEASED = "released"
RESERVATION_STATUSES = (RESERVATION_ACTIVE, RESERVATION_CONFIRMED, RESERVATION_RELEASED)

RELEASE_REASON_EXPIRED = "expired"
RELEASE_REASON_CANCELLED = "cancelled"
RELEASE_REASON_FAILED = "checkout_failed"
RELEASE_REASON_SUPERSEDED = "superseded"

# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------
PRODUCT_PUBLISHED = "published"
PRODUCT_STATUSES = ("draft", "published", "archived")
DEFAULT_PRODUCT_WEIGHT_KG = Decimal("0.1")

# ---------------------------------------------------------------------------
# Money / locale
# ---------------------------------------------------------------------------
SUPPORTED_CURRENCIES = ("USD", "EUR", "GBP", "INR", "CAD", "AUD")

SUPPORTED_COUNTRIES = (
    "US", "CA", "GB", "IN", "AU", "DE", "FR", "IT", "ES", "NL",
    "BR", "MX", "JP", "CN", "KR", "SG", "MY", "TH", "PH", "ID", "VN",
)

ADDRESS_TYPES = ("shipping", "billing")

ZERO = Decimal("0")
ONE_CENT = Decimal("0.01")

# ---------------------------------------------------------------------------
# Pagination
# ---------------------------------------------------------------------------
DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 200
