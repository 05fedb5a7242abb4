# storefront/app/services/__init__.py
"""
Services layer for business logic.
Keeps API endpoints thin and business logic testable and reusable.
Services flush; the caller (router, sweep runner) commits or rolls back.
"""

from storefront.app.services.inventory import InventoryService, active_hold_totals
from storefront.app.services.catalog import ProductCatalog
from storefront.app.services.cart import CartService
from storefront.app.services.reservations import ReservationManager
from storefront.app.services.checkout import CheckoutService, get_payment_provider_hints
from storefront.app.services.addresses import AddressService
from storefront.app.services.tax import TaxService
from storefront.app.services.shipping import ShippingService
from storefront.app.services.cache import CacheService

__all__ = [
    # Inventory ledger / store
    "InventoryService",
    "active_hold_totals",
    # Catalog
    "ProductCatalog",
    # Cart aggregate
    "CartService",
    # Reservations and checkout
    "ReservationManager",
    "CheckoutService",
    "get_payment_provider_hints",
    # Collaborators
    "AddressService",
    "TaxService",
    "ShippingService",
    # Shared store
    "CacheService",
]
