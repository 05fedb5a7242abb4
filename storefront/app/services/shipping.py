# storefront/app/services/shipping.py
"""
Shipping quotes by destination zone.

A quote is the largest of three components (flat base rate, per-kg rate,
percentage of order value), then free standard shipping above the zone
threshold and a floor for every paid method.
"""
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Mapping, Optional

from storefront.app.core.base import money
from storefront.app.core.constants import DEFAULT_PRODUCT_WEIGHT_KG
from storefront.app.core.exceptions import ShippingUnavailableError
from storefront.app.core.logging import get_logger

logger = get_logger(__name__)

METHOD_STANDARD = "standard"
METHOD_EXPRESS = "express"
METHOD_OVERNIGHT = "overnight"
METHOD_PICKUP = "pickup"

SHIPPING_METHODS = (
    {"code": METHOD_STANDARD, "name": "Standard Shipping", "description": "5-7 business days"},
    {"code": METHOD_EXPRESS, "name": "Express Shipping", "description": "2-3 business days"},
    {"code": METHOD_OVERNIGHT, "name": "Overnight Shipping", "description": "Next business day"},
    {"code": METHOD_PICKUP, "name": "Store Pickup", "description": "Available at select locations"},
)
METHOD_CODES = tuple(m["code"] for m in SHIPPING_METHODS)

ZONE_INTERNATIONAL = "international"

COUNTRY_ZONES = {
    "US": "domestic", "CA": "domestic",
    "GB": "europe", "DE": "europe", "FR": "europe", "IT": "europe", "ES": "europe", "NL": "europe",
    "IN": "asia", "JP": "asia", "CN": "asia", "KR": "asia", "SG": "asia",
    "MY": "asia", "TH": "asia", "PH": "asia", "ID": "asia", "VN": "asia",
    "AU": "oceania",
    "BR": "south_america",
    "MX": "north_america",
}


def _rates(standard: str, express: str, overnight: str, pickup: str = "0") -> Dict[str, Decimal]:
    return {
        METHOD_STANDARD: Decimal(standard),
        METHOD_EXPRESS: Decimal(express),
        METHOD_OVERNIGHT: Decimal(overnight),
        METHOD_PICKUP: Decimal(pickup),
    }


BASE_RATES = {
    "domestic": _rates("5.99", "12.99", "24.99"),
    "europe": _rates("8.99", "19.99", "39.99"),
    "asia": _rates("6.99", "15.99", "29.99"),
    "oceania": _rates("9.99", "22.99", "44.99"),
    "north_america": _rates("7.99", "16.99", "32.99"),
    "south_america": _rates("11.99", "24.99", "49.99"),
    "international": _rates("15.99", "34.99", "69.99"),
}

# Per kg
WEIGHT_RATES = {
    "domestic": _rates("1.5", "2.5", "4.0"),
    "europe": _rates("2.0", "3.5", "6.0"),
    "asia": _rates("1.8", "3.0", "5.0"),
    "oceania": _rates("2.5", "4.0", "7.0"),
    "north_america": _rates("2.0", "3.5", "6.0"),
    "south_america": _rates("3.0", "5.0", "8.0"),
    "international": _rates("4.0", "6.0", "10.0"),
}

# Insurance and handling, fraction of order value
VALUE_RATES = {
    "domestic": _rates("0.02", "0.03", "0.04"),
    "europe": _rates("0.025", "0.035", "0.045"),
    "asia": _rates("0.02", "0.03", "0.04"),
    "oceania": _rates("0.03", "0.04", "0.05"),
    "north_america": _rates("0.025", "0.035", "0.045"),
    "south_america": _rates("0.035", "0.045", "0.055"),
    "international": _rates("0.04", "0.05", "0.06"),
}

FREE_SHIPPING_THRESHOLDS = {
    "domestic": Decimal("50"),
    "europe": Decimal("75"),
    "asia": Decimal("60"),
    "oceania": Decimal("80"),
    "north_america": Decimal("55"),
    "south_america": Decimal("90"),
    "international": Decimal("100"),
}

MIN_SHIPPING_COST = Decimal("2.99")

UNAVAILABLE_METHODS = {
    "international": {METHOD_OVERNIGHT},
    "south_america": {METHOD_OVERNIGHT},
}

WEIGHT_LIMITS_KG = {
    METHOD_STANDARD: Decimal("30"),
    METHOD_EXPRESS: Decimal("20"),
    METHOD_OVERNIGHT: Decimal("10"),
    METHOD_PICKUP: Decimal("50"),
}

VALUE_LIMITS = {
    METHOD_STANDARD: Decimal("10000"),
    METHOD_EXPRESS: Decimal("5000"),
    METHOD_OVERNIGHT: Decimal("2000"),
    METHOD_PICKUP: Decimal("50000"),
}

_PICKUP_READY = "Ready for pickup"
ESTIMATED_DELIVERY = {
    "domestic": ("5-7 business days", "2-3 business days", "Next business day"),
    "europe": ("7-10 business days", "3-5 business days", "1-2 business days"),
    "asia": ("6-8 business days", "3-4 business days", "1-2 business days"),
    "oceania": ("8-12 business days", "4-6 business days", "2-3 business days"),
    "north_america": ("7-10 business days", "3-5 business days", "1-2 business days"),
    "south_america": ("10-14 business days", "5-7 business days", "2-3 business days"),
    "international": ("12-18 business days", "6-10 business days", "3-5 business days"),
}


def get_zone(country: Optional[str]) -> str:
    return COUNTRY_ZONES.get((country or "").upper(), ZONE_INTERNATIONAL)


def estimated_delivery(zone: str, method: str) -> str:
    if method == METHOD_PICKUP:
        return _PICKUP_READY
    standard, express, overnight = ESTIMATED_DELIVERY.get(zone, ESTIMATED_DELIVERY[ZONE_INTERNATIONAL])
    return {METHOD_STANDARD: standard, METHOD_EXPRESS: express, METHOD_OVERNIGHT: overnight}[method]


def is_method_available(zone: str, method: str, weight: Decimal, value: Decimal) -> bool:
    if method in UNAVAILABLE_METHODS.get(zone, ()):
        return False
    if weight > WEIGHT_LIMITS_KG[method]:
        return False
    return value <= VALUE_LIMITS[method]


class ShippingService:
    """
    Quotes work on cart lines (anything with product_id, qty and
    line_subtotal) plus an optional product_id -> weight (kg) map; lines
    without a known weight count as 100 g per unit.
    """

    @staticmethod
    def total_weight(lines: Iterable[Any], weights: Optional[Mapping[int, Optional[Decimal]]] = None) -> Decimal:
        weights = weights or {}
        total = Decimal("0")
        for line in lines:
            unit = weights.get(line.product_id) or DEFAULT_PRODUCT_WEIGHT_KG
            total += Decimal(str(unit)) * line.qty
        return total

    @staticmethod
    def total_value(lines: Iterable[Any]) -> Decimal:
        return sum((money(line.line_subtotal) for line in lines), Decimal("0"))

    def get_zone(self, country: Optional[str]) -> str:
        return get_zone(country)

    def get_available_methods(
        self,
        address: Any,
        lines: Iterable[Any],
        weights: Optional[Mapping[int, Optional[Decimal]]] = None,
    ) -> List[Dict[str, str]]:
        lines = list(lines)
        zone = get_zone(address.country)
        weight = self.total_weight(lines, weights)
        value = self.total_value(lines)
        return [
            dict(m, estimated_delivery=estimated_delivery(zone, m["code"]))
            for m in SHIPPING_METHODS
            if is_method_available(zone, m["code"], weight, value)
        ]

    def calculate_cost(
        self,
        address: Any,
        lines: Iterable[Any],
        method: str,
        currency: str,
        weights: Optional[Mapping[int, Optional[Decimal]]] = None,
    ) -> Dict[str, Any]:
        """
        Quote one method for a destination.

        Raises:
            ShippingUnavailableError: unknown method, or the method can't serve
                this zone / weight / order value
        """
        if method not in METHOD_CODES:
            raise ShippingUnavailableError(method, address.country)

        lines = list(lines)
        zone = get_zone(address.country)
        weight = self.total_weight(lines, weights)
        value = self.total_value(lines)
        if not is_method_available(zone, method, weight, value):
            raise ShippingUnavailableError(method, address.country)

        base_rate = BASE_RATES[zone][method]
        weight_rate = weight * WEIGHT_RATES[zone][method]
        value_rate = value * VALUE_RATES[zone][method]
        cost = max(base_rate, weight_rate, value_rate)

        if method == METHOD_STANDARD and value >= FREE_SHIPPING_THRESHOLDS[zone]:
            cost = Decimal("0")
        elif method != METHOD_PICKUP:
            cost = max(cost, MIN_SHIPPING_COST)

        quote = {
            "shipping_cost": money(cost),
            "currency": currency,
            "shipping_method": method,
            "shipping_zone": zone,
            "weight": weight,
            "value": value,
            "breakdown": {
                "base_rate": money(base_rate),
                "weight_rate": money(weight_rate),
                "value_rate": money(value_rate),
            },
            "estimated_delivery": estimated_delivery(zone, method),
            "is_available": True,
        }
        logger.info(
            "Shipping quoted",
            country=address.country,
            method=method,
            zone=zone,
            cost=str(quote["shipping_cost"]),
            weight=str(weight),
        )
        return quote
