# storefront/app/services/tax.py
"""Destination-based sales tax (VAT/GST plus US state and Canadian provincial rates)."""
from decimal import Decimal
from typing import Any, Dict, Iterable, Optional

from storefront.app.core.base import money
from storefront.app.core.logging import get_logger

logger = get_logger(__name__)

# National rate (VAT / GST / consumption tax)
COUNTRY_TAX_RATES: Dict[str, Decimal] = {
    "US": Decimal("0.00"),  # state level only
    "CA": Decimal("0.05"),
    "GB": Decimal("0.20"),
    "IN": Decimal("0.18"),
    "AU": Decimal("0.10"),
    "DE": Decimal("0.19"),
    "FR": Decimal("0.20"),
    "IT": Decimal("0.22"),
    "ES": Decimal("0.21"),
    "NL": Decimal("0.21"),
    "BR": Decimal("0.00"),
    "MX": Decimal("0.16"),
    "JP": Decimal("0.10"),
    "CN": Decimal("0.13"),
    "KR": Decimal("0.10"),
    "SG": Decimal("0.07"),
    "MY": Decimal("0.06"),
    "TH": Decimal("0.07"),
    "PH": Decimal("0.12"),
    "ID": Decimal("0.11"),
    "VN": Decimal("0.10"),
}

US_STATE_TAX_RATES: Dict[str, Decimal] = {
    "CA": Decimal("0.075"), "NY": Decimal("0.08"), "TX": Decimal("0.0625"), "FL": Decimal("0.06"),
    "IL": Decimal("0.0625"), "PA": Decimal("0.06"), "OH": Decimal("0.0575"), "GA": Decimal("0.04"),
    "NC": Decimal("0.0475"), "MI": Decimal("0.06"), "NJ": Decimal("0.06625"), "VA": Decimal("0.053"),
    "WA": Decimal("0.065"), "AZ": Decimal("0.056"), "MA": Decimal("0.0625"), "TN": Decimal("0.07"),
    "IN": Decimal("0.07"), "MO": Decimal("0.04225"), "MD": Decimal("0.06"), "WI": Decimal("0.05"),
    "CO": Decimal("0.029"), "MN": Decimal("0.06875"), "SC": Decimal("0.06"), "AL": Decimal("0.04"),
    "LA": Decimal("0.0445"), "KY": Decimal("0.06"), "OR": Decimal("0.00"), "OK": Decimal("0.045"),
    "CT": Decimal("0.0635"), "UT": Decimal("0.061"), "IA": Decimal("0.06"), "NV": Decimal("0.0685"),
    "AR": Decimal("0.065"), "MS": Decimal("0.07"), "KS": Decimal("0.065"), "NM": Decimal("0.05125"),
    "NE": Decimal("0.055"), "WV": Decimal("0.06"), "ID": Decimal("0.06"), "HI": Decimal("0.04"),
    "NH": Decimal("0.00"), "ME": Decimal("0.055"), "RI": Decimal("0.07"), "MT": Decimal("0.00"),
    "DE": Decimal("0.00"), "SD": Decimal("0.045"), "ND": Decimal("0.05"), "AK": Decimal("0.00"),
    "VT": Decimal("0.06"), "WY": Decimal("0.04"), "DC": Decimal("0.06"),
}

CA_PROVINCE_TAX_RATES: Dict[str, Decimal] = {
    "AB": Decimal("0.00"), "BC": Decimal("0.07"), "MB": Decimal("0.07"), "NB": Decimal("0.10"),
    "NL": Decimal("0.10"), "NS": Decimal("0.10"), "ON": Decimal("0.08"), "PE": Decimal("0.10"),
    "QC": Decimal("0.09975"), "SK": Decimal("0.06"), "NT": Decimal("0.00"), "NU": Decimal("0.00"),
    "YT": Decimal("0.00"),
}

ZERO_RATE = Decimal("0.00")


def get_country_rate(country: Optional[str]) -> Decimal:
    return COUNTRY_TAX_RATES.get((country or "").upper(), ZERO_RATE)


def get_state_rate(country: Optional[str], state: Optional[str]) -> Decimal:
    """Sub-national rate; only the US and Canada levy one here."""
    country = (country or "").upper()
    state = (state or "").upper()
    if country == "US":
        return US_STATE_TAX_RATES.get(state, ZERO_RATE)
    if country == "CA":
        return CA_PROVINCE_TAX_RATES.get(state, ZERO_RATE)
    return ZERO_RATE


def is_tax_exempt(customer_type: Optional[str], tax_id: Optional[str]) -> bool:
    return customer_type == "business" and bool(tax_id)


class TaxService:
    """
    Tax is computed per line on the line subtotal and summed, then the sum is
    rounded half-up to cents. Line amounts are rounded the same way so that
    `sum(line_tax)` may differ from `tax_total` by at most a cent per line.
    """

    def calculate_tax(self, address: Any, lines: Iterable[Any], currency: str) -> Dict[str, Any]:
        country_rate = get_country_rate(address.country)
        state_rate = get_state_rate(address.country, address.state)
        total_rate = country_rate + state_rate

        total = Decimal("0")
        item_taxes = []
        for line in lines:
            subtotal = money(line.line_subtotal)
            amount = subtotal * total_rate
            total += amount
            item_taxes.append({
                "cart_item_id": line.id,
                "sku": line.sku,
                "subtotal": subtotal,
                "tax_rate": country_rate,
                "state_tax_rate": state_rate,
                "tax_amount": money(amount),
            })

        result = {
            "tax_total": money(total),
            "currency": currency,
            "breakdown": {
                "country_tax_rate": country_rate,
                "state_tax_rate": state_rate,
                "total_tax_rate": total_rate,
            },
            "item_taxes": item_taxes,
        }
        logger.info(
            "Tax calculated",
            country=address.country,
            state=address.state,
            tax_total=str(result["tax_total"]),
            currency=currency,
        )
        return result

    def calculate_tax_with_exemptions(
        self,
        address: Any,
        lines: Iterable[Any],
        currency: str,
        customer_type: Optional[str] = None,
        tax_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Business customers with a tax id pay no tax."""
        lines = list(lines)
        if not is_tax_exempt(customer_type, tax_id):
            return self.calculate_tax(address, lines, currency)

        return {
            "tax_total": money(0),
            "currency": currency,
            "breakdown": {
                "country_tax_rate": ZERO_RATE,
                "state_tax_rate": ZERO_RATE,
                "total_tax_rate": ZERO_RATE,
                "exemption_reason": "Tax exempt customer",
            },
            "item_taxes": [
                {
                    "cart_item_id": line.id,
                    "sku": line.sku,
                    "subtotal": money(line.line_subtotal),
                    "tax_rate": ZERO_RATE,
                    "state_tax_rate": ZERO_RATE,
                    "tax_amount": money(0),
                }
                for line in lines
            ],
        }
