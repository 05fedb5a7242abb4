# storefront/app/services/addresses.py
"""Address validation and the checkout address book."""
import re
from typing import Any, Dict, Optional

from sqlalchemy import select, and_
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.app.core.constants import ADDRESS_TYPES, SUPPORTED_COUNTRIES
from storefront.app.core.exceptions import InvalidAddressError, InvalidPostalCodeError
from storefront.app.models.checkout import Address

REQUIRED_FIELDS = ("name", "phone", "email", "line1", "city", "state", "postal_code", "country")
ADDRESS_FIELDS = ("name", "phone", "email", "line1", "line2", "city", "state", "postal_code", "country")

POSTAL_CODE_PATTERNS = {
    "US": re.compile(r"^\d{5}(-\d{4})?$"),
    "CA": re.compile(r"^[A-Za-z]\d[A-Za-z] \d[A-Za-z]\d$"),
    "GB": re.compile(r"^[A-Z]{1,2}\d[A-Z\d]? \d[A-Z]{2}$", re.IGNORECASE),
    "IN": re.compile(r"^\d{6}$"),
    "AU": re.compile(r"^\d{4}$"),
    "DE": re.compile(r"^\d{5}$"),
    "FR": re.compile(r"^\d{5}$"),
    "IT": re.compile(r"^\d{5}$"),
    "ES": re.compile(r"^\d{5}$"),
    "NL": re.compile(r"^\d{4} ?[A-Z]{2}$", re.IGNORECASE),
}

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def is_valid_postal_code(postal_code: Optional[str], country: str) -> bool:
    """Countries without a known pattern accept any non-empty code."""
    if not postal_code:
        return False
    pattern = POSTAL_CODE_PATTERNS.get(country)
    return pattern is None or bool(pattern.match(postal_code))


class AddressService:
    def __init__(self, session: AsyncSession):
        self.session = session

    @staticmethod
    def validate(data: Dict[str, Any], kind: str) -> Dict[str, Any]:
        """
        Normalize and check an address payload.

        Returns a cleaned dict (stripped strings, upper-case country) limited
        to the known address fields.
        """
        if kind not in ADDRESS_TYPES:
            raise InvalidAddressError(f"Unknown address type: {kind}", field="type")
        if not data:
            raise InvalidAddressError(f"{kind.capitalize()} address is required")

        cleaned: Dict[str, Any] = {}
        for field in ADDRESS_FIELDS:
            value = data.get(field)
            if isinstance(value, str):
                value = value.strip() or None
            cleaned[field] = value

        for field in REQUIRED_FIELDS:
            if not cleaned.get(field):
                raise InvalidAddressError(f"{kind.capitalize()} address is missing {field}", field=field)

        country = cleaned["country"].upper()
        if country not in SUPPORTED_COUNTRIES:
            raise InvalidAddressError(f"Country {country} is not supported", field="country")
        cleaned["country"] = country

        if not _EMAIL_RE.match(cleaned["email"]):
            raise InvalidAddressError("Invalid email address", field="email")

        if not is_valid_postal_code(cleaned["postal_code"], country):
            raise InvalidPostalCodeError(cleaned["postal_code"], country)

        return cleaned

    async def create_or_get(self, data: Dict[str, Any], kind: str, user_id: Optional[int] = None) -> Address:
        """
        Persist a validated address. Guests always get a new row; a logged-in
        user re-uses an identical row of the same type.
        """
        cleaned = self.validate(data, kind)

        if user_id is not None:
            conditions = [Address.user_id == user_id, Address.type == kind]
            for field in ADDRESS_FIELDS:
                column = getattr(Address, field)
                value = cleaned[field]
                conditions.append(column.is_(None) if value is None else column == value)
            result = await self.session.execute(
                select(Address).where(and_(*conditions)).order_by(Address.id).limit(1)
            )
            existing = result.scalar_one_or_none()
            if existing:
                return existing

        address = Address(user_id=user_id, type=kind, **cleaned)
        self.session.add(address)
        await self.session.flush()
        return address
