"""
Address Validation

Structural checks only: required fields, lengths, ISO-3166-1 alpha-2 country,
per-country postal pattern, E.164-like phone. ``validate_address`` is the
single predicate used both by the pre-submit check endpoint and by checkout
submission, so both always agree.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from storefront.schemas.address import (
    COUNTRY_CODES,
    POSTAL_PATTERNS,
    AddressInput,
    is_known_country,
    is_valid_phone,
    postal_code_error,
)

__all__ = [
    "COUNTRY_CODES",
    "POSTAL_PATTERNS",
    "AddressValidationResult",
    "is_known_country",
    "is_valid_phone",
    "postal_code_error",
    "validate_address",
]


@dataclass
class AddressValidationResult:
    is_valid: bool
    errors: Dict[str, List[str]] = field(default_factory=dict)
    address: Optional[AddressInput] = None


def validate_address(payload: Any) -> AddressValidationResult:
    """Validate a raw address payload; never raises for bad input."""
    if isinstance(payload, AddressInput):
        payload = payload.model_dump()
    if not isinstance(payload, dict):
        return AddressValidationResult(is_valid=False, errors={"__root__": ["Address must be an object"]})

    try:
        address = AddressInput.model_validate(payload)
    except ValidationError as e:
        errors: Dict[str, List[str]] = {}
        for err in e.errors():
            name = ".".join(str(part) for part in err["loc"]) or "__root__"
            message = err["msg"]
            if message.startswith("Value error, "):
                message = message[len("Value error, "):]
            errors.setdefault(name, []).append(message)
        return AddressValidationResult(is_valid=False, errors=errors)

    return AddressValidationResult(is_valid=True, address=address)
