"""
Pricing Engine

Pure functions turning raw product/variant price fields into display-ready,
sale-aware pricing facts. No I/O. All arithmetic is Decimal; money is
rounded half-up to 2 places.
"""
import logging
import re
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Dict, Iterable, Optional, Tuple

from storefront.schemas.pricing import (
    PriceChange,
    PriceRange,
    PricingInfo,
    PricingOptions,
    PricingValidation,
)

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")

CURRENCY_SYMBOLS: Dict[str, str] = {
    "USD": "$",
    "CAD": "CA$",
    "AUD": "A$",
    "EUR": "€",
    "GBP": "£",
    "JPY": "¥",
}

# locale -> (group separator, decimal separator, symbol after amount)
LOCALE_FORMATS: Dict[str, Tuple[str, str, bool]] = {
    "en-US": (",", ".", False),
    "en-CA": (",", ".", False),
    "en-GB": (",", ".", False),
    "en-AU": (",", ".", False),
    "ja-JP": (",", ".", False),
    "de-DE": (".", ",", True),
    "es-ES": (".", ",", True),
    "it-IT": (".", ",", True),
    "nl-NL": (".", ",", True),
    "fr-FR": (" ", ",", True),
}


class CurrencyFormatError(ValueError):
    """Locale or currency has no known format."""


def to_decimal(value: Any) -> Decimal:
    """Coerce a number or numeric string to Decimal; ValueError otherwise."""
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, bool) or value is None:
        raise ValueError(f"Not a price: {value!r}")
    elif isinstance(value, float):
        result = Decimal(str(value))
    else:
        try:
            result = Decimal(str(value).strip())
        except InvalidOperation:
            raise ValueError(f"Not a price: {value!r}")
    if not result.is_finite():
        raise ValueError(f"Not a finite price: {value!r}")
    return result


def quantize_money(value: Any) -> Decimal:
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def dollars_to_cents(amount: Any) -> int:
    """Convert a dollar amount to integer cents, rounding half-up."""
    if amount is None:
        return 0
    return int(quantize_money(amount) * 100)


def cents_to_dollars(amount_cents: int) -> Decimal:
    return (Decimal(amount_cents) / Decimal(100)).quantize(CENT)


def _group_digits(integer_part: str, separator: str) -> str:
    return re.sub(r"\B(?=(\d{3})+(?!\d))", separator, integer_part)


def _split_amount(amount: Decimal) -> Tuple[str, str, str]:
    rounded = amount.quantize(CENT, rounding=ROUND_HALF_UP)
    sign = "-" if rounded < 0 else ""
    integer_part, fraction = f"{abs(rounded):.2f}".split(".")
    return sign, integer_part, fraction


def _format_with_locale(amount: Decimal, currency: str, locale: str) -> str:
    if locale not in LOCALE_FORMATS:
        raise CurrencyFormatError(f"Unsupported locale {locale!r}")
    if currency not in CURRENCY_SYMBOLS:
        raise CurrencyFormatError(f"Unsupported currency {currency!r}")

    group, decimal_sep, symbol_after = LOCALE_FORMATS[locale]
    symbol = CURRENCY_SYMBOLS[currency]
    sign, integer_part, fraction = _split_amount(amount)
    number = f"{_group_digits(integer_part, group)}{decimal_sep}{fraction}"
    if symbol_after:
        return f"{sign}{number} {symbol}"
    return f"{sign}{symbol}{number}"


def _format_fallback(amount: Decimal, currency: str) -> str:
    """Manual formatter: symbol plus comma-grouped digits with 2 decimals."""
    symbol = CURRENCY_SYMBOLS.get(currency, "$")
    sign, integer_part, fraction = _split_amount(amount)
    return f"{sign}{symbol}{_group_digits(integer_part, ',')}.{fraction}"


def format_currency(amount: Any, currency: str = "USD", locale: str = "en-US") -> str:
    """
    Format an amount as a currency string rounded to 2 decimals.

    Unsupported locales/currencies fall back to the manual formatter so a
    price is never rendered blank; the fallback is logged.
    """
    value = to_decimal(amount)
    currency = (currency or "USD").upper()
    try:
        return _format_with_locale(value, currency, locale)
    except CurrencyFormatError as e:
        logger.warning(f"[PRICING] {e}; using fallback formatter")
        return _format_fallback(value, currency)


def parse_currency(text: Optional[str]) -> Decimal:
    """
    Parse a formatted price back to a number. Never raises; 0 on failure.

    Separator rules:
    - both "," and "." present: the last one is the decimal separator
    - only one kind present, used once and followed by exactly 3 digits:
      thousands separator (unless the integer part is zero)
    - only one kind present, used more than once: thousands separators
    - otherwise it is the decimal separator
    """
    if not text:
        return Decimal("0")

    cleaned = re.sub(r"[^\d.,-]", "", str(text))
    negative = cleaned.startswith("-")
    cleaned = cleaned.replace("-", "")
    if not cleaned:
        return Decimal("0")

    if "," in cleaned and "." in cleaned:
        decimal_sep = "," if cleaned.rfind(",") > cleaned.rfind(".") else "."
        group_sep = "." if decimal_sep == "," else ","
        normalized = cleaned.replace(group_sep, "").replace(decimal_sep, ".")
    else:
        sep = "," if "," in cleaned else ("." if "." in cleaned else None)
        if sep is None:
            normalized = cleaned
        else:
            head, _, tail = cleaned.rpartition(sep)
            if cleaned.count(sep) > 1 or (len(tail) == 3 and head.strip("0")):
                normalized = cleaned.replace(sep, "")
            else:
                normalized = cleaned.replace(sep, ".")

    try:
        value = Decimal(normalized)
    except InvalidOperation:
        return Decimal("0")
    if not value.is_finite():
        return Decimal("0")
    return -value if negative else value


def _discount_percentage(compare_at: Decimal, price: Decimal) -> int:
    ratio = (compare_at - price) / compare_at * 100
    return int(ratio.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def compute_pricing(
    base_price: Any,
    compare_at_price: Any = None,
    min_price: Any = None,
    max_price: Any = None,
    options: Optional[PricingOptions] = None,
) -> PricingInfo:
    """
    Pricing facts for a product.

    min_price/max_price default to base_price (a single-priced product).
    """
    options = options or PricingOptions()
    base = to_decimal(base_price)
    low = to_decimal(min_price) if min_price is not None else base
    high = to_decimal(max_price) if max_price is not None else base
    compare_at = to_decimal(compare_at_price) if compare_at_price is not None else None

    has_variable_pricing = low != high
    if has_variable_pricing and options.use_from_prefix:
        display_price = f"from {format_currency(low, options.currency, options.locale)}"
    else:
        display_price = format_currency(base, options.currency, options.locale)

    is_on_sale = compare_at is not None and compare_at > base
    original_price = None
    if is_on_sale and options.show_compare_pricing:
        original_price = format_currency(compare_at, options.currency, options.locale)

    return PricingInfo(
        display_price=display_price,
        original_price=original_price,
        discount_percentage=_discount_percentage(compare_at, base) if is_on_sale else None,
        is_on_sale=is_on_sale,
        price_range=PriceRange(min=low, max=high),
        has_variable_pricing=has_variable_pricing,
        lowest_price=low,
        currency=options.currency,
    )


def compute_variant_pricing(
    variant_prices: Iterable[Any],
    base_price: Any,
    compare_at_price: Any = None,
    options: Optional[PricingOptions] = None,
) -> PricingInfo:
    """
    Pricing facts derived from a variant set.

    ``variant_prices`` holds each variant's own price, or None when the
    variant sells at ``base_price``. Sale status is judged against the
    lowest price when pricing is variable.
    """
    options = options or PricingOptions()
    base = to_decimal(base_price)
    prices = [to_decimal(p) if p is not None else base for p in variant_prices]

    if not prices:
        return compute_pricing(base, None, options=options)

    low, high = min(prices), max(prices)
    has_variable_pricing = low != high
    display_base = low if has_variable_pricing else base
    compare_at = to_decimal(compare_at_price) if compare_at_price is not None else None
    is_on_sale = compare_at is not None and compare_at > display_base

    if has_variable_pricing and options.use_from_prefix:
        display_price = f"from {format_currency(low, options.currency, options.locale)}"
    else:
        display_price = format_currency(display_base, options.currency, options.locale)

    original_price = None
    if is_on_sale and options.show_compare_pricing:
        original_price = format_currency(compare_at, options.currency, options.locale)

    return PricingInfo(
        display_price=display_price,
        original_price=original_price,
        discount_percentage=_discount_percentage(compare_at, display_base) if is_on_sale else None,
        is_on_sale=is_on_sale,
        price_range=PriceRange(min=low, max=high),
        has_variable_pricing=has_variable_pricing,
        lowest_price=low,
        currency=options.currency,
    )


def validate_pricing(
    price: Any,
    compare_at_price: Any = None,
    min_price: Any = None,
    max_price: Any = None,
) -> PricingValidation:
    """Flag pricing problems; only ``errors`` should block a caller."""
    errors = []
    warnings = []

    def _parse(value):
        try:
            return to_decimal(value)
        except ValueError:
            return None

    base = _parse(price)
    if base is None or base < 0:
        errors.append("Price must be a valid non-negative number")
    elif base == 0:
        warnings.append("Price is zero - confirm this is intentional")

    if compare_at_price is not None:
        compare_at = _parse(compare_at_price)
        if compare_at is None or compare_at < 0:
            errors.append("Compare-at price must be a valid non-negative number")
        elif base is not None and compare_at <= base:
            warnings.append("Compare-at price should be higher than the price for a meaningful discount")

    low = _parse(min_price) if min_price is not None else base
    high = _parse(max_price) if max_price is not None else base
    if low is None or high is None:
        errors.append("Min and max prices must be valid numbers")
    else:
        if low > high:
            errors.append("Minimum price cannot be greater than maximum price")
        if base is not None and (base < low or base > high):
            warnings.append("Base price is outside the min/max price range")

    return PricingValidation(is_valid=not errors, errors=errors, warnings=warnings)


def calculate_price_change(old_price: Any, new_price: Any) -> PriceChange:
    old = to_decimal(old_price)
    new = to_decimal(new_price)
    if old == 0:
        return PriceChange(percentage=Decimal("0"), is_increase=False, difference=Decimal("0"))

    difference = new - old
    percentage = abs(difference / old * 100).quantize(CENT, rounding=ROUND_HALF_UP)
    return PriceChange(
        percentage=percentage,
        is_increase=difference > 0,
        difference=abs(difference),
    )


def is_price_in_range(price: Any, min_price: Any = None, max_price: Any = None) -> bool:
    """Strings are parsed leniently with parse_currency."""
    value = parse_currency(price) if isinstance(price, str) else to_decimal(price)
    if min_price is not None and value < to_decimal(min_price):
        return False
    if max_price is not None and value > to_decimal(max_price):
        return False
    return True
