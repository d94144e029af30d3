"""
Pricing schemas
"""
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, Field

from storefront.core.config import settings


class PriceRange(BaseModel):
    min: Decimal
    max: Decimal


class PricingOptions(BaseModel):
    use_from_prefix: bool = True
    show_compare_pricing: bool = True
    currency: str = Field(default_factory=lambda: settings.DEFAULT_CURRENCY)
    locale: str = Field(default_factory=lambda: settings.DEFAULT_LOCALE)


class PricingInfo(BaseModel):
    display_price: str
    original_price: Optional[str] = None
    discount_percentage: Optional[int] = None
    is_on_sale: bool
    price_range: PriceRange
    has_variable_pricing: bool
    lowest_price: Decimal
    currency: str


class PricingValidation(BaseModel):
    is_valid: bool
    errors: List[str] = []
    warnings: List[str] = []


class PriceChange(BaseModel):
    percentage: Decimal
    is_increase: bool
    difference: Decimal
