from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel

from storefront.schemas.pricing import PricingInfo


class VariantSummary(BaseModel):
    id: int
    title: str
    sku: Optional[str] = None
    price: Decimal
    compare_at_price: Optional[Decimal] = None
    available_quantity: int
    is_available: bool
    is_low_stock: bool
    stock_level: str


class ProductSummary(BaseModel):
    id: int
    name: str
    slug: str
    category: Optional[str] = None
    image_url: Optional[str] = None
    pricing: PricingInfo
    in_stock: bool
    variant_count: int


class ProductDetail(ProductSummary):
    description: Optional[str] = None
    variants: List[VariantSummary]


class ProductSearchResponse(BaseModel):
    query: str
    total: int
    limit: int
    offset: int
    results: List[ProductSummary]


class VariantAvailabilityResponse(BaseModel):
    variant_id: int
    available_quantity: int
    is_available: bool
    is_low_stock: bool
    stock_level: str
    max_quantity: int
