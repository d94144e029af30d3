"""
Cart schemas

CartLine/CartSummary are computed on every read; line_total is derived from
unit_price x quantity and never stored.
"""
from decimal import Decimal, ROUND_HALF_UP
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field, model_validator


class CartItemCreate(BaseModel):
    product_id: int
    variant_id: int
    quantity: int = 1


class CartItemUpdate(BaseModel):
    """Either an absolute quantity (<= 0 removes) or a relative delta."""
    quantity: Optional[int] = None
    delta: Optional[int] = None

    @model_validator(mode="after")
    def exactly_one_mode(self):
        if (self.quantity is None) == (self.delta is None):
            raise ValueError("Provide exactly one of quantity or delta")
        return self


class CartLine(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    product_id: int
    variant_id: int
    product_name: str
    variant_title: str
    sku: Optional[str] = None
    image_url: Optional[str] = None
    unit_price: Decimal
    quantity: int
    available_quantity: int
    is_available: bool
    is_low_stock: bool

    @computed_field
    @property
    def line_total(self) -> Decimal:
        return (self.unit_price * self.quantity).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


class CartSummary(BaseModel):
    items: List[CartLine]
    item_count: int
    subtotal: Decimal
    tax: Decimal
    shipping: Decimal
    total: Decimal
    currency: str
    has_low_stock_items: bool
    has_out_of_stock_items: bool

    def line(self, cart_item_id: int) -> Optional[CartLine]:
        return next((item for item in self.items if item.id == cart_item_id), None)

    def line_for_variant(self, variant_id: int) -> Optional[CartLine]:
        return next((item for item in self.items if item.variant_id == variant_id), None)


class CartMutationResponse(BaseModel):
    item: Optional[CartLine] = None
    removed: bool = False
    cart: CartSummary


class CartCountResponse(BaseModel):
    item_count: int


class InvalidCartItem(BaseModel):
    cart_item_id: int
    variant_id: int
    product_name: str
    requested_quantity: int
    max_available: int
    issue: Literal["out_of_stock", "insufficient_stock", "exceeds_line_limit"]
    message: str


class CartValidation(BaseModel):
    is_valid: bool
    invalid_items: List[InvalidCartItem] = []
    warnings: List[str] = []


class LineAdjustment(BaseModel):
    cart_item_id: int
    variant_id: int
    previous_quantity: int
    new_quantity: int
    removed: bool


class ConflictResolution(BaseModel):
    adjustments: List[LineAdjustment]
    cart: CartSummary


class CartMergeRequest(BaseModel):
    strategy: Literal["merge", "replace", "keep_existing"] = "merge"
    # Falls back to the anonymous session header or cookie
    session_id: Optional[str] = Field(default=None, min_length=1, max_length=128)


class MergeLineOutcome(BaseModel):
    variant_id: int
    product_id: int
    quantity: int
    outcome: Literal["merged", "skipped", "failed"]
    reason: Optional[str] = None


class CartMergeResponse(BaseModel):
    strategy: str
    merged_count: int
    skipped_count: int
    failed_count: int
    lines: List[MergeLineOutcome]
    cart: CartSummary
