from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict


class OrderItemResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    product_id: Optional[int] = None
    variant_id: Optional[int] = None
    product_name: str
    variant_title: Optional[str] = None
    sku: Optional[str] = None
    unit_price: Decimal
    quantity: int


class OrderResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    order_number: str
    checkout_session_id: str
    status: str
    currency: str
    subtotal: Decimal
    tax: Decimal
    shipping_cost: Decimal
    total: Decimal
    billing_address: Optional[Dict[str, Any]] = None
    shipping_address: Optional[Dict[str, Any]] = None
    payment_method: Optional[str] = None
    payment_id: Optional[str] = None
    created_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    items: List[OrderItemResponse] = []
