"""
Checkout schemas

Money in responses is derived from the session's frozen integer cents.
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, model_validator

from storefront.models.checkout_session import CheckoutSession
from storefront.schemas.order import OrderResponse
from storefront.services.pricing import cents_to_dollars


class CheckoutBeginRequest(BaseModel):
    idempotency_key: str = Field(..., min_length=8, max_length=128)


class AddressSubmission(BaseModel):
    """
    Billing plus optional shipping, each either inline or a saved address id.

    Inline payloads stay raw dicts here and are validated by the shared
    address predicate so field errors carry billing./shipping. prefixes.
    """
    billing_address: Optional[Dict[str, Any]] = None
    billing_address_id: Optional[int] = None
    shipping_address: Optional[Dict[str, Any]] = None
    shipping_address_id: Optional[int] = None
    shipping_same_as_billing: bool = True

    @model_validator(mode="after")
    def one_billing_source(self):
        if (self.billing_address is None) == (self.billing_address_id is None):
            raise ValueError("Provide exactly one of billing_address or billing_address_id")
        if not self.shipping_same_as_billing:
            if (self.shipping_address is None) == (self.shipping_address_id is None):
                raise ValueError("Provide exactly one of shipping_address or shipping_address_id")
        return self


class FrozenLine(BaseModel):
    product_id: int
    variant_id: int
    product_name: str
    variant_title: Optional[str] = None
    sku: Optional[str] = None
    unit_price: Decimal
    quantity: int
    line_total: Decimal


class CheckoutSessionResponse(BaseModel):
    id: str
    status: str
    currency: str
    expires_at: datetime
    subtotal: Optional[Decimal] = None
    tax: Optional[Decimal] = None
    shipping: Optional[Decimal] = None
    total: Optional[Decimal] = None
    item_count: Optional[int] = None
    items: List[FrozenLine] = []
    billing_address: Optional[Dict[str, Any]] = None
    shipping_address: Optional[Dict[str, Any]] = None
    shipping_same_as_billing: bool = True
    payment_intent_id: Optional[str] = None
    client_secret: Optional[str] = None
    totals_frozen_at: Optional[datetime] = None
    confirmed_at: Optional[datetime] = None

    @classmethod
    def from_session(cls, session: CheckoutSession) -> "CheckoutSessionResponse":
        frozen = session.has_frozen_totals
        return cls(
            id=session.id,
            status=session.status,
            currency=session.currency,
            expires_at=session.expires_at,
            subtotal=cents_to_dollars(session.subtotal_cents) if frozen else None,
            tax=cents_to_dollars(session.tax_cents) if frozen else None,
            shipping=cents_to_dollars(session.shipping_cents) if frozen else None,
            total=cents_to_dollars(session.total_cents) if frozen else None,
            item_count=session.item_count,
            items=[FrozenLine(**line) for line in (session.items_snapshot or [])],
            billing_address=session.billing_address,
            shipping_address=session.shipping_address,
            shipping_same_as_billing=session.shipping_same_as_billing,
            payment_intent_id=session.payment_intent_id,
            client_secret=session.payment_client_secret if session.is_open else None,
            totals_frozen_at=session.totals_frozen_at,
            confirmed_at=session.confirmed_at,
        )


class CheckoutConfirmResponse(BaseModel):
    session: CheckoutSessionResponse
    order: OrderResponse
    already_confirmed: bool = False
