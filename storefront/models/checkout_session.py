"""
Checkout session model

Lifecycle:
1. collecting_address - created by begin(), no totals yet
2. awaiting_payment   - addresses accepted, totals frozen, payment intent created
3. confirmed          - payment succeeded, order finalized exactly once

Sessions that are abandoned move to cancelled (explicit) or expired (TTL).
A session whose payment already succeeded is never expired.
Frozen totals are stored in integer cents and never rewritten.
"""
import uuid
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

from sqlalchemy import Column, Integer, String, Boolean, DateTime, JSON, ForeignKey, UniqueConstraint, CheckConstraint, Index

from storefront.core.config import settings
from storefront.core.database import Base
from storefront.core.utils import utcnow, ensure_aware


class CheckoutStatus(str, Enum):
    COLLECTING_ADDRESS = "collecting_address"
    AWAITING_PAYMENT = "awaiting_payment"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


OPEN_STATUSES = (CheckoutStatus.COLLECTING_ADDRESS.value, CheckoutStatus.AWAITING_PAYMENT.value)


class CheckoutSession(Base):
    __tablename__ = "checkout_sessions"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(64), nullable=True, index=True)
    guest_session_id = Column(String(128), nullable=True, index=True)
    idempotency_key = Column(String(128), nullable=False)
    # Set when the guest signs in mid-checkout and its cart moves to this user
    merged_into_user_id = Column(String(64), nullable=True)

    status = Column(String(32), nullable=False, default=CheckoutStatus.COLLECTING_ADDRESS.value, index=True)
    currency = Column(String(3), nullable=False)

    # Frozen at the transition to awaiting_payment
    subtotal_cents = Column(Integer, nullable=True)
    tax_cents = Column(Integer, nullable=True)
    shipping_cents = Column(Integer, nullable=True)
    total_cents = Column(Integer, nullable=True)
    item_count = Column(Integer, nullable=True)
    items_snapshot = Column(JSON, nullable=True)
    totals_frozen_at = Column(DateTime(timezone=True), nullable=True)

    billing_address = Column(JSON, nullable=True)
    shipping_address = Column(JSON, nullable=True)
    shipping_same_as_billing = Column(Boolean, default=True, nullable=False)

    payment_intent_id = Column(String(255), nullable=True, unique=True)
    payment_client_secret = Column(String(255), nullable=True)

    order_id = Column(Integer, ForeignKey("orders.id", ondelete="SET NULL"), nullable=True)

    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
    confirmed_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("user_id", "idempotency_key", name="uq_checkout_sessions_user_key"),
        UniqueConstraint("guest_session_id", "idempotency_key", name="uq_checkout_sessions_guest_key"),
        CheckConstraint(
            "(user_id IS NULL) <> (guest_session_id IS NULL)",
            name="ck_checkout_sessions_single_owner",
        ),
        Index("ix_checkout_sessions_status_expires", "status", "expires_at"),
    )

    @property
    def has_frozen_totals(self) -> bool:
        return self.total_cents is not None

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_STATUSES

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        """Open sessions past their expiry are unusable."""
        now = now or utcnow()
        return self.is_open and now > ensure_aware(self.expires_at)

    @classmethod
    def create_expiry(cls, ttl_minutes: Optional[int] = None) -> datetime:
        """Calculate expiry timestamp from now."""
        if ttl_minutes is None:
            ttl_minutes = settings.CHECKOUT_SESSION_TTL_MINUTES
        return utcnow() + timedelta(minutes=ttl_minutes)
