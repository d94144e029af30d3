"""
Cart model

A line is owned by exactly one of user_id / session_id. The per-owner
unique pairs make a second line for the same variant impossible at the
storage layer. Line totals are never stored; see CartLine in services.
"""
from sqlalchemy import Column, Integer, String, ForeignKey, DateTime, Index, UniqueConstraint, CheckConstraint
from sqlalchemy.orm import relationship

from storefront.core.database import Base
from storefront.core.utils import utcnow


class CartItem(Base):
    __tablename__ = "cart_items"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(64), nullable=True, index=True)
    session_id = Column(String(128), nullable=True, index=True)

    product_id = Column(Integer, ForeignKey("products.id", ondelete="CASCADE"), nullable=False, index=True)
    variant_id = Column(Integer, ForeignKey("product_variants.id", ondelete="CASCADE"), nullable=False, index=True)

    quantity = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    product = relationship("Product")
    variant = relationship("ProductVariant")

    __table_args__ = (
        UniqueConstraint("user_id", "variant_id", name="uq_cart_items_user_variant"),
        UniqueConstraint("session_id", "variant_id", name="uq_cart_items_session_variant"),
        CheckConstraint("quantity >= 1", name="ck_cart_items_quantity_positive"),
        CheckConstraint(
            "(user_id IS NULL) <> (session_id IS NULL)",
            name="ck_cart_items_single_owner",
        ),
        Index("ix_cart_items_user_created", "user_id", "created_at"),
        Index("ix_cart_items_session_created", "session_id", "created_at"),
    )
