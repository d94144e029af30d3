"""
Order models

An order is written once per checkout session; the unique
checkout_session_id column is the storage-level exactly-once guard.
"""
from sqlalchemy import Column, Integer, String, ForeignKey, DateTime, JSON, Numeric, Index
from sqlalchemy.orm import relationship

from storefront.core.database import Base
from storefront.core.utils import utcnow


class Order(Base):
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, index=True)
    order_number = Column(String(32), unique=True, index=True, nullable=False)
    checkout_session_id = Column(String(36), unique=True, nullable=False)

    user_id = Column(String(64), nullable=True, index=True)
    guest_session_id = Column(String(128), nullable=True, index=True)

    status = Column(String(32), default="paid", index=True)
    currency = Column(String(3), nullable=False)

    subtotal = Column(Numeric(12, 2), nullable=False)
    shipping_cost = Column(Numeric(12, 2), default=0)
    tax = Column(Numeric(12, 2), default=0)
    total = Column(Numeric(12, 2), nullable=False)

    billing_address = Column(JSON)
    shipping_address = Column(JSON)

    payment_method = Column(String(32))
    payment_id = Column(String(255), index=True)

    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)
    paid_at = Column(DateTime(timezone=True))

    items = relationship(
        "OrderItem",
        back_populates="order",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    __table_args__ = (
        Index("ix_orders_user_created", "user_id", "created_at"),
    )


class OrderItem(Base):
    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    product_id = Column(Integer, ForeignKey("products.id", ondelete="SET NULL"), nullable=True)
    variant_id = Column(Integer, ForeignKey("product_variants.id", ondelete="SET NULL"), nullable=True)

    product_name = Column(String(255), nullable=False)
    variant_title = Column(String(255))
    sku = Column(String(100))
    unit_price = Column(Numeric(12, 2), nullable=False)
    quantity = Column(Integer, nullable=False)

    order = relationship("Order", back_populates="items")
