"""
Catalog models

A Product is the merchandising record; a ProductVariant is the purchasable
configuration carrying its own (optional) price and committed stock. A
variant without a price sells at the product's base price.
"""
from decimal import Decimal
from typing import Optional

from sqlalchemy import Column, Integer, String, Boolean, DateTime, Text, Numeric, ForeignKey, CheckConstraint, Index
from sqlalchemy.orm import relationship

from storefront.core.database import Base
from storefront.core.utils import utcnow


class Product(Base):
    __tablename__ = "products"
    __table_args__ = (
        CheckConstraint("base_price >= 0", name="ck_products_base_price_non_negative"),
    )

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False, index=True)
    slug = Column(String(255), unique=True, nullable=False)
    description = Column(Text)
    category = Column(String(100), index=True)

    base_price = Column(Numeric(12, 2), nullable=False)
    compare_at_price = Column(Numeric(12, 2), nullable=True)

    image_url = Column(String(500))
    is_active = Column(Boolean, default=True, nullable=False)

    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    variants = relationship(
        "ProductVariant",
        back_populates="product",
        order_by="ProductVariant.position",
        cascade="all, delete-orphan",
    )


class ProductVariant(Base):
    __tablename__ = "product_variants"
    __table_args__ = (
        CheckConstraint("inventory_quantity >= 0", name="ck_variants_inventory_non_negative"),
        Index("ix_product_variants_product_position", "product_id", "position"),
    )

    id = Column(Integer, primary_key=True, index=True)
    product_id = Column(Integer, ForeignKey("products.id", ondelete="CASCADE"), nullable=False, index=True)
    title = Column(String(255), nullable=False)
    sku = Column(String(100), unique=True, nullable=True)

    price = Column(Numeric(12, 2), nullable=True)
    compare_at_price = Column(Numeric(12, 2), nullable=True)

    inventory_quantity = Column(Integer, default=0, nullable=False)
    position = Column(Integer, default=0)
    is_active = Column(Boolean, default=True, nullable=False)

    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    product = relationship("Product", back_populates="variants")

    @property
    def effective_price(self) -> Decimal:
        """Variant price, or the product base price when the variant has none."""
        if self.price is not None:
            return Decimal(self.price)
        return Decimal(self.product.base_price)

    @property
    def effective_compare_at_price(self) -> Optional[Decimal]:
        if self.compare_at_price is not None:
            return Decimal(self.compare_at_price)
        if self.price is None and self.product.compare_at_price is not None:
            return Decimal(self.product.compare_at_price)
        return None
