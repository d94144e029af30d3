"""
Saved address model

Only authenticated users keep an address book; guest addresses live on the
checkout session snapshot. A partial unique index keeps at most one default
per (user, address_type).
"""
from enum import Enum

from sqlalchemy import Column, Integer, String, Boolean, DateTime, Index

from storefront.core.database import Base
from storefront.core.utils import utcnow


class AddressType(str, Enum):
    BILLING = "billing"
    SHIPPING = "shipping"
    BOTH = "both"

    def overlapping(self) -> tuple:
        """Types whose default slot this type competes for."""
        if self is AddressType.BOTH:
            return (AddressType.BILLING.value, AddressType.SHIPPING.value, AddressType.BOTH.value)
        return (self.value, AddressType.BOTH.value)


class Address(Base):
    __tablename__ = "addresses"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(64), nullable=False, index=True)
    address_type = Column(String(16), nullable=False, default=AddressType.SHIPPING.value)

    first_name = Column(String(50), nullable=False)
    last_name = Column(String(50), nullable=False)
    company = Column(String(100))
    address_line_1 = Column(String(120), nullable=False)
    address_line_2 = Column(String(120))
    city = Column(String(80), nullable=False)
    state_province = Column(String(80), nullable=False)
    postal_code = Column(String(20), nullable=False)
    country_code = Column(String(2), nullable=False)
    phone = Column(String(20))

    is_default = Column(Boolean, default=False, nullable=False)

    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index(
            "uq_addresses_default_per_type",
            "user_id",
            "address_type",
            unique=True,
            postgresql_where=is_default.is_(True),
            sqlite_where=is_default.is_(True),
        ),
    )

    def to_snapshot(self) -> dict:
        """Plain dict in the shape accepted by AddressInput."""
        return {
            "first_name": self.first_name,
            "last_name": self.last_name,
            "company": self.company,
            "address_line_1": self.address_line_1,
            "address_line_2": self.address_line_2,
            "city": self.city,
            "state_province": self.state_province,
            "postal_code": self.postal_code,
            "country_code": self.country_code,
            "phone": self.phone,
        }
