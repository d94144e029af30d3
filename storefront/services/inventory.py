"""
Inventory Availability Checker

Reads committed stock for a variant and classifies it. Results describe the
stock at call time only; cart mutations call this inside their own
transaction instead of reusing an earlier answer.
"""
import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from storefront.core.config import settings
from storefront.core.exceptions import NotFoundError, UpstreamUnavailableError
from storefront.core.resilience import call_with_timeout
from storefront.models.product import ProductVariant

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Availability:
    variant_id: int
    available_quantity: int
    is_available: bool
    is_low_stock: bool
    stock_level: str  # none | low | medium | high


@dataclass
class QuantityValidation:
    is_valid: bool
    max_quantity: int
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


class InventoryChecker:
    """
    Stock lookups against the product_variants table.

    Inactive variants or variants of inactive products count as zero stock.
    """

    def __init__(
        self,
        low_stock_threshold: Optional[int] = None,
        max_line_quantity: Optional[int] = None,
        timeout: Optional[float] = None,
    ):
        self.low_stock_threshold = settings.LOW_STOCK_THRESHOLD if low_stock_threshold is None else low_stock_threshold
        self.max_line_quantity = settings.MAX_LINE_QUANTITY if max_line_quantity is None else max_line_quantity
        self.timeout = settings.INVENTORY_TIMEOUT_SECONDS if timeout is None else timeout

    def classify(self, variant_id: int, available_quantity: int) -> Availability:
        available = max(int(available_quantity or 0), 0)
        if available == 0:
            level = "none"
        elif available <= self.low_stock_threshold:
            level = "low"
        elif available <= self.low_stock_threshold * 2:
            level = "medium"
        else:
            level = "high"
        return Availability(
            variant_id=variant_id,
            available_quantity=available,
            is_available=available > 0,
            is_low_stock=0 < available <= self.low_stock_threshold,
            stock_level=level,
        )

    @staticmethod
    def sellable_quantity(variant: ProductVariant) -> int:
        if not variant.is_active or not variant.product.is_active:
            return 0
        return variant.inventory_quantity or 0

    def availability_of(self, variant: ProductVariant) -> Availability:
        return self.classify(variant.id, self.sellable_quantity(variant))

    async def load_variant(
        self,
        db: AsyncSession,
        variant_id: int,
        for_update: bool = False,
    ) -> ProductVariant:
        """
        Load a variant (with its product) or raise NotFound.

        ``for_update`` takes a row lock so the caller's stock check and
        quantity write happen in one transaction.
        """
        query = (
            select(ProductVariant)
            .where(ProductVariant.id == variant_id)
            .options(selectinload(ProductVariant.product))
            .execution_options(populate_existing=True)
        )
        if for_update:
            query = query.with_for_update(of=ProductVariant)

        try:
            result = await call_with_timeout(db.execute(query), self.timeout, "inventory")
        except OperationalError as e:
            logger.warning(f"[INVENTORY] Stock read failed for variant {variant_id}: {e}")
            raise UpstreamUnavailableError("inventory")

        variant = result.scalar_one_or_none()
        if variant is None:
            raise NotFoundError("Variant", variant_id)
        return variant

    async def check_availability(self, db: AsyncSession, variant_id: int) -> Availability:
        variant = await self.load_variant(db, variant_id)
        return self.availability_of(variant)

    async def check_many(self, db: AsyncSession, variant_ids: Iterable[int]) -> Dict[int, Availability]:
        """Availability for several variants in one query; unknown ids count as zero stock."""
        ids = sorted(set(variant_ids))
        if not ids:
            return {}

        query = (
            select(ProductVariant)
            .where(ProductVariant.id.in_(ids))
            .options(selectinload(ProductVariant.product))
            .execution_options(populate_existing=True)
        )
        try:
            result = await call_with_timeout(db.execute(query), self.timeout, "inventory")
        except OperationalError as e:
            logger.warning(f"[INVENTORY] Bulk stock read failed: {e}")
            raise UpstreamUnavailableError("inventory")

        found = {v.id: self.availability_of(v) for v in result.scalars().all()}
        return {vid: found.get(vid) or self.classify(vid, 0) for vid in ids}

    def validate_quantity(self, availability: Availability, requested: int) -> QuantityValidation:
        """Check a resulting line quantity against stock and the per-line cap."""
        max_quantity = min(availability.available_quantity, self.max_line_quantity)
        errors = []
        warnings = []

        if requested <= 0:
            errors.append("Quantity must be at least 1")
        elif not availability.is_available:
            errors.append("This item is out of stock")
        elif requested > max_quantity:
            if requested > self.max_line_quantity:
                errors.append(f"Maximum {self.max_line_quantity} per order")
            else:
                errors.append(f"Only {availability.available_quantity} available")

        if not errors and availability.is_low_stock:
            warnings.append(f"Only {availability.available_quantity} left in stock")

        return QuantityValidation(
            is_valid=not errors,
            max_quantity=max_quantity,
            errors=errors,
            warnings=warnings,
        )
