"""
Product catalog reads

Search results are cached through an injected SearchCache keyed by the query
plus its filters; paging slices the cached match list. Cached results may
show stock flags up to SEARCH_CACHE_TTL_SECONDS old; cart and checkout
always re-check live stock.
"""
import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from storefront.core.exceptions import NotFoundError
from storefront.core.search_cache import SearchCache
from storefront.models.product import Product, ProductVariant
from storefront.schemas.pricing import PricingOptions
from storefront.schemas.product import ProductDetail, ProductSummary, VariantSummary
from storefront.services.inventory import InventoryChecker
from storefront.services.pricing import compute_variant_pricing, is_price_in_range, quantize_money

logger = logging.getLogger(__name__)

MAX_SEARCH_ROWS = 1000


class ProductSearchService:

    def __init__(self, cache: SearchCache, inventory: Optional[InventoryChecker] = None):
        self.cache = cache
        self.inventory = inventory or InventoryChecker()

    def _active_variants(self, product: Product) -> list:
        return [v for v in product.variants if v.is_active]

    def _variant_summaries(self, product: Product) -> List[VariantSummary]:
        summaries = []
        for variant in self._active_variants(product):
            availability = self.inventory.availability_of(variant)
            summaries.append(VariantSummary(
                id=variant.id,
                title=variant.title,
                sku=variant.sku,
                price=quantize_money(variant.effective_price),
                compare_at_price=variant.effective_compare_at_price,
                available_quantity=availability.available_quantity,
                is_available=availability.is_available,
                is_low_stock=availability.is_low_stock,
                stock_level=availability.stock_level,
            ))
        return summaries

    def summarize(self, product: Product, options: Optional[PricingOptions] = None) -> ProductSummary:
        variants = self._active_variants(product)
        pricing = compute_variant_pricing(
            [v.price for v in variants],
            product.base_price,
            product.compare_at_price,
            options,
        )
        return ProductSummary(
            id=product.id,
            name=product.name,
            slug=product.slug,
            category=product.category,
            image_url=product.image_url,
            pricing=pricing,
            in_stock=any(self.inventory.sellable_quantity(v) > 0 for v in variants),
            variant_count=len(variants),
        )

    async def _fetch(
        self,
        query: str,
        db: AsyncSession,
        category: Optional[str] = None,
        min_price: Optional[Decimal] = None,
        max_price: Optional[Decimal] = None,
        in_stock_only: bool = False,
    ) -> List[Dict[str, Any]]:
        stmt = (
            select(Product)
            .where(Product.is_active.is_(True))
            .options(selectinload(Product.variants).selectinload(ProductVariant.product))
            .order_by(Product.name, Product.id)
            .limit(MAX_SEARCH_ROWS)
        )
        if query:
            pattern = f"%{query}%"
            stmt = stmt.where(or_(Product.name.ilike(pattern), Product.description.ilike(pattern)))
        if category:
            stmt = stmt.where(Product.category == category)

        result = await db.execute(stmt)
        matches = []
        for product in result.scalars().all():
            summary = self.summarize(product)
            if in_stock_only and not summary.in_stock:
                continue
            if not is_price_in_range(summary.pricing.lowest_price, min_price, max_price):
                continue
            matches.append(summary.model_dump(mode="json"))
        return matches

    async def search(
        self,
        db: AsyncSession,
        query: str = "",
        category: Optional[str] = None,
        min_price: Optional[Decimal] = None,
        max_price: Optional[Decimal] = None,
        in_stock_only: bool = False,
        limit: int = 24,
        offset: int = 0,
    ) -> Dict[str, Any]:
        """Matching products ordered by name, paged after filtering."""
        query = (query or "").strip()

        async def fetch(q, **filters):
            return await self._fetch(q, db, **filters)

        matches = await self.cache.get_or_fetch(
            query,
            fetch,
            category=category,
            min_price=min_price,
            max_price=max_price,
            in_stock_only=in_stock_only,
        )
        return {
            "query": query,
            "total": len(matches),
            "limit": limit,
            "offset": offset,
            "results": matches[offset:offset + limit],
        }

    async def get_product(self, db: AsyncSession, product_id: int) -> ProductDetail:
        result = await db.execute(
            select(Product)
            .where(Product.id == product_id, Product.is_active.is_(True))
            .options(selectinload(Product.variants).selectinload(ProductVariant.product))
        )
        product = result.scalar_one_or_none()
        if product is None:
            raise NotFoundError("Product", product_id)

        summary = self.summarize(product)
        return ProductDetail(
            **summary.model_dump(),
            description=product.description,
            variants=self._variant_summaries(product),
        )
