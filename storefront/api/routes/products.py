"""
Product catalog routes
"""
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.api.deps import get_inventory_checker, get_search_service
from storefront.core.database import get_db
from storefront.core.resilience import retry_read
from storefront.schemas.product import ProductDetail, ProductSearchResponse, VariantAvailabilityResponse
from storefront.services.inventory import InventoryChecker
from storefront.services.product_search import ProductSearchService

router = APIRouter()


@router.get("/search", response_model=ProductSearchResponse)
async def search_products(
    q: str = Query("", max_length=200),
    category: Optional[str] = None,
    min_price: Optional[Decimal] = Query(None, ge=0),
    max_price: Optional[Decimal] = Query(None, ge=0),
    in_stock_only: bool = False,
    limit: int = Query(24, ge=1, le=100),
    offset: int = Query(0, ge=0),
    search_service: ProductSearchService = Depends(get_search_service),
    db: AsyncSession = Depends(get_db),
):
    """Search active products. Results are cached briefly per query and filters."""
    return await search_service.search(
        db,
        query=q,
        category=category,
        min_price=min_price,
        max_price=max_price,
        in_stock_only=in_stock_only,
        limit=limit,
        offset=offset,
    )


@router.get("/variants/{variant_id}/availability", response_model=VariantAvailabilityResponse)
async def get_variant_availability(
    variant_id: int,
    inventory: InventoryChecker = Depends(get_inventory_checker),
    db: AsyncSession = Depends(get_db),
):
    """Live stock for one variant; never cached"""
    availability = await retry_read(inventory.check_availability, db, variant_id)
    return VariantAvailabilityResponse(
        variant_id=availability.variant_id,
        available_quantity=availability.available_quantity,
        is_available=availability.is_available,
        is_low_stock=availability.is_low_stock,
        stock_level=availability.stock_level,
        max_quantity=min(availability.available_quantity, inventory.max_line_quantity),
    )


@router.get("/{product_id}", response_model=ProductDetail)
async def get_product(
    product_id: int,
    search_service: ProductSearchService = Depends(get_search_service),
    db: AsyncSession = Depends(get_db),
):
    return await search_service.get_product(db, product_id)
