"""
Order routes
"""
from typing import List

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.api.deps import get_identity, get_order_service
from storefront.core.database import get_db
from storefront.core.identity import Identity
from storefront.schemas.order import OrderResponse
from storefront.services.order_service import OrderService

router = APIRouter()


@router.get("", response_model=List[OrderResponse])
async def list_orders(
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
    identity: Identity = Depends(get_identity),
    order_service: OrderService = Depends(get_order_service),
    db: AsyncSession = Depends(get_db),
):
    """Caller's orders, newest first"""
    return await order_service.list_orders(db, identity, limit=limit, offset=offset)


@router.get("/{order_number}", response_model=OrderResponse)
async def get_order(
    order_number: str,
    identity: Identity = Depends(get_identity),
    order_service: OrderService = Depends(get_order_service),
    db: AsyncSession = Depends(get_db),
):
    return await order_service.get_order(db, identity, order_number)
