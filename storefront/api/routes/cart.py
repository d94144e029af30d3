"""
Cart routes

Every mutation answers with the freshly read cart. Failed mutations answer
with the error and the cart's current true state as well, so a client never
renders a quantity the server does not hold.
"""
import logging

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.api.deps import get_cart_service, get_guest_session_id, get_identity, get_merge_service, get_user_identity
from storefront.core.database import get_db
from storefront.core.error_handler import error_body
from storefront.core.exceptions import IdentityRequiredError, StorefrontError
from storefront.core.identity import Identity
from storefront.core.resilience import retry_read
from storefront.schemas.cart import (
    CartCountResponse,
    CartItemCreate,
    CartItemUpdate,
    CartMergeRequest,
    CartMergeResponse,
    CartMutationResponse,
    CartSummary,
    CartValidation,
    ConflictResolution,
)
from storefront.services.cart_merge import CartMergeService
from storefront.services.cart_service import CartService

logger = logging.getLogger(__name__)

router = APIRouter()


async def _failure_with_cart(
    exc: StorefrontError,
    db: AsyncSession,
    identity: Identity,
    cart_service: CartService,
) -> JSONResponse:
    body = error_body(exc)
    cart = await retry_read(cart_service.get_summary, db, identity)
    body["cart"] = cart.model_dump(mode="json")
    return JSONResponse(status_code=exc.status_code, content=body)


@router.get("", response_model=CartSummary)
async def get_cart(
    identity: Identity = Depends(get_identity),
    cart_service: CartService = Depends(get_cart_service),
    db: AsyncSession = Depends(get_db),
):
    """Current cart with live stock flags"""
    return await retry_read(cart_service.get_summary, db, identity)


@router.get("/count", response_model=CartCountResponse)
async def get_cart_count(
    identity: Identity = Depends(get_identity),
    cart_service: CartService = Depends(get_cart_service),
    db: AsyncSession = Depends(get_db),
):
    return CartCountResponse(item_count=await cart_service.get_item_count(db, identity))


@router.get("/validate", response_model=CartValidation)
async def validate_cart(
    identity: Identity = Depends(get_identity),
    cart_service: CartService = Depends(get_cart_service),
    db: AsyncSession = Depends(get_db),
):
    """Strict pre-checkout validation with per-line maximums"""
    return await retry_read(cart_service.validate_cart, db, identity)


@router.post("/resolve", response_model=ConflictResolution)
async def resolve_conflicts(
    identity: Identity = Depends(get_identity),
    cart_service: CartService = Depends(get_cart_service),
    db: AsyncSession = Depends(get_db),
):
    """Reduce over-quantity lines to what is available and drop sold-out lines"""
    return await cart_service.resolve_conflicts(db, identity)


@router.post("/items", response_model=CartMutationResponse, status_code=status.HTTP_201_CREATED)
async def add_to_cart(
    item_data: CartItemCreate,
    identity: Identity = Depends(get_identity),
    cart_service: CartService = Depends(get_cart_service),
    db: AsyncSession = Depends(get_db),
):
    try:
        return await cart_service.add_item(
            db, identity, item_data.product_id, item_data.variant_id, item_data.quantity
        )
    except StorefrontError as e:
        return await _failure_with_cart(e, db, identity, cart_service)


@router.patch("/items/{item_id}", response_model=CartMutationResponse)
async def update_cart_item(
    item_id: int,
    update_data: CartItemUpdate,
    identity: Identity = Depends(get_identity),
    cart_service: CartService = Depends(get_cart_service),
    db: AsyncSession = Depends(get_db),
):
    """Set an absolute quantity (zero or less removes) or apply a delta"""
    try:
        if update_data.delta is not None:
            return await cart_service.adjust_quantity(db, identity, item_id, update_data.delta)
        return await cart_service.update_quantity(db, identity, item_id, update_data.quantity)
    except StorefrontError as e:
        return await _failure_with_cart(e, db, identity, cart_service)


@router.delete("/items/{item_id}", response_model=CartSummary)
async def remove_cart_item(
    item_id: int,
    identity: Identity = Depends(get_identity),
    cart_service: CartService = Depends(get_cart_service),
    db: AsyncSession = Depends(get_db),
):
    try:
        return await cart_service.remove_item(db, identity, item_id)
    except StorefrontError as e:
        return await _failure_with_cart(e, db, identity, cart_service)


@router.delete("", response_model=CartSummary)
async def clear_cart(
    identity: Identity = Depends(get_identity),
    cart_service: CartService = Depends(get_cart_service),
    db: AsyncSession = Depends(get_db),
):
    return await cart_service.clear_cart(db, identity)


@router.post("/merge", response_model=CartMergeResponse)
async def merge_guest_cart(
    request: Request,
    payload: CartMergeRequest,
    identity: Identity = Depends(get_user_identity),
    merge_service: CartMergeService = Depends(get_merge_service),
    db: AsyncSession = Depends(get_db),
):
    """Fold the anonymous session's cart into the signed-in user's cart"""
    session_id = payload.session_id or get_guest_session_id(request)
    if not session_id:
        raise IdentityRequiredError("Anonymous session id required to merge a guest cart")
    return await merge_service.merge_guest_cart(db, session_id, identity.user_id, payload.strategy)
