"""
Checkout API Routes

Session flow:
1. POST /checkout/sessions                -> collecting_address (idempotent per key)
2. POST /checkout/sessions/{id}/address   -> awaiting_payment, totals frozen, intent created
3. POST /checkout/sessions/{id}/confirm   -> confirmed, order finalized exactly once
   (or the Stripe webhook does step 3 when payment_intent.succeeded arrives)

Session-mutating routes are rate limited with RATE_LIMIT_CHECKOUT.
"""
import logging
from typing import Any, Callable, Dict

import stripe
from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.api.deps import get_checkout_service, get_identity, get_webhook_ledger
from storefront.core.config import settings
from storefront.core.database import get_db
from storefront.core.exceptions import StorefrontError
from storefront.core.identity import Identity
from storefront.core.rate_limit import limiter
from storefront.core.redis_client import WebhookEventLedger
from storefront.schemas.address import AddressCheckRequest, AddressCheckResponse
from storefront.schemas.checkout import (
    AddressSubmission,
    CheckoutBeginRequest,
    CheckoutConfirmResponse,
    CheckoutSessionResponse,
)
from storefront.schemas.order import OrderResponse
from storefront.services.address_validation import validate_address
from storefront.services.checkout_service import CheckoutService
from storefront.services.payment_gateway import construct_webhook_event, intent_from_stripe

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/checkout")


def get_webhook_verifier() -> Callable[[bytes, str], Any]:
    return construct_webhook_event


@router.post("/sessions", response_model=CheckoutSessionResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit(settings.RATE_LIMIT_CHECKOUT)
async def begin_checkout(
    request: Request,
    payload: CheckoutBeginRequest,
    identity: Identity = Depends(get_identity),
    checkout_service: CheckoutService = Depends(get_checkout_service),
    db: AsyncSession = Depends(get_db),
):
    """Open (or re-open, for the same idempotency key) a checkout session"""
    session = await checkout_service.begin(db, identity, payload.idempotency_key)
    return CheckoutSessionResponse.from_session(session)


@router.get("/sessions/{session_id}", response_model=CheckoutSessionResponse)
async def get_checkout_session(
    session_id: str,
    identity: Identity = Depends(get_identity),
    checkout_service: CheckoutService = Depends(get_checkout_service),
    db: AsyncSession = Depends(get_db),
):
    session = await checkout_service.get_session(db, identity, session_id)
    return CheckoutSessionResponse.from_session(session)


@router.post("/sessions/{session_id}/address", response_model=CheckoutSessionResponse)
@limiter.limit(settings.RATE_LIMIT_CHECKOUT)
async def submit_address(
    request: Request,
    session_id: str,
    payload: AddressSubmission,
    identity: Identity = Depends(get_identity),
    checkout_service: CheckoutService = Depends(get_checkout_service),
    db: AsyncSession = Depends(get_db),
):
    """
    Submit billing/shipping and freeze totals.

    Failures leave the session in collecting_address.
    """
    session = await checkout_service.submit_address(db, identity, session_id, payload)
    return CheckoutSessionResponse.from_session(session)


@router.post("/sessions/{session_id}/confirm", response_model=CheckoutConfirmResponse)
@limiter.limit(settings.RATE_LIMIT_CHECKOUT)
async def confirm_checkout(
    request: Request,
    session_id: str,
    identity: Identity = Depends(get_identity),
    checkout_service: CheckoutService = Depends(get_checkout_service),
    db: AsyncSession = Depends(get_db),
):
    """
    Finalize a paid session.

    Payment failures keep the session in awaiting_payment so the buyer can
    retry without re-entering addresses.
    """
    session, order, already = await checkout_service.confirm(db, identity, session_id)
    return CheckoutConfirmResponse(
        session=CheckoutSessionResponse.from_session(session),
        order=OrderResponse.model_validate(order),
        already_confirmed=already,
    )


@router.post("/sessions/{session_id}/cancel", response_model=CheckoutSessionResponse)
async def cancel_checkout(
    session_id: str,
    identity: Identity = Depends(get_identity),
    checkout_service: CheckoutService = Depends(get_checkout_service),
    db: AsyncSession = Depends(get_db),
):
    """Abandon checkout; the cart stays as it is"""
    session = await checkout_service.cancel(db, identity, session_id)
    return CheckoutSessionResponse.from_session(session)


@router.post("/address/validate", response_model=AddressCheckResponse)
async def check_address(payload: AddressCheckRequest):
    """Same predicate the address submission uses; never stores anything"""
    result = validate_address(payload.address)
    return AddressCheckResponse(is_valid=result.is_valid, errors=result.errors, address=result.address)


@router.post("/stripe-webhook")
async def stripe_webhook(
    request: Request,
    checkout_service: CheckoutService = Depends(get_checkout_service),
    ledger: WebhookEventLedger = Depends(get_webhook_ledger),
    verify: Callable[[bytes, str], Any] = Depends(get_webhook_verifier),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    """
    Stripe webhook handler with signature verification.

    Event ids are recorded so redelivered events are acknowledged without
    being processed again.
    """
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature")
    if not sig_header:
        logger.warning("Stripe webhook missing signature header")
        raise StorefrontError("Missing signature", code="InvalidSignature")

    try:
        event = verify(payload, sig_header)
    except ValueError as e:
        logger.warning(f"Stripe webhook invalid payload: {e}")
        raise StorefrontError("Invalid payload", code="InvalidPayload")
    except stripe.SignatureVerificationError as e:
        logger.warning(f"Stripe webhook signature verification failed: {e}")
        raise StorefrontError("Invalid signature", code="InvalidSignature")

    event_id = event["id"]
    if await ledger.is_processed(event_id):
        logger.info(f"Stripe webhook event {event_id} already processed, skipping")
        return {"status": "already_processed"}

    event_type = event["type"]
    logger.info(f"Stripe webhook received: {event_type} (event_id={event_id})")

    result: Dict[str, Any] = {"status": "ok"}
    if event_type == "payment_intent.succeeded":
        order = await checkout_service.handle_payment_succeeded(db, intent_from_stripe(event["data"]["object"]))
        if order is not None:
            result["order_number"] = order.order_number
    elif event_type == "payment_intent.payment_failed":
        await checkout_service.handle_payment_failed(db, intent_from_stripe(event["data"]["object"]))
    else:
        logger.info(f"Unhandled webhook event type: {event_type}")

    await ledger.mark_processed(event_id)
    return result
