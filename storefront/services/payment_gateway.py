"""
Payment collaborator

The engine only decides what to charge and when; card handling stays with
the provider. ``PaymentGateway`` is the boundary, ``StripePaymentGateway``
the production implementation. Every call is bounded by
PAYMENT_TIMEOUT_SECONDS; the Stripe SDK is synchronous so calls run in a
worker thread.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Protocol

import stripe

from storefront.core.config import settings
from storefront.core.exceptions import NotImplementedYetError, PaymentError, UpstreamUnavailableError
from storefront.core.resilience import call_with_timeout

logger = logging.getLogger(__name__)

# Transient provider failures; everything else from Stripe is a rejection
TRANSIENT_STRIPE_ERRORS = (
    stripe.APIConnectionError,
    stripe.RateLimitError,
    stripe.APIError,
)


@dataclass
class PaymentIntentResult:
    intent_id: str
    client_secret: Optional[str]
    amount: int
    currency: str
    status: str
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.status == "succeeded"


class PaymentGateway(Protocol):
    async def create_intent(
        self,
        amount_cents: int,
        currency: str,
        metadata: Dict[str, str],
        idempotency_key: str,
    ) -> PaymentIntentResult:
        ...

    async def retrieve_intent(self, intent_id: str) -> PaymentIntentResult:
        ...

    async def cancel_intent(self, intent_id: str) -> PaymentIntentResult:
        ...


def intent_from_stripe(intent: Any) -> PaymentIntentResult:
    metadata = getattr(intent, "metadata", None)
    return PaymentIntentResult(
        intent_id=intent.id,
        client_secret=getattr(intent, "client_secret", None),
        amount=int(intent.amount),
        currency=str(intent.currency).lower(),
        status=intent.status,
        metadata=dict(metadata) if metadata else {},
    )


class StripePaymentGateway:
    """Stripe PaymentIntents behind the PaymentGateway protocol."""

    def __init__(self, api_key: Optional[str] = None, timeout: Optional[float] = None):
        self.api_key = settings.STRIPE_SECRET_KEY if api_key is None else api_key
        self.timeout = settings.PAYMENT_TIMEOUT_SECONDS if timeout is None else timeout

    def _require_configured(self) -> None:
        if not self.api_key:
            raise NotImplementedYetError("Payment provider is not configured")

    async def _call(self, operation: str, func, *args, **kwargs) -> PaymentIntentResult:
        self._require_configured()
        try:
            intent = await call_with_timeout(
                asyncio.to_thread(func, *args, api_key=self.api_key, **kwargs),
                self.timeout,
                "payment",
            )
        except TRANSIENT_STRIPE_ERRORS as e:
            logger.warning(f"[PAYMENT] Stripe {operation} unavailable: {e}")
            raise UpstreamUnavailableError("payment")
        except stripe.StripeError as e:
            logger.warning(f"[PAYMENT] Stripe {operation} rejected: {e}")
            raise PaymentError(
                e.user_message or "Payment provider rejected the request",
                code="PaymentRejected",
                details={"operation": operation},
            )
        return intent_from_stripe(intent)

    async def create_intent(
        self,
        amount_cents: int,
        currency: str,
        metadata: Dict[str, str],
        idempotency_key: str,
    ) -> PaymentIntentResult:
        return await self._call(
            "create",
            stripe.PaymentIntent.create,
            amount=amount_cents,
            currency=currency.lower(),
            metadata=metadata,
            automatic_payment_methods={"enabled": True},
            idempotency_key=idempotency_key,
        )

    async def retrieve_intent(self, intent_id: str) -> PaymentIntentResult:
        return await self._call("retrieve", stripe.PaymentIntent.retrieve, intent_id)

    async def cancel_intent(self, intent_id: str) -> PaymentIntentResult:
        return await self._call("cancel", stripe.PaymentIntent.cancel, intent_id)


def construct_webhook_event(payload: bytes, signature: str) -> Dict[str, Any]:
    """Verify a Stripe webhook signature and return the event."""
    if not settings.STRIPE_WEBHOOK_SECRET:
        raise NotImplementedYetError("Stripe webhook secret is not configured")
    return stripe.Webhook.construct_event(payload, signature, settings.STRIPE_WEBHOOK_SECRET)
