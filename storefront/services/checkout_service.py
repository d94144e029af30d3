"""
Checkout Session State Machine

    collecting_address -> awaiting_payment -> confirmed
            |                    |
            +--> cancelled / expired <--+

No transition leaves confirmed. Every transition runs under the per-session
keyed lock plus a row lock on the session, so a retried request waits for
the first one and then observes its result instead of repeating it.

Totals are frozen (integer cents) on entry to awaiting_payment and the
payment intent is requested for exactly that amount. Abandoning checkout at
any point before confirmed leaves the cart untouched. The TTL only expires a
session whose payment has not gone through.
"""
import logging
from datetime import datetime
from typing import Optional, Tuple

from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.core.config import settings
from storefront.core.exceptions import (
    CheckoutSessionExpiredError,
    InvalidStateTransitionError,
    NotFoundError,
    PaymentNotCompletedError,
    SessionAlreadyFinalizedError,
    StorefrontError,
    UpstreamUnavailableError,
    ValidationFailedError,
)
from storefront.core.identity import Identity
from storefront.core.locks import KeyedLockManager, checkout_session_locks
from storefront.core.resilience import retry_read
from storefront.core.utils import utcnow
from storefront.models.address import AddressType
from storefront.models.checkout_session import CheckoutSession, CheckoutStatus, OPEN_STATUSES
from storefront.models.order import Order
from storefront.schemas.checkout import AddressSubmission
from storefront.services.address_service import AddressService
from storefront.services.address_validation import validate_address
from storefront.services.cart_service import CartService
from storefront.services.order_service import OrderService
from storefront.services.payment_gateway import PaymentGateway, PaymentIntentResult
from storefront.services.pricing import dollars_to_cents

logger = logging.getLogger(__name__)

# States in which a succeeded payment is still turned into an order
PAYABLE_STATUSES = (CheckoutStatus.AWAITING_PAYMENT.value, CheckoutStatus.EXPIRED.value)


class CheckoutService:

    def __init__(
        self,
        gateway: PaymentGateway,
        cart_service: Optional[CartService] = None,
        address_service: Optional[AddressService] = None,
        order_service: Optional[OrderService] = None,
        locks: Optional[KeyedLockManager] = None,
        ttl_minutes: Optional[int] = None,
    ):
        self.gateway = gateway
        self.cart_service = cart_service or CartService()
        self.address_service = address_service or AddressService()
        self.order_service = order_service or OrderService()
        self.locks = checkout_session_locks if locks is None else locks
        self.ttl_minutes = settings.CHECKOUT_SESSION_TTL_MINUTES if ttl_minutes is None else ttl_minutes

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    async def _find(
        self,
        db: AsyncSession,
        session_id: str,
        identity: Optional[Identity] = None,
        for_update: bool = False,
    ) -> Optional[CheckoutSession]:
        query = select(CheckoutSession).where(CheckoutSession.id == session_id)
        if identity is not None:
            owned = identity.owner_clause(CheckoutSession)
            if identity.user_id is not None:
                # A guest who signed in mid-checkout keeps access to the session
                owned = or_(owned, CheckoutSession.merged_into_user_id == identity.user_id)
            query = query.where(owned)
        if for_update:
            query = query.with_for_update()
        result = await db.execute(query.execution_options(populate_existing=True))
        return result.scalar_one_or_none()

    async def _load(
        self,
        db: AsyncSession,
        identity: Identity,
        session_id: str,
        for_update: bool = False,
    ) -> CheckoutSession:
        session = await self._find(db, session_id, identity, for_update)
        if session is None:
            raise NotFoundError("Checkout session", session_id)
        return session

    async def _order_number(self, db: AsyncSession, session: CheckoutSession) -> Optional[str]:
        if session.order_id is None:
            return None
        result = await db.execute(select(Order.order_number).where(Order.id == session.order_id))
        return result.scalar_one_or_none()

    async def _raise_if_finalized(self, db: AsyncSession, session: CheckoutSession) -> None:
        if session.status == CheckoutStatus.CONFIRMED.value:
            raise SessionAlreadyFinalizedError(session.id, await self._order_number(db, session))

    async def _expire(self, db: AsyncSession, session: CheckoutSession) -> None:
        session.status = CheckoutStatus.EXPIRED.value
        await db.commit()
        logger.info(f"[CHECKOUT] Session {session.id} expired")

    async def _succeeded_payment(self, session: CheckoutSession) -> Optional[PaymentIntentResult]:
        """
        The session's intent if it has succeeded, otherwise None.

        Raises UpstreamUnavailableError when the payment collaborator cannot
        answer; that is never a reason to expire a session.
        """
        if session.payment_intent_id is None or session.status not in PAYABLE_STATUSES:
            return None
        payment = await retry_read(self.gateway.retrieve_intent, session.payment_intent_id)
        return payment if payment.succeeded else None

    async def _expire_unless_paid(self, db: AsyncSession, session: CheckoutSession) -> bool:
        """
        Expire an open session past its TTL. Caller holds the session locks.

        A session whose payment went through, or whose payment status cannot
        be read right now, stays in awaiting_payment so it can still be
        confirmed. Returns True when the session was expired.
        """
        try:
            payment = await self._succeeded_payment(session)
        except UpstreamUnavailableError:
            logger.warning(f"[CHECKOUT] Payment status unknown for stale session {session.id}; left open")
            return False
        if payment is not None:
            logger.warning(f"[CHECKOUT] Session {session.id} is past its TTL but paid; awaiting confirmation")
            return False
        await self._expire(db, session)
        return True

    def _require_status(self, session: CheckoutSession, expected: CheckoutStatus, target: CheckoutStatus) -> None:
        if session.status == CheckoutStatus.EXPIRED.value:
            raise CheckoutSessionExpiredError(
                "Checkout session has expired",
                details={"session_id": session.id},
            )
        if session.status != expected.value:
            raise InvalidStateTransitionError(
                f"Cannot move checkout session from {session.status} to {target.value}",
                current=session.status,
                target=target.value,
            )

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def begin(self, db: AsyncSession, identity: Identity, idempotency_key: str) -> CheckoutSession:
        """
        Open a session in collecting_address.

        The same (owner, idempotency_key) always yields the same session, so a
        client retrying after a timeout never creates a second one.
        """
        async with self.locks.hold(identity.key, idempotency_key):
            existing = await self._find_by_key(db, identity, idempotency_key)
            if existing is not None:
                logger.info(f"[CHECKOUT] Reusing session {existing.id} for {identity.key}")
                return existing

            if await self.cart_service.get_item_count(db, identity) == 0:
                raise ValidationFailedError(
                    "Cart is empty",
                    field_errors={"cart": ["Add items to the cart before checking out"]},
                )

            session = CheckoutSession(
                idempotency_key=idempotency_key,
                status=CheckoutStatus.COLLECTING_ADDRESS.value,
                currency=settings.DEFAULT_CURRENCY,
                expires_at=CheckoutSession.create_expiry(self.ttl_minutes),
                **identity.owner_fields(CheckoutSession),
            )
            db.add(session)
            try:
                await db.commit()
            except IntegrityError:
                # Another process won the unique (owner, key) race
                await db.rollback()
                existing = await self._find_by_key(db, identity, idempotency_key)
                if existing is None:
                    raise
                return existing

        logger.info(f"[CHECKOUT] {identity.key} opened session {session.id}")
        return session

    async def _find_by_key(self, db: AsyncSession, identity: Identity, idempotency_key: str) -> Optional[CheckoutSession]:
        result = await db.execute(
            select(CheckoutSession)
            .where(
                identity.owner_clause(CheckoutSession),
                CheckoutSession.idempotency_key == idempotency_key,
            )
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_session(self, db: AsyncSession, identity: Identity, session_id: str) -> CheckoutSession:
        """Owner-scoped read; an unpaid open session past its TTL is expired on the way out."""
        session = await self._load(db, identity, session_id)
        if session.is_expired():
            async with self.locks.hold(session_id):
                session = await self._load(db, identity, session_id, for_update=True)
                if session.is_expired():
                    await self._expire_unless_paid(db, session)
        return session

    async def _resolve_address(
        self,
        db: AsyncSession,
        identity: Identity,
        inline: Optional[dict],
        address_id: Optional[int],
        role: str,
    ) -> Tuple[Optional[dict], dict]:
        """(address snapshot, prefixed field errors) for one address role."""
        if address_id is not None:
            saved = await self.address_service.get_owned(db, identity, address_id)
            if AddressType(saved.address_type) not in AddressType(role).overlapping():
                return None, {f"{role}_address_id": [f"Saved address is not usable as a {role} address"]}
            payload = saved.to_snapshot()
        else:
            payload = inline

        result = validate_address(payload)
        if not result.is_valid:
            return None, {f"{role}.{name}": messages for name, messages in result.errors.items()}
        return result.address.model_dump(), {}

    async def submit_address(
        self,
        db: AsyncSession,
        identity: Identity,
        session_id: str,
        submission: AddressSubmission,
    ) -> CheckoutSession:
        """
        collecting_address -> awaiting_payment.

        Validates addresses and the live cart, freezes the totals and requests
        a payment intent for exactly the frozen total. Any failure rolls back
        and leaves the session in collecting_address. A retry after success
        returns the session unchanged with its original intent.
        """
        async with self.locks.hold(session_id):
            session = await self._load(db, identity, session_id, for_update=True)
            await self._raise_if_finalized(db, session)
            if session.is_expired():
                await self._expire_unless_paid(db, session)
            if session.status == CheckoutStatus.AWAITING_PAYMENT.value:
                return session
            self._require_status(session, CheckoutStatus.COLLECTING_ADDRESS, CheckoutStatus.AWAITING_PAYMENT)

            billing, errors = await self._resolve_address(
                db, identity, submission.billing_address, submission.billing_address_id, "billing"
            )
            shipping = billing
            if not submission.shipping_same_as_billing:
                shipping, shipping_errors = await self._resolve_address(
                    db, identity, submission.shipping_address, submission.shipping_address_id, "shipping"
                )
                errors.update(shipping_errors)
            if errors:
                await db.rollback()
                raise ValidationFailedError("Address is invalid", field_errors=errors)

            validation = await self.cart_service.validate_cart(db, identity)
            if not validation.is_valid:
                await db.rollback()
                raise ValidationFailedError(
                    "Some cart items are no longer available in the requested quantity",
                    field_errors={"cart": [item.message for item in validation.invalid_items]},
                    details={"invalid_items": [item.model_dump(mode="json") for item in validation.invalid_items]},
                )

            summary = await self.cart_service.get_summary(db, identity)
            if not summary.items:
                await db.rollback()
                raise ValidationFailedError("Cart is empty", field_errors={"cart": ["Cart is empty"]})

            session.billing_address = billing
            session.shipping_address = shipping
            session.shipping_same_as_billing = submission.shipping_same_as_billing
            session.currency = summary.currency
            session.subtotal_cents = dollars_to_cents(summary.subtotal)
            session.tax_cents = dollars_to_cents(summary.tax)
            session.shipping_cents = dollars_to_cents(summary.shipping)
            session.total_cents = dollars_to_cents(summary.total)
            session.item_count = summary.item_count
            session.items_snapshot = [
                {
                    "product_id": line.product_id,
                    "variant_id": line.variant_id,
                    "product_name": line.product_name,
                    "variant_title": line.variant_title,
                    "sku": line.sku,
                    "unit_price": str(line.unit_price),
                    "quantity": line.quantity,
                    "line_total": str(line.line_total),
                }
                for line in summary.items
            ]
            session.totals_frozen_at = utcnow()

            total_cents = session.total_cents
            currency = session.currency
            try:
                intent = await self.gateway.create_intent(
                    total_cents,
                    currency,
                    metadata={
                        "checkout_session_id": session_id,
                        "owner": identity.key,
                        "item_count": str(summary.item_count),
                    },
                    idempotency_key=f"checkout-{session_id}",
                )
            except StorefrontError as e:
                await db.rollback()
                logger.warning(f"[CHECKOUT] Payment intent failed for session {session_id}: {e.code}")
                raise

            session.payment_intent_id = intent.intent_id
            session.payment_client_secret = intent.client_secret
            session.status = CheckoutStatus.AWAITING_PAYMENT.value
            await db.commit()

        logger.info(
            f"CHECKOUT_METRIC: totals_frozen session={session_id} intent={intent.intent_id} "
            f"amount_cents={total_cents} currency={currency} items={summary.item_count}"
        )
        return session

    async def _finalize_locked(
        self,
        db: AsyncSession,
        session: CheckoutSession,
        payment: PaymentIntentResult,
    ) -> Tuple[Order, bool]:
        session_id = session.id
        try:
            result = await self.order_service.finalize(db, session, payment)
            await db.commit()
        except IntegrityError:
            await db.rollback()
            existing = await self.order_service.get_by_session(db, session_id)
            if existing is None:
                raise
            logger.warning(f"[CHECKOUT] Concurrent finalization for session {session_id}; using order {existing.order_number}")
            return existing, True
        except StorefrontError:
            await db.rollback()
            raise
        return result.order, result.already_exists

    async def confirm(
        self,
        db: AsyncSession,
        identity: Identity,
        session_id: str,
    ) -> Tuple[CheckoutSession, Order, bool]:
        """
        awaiting_payment -> confirmed.

        The payment collaborator must report the intent as succeeded;
        otherwise the session stays in awaiting_payment so the buyer can retry
        without re-entering addresses. Returns (session, order, already_confirmed).
        """
        async with self.locks.hold(session_id):
            session = await self._load(db, identity, session_id, for_update=True)
            await self._raise_if_finalized(db, session)
            # Paid sessions are honored even if the TTL lapsed meanwhile
            if session.status != CheckoutStatus.EXPIRED.value or session.payment_intent_id is None:
                self._require_status(session, CheckoutStatus.AWAITING_PAYMENT, CheckoutStatus.CONFIRMED)

            payment = await retry_read(self.gateway.retrieve_intent, session.payment_intent_id)
            if not payment.succeeded:
                if session.is_expired():
                    await self._expire(db, session)
                    expired = True
                else:
                    expired = session.status == CheckoutStatus.EXPIRED.value
                    await db.rollback()
                if expired:
                    raise CheckoutSessionExpiredError(
                        "Checkout session has expired",
                        details={"session_id": session_id},
                    )
                logger.info(f"[CHECKOUT] Session {session_id} confirm attempted with intent status {payment.status}")
                raise PaymentNotCompletedError(payment.intent_id, payment.status)

            if session.status == CheckoutStatus.EXPIRED.value:
                logger.warning(f"[CHECKOUT] Honoring payment {payment.intent_id} for expired session {session_id}")
            order, already = await self._finalize_locked(db, session, payment)
            session = await self._load(db, identity, session_id)

        return session, order, already

    async def handle_payment_succeeded(self, db: AsyncSession, payment: PaymentIntentResult) -> Optional[Order]:
        """
        Webhook path for payment_intent.succeeded.

        Idempotent: an already-confirmed session is a no-op. A session that
        expired while the buyer was paying is still finalized. Returns the
        order when this call finalized the session.
        """
        session_id = payment.metadata.get("checkout_session_id")
        if not session_id:
            logger.warning(f"[CHECKOUT] Intent {payment.intent_id} carries no checkout session id")
            return None

        async with self.locks.hold(session_id):
            session = await self._find(db, session_id, for_update=True)
            if session is None:
                logger.warning(f"[CHECKOUT] Webhook for unknown session {session_id}")
                return None
            if session.status == CheckoutStatus.CONFIRMED.value:
                logger.info(f"[CHECKOUT] Session {session_id} already confirmed; webhook ignored")
                return None
            if session.status not in PAYABLE_STATUSES or session.payment_intent_id != payment.intent_id:
                logger.error(
                    f"[CHECKOUT] Payment {payment.intent_id} succeeded for session {session_id} "
                    f"in status {session.status}; manual review required"
                )
                return None

            order, already = await self._finalize_locked(db, session, payment)

        return None if already else order

    async def handle_payment_failed(self, db: AsyncSession, payment: PaymentIntentResult) -> None:
        """Failed payments leave the session in awaiting_payment for a retry."""
        session_id = payment.metadata.get("checkout_session_id")
        logger.warning(
            f"[CHECKOUT] Payment failed intent={payment.intent_id} session={session_id} status={payment.status}"
        )

    async def _cancel_intent_quietly(self, intent_id: Optional[str]) -> None:
        if not intent_id:
            return
        try:
            await self.gateway.cancel_intent(intent_id)
        except StorefrontError as e:
            logger.warning(f"[CHECKOUT] Could not cancel payment intent {intent_id}: {e.code}")

    async def cancel(self, db: AsyncSession, identity: Identity, session_id: str) -> CheckoutSession:
        """Abandon checkout. The cart is left exactly as it was."""
        async with self.locks.hold(session_id):
            session = await self._load(db, identity, session_id, for_update=True)
            await self._raise_if_finalized(db, session)
            if not session.is_open:
                return session
            intent_id = session.payment_intent_id
            session.status = CheckoutStatus.CANCELLED.value
            await db.commit()

        await self._cancel_intent_quietly(intent_id)
        logger.info(f"[CHECKOUT] {identity.key} cancelled session {session_id}")
        return session

    async def expire_stale_sessions(self, db: AsyncSession, now: Optional[datetime] = None) -> int:
        """
        Expire open sessions past their TTL and release their intents.

        A stale session whose payment already succeeded is finalized instead;
        one whose payment status cannot be read is left for the next pass.
        Returns the number of sessions expired.
        """
        now = now or utcnow()
        result = await db.execute(
            select(CheckoutSession.id)
            .where(
                CheckoutSession.status.in_(OPEN_STATUSES),
                CheckoutSession.expires_at < now,
            )
            .limit(500)
        )
        session_ids = list(result.scalars().all())

        expired = 0
        for session_id in session_ids:
            async with self.locks.hold(session_id):
                session = await self._find(db, session_id, for_update=True)
                if session is None or not session.is_expired(now):
                    await db.rollback()
                    continue

                try:
                    payment = await self._succeeded_payment(session)
                except UpstreamUnavailableError:
                    await db.rollback()
                    logger.warning(f"[CHECKOUT] Payment status unknown for session {session_id}; retrying next pass")
                    continue
                if payment is not None:
                    try:
                        order, _ = await self._finalize_locked(db, session, payment)
                    except StorefrontError as e:
                        logger.error(
                            f"[CHECKOUT] Paid session {session_id} could not be finalized: {e.code}; "
                            f"manual review required"
                        )
                        continue
                    logger.warning(f"[CHECKOUT] Session {session_id} paid past its TTL; finalized as {order.order_number}")
                    continue

                intent_id = session.payment_intent_id
                await self._expire(db, session)
            await self._cancel_intent_quietly(intent_id)
            expired += 1

        return expired
