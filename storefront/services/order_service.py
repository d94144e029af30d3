"""
OrderService - Order Finalization

Turns a paid checkout session into the permanent order record. Exactly-once
is enforced in three layers: the caller holds the session lock and row lock,
``finalize`` returns the existing order when one is already linked to the
session, and orders.checkout_session_id is unique.

Order lines come from the frozen session snapshot, never from the live cart.
"""
import logging
import uuid
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.core.exceptions import NotFoundError, PaymentAmountMismatchError
from storefront.core.identity import Identity
from storefront.core.utils import utcnow
from storefront.models.cart import CartItem
from storefront.models.checkout_session import CheckoutSession, CheckoutStatus
from storefront.models.order import Order, OrderItem
from storefront.models.product import ProductVariant
from storefront.services.payment_gateway import PaymentIntentResult
from storefront.services.pricing import cents_to_dollars, to_decimal

logger = logging.getLogger(__name__)


class OrderCreationResult:
    """Result of a finalization attempt."""

    def __init__(
        self,
        order: Order,
        already_exists: bool = False,
        cart_lines_cleared: int = 0,
    ):
        self.order = order
        self.order_number = order.order_number
        self.already_exists = already_exists
        self.cart_lines_cleared = cart_lines_cleared


def session_owner(session: CheckoutSession) -> Identity:
    if session.user_id is not None:
        return Identity.for_user(session.user_id)
    return Identity.for_session(session.guest_session_id)


def session_carts(session: CheckoutSession) -> List[Identity]:
    """Carts that may hold the session's lines: the owner's, plus the user's if the guest signed in."""
    carts = [session_owner(session)]
    if session.user_id is None and session.merged_into_user_id is not None:
        carts.append(Identity.for_user(session.merged_into_user_id))
    return carts


class OrderService:
    """Centralized order creation and lookup."""

    @staticmethod
    def generate_order_number() -> str:
        """Unique order number in format SF-YYYYMMDD-XXXXXXXX."""
        return f"SF-{datetime.now(timezone.utc).strftime('%Y%m%d')}-{uuid.uuid4().hex[:8].upper()}"

    @staticmethod
    async def get_by_session(db: AsyncSession, checkout_session_id: str) -> Optional[Order]:
        result = await db.execute(
            select(Order).where(Order.checkout_session_id == checkout_session_id)
        )
        return result.scalar_one_or_none()

    @staticmethod
    def verify_payment(session: CheckoutSession, payment: PaymentIntentResult) -> None:
        """The captured amount must be exactly the frozen session total."""
        if payment.amount != session.total_cents or payment.currency.lower() != session.currency.lower():
            logger.error(
                "Payment mismatch session=%s intent=%s expected=%s %s received=%s %s",
                session.id,
                payment.intent_id,
                session.total_cents,
                session.currency,
                payment.amount,
                payment.currency,
            )
            raise PaymentAmountMismatchError(
                "Payment amount does not match the checkout total",
                details={
                    "session_id": session.id,
                    "expected_cents": session.total_cents,
                    "received_cents": payment.amount,
                },
            )

    async def _decrement_stock(self, db: AsyncSession, items: List[dict]) -> None:
        variant_ids = sorted({item["variant_id"] for item in items})
        result = await db.execute(
            select(ProductVariant)
            .where(ProductVariant.id.in_(variant_ids))
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        variants = {v.id: v for v in result.scalars().all()}

        for item in items:
            variant = variants.get(item["variant_id"])
            if variant is None:
                logger.warning(f"[ORDER] Variant {item['variant_id']} vanished before finalization")
                continue
            if variant.inventory_quantity < item["quantity"]:
                logger.warning(
                    f"[ORDER] Oversold variant {variant.id}: stock={variant.inventory_quantity} "
                    f"sold={item['quantity']}"
                )
            variant.inventory_quantity = max(variant.inventory_quantity - item["quantity"], 0)

    async def _clear_purchased_lines(self, db: AsyncSession, carts: List[Identity], items: List[dict]) -> int:
        """Remove the purchased variants from the given carts; other lines survive."""
        variant_ids = [item["variant_id"] for item in items]
        cleared = 0
        for cart in carts:
            result = await db.execute(
                delete(CartItem)
                .where(
                    cart.owner_clause(CartItem),
                    CartItem.variant_id.in_(variant_ids),
                )
                .execution_options(synchronize_session="fetch")
            )
            cleared += result.rowcount
        return cleared

    async def finalize(
        self,
        db: AsyncSession,
        session: CheckoutSession,
        payment: PaymentIntentResult,
    ) -> OrderCreationResult:
        """
        Create the order for a paid session. Caller commits.

        Safe to call again for the same session: the second call returns the
        existing order and touches neither stock nor cart.
        """
        existing = await self.get_by_session(db, session.id)
        if existing is not None:
            logger.info(f"[ORDER] Order {existing.order_number} already exists for session {session.id}")
            return OrderCreationResult(existing, already_exists=True)

        self.verify_payment(session, payment)
        items = session.items_snapshot or []
        now = utcnow()

        order = Order(
            order_number=self.generate_order_number(),
            checkout_session_id=session.id,
            user_id=session.user_id or session.merged_into_user_id,
            guest_session_id=session.guest_session_id,
            status="paid",
            currency=session.currency,
            subtotal=cents_to_dollars(session.subtotal_cents),
            tax=cents_to_dollars(session.tax_cents),
            shipping_cost=cents_to_dollars(session.shipping_cents),
            total=cents_to_dollars(session.total_cents),
            billing_address=session.billing_address,
            shipping_address=session.shipping_address,
            payment_method="stripe",
            payment_id=payment.intent_id,
            paid_at=now,
            items=[
                OrderItem(
                    product_id=item["product_id"],
                    variant_id=item["variant_id"],
                    product_name=item["product_name"],
                    variant_title=item.get("variant_title"),
                    sku=item.get("sku"),
                    unit_price=to_decimal(item["unit_price"]),
                    quantity=item["quantity"],
                )
                for item in items
            ],
        )
        db.add(order)

        await self._decrement_stock(db, items)
        cleared = await self._clear_purchased_lines(db, session_carts(session), items)

        await db.flush()
        session.status = CheckoutStatus.CONFIRMED.value
        session.order_id = order.id
        session.confirmed_at = now
        await db.flush()

        logger.info(
            f"CHECKOUT_METRIC: order_finalized order={order.order_number} "
            f"session={session.id} intent={payment.intent_id} "
            f"amount_cents={session.total_cents} items={len(items)} cart_lines_cleared={cleared}"
        )
        return OrderCreationResult(order, cart_lines_cleared=cleared)

    @staticmethod
    async def list_orders(db: AsyncSession, identity: Identity, limit: int = 50, offset: int = 0) -> List[Order]:
        result = await db.execute(
            select(Order)
            .where(identity.owner_clause(Order))
            .order_by(Order.created_at.desc(), Order.id.desc())
            .limit(limit)
            .offset(offset)
        )
        return list(result.scalars().all())

    @staticmethod
    async def get_order(db: AsyncSession, identity: Identity, order_number: str) -> Order:
        result = await db.execute(
            select(Order).where(Order.order_number == order_number, identity.owner_clause(Order))
        )
        order = result.scalar_one_or_none()
        if order is None:
            raise NotFoundError("Order", order_number)
        return order
