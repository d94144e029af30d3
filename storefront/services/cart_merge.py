"""
Guest/User cart merge

One-shot reconciliation at sign-in. Each guest line is replayed through the
Cart Store so every stock rule applies; lines are processed one at a time and
at most one cart lock is held at any moment. A completed merge always clears
the guest cart, which makes a second run a no-op. Checkout sessions the guest
still has open remember the user, so finalizing one clears the merged lines
from the user's cart as well.
"""
import logging
from typing import Optional

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.core.exceptions import InvalidQuantityError, NotFoundError, OutOfStockError, StorefrontError
from storefront.core.identity import Identity
from storefront.models.checkout_session import CheckoutSession, OPEN_STATUSES
from storefront.schemas.cart import CartMergeResponse, MergeLineOutcome
from storefront.services.cart_service import CartService

logger = logging.getLogger(__name__)

MERGE_STRATEGIES = ("merge", "replace", "keep_existing")


class CartMergeService:

    def __init__(self, cart_service: Optional[CartService] = None):
        self.cart_service = cart_service or CartService()

    async def merge_guest_cart(
        self,
        db: AsyncSession,
        session_id: str,
        user_id: str,
        strategy: str = "merge",
    ) -> CartMergeResponse:
        """
        Fold the guest cart of ``session_id`` into the cart of ``user_id``.

        Strategies:
            merge          add guest quantities to existing user lines
            replace        guest quantity overwrites the user line, capped by stock
            keep_existing  skip variants the user cart already holds
        """
        if strategy not in MERGE_STRATEGIES:
            raise ValueError(f"Unknown merge strategy {strategy!r}")

        guest = Identity.for_session(session_id)
        user = Identity.for_user(user_id)
        guest_lines = await self.cart_service.repository.list_by_identity(db, guest)

        outcomes = []
        if guest_lines:
            existing_ids = {
                variant_id: item.id
                for variant_id, item in (await self.cart_service.snapshot_lines(db, user)).items()
            }
            pending = [(line.product_id, line.variant_id, line.quantity) for line in guest_lines]

            for product_id, variant_id, quantity in pending:
                outcome = await self._merge_line(
                    db, user, product_id, variant_id, quantity, strategy,
                    existing_line_id=existing_ids.get(variant_id),
                )
                outcomes.append(outcome)

            cleared = await self.cart_service.repository.delete_all(db, guest)
            await db.execute(
                update(CheckoutSession)
                .where(
                    CheckoutSession.guest_session_id == session_id,
                    CheckoutSession.status.in_(OPEN_STATUSES),
                )
                .values(merged_into_user_id=user.user_id)
                .execution_options(synchronize_session=False)
            )
            await db.commit()
            logger.info(
                f"[CART_MERGE] {guest.key} -> {user.key} strategy={strategy} "
                f"merged={sum(o.outcome == 'merged' for o in outcomes)} "
                f"failed={sum(o.outcome == 'failed' for o in outcomes)} cleared={cleared}"
            )

        return CartMergeResponse(
            strategy=strategy,
            merged_count=sum(o.outcome == "merged" for o in outcomes),
            skipped_count=sum(o.outcome == "skipped" for o in outcomes),
            failed_count=sum(o.outcome == "failed" for o in outcomes),
            lines=outcomes,
            cart=await self.cart_service.get_summary(db, user),
        )

    async def _merge_line(
        self,
        db: AsyncSession,
        user: Identity,
        product_id: int,
        variant_id: int,
        quantity: int,
        strategy: str,
        existing_line_id: Optional[int],
    ) -> MergeLineOutcome:
        outcome = MergeLineOutcome(
            variant_id=variant_id,
            product_id=product_id,
            quantity=quantity,
            outcome="merged",
        )

        if existing_line_id is not None and strategy == "keep_existing":
            return outcome.model_copy(update={"outcome": "skipped", "reason": "already in cart"})

        try:
            if existing_line_id is not None and strategy == "replace":
                result = await self.cart_service.set_quantity_capped(db, user, existing_line_id, quantity)
                if result.item is not None and result.item.quantity < quantity:
                    return outcome.model_copy(update={"reason": f"capped to {result.item.quantity}"})
            else:
                await self.cart_service.add_item(db, user, product_id, variant_id, quantity)
        except (OutOfStockError, InvalidQuantityError, NotFoundError) as e:
            logger.info(f"[CART_MERGE] variant={variant_id} not merged: {e.code} {e.message}")
            return outcome.model_copy(update={"outcome": "failed", "reason": e.code})
        except StorefrontError as e:
            logger.warning(f"[CART_MERGE] variant={variant_id} merge error: {e.code} {e.message}")
            return outcome.model_copy(update={"outcome": "failed", "reason": e.code})

        return outcome
