"""
Cart Store

Mutable cart per identity. Every mutation is a read-modify-write executed
inside one transaction while holding the (identity, variant) keyed lock and
a row lock on the variant; stock is re-validated against the resulting
quantity inside that same transaction. Unique (owner, variant) constraints
back this up across processes.

Mutations commit before returning and always hand back a freshly read
CartSummary so clients rehydrate instead of patching local state.
"""
import logging
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.core.config import settings
from storefront.core.exceptions import (
    InvalidQuantityError,
    NotFoundError,
    OutOfStockError,
    StorefrontError,
)
from storefront.core.identity import Identity
from storefront.core.locks import KeyedLockManager, cart_line_locks
from storefront.models.cart import CartItem
from storefront.schemas.cart import (
    CartLine,
    CartMutationResponse,
    CartSummary,
    CartValidation,
    ConflictResolution,
    InvalidCartItem,
    LineAdjustment,
)
from storefront.services.cart_repository import CartRepository
from storefront.services.inventory import Availability, InventoryChecker
from storefront.services.pricing import quantize_money

logger = logging.getLogger(__name__)

ZERO = Decimal("0.00")


def calculate_shipping(subtotal: Decimal) -> Decimal:
    """Tiered flat shipping; an empty cart ships free."""
    if subtotal <= 0:
        return ZERO
    if subtotal >= settings.FREE_SHIPPING_THRESHOLD:
        return ZERO
    if subtotal >= settings.REDUCED_SHIPPING_THRESHOLD:
        return quantize_money(settings.REDUCED_SHIPPING_FEE)
    return quantize_money(settings.STANDARD_SHIPPING_FEE)


def calculate_totals(subtotal: Decimal) -> Tuple[Decimal, Decimal, Decimal, Decimal]:
    """(subtotal, tax, shipping, total); total is the exact sum of the rounded parts."""
    subtotal = quantize_money(subtotal)
    tax = quantize_money(subtotal * settings.TAX_RATE)
    shipping = calculate_shipping(subtotal)
    return subtotal, tax, shipping, subtotal + tax + shipping


class CartService:
    """Cart operations; the identity is always an explicit argument."""

    def __init__(
        self,
        inventory: Optional[InventoryChecker] = None,
        repository: Optional[CartRepository] = None,
        locks: Optional[KeyedLockManager] = None,
    ):
        self.inventory = inventory or InventoryChecker()
        self.repository = repository or CartRepository()
        self.locks = cart_line_locks if locks is None else locks

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def _to_line(self, item: CartItem, availability: Availability) -> CartLine:
        variant = item.variant
        return CartLine(
            id=item.id,
            product_id=item.product_id,
            variant_id=item.variant_id,
            product_name=item.product.name,
            variant_title=variant.title,
            sku=variant.sku,
            image_url=item.product.image_url,
            unit_price=quantize_money(variant.effective_price),
            quantity=item.quantity,
            available_quantity=availability.available_quantity,
            is_available=availability.is_available,
            is_low_stock=availability.is_low_stock,
        )

    def build_summary(self, lines: List[CartLine]) -> CartSummary:
        subtotal, tax, shipping, total = calculate_totals(
            sum((line.line_total for line in lines), ZERO)
        )
        return CartSummary(
            items=lines,
            item_count=sum(line.quantity for line in lines),
            subtotal=subtotal,
            tax=tax,
            shipping=shipping,
            total=total,
            currency=settings.DEFAULT_CURRENCY,
            has_low_stock_items=any(line.is_low_stock for line in lines),
            has_out_of_stock_items=any(not line.is_available for line in lines),
        )

    async def get_summary(self, db: AsyncSession, identity: Identity) -> CartSummary:
        """Cart with live stock flags; the source of truth for purchasability."""
        items = await self.repository.list_by_identity(db, identity)
        stock = await self.inventory.check_many(db, [item.variant_id for item in items])
        return self.build_summary([self._to_line(item, stock[item.variant_id]) for item in items])

    async def get_item_count(self, db: AsyncSession, identity: Identity) -> int:
        return await self.repository.count_units(db, identity)

    async def validate_cart(self, db: AsyncSession, identity: Identity) -> CartValidation:
        """
        Strict pre-checkout pass.

        Each out-of-stock or over-quantity line is reported with the maximum
        currently purchasable amount so the caller can offer "reduce to N".
        """
        summary = await self.get_summary(db, identity)
        invalid_items = []
        warnings = []

        for line in summary.items:
            max_available = min(line.available_quantity, settings.MAX_LINE_QUANTITY)
            if not line.is_available:
                invalid_items.append(InvalidCartItem(
                    cart_item_id=line.id,
                    variant_id=line.variant_id,
                    product_name=line.product_name,
                    requested_quantity=line.quantity,
                    max_available=0,
                    issue="out_of_stock",
                    message=f"{line.product_name} ({line.variant_title}) is out of stock",
                ))
            elif line.quantity > max_available:
                issue = "exceeds_line_limit" if line.quantity > settings.MAX_LINE_QUANTITY else "insufficient_stock"
                invalid_items.append(InvalidCartItem(
                    cart_item_id=line.id,
                    variant_id=line.variant_id,
                    product_name=line.product_name,
                    requested_quantity=line.quantity,
                    max_available=max_available,
                    issue=issue,
                    message=f"Only {max_available} of {line.product_name} ({line.variant_title}) available",
                ))
            elif line.is_low_stock:
                warnings.append(f"Only {line.available_quantity} of {line.product_name} left in stock")

        return CartValidation(
            is_valid=not invalid_items,
            invalid_items=invalid_items,
            warnings=warnings,
        )

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def _check_quantity(self, availability: Availability, resulting_quantity: int) -> None:
        if not availability.is_available:
            raise OutOfStockError("This item is out of stock", variant_id=availability.variant_id)
        check = self.inventory.validate_quantity(availability, resulting_quantity)
        if not check.is_valid:
            raise InvalidQuantityError(
                check.errors[0],
                requested=resulting_quantity,
                max_available=check.max_quantity,
            )

    async def _mutation_result(
        self,
        db: AsyncSession,
        identity: Identity,
        cart_item_id: Optional[int],
        removed: bool = False,
    ) -> CartMutationResponse:
        summary = await self.get_summary(db, identity)
        item = summary.line(cart_item_id) if cart_item_id is not None else None
        return CartMutationResponse(item=item, removed=removed, cart=summary)

    async def add_item(
        self,
        db: AsyncSession,
        identity: Identity,
        product_id: int,
        variant_id: int,
        quantity: int,
    ) -> CartMutationResponse:
        """
        Add ``quantity`` units of a variant.

        Additive on an existing line: the resulting total is what gets
        validated against stock. Never creates a second line per variant.
        """
        if quantity <= 0:
            raise InvalidQuantityError("Quantity must be at least 1", requested=quantity)

        line_id = None
        for attempt in range(2):
            try:
                async with self.locks.hold(identity.key, variant_id):
                    variant = await self.inventory.load_variant(db, variant_id, for_update=True)
                    if variant.product_id != product_id:
                        raise NotFoundError("Variant", variant_id)

                    availability = self.inventory.availability_of(variant)
                    existing = await self.repository.get_line_for_variant(db, identity, variant_id)
                    current = existing.quantity if existing else 0
                    self._check_quantity(availability, current + quantity)

                    line = await self.repository.upsert(
                        db, identity, product_id, variant_id, quantity, existing=existing
                    )
                    line_id = line.id
                    await db.commit()
                    logger.info(
                        f"[CART] {identity.key} variant={variant_id} +{quantity} -> {line.quantity}"
                    )
                break
            except IntegrityError:
                # Another process inserted the same (owner, variant) line first
                await db.rollback()
                if attempt:
                    raise
                logger.info(f"[CART] Concurrent insert for {identity.key} variant={variant_id}; retrying as update")
            except StorefrontError:
                await db.rollback()
                raise

        return await self._mutation_result(db, identity, line_id)

    async def _require_line(self, db: AsyncSession, identity: Identity, cart_item_id: int) -> CartItem:
        line = await self.repository.get_line(db, identity, cart_item_id)
        if line is None:
            raise NotFoundError("Cart item", cart_item_id)
        return line

    async def _set_line_quantity(
        self,
        db: AsyncSession,
        identity: Identity,
        cart_item_id: int,
        compute_quantity,
        cap_to_stock: bool = False,
    ) -> CartMutationResponse:
        """
        Shared locked path for absolute and relative quantity changes.

        With ``cap_to_stock`` a positive quantity is reduced to what the
        variant can currently supply instead of being rejected.
        """
        line = await self._require_line(db, identity, cart_item_id)
        variant_id = line.variant_id
        removed = False

        try:
            async with self.locks.hold(identity.key, variant_id):
                variant = await self.inventory.load_variant(db, variant_id, for_update=True)
                line = await self._require_line(db, identity, cart_item_id)
                previous = line.quantity
                new_quantity = compute_quantity(previous)

                availability = self.inventory.availability_of(variant)
                if cap_to_stock and new_quantity > 0 and availability.is_available:
                    new_quantity = min(new_quantity, availability.available_quantity, self.inventory.max_line_quantity)

                if new_quantity <= 0:
                    await self.repository.delete(db, identity, cart_item_id)
                    removed = True
                else:
                    self._check_quantity(availability, new_quantity)
                    line.quantity = new_quantity
                await db.commit()
                logger.info(
                    f"[CART] {identity.key} item={cart_item_id} {previous} -> "
                    f"{'removed' if removed else new_quantity}"
                )
        except StorefrontError:
            await db.rollback()
            raise

        return await self._mutation_result(db, identity, None if removed else cart_item_id, removed)

    async def update_quantity(
        self,
        db: AsyncSession,
        identity: Identity,
        cart_item_id: int,
        new_quantity: int,
    ) -> CartMutationResponse:
        """Set an absolute quantity; zero or less removes the line."""
        return await self._set_line_quantity(db, identity, cart_item_id, lambda _current: new_quantity)

    async def set_quantity_capped(
        self,
        db: AsyncSession,
        identity: Identity,
        cart_item_id: int,
        quantity: int,
    ) -> CartMutationResponse:
        """Set an absolute quantity, reduced to the purchasable maximum. OutOfStock if none is left."""
        return await self._set_line_quantity(
            db, identity, cart_item_id, lambda _current: quantity, cap_to_stock=True
        )

    async def adjust_quantity(
        self,
        db: AsyncSession,
        identity: Identity,
        cart_item_id: int,
        delta: int,
    ) -> CartMutationResponse:
        """Atomic relative change; concurrent increments never lose updates."""
        return await self._set_line_quantity(db, identity, cart_item_id, lambda current: current + delta)

    async def remove_item(self, db: AsyncSession, identity: Identity, cart_item_id: int) -> CartSummary:
        """Delete a line owned by ``identity``; NotFound for anyone else's line."""
        line = await self._require_line(db, identity, cart_item_id)
        async with self.locks.hold(identity.key, line.variant_id):
            deleted = await self.repository.delete(db, identity, cart_item_id)
            if not deleted:
                await db.rollback()
                raise NotFoundError("Cart item", cart_item_id)
            await db.commit()
        logger.info(f"[CART] {identity.key} removed item={cart_item_id}")
        return await self.get_summary(db, identity)

    async def clear_cart(self, db: AsyncSession, identity: Identity) -> CartSummary:
        removed = await self.repository.delete_all(db, identity)
        await db.commit()
        logger.info(f"[CART] {identity.key} cleared {removed} lines")
        return await self.get_summary(db, identity)

    async def resolve_conflicts(self, db: AsyncSession, identity: Identity) -> ConflictResolution:
        """Reduce every invalid line to its purchasable maximum (removing out-of-stock lines)."""
        validation = await self.validate_cart(db, identity)
        adjustments: List[LineAdjustment] = []

        for invalid in validation.invalid_items:
            async with self.locks.hold(identity.key, invalid.variant_id):
                variant = await self.inventory.load_variant(db, invalid.variant_id, for_update=True)
                line = await self.repository.get_line(db, identity, invalid.cart_item_id)
                if line is None:
                    await db.rollback()
                    continue
                availability = self.inventory.availability_of(variant)
                max_quantity = min(availability.available_quantity, self.inventory.max_line_quantity)
                previous = line.quantity
                if line.quantity <= max_quantity:
                    await db.rollback()
                    continue

                if max_quantity <= 0:
                    await self.repository.delete(db, identity, line.id)
                else:
                    line.quantity = max_quantity
                await db.commit()

                adjustments.append(LineAdjustment(
                    cart_item_id=invalid.cart_item_id,
                    variant_id=invalid.variant_id,
                    previous_quantity=previous,
                    new_quantity=max(max_quantity, 0),
                    removed=max_quantity <= 0,
                ))

        if adjustments:
            logger.info(f"[CART] {identity.key} resolved {len(adjustments)} stock conflicts")
        return ConflictResolution(
            adjustments=adjustments,
            cart=await self.get_summary(db, identity),
        )

    async def snapshot_lines(self, db: AsyncSession, identity: Identity) -> Dict[int, CartItem]:
        """Raw cart rows keyed by variant id."""
        return {item.variant_id: item for item in await self.repository.list_by_identity(db, identity)}
