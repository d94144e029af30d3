"""
Cart persistence

Parameterized ORM access to cart_items. Every statement carries the owner
predicate, so a row belonging to another identity is simply not found.
Reads use populate_existing so a session that waited on a lock sees the
committed quantity rather than a stale identity-map copy.
"""
from typing import List, Optional

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from storefront.core.identity import Identity
from storefront.models.cart import CartItem
from storefront.models.product import ProductVariant


class CartRepository:

    def _lines(self, identity: Identity):
        return (
            select(CartItem)
            .where(identity.owner_clause(CartItem))
            .options(
                selectinload(CartItem.product),
                selectinload(CartItem.variant).selectinload(ProductVariant.product),
            )
            .execution_options(populate_existing=True)
        )

    async def list_by_identity(self, db: AsyncSession, identity: Identity) -> List[CartItem]:
        result = await db.execute(
            self._lines(identity).order_by(CartItem.created_at, CartItem.id)
        )
        return list(result.scalars().all())

    async def get_line(self, db: AsyncSession, identity: Identity, cart_item_id: int) -> Optional[CartItem]:
        result = await db.execute(self._lines(identity).where(CartItem.id == cart_item_id))
        return result.scalar_one_or_none()

    async def get_line_for_variant(self, db: AsyncSession, identity: Identity, variant_id: int) -> Optional[CartItem]:
        result = await db.execute(self._lines(identity).where(CartItem.variant_id == variant_id))
        return result.scalar_one_or_none()

    async def upsert(
        self,
        db: AsyncSession,
        identity: Identity,
        product_id: int,
        variant_id: int,
        quantity_delta: int,
        existing: Optional[CartItem] = None,
    ) -> CartItem:
        """
        Add ``quantity_delta`` to the (identity, variant) line, creating it if absent.

        Must run inside the caller's (identity, variant) critical section.
        """
        line = existing or await self.get_line_for_variant(db, identity, variant_id)
        if line is not None:
            line.quantity = line.quantity + quantity_delta
        else:
            line = CartItem(
                product_id=product_id,
                variant_id=variant_id,
                quantity=quantity_delta,
                **identity.owner_fields(CartItem),
            )
            db.add(line)
        await db.flush()
        return line

    async def delete(self, db: AsyncSession, identity: Identity, cart_item_id: int) -> bool:
        result = await db.execute(
            delete(CartItem)
            .where(CartItem.id == cart_item_id, identity.owner_clause(CartItem))
            .execution_options(synchronize_session="fetch")
        )
        return result.rowcount > 0

    async def delete_all(self, db: AsyncSession, identity: Identity) -> int:
        result = await db.execute(
            delete(CartItem)
            .where(identity.owner_clause(CartItem))
            .execution_options(synchronize_session="fetch")
        )
        return result.rowcount

    async def count_units(self, db: AsyncSession, identity: Identity) -> int:
        result = await db.execute(
            select(func.coalesce(func.sum(CartItem.quantity), 0))
            .where(identity.owner_clause(CartItem))
        )
        return int(result.scalar() or 0)
