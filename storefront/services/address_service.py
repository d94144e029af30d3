"""
Saved address book

Authenticated users only; guests give their address inline at checkout.
Setting a default clears every other default whose type overlaps (``both``
overlaps billing and shipping), so at most one default serves each type.
"""
import logging
from typing import List, Optional, Union

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.core.exceptions import IdentityRequiredError, NotFoundError, ValidationFailedError
from storefront.core.identity import Identity
from storefront.core.locks import KeyedLockManager, address_default_locks
from storefront.models.address import Address, AddressType
from storefront.schemas.address import AddressCreate, AddressUpdate
from storefront.services.address_validation import validate_address

logger = logging.getLogger(__name__)

ADDRESS_FIELDS = (
    "first_name",
    "last_name",
    "company",
    "address_line_1",
    "address_line_2",
    "city",
    "state_province",
    "postal_code",
    "country_code",
    "phone",
)


def _require_user(identity: Identity) -> str:
    if not identity.is_authenticated:
        raise IdentityRequiredError("Sign in to manage saved addresses")
    return identity.user_id


def _validated_fields(payload: dict) -> dict:
    result = validate_address(payload)
    if not result.is_valid:
        raise ValidationFailedError("Address is invalid", field_errors=result.errors)
    return result.address.model_dump()


class AddressService:

    def __init__(self, locks: Optional[KeyedLockManager] = None):
        self.locks = address_default_locks if locks is None else locks

    async def list_addresses(
        self,
        db: AsyncSession,
        identity: Identity,
        address_type: Optional[AddressType] = None,
    ) -> List[Address]:
        user_id = _require_user(identity)
        query = select(Address).where(Address.user_id == user_id)
        if address_type is not None:
            query = query.where(Address.address_type.in_(address_type.overlapping()))
        result = await db.execute(
            query.order_by(Address.is_default.desc(), Address.created_at.desc(), Address.id.desc())
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def get_owned(self, db: AsyncSession, identity: Identity, address_id: int) -> Address:
        """Address by id, scoped to the caller; NotFound otherwise."""
        user_id = _require_user(identity)
        result = await db.execute(
            select(Address)
            .where(Address.id == address_id, Address.user_id == user_id)
            .execution_options(populate_existing=True)
        )
        address = result.scalar_one_or_none()
        if address is None:
            raise NotFoundError("Address", address_id)
        return address

    async def _clear_defaults(self, db: AsyncSession, user_id: str, address_type: AddressType, keep_id: Optional[int]) -> None:
        query = (
            update(Address)
            .where(
                Address.user_id == user_id,
                Address.address_type.in_(address_type.overlapping()),
                Address.is_default.is_(True),
            )
            .values(is_default=False)
            .execution_options(synchronize_session=False)
        )
        if keep_id is not None:
            query = query.where(Address.id != keep_id)
        await db.execute(query)

    async def create_address(
        self,
        db: AsyncSession,
        identity: Identity,
        data: Union[AddressCreate, dict],
    ) -> Address:
        user_id = _require_user(identity)
        payload = data.model_dump() if isinstance(data, AddressCreate) else dict(data)
        try:
            address_type = AddressType(payload.get("address_type") or AddressType.SHIPPING)
        except ValueError:
            raise ValidationFailedError(
                "Address is invalid",
                field_errors={"address_type": ["Must be one of billing, shipping, both"]},
            )
        make_default = bool(payload.get("is_default"))
        fields = _validated_fields(payload)

        async with self.locks.hold(user_id):
            if make_default:
                await self._clear_defaults(db, user_id, address_type, keep_id=None)
            address = Address(
                user_id=user_id,
                address_type=address_type.value,
                is_default=make_default,
                **fields,
            )
            db.add(address)
            await db.commit()

        logger.info(f"[ADDRESS] {identity.key} created address {address.id} ({address_type.value})")
        return address

    async def update_address(
        self,
        db: AsyncSession,
        identity: Identity,
        address_id: int,
        data: AddressUpdate,
    ) -> Address:
        user_id = _require_user(identity)
        changes = data.model_dump(exclude_unset=True)

        async with self.locks.hold(user_id):
            address = await self.get_owned(db, identity, address_id)
            merged = {name: getattr(address, name) for name in ADDRESS_FIELDS}
            merged.update({k: v for k, v in changes.items() if k in ADDRESS_FIELDS})
            fields = _validated_fields(merged)

            address_type = AddressType(changes.get("address_type") or address.address_type)
            make_default = changes.get("is_default", address.is_default)
            if make_default:
                await self._clear_defaults(db, user_id, address_type, keep_id=address.id)

            for name, value in fields.items():
                setattr(address, name, value)
            address.address_type = address_type.value
            address.is_default = bool(make_default)
            await db.commit()

        return address

    async def delete_address(self, db: AsyncSession, identity: Identity, address_id: int) -> None:
        user_id = _require_user(identity)
        async with self.locks.hold(user_id):
            address = await self.get_owned(db, identity, address_id)
            await db.delete(address)
            await db.commit()
        logger.info(f"[ADDRESS] {identity.key} deleted address {address_id}")

    async def set_default(self, db: AsyncSession, identity: Identity, address_id: int) -> Address:
        user_id = _require_user(identity)
        async with self.locks.hold(user_id):
            address = await self.get_owned(db, identity, address_id)
            await self._clear_defaults(db, user_id, AddressType(address.address_type), keep_id=address.id)
            address.is_default = True
            await db.commit()
        return address

    async def get_default(
        self,
        db: AsyncSession,
        identity: Identity,
        address_type: AddressType,
    ) -> Optional[Address]:
        if not identity.is_authenticated:
            return None
        result = await db.execute(
            select(Address)
            .where(
                Address.user_id == identity.user_id,
                Address.address_type.in_(address_type.overlapping()),
                Address.is_default.is_(True),
            )
            .order_by(Address.id)
            .limit(1)
        )
        return result.scalar_one_or_none()
