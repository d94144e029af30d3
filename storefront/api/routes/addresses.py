"""
Saved address routes (signed-in users only)
"""
from typing import List, Optional

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.api.deps import get_address_service, get_user_identity
from storefront.core.database import get_db
from storefront.core.identity import Identity
from storefront.models.address import AddressType
from storefront.schemas.address import AddressResponse, AddressUpdate
from storefront.services.address_service import AddressService

router = APIRouter()


@router.get("", response_model=List[AddressResponse])
async def list_addresses(
    address_type: Optional[AddressType] = None,
    identity: Identity = Depends(get_user_identity),
    address_service: AddressService = Depends(get_address_service),
    db: AsyncSession = Depends(get_db),
):
    """Defaults first, then newest"""
    return await address_service.list_addresses(db, identity, address_type)


@router.post("", response_model=AddressResponse, status_code=status.HTTP_201_CREATED)
async def create_address(
    payload: dict,
    identity: Identity = Depends(get_user_identity),
    address_service: AddressService = Depends(get_address_service),
    db: AsyncSession = Depends(get_db),
):
    # Raw body so field errors come from the shared address predicate
    return await address_service.create_address(db, identity, payload)


@router.patch("/{address_id}", response_model=AddressResponse)
async def update_address(
    address_id: int,
    payload: AddressUpdate,
    identity: Identity = Depends(get_user_identity),
    address_service: AddressService = Depends(get_address_service),
    db: AsyncSession = Depends(get_db),
):
    return await address_service.update_address(db, identity, address_id, payload)


@router.delete("/{address_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_address(
    address_id: int,
    identity: Identity = Depends(get_user_identity),
    address_service: AddressService = Depends(get_address_service),
    db: AsyncSession = Depends(get_db),
):
    await address_service.delete_address(db, identity, address_id)


@router.post("/{address_id}/default", response_model=AddressResponse)
async def set_default_address(
    address_id: int,
    identity: Identity = Depends(get_user_identity),
    address_service: AddressService = Depends(get_address_service),
    db: AsyncSession = Depends(get_db),
):
    return await address_service.set_default(db, identity, address_id)
