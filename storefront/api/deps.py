"""
API dependencies

Identity resolution order: a valid Bearer access token wins, then the
anonymous session header, then the session cookie. Requests carrying none of
them fail with IdentityRequired; nothing in the cart or checkout runs
without exactly one owner.
"""
from typing import Optional

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from storefront.core.config import settings
from storefront.core.exceptions import IdentityRequiredError
from storefront.core.identity import Identity
from storefront.core.redis_client import WebhookEventLedger
from storefront.core.security import decode_token
from storefront.services.address_service import AddressService
from storefront.services.cart_merge import CartMergeService
from storefront.services.cart_service import CartService
from storefront.services.checkout_service import CheckoutService
from storefront.services.inventory import InventoryChecker
from storefront.services.order_service import OrderService
from storefront.services.payment_gateway import PaymentGateway
from storefront.services.product_search import ProductSearchService

bearer = HTTPBearer(auto_error=False)

MAX_SESSION_ID_LENGTH = 128


def _clean_session_id(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    if not value or len(value) > MAX_SESSION_ID_LENGTH:
        return None
    return value


async def get_identity(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer),
) -> Identity:
    """Resolve the cart owner for this request."""
    if credentials:
        payload = decode_token(credentials.credentials)
        if not payload or payload.get("type") != "access" or not payload.get("sub"):
            raise IdentityRequiredError("Invalid or expired token")
        return Identity.for_user(payload["sub"])

    session_id = _clean_session_id(request.headers.get(settings.SESSION_ID_HEADER))
    if session_id is None:
        session_id = _clean_session_id(request.cookies.get(settings.SESSION_COOKIE_NAME))
    if session_id is None:
        raise IdentityRequiredError("A user token or anonymous session id is required")
    return Identity.for_session(session_id)


async def get_user_identity(identity: Identity = Depends(get_identity)) -> Identity:
    """Require an authenticated user"""
    if not identity.is_authenticated:
        raise IdentityRequiredError("Sign in required")
    return identity


def get_guest_session_id(request: Request) -> Optional[str]:
    """Anonymous session id presented alongside a user token (used by merge)."""
    return _clean_session_id(
        request.headers.get(settings.SESSION_ID_HEADER)
        or request.cookies.get(settings.SESSION_COOKIE_NAME)
    )


def get_payment_gateway(request: Request) -> PaymentGateway:
    return request.app.state.payment_gateway


def get_webhook_ledger(request: Request) -> WebhookEventLedger:
    return request.app.state.webhook_ledger


def get_inventory_checker() -> InventoryChecker:
    return InventoryChecker()


def get_cart_service(inventory: InventoryChecker = Depends(get_inventory_checker)) -> CartService:
    return CartService(inventory=inventory)


def get_merge_service(cart_service: CartService = Depends(get_cart_service)) -> CartMergeService:
    return CartMergeService(cart_service)


def get_address_service() -> AddressService:
    return AddressService()


def get_order_service() -> OrderService:
    return OrderService()


def get_checkout_service(
    gateway: PaymentGateway = Depends(get_payment_gateway),
    cart_service: CartService = Depends(get_cart_service),
    address_service: AddressService = Depends(get_address_service),
    order_service: OrderService = Depends(get_order_service),
) -> CheckoutService:
    return CheckoutService(
        gateway=gateway,
        cart_service=cart_service,
        address_service=address_service,
        order_service=order_service,
    )


def get_search_service(
    request: Request,
    inventory: InventoryChecker = Depends(get_inventory_checker),
) -> ProductSearchService:
    return ProductSearchService(request.app.state.search_cache, inventory=inventory)
