from storefront.models.product import Product, ProductVariant
from storefront.models.cart import CartItem
from storefront.models.address import Address, AddressType
from storefront.models.checkout_session import CheckoutSession, CheckoutStatus
from storefront.models.order import Order, OrderItem

__all__ = [
    "Product",
    "ProductVariant",
    "CartItem",
    "Address",
    "AddressType",
    "CheckoutSession",
    "CheckoutStatus",
    "Order",
    "OrderItem",
]
