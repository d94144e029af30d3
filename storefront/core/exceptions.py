"""
Storefront Exception Hierarchy

Every error carries a machine-readable kind (``code``), a human-readable
message, and structured details. The API layer renders them as
``{"error": code, "message": ..., "details": ...}`` with ``status_code``.

Exception Hierarchy:
    StorefrontError
    ├── CartError
    │   ├── OutOfStockError
    │   └── InvalidQuantityError
    ├── NotFoundError
    ├── ValidationFailedError
    ├── IdentityRequiredError
    ├── CheckoutError
    │   ├── SessionAlreadyFinalizedError
    │   ├── CheckoutSessionExpiredError
    │   └── InvalidStateTransitionError
    ├── PaymentError
    │   ├── PaymentNotCompletedError
    │   └── PaymentAmountMismatchError
    ├── UpstreamUnavailableError
    └── NotImplementedYetError
"""
import logging
from typing import Optional, Dict, Any, List

logger = logging.getLogger(__name__)


class StorefrontError(Exception):
    """
    Base exception for all storefront errors.

    Attributes:
        message: Human-readable error description
        code: Machine-readable error kind for programmatic handling
        details: Additional context for the caller and for logs
        severity: P0-P3 severity level
        status_code: HTTP status used when surfaced at the API boundary
    """

    default_code: str = "StorefrontError"
    default_severity: str = "P2"
    status_code: int = 400

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        severity: Optional[str] = None,
    ):
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}
        self.severity = severity or self.default_severity
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for logging/serialization."""
        return {
            "error_type": self.__class__.__name__,
            "code": self.code,
            "message": self.message,
            "severity": self.severity,
            "details": self.details,
        }

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(code={self.code!r}, message={self.message!r})"


# =============================================================================
# CART ERRORS
# =============================================================================

class CartError(StorefrontError):
    """Base exception for cart mutation failures."""
    default_code = "CartError"
    default_severity = "P3"
    status_code = 400


class OutOfStockError(CartError):
    """Variant has zero available quantity."""
    default_code = "OutOfStock"
    status_code = 409

    def __init__(self, message: str, variant_id: Optional[int] = None, **kwargs):
        details = kwargs.pop("details", {})
        details.update({"variant_id": variant_id, "max_available": 0})
        super().__init__(message, details=details, **kwargs)


class InvalidQuantityError(CartError):
    """Requested or resulting quantity is outside the purchasable range."""
    default_code = "InvalidQuantity"
    status_code = 422

    def __init__(
        self,
        message: str,
        requested: Optional[int] = None,
        max_available: Optional[int] = None,
        **kwargs
    ):
        details = kwargs.pop("details", {})
        details.update({"requested": requested, "max_available": max_available})
        super().__init__(message, details=details, **kwargs)


# =============================================================================
# LOOKUP / INPUT ERRORS
# =============================================================================

class NotFoundError(StorefrontError):
    """Referenced record does not exist or does not belong to the caller."""
    default_code = "NotFound"
    default_severity = "P3"
    status_code = 404

    def __init__(self, resource: str, resource_id: Any = None, **kwargs):
        details = kwargs.pop("details", {})
        details.update({"resource": resource, "id": resource_id})
        super().__init__(f"{resource} not found", details=details, **kwargs)


class ValidationFailedError(StorefrontError):
    """Structural payload validation failed; carries field-level messages."""
    default_code = "ValidationFailed"
    default_severity = "P3"
    status_code = 422

    def __init__(
        self,
        message: str,
        field_errors: Optional[Dict[str, List[str]]] = None,
        **kwargs
    ):
        details = kwargs.pop("details", {})
        details["field_errors"] = field_errors or {}
        super().__init__(message, details=details, **kwargs)

    @property
    def field_errors(self) -> Dict[str, List[str]]:
        return self.details["field_errors"]


class IdentityRequiredError(StorefrontError):
    """No user token or anonymous session id accompanied the request."""
    default_code = "IdentityRequired"
    default_severity = "P3"
    status_code = 401


# =============================================================================
# CHECKOUT ERRORS
# =============================================================================

class CheckoutError(StorefrontError):
    """Base exception for checkout session failures."""
    default_code = "CheckoutError"
    status_code = 409


class SessionAlreadyFinalizedError(CheckoutError):
    """The checkout session already reached CONFIRMED."""
    default_code = "SessionAlreadyFinalized"
    default_severity = "P2"

    def __init__(self, session_id: str, order_number: Optional[str] = None, **kwargs):
        details = kwargs.pop("details", {})
        details.update({"session_id": session_id, "order_number": order_number})
        super().__init__(
            "Checkout session has already been finalized",
            details=details,
            **kwargs
        )


class CheckoutSessionExpiredError(CheckoutError):
    """The checkout session outlived its TTL."""
    default_code = "SessionExpired"
    default_severity = "P3"
    status_code = 410


class InvalidStateTransitionError(CheckoutError):
    """Requested transition is not allowed from the current state."""
    default_code = "InvalidState"

    def __init__(self, message: str, current: Optional[str] = None, target: Optional[str] = None, **kwargs):
        details = kwargs.pop("details", {})
        details.update({"current": current, "target": target})
        super().__init__(message, details=details, **kwargs)


# =============================================================================
# PAYMENT ERRORS
# =============================================================================

class PaymentError(StorefrontError):
    """Base exception for payment collaborator outcomes."""
    default_code = "PaymentError"
    default_severity = "P1"
    status_code = 402


class PaymentNotCompletedError(PaymentError):
    """Payment intent has not succeeded yet."""
    default_code = "PaymentNotCompleted"
    default_severity = "P3"

    def __init__(self, intent_id: str, status: Optional[str] = None, **kwargs):
        details = kwargs.pop("details", {})
        details.update({"intent_id": intent_id, "status": status})
        super().__init__("Payment has not completed", details=details, **kwargs)


class PaymentAmountMismatchError(PaymentError):
    """Payment intent amount or currency differs from the frozen session total."""
    default_code = "AmountMismatch"
    default_severity = "P0"
    status_code = 409


# =============================================================================
# COLLABORATOR ERRORS
# =============================================================================

class UpstreamUnavailableError(StorefrontError):
    """Inventory, payment or storage collaborator timed out or errored."""
    default_code = "UpstreamUnavailable"
    default_severity = "P1"
    status_code = 503

    def __init__(self, collaborator: str, message: Optional[str] = None, **kwargs):
        details = kwargs.pop("details", {})
        details["collaborator"] = collaborator
        super().__init__(
            message or f"{collaborator} is temporarily unavailable",
            details=details,
            **kwargs
        )

    @property
    def collaborator(self) -> str:
        return self.details["collaborator"]


class NotImplementedYetError(StorefrontError):
    """An integration boundary that is not wired up in this deployment."""
    default_code = "NotImplemented"
    default_severity = "P2"
    status_code = 501
