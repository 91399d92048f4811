"""
Exceptions for the payment pipeline.

Exception Hierarchy:
    PaymentFlowError (base)
    ├── Validation (400)
    │   ├── EmptyCartError
    │   ├── MissingIdentityError
    │   ├── InvalidCartItemError
    │   ├── MissingSignatureError
    │   └── MalformedEventError
    ├── Auth
    │   ├── InvalidSignatureError        (400)
    │   ├── AuthenticationRequiredError  (401)
    │   └── PermissionDeniedError        (403)
    ├── PaymentProviderError             (500)
    ├── Delivery
    │   ├── MissingBuyerIdentityError
    │   ├── CommandExecutionError
    │   ├── DeliveryIncompleteError
    │   └── DeliveryInProgressError      (409)
    └── CacheError                       (503)

Usage:
    Validation and signature errors are raised before any side effect.
    Errors on the asynchronous webhook path are logged by the detached task
    and never reach the payment provider.
"""

from typing import Any, Dict, Optional


class PaymentFlowError(Exception):
    """Base exception; `status_code` is what the HTTP layer answers with."""

    code = "PAYMENT_FLOW_ERROR"
    status_code = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


# =============================================================================
# VALIDATION ERRORS - rejected immediately, no side effects
# =============================================================================

class EmptyCartError(PaymentFlowError):
    code = "EMPTY_CART"
    status_code = 400

    def __init__(self):
        super().__init__("Your cart is empty.")


class MissingIdentityError(PaymentFlowError):
    code = "MISSING_IDENTITY"
    status_code = 400

    def __init__(self):
        super().__init__("Minecraft username is required.")


class InvalidCartItemError(PaymentFlowError):
    code = "INVALID_CART_ITEM"
    status_code = 400


class MissingSignatureError(PaymentFlowError):
    code = "MISSING_SIGNATURE"
    status_code = 400

    def __init__(self):
        super().__init__("Missing stripe-signature header")


class MalformedEventError(PaymentFlowError):
    code = "MALFORMED_EVENT"
    status_code = 400


# =============================================================================
# AUTHENTICATION / AUTHORIZATION
# =============================================================================

class InvalidSignatureError(PaymentFlowError):
    code = "INVALID_SIGNATURE"
    status_code = 400

    def __init__(self, reason: Optional[str] = None):
        super().__init__("Invalid signature", {"reason": reason} if reason else None)


class AuthenticationRequiredError(PaymentFlowError):
    code = "UNAUTHORIZED"
    status_code = 401

    def __init__(self):
        super().__init__("Unauthorized. Please log in.")


class PermissionDeniedError(PaymentFlowError):
    code = "FORBIDDEN"
    status_code = 403

    def __init__(self):
        super().__init__("Forbidden")


# =============================================================================
# PROVIDER ERRORS
# =============================================================================

class PaymentProviderError(PaymentFlowError):
    """A call to the payment provider failed or returned an unexpected shape."""

    code = "STRIPE_ERROR"
    status_code = 500

    def __init__(self, message: str, operation: str, cause: Optional[BaseException] = None):
        details = {"operation": operation}
        if cause is not None:
            details["error_type"] = type(cause).__name__
        super().__init__(message, details)
        self.operation = operation
        self.cause = cause


# =============================================================================
# DELIVERY ERRORS - raised after payment succeeded, handled fail-safe
# =============================================================================

class MissingBuyerIdentityError(PaymentFlowError):
    code = "MISSING_BUYER_IDENTITY"
    status_code = 422

    def __init__(self, session_id: str):
        super().__init__(
            "No Minecraft username found in session metadata",
            {"session_id": session_id},
        )
        self.session_id = session_id


class CommandExecutionError(PaymentFlowError):
    """The remote server command endpoint failed or rejected a command."""

    code = "COMMAND_FAILED"
    status_code = 502


class DeliveryIncompleteError(PaymentFlowError):
    code = "DELIVERY_INCOMPLETE"
    status_code = 502

    def __init__(self, session_id: str, failed_products: list):
        super().__init__(
            "One or more items could not be delivered",
            {"session_id": session_id, "failed_products": failed_products},
        )
        self.session_id = session_id
        self.failed_products = failed_products


class DeliveryInProgressError(PaymentFlowError):
    code = "DELIVERY_IN_PROGRESS"
    status_code = 409

    def __init__(self, session_id: str):
        super().__init__("Delivery already running for this session", {"session_id": session_id})


# =============================================================================
# CACHE
# =============================================================================

class CacheError(PaymentFlowError):
    code = "CACHE_UNAVAILABLE"
    status_code = 503
