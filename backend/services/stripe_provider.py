"""
Stripe Provider Boundary
========================
Every call the pipeline makes to Stripe goes through `IPaymentProvider`.

- SDK calls run in a worker thread so the event loop never blocks on them
- SDK objects are converted into validated records before they leave this module
- `stripe.StripeError` and unexpected shapes both surface as `PaymentProviderError`

pip install stripe pydantic structlog
"""

import asyncio
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

import stripe
import structlog
from pydantic import ValidationError

from pipeline.exceptions import PaymentProviderError
from schemas.payment_definitions import (
    CheckoutLineItem,
    CheckoutSession,
    CompletedSessionRecord,
    PaymentIntentRecord,
    PaymentMethodDetails,
    PaymentSummary,
    ProductRecord,
    SessionLineItemRecord,
)

logger = structlog.get_logger().bind(component="stripe_provider")


# =============================================================================
# INTERFACE
# =============================================================================

class IPaymentProvider(ABC):
    """Payment provider operations used by the pipeline."""

    @abstractmethod
    async def create_customer(self, user_id: str, email: str) -> str:
        pass

    @abstractmethod
    async def create_checkout_session(
        self,
        customer_id: str,
        line_items: List[CheckoutLineItem],
        success_url: str,
        cancel_url: str,
        metadata: Dict[str, str],
    ) -> CheckoutSession:
        pass

    @abstractmethod
    async def list_payment_intents(self, customer_id: str, limit: int) -> List[PaymentIntentRecord]:
        """Most recent intents for a customer, newest first."""
        pass

    @abstractmethod
    async def retrieve_card_details(self, payment_method_id: str) -> Optional[PaymentMethodDetails]:
        """Brand and last4 for card payment methods, None for anything else."""
        pass

    @abstractmethod
    async def retrieve_checkout_session(self, session_id: str) -> CompletedSessionRecord:
        pass

    @abstractmethod
    async def list_session_line_items(self, session_id: str) -> List[SessionLineItemRecord]:
        pass

    @abstractmethod
    async def retrieve_product(self, product_id: str) -> ProductRecord:
        pass

    @abstractmethod
    async def list_recent_payments(self, limit: int, status: Optional[str] = None) -> List[PaymentSummary]:
        pass


# =============================================================================
# FIELD HELPERS
# =============================================================================

# What building a record from an unexpected response shape can raise
_SHAPE_ERRORS = (ValidationError, AttributeError, KeyError, TypeError, ValueError, OverflowError)


def _field(obj: Any, name: str, default: Any = None) -> Any:
    """Read `name` from a plain dict or an SDK object (attribute access)."""
    if obj is None:
        return default
    if isinstance(obj, dict):
        return obj.get(name, default)
    return getattr(obj, name, default)


def _as_dict(value: Any) -> Dict[str, Any]:
    """Plain dict view. Recent SDK objects are not dicts and only expose `to_dict()`."""
    if value is None:
        return {}
    if isinstance(value, dict):
        return value
    to_dict = getattr(value, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    return dict(value)


def _object_id(value: Any) -> Optional[str]:
    """Expandable fields arrive either as an id string or as the expanded object."""
    if value is None or isinstance(value, str):
        return value or None
    return _field(value, "id")


def _metadata(obj: Any) -> Dict[str, str]:
    metadata = _as_dict(_field(obj, "metadata"))
    return {str(key): str(value) for key, value in metadata.items()}


def _card_details(payment_method: Any) -> Optional[PaymentMethodDetails]:
    if payment_method is None or isinstance(payment_method, str):
        return None
    if _field(payment_method, "type") != "card":
        return None
    card = _field(payment_method, "card")
    if card is None:
        return None
    return PaymentMethodDetails(brand=_field(card, "brand"), last4=_field(card, "last4"))


# =============================================================================
# STRIPE IMPLEMENTATION
# =============================================================================

class StripePaymentProvider(IPaymentProvider):
    """`IPaymentProvider` backed by the Stripe SDK."""

    def __init__(self, api_key: str, currency: str = "usd"):
        self._api_key = api_key
        self._currency = currency

    async def _call(self, operation: str, fn: Callable, *args, **kwargs):
        try:
            return await asyncio.to_thread(fn, *args, api_key=self._api_key, **kwargs)
        except stripe.StripeError as e:
            logger.error("stripe_call_failed", operation=operation,
                         error=str(e), error_type=type(e).__name__)
            raise PaymentProviderError(f"Stripe {operation} failed", operation, e) from e

    @staticmethod
    def _shape_error(operation: str, e: Exception) -> PaymentProviderError:
        logger.error("stripe_response_invalid", operation=operation,
                     error=str(e), error_type=type(e).__name__)
        return PaymentProviderError(f"Unexpected Stripe response for {operation}", operation, e)

    async def create_customer(self, user_id: str, email: str) -> str:
        customer = await self._call(
            "customers.create",
            stripe.Customer.create,
            email=email or None,
            metadata={"userId": user_id},
        )
        customer_id = _field(customer, "id")
        if not customer_id:
            raise PaymentProviderError("Stripe returned a customer without an id", "customers.create")
        logger.info("stripe_customer_created", customer_id=customer_id)
        return customer_id

    async def create_checkout_session(
        self,
        customer_id: str,
        line_items: List[CheckoutLineItem],
        success_url: str,
        cancel_url: str,
        metadata: Dict[str, str],
    ) -> CheckoutSession:
        session = await self._call(
            "checkout.sessions.create",
            stripe.checkout.Session.create,
            customer=customer_id,
            payment_method_types=["card"],
            mode="payment",
            line_items=[
                {
                    "price_data": {
                        "currency": self._currency,
                        "product_data": {
                            "name": item.name,
                            "metadata": {"itemId": str(item.item_id)},
                        },
                        "unit_amount": item.unit_amount,
                    },
                    "quantity": item.quantity,
                }
                for item in line_items
            ],
            success_url=success_url,
            cancel_url=cancel_url,
            metadata=metadata,
        )
        try:
            return CheckoutSession(
                session_id=_field(session, "id"),
                customer_id=_object_id(_field(session, "customer")) or customer_id,
                url=_field(session, "url"),
                status=_field(session, "status"),
                line_items=line_items,
                success_url=success_url,
                cancel_url=cancel_url,
                metadata=_metadata(session) or metadata,
                created=_field(session, "created"),
            )
        except _SHAPE_ERRORS as e:
            raise self._shape_error("checkout.sessions.create", e) from e

    async def list_payment_intents(self, customer_id: str, limit: int) -> List[PaymentIntentRecord]:
        page = await self._call(
            "payment_intents.list",
            stripe.PaymentIntent.list,
            customer=customer_id,
            limit=limit,
        )
        try:
            records = [
                PaymentIntentRecord(
                    id=_field(intent, "id"),
                    status=_field(intent, "status"),
                    amount=_field(intent, "amount"),
                    currency=_field(intent, "currency"),
                    customer_id=_object_id(_field(intent, "customer")),
                    payment_method_id=_object_id(_field(intent, "payment_method")),
                    metadata=_metadata(intent),
                    created=_field(intent, "created"),
                )
                for intent in _field(page, "data", [])
            ]
        except _SHAPE_ERRORS as e:
            raise self._shape_error("payment_intents.list", e) from e
        # Stripe lists newest first already; sort anyway so callers can rely on it
        return sorted(records, key=lambda r: r.created, reverse=True)

    async def retrieve_card_details(self, payment_method_id: str) -> Optional[PaymentMethodDetails]:
        payment_method = await self._call(
            "payment_methods.retrieve",
            stripe.PaymentMethod.retrieve,
            payment_method_id,
        )
        try:
            return _card_details(payment_method)
        except _SHAPE_ERRORS as e:
            raise self._shape_error("payment_methods.retrieve", e) from e

    async def retrieve_checkout_session(self, session_id: str) -> CompletedSessionRecord:
        session = await self._call(
            "checkout.sessions.retrieve",
            stripe.checkout.Session.retrieve,
            session_id,
        )
        try:
            return CompletedSessionRecord(
                session_id=_field(session, "id"),
                customer_id=_object_id(_field(session, "customer")),
                payment_status=_field(session, "payment_status"),
                metadata=_metadata(session),
            )
        except _SHAPE_ERRORS as e:
            raise self._shape_error("checkout.sessions.retrieve", e) from e

    async def list_session_line_items(self, session_id: str) -> List[SessionLineItemRecord]:
        page = await self._call(
            "checkout.sessions.list_line_items",
            stripe.checkout.Session.list_line_items,
            session_id,
            limit=100,
        )
        try:
            return [
                SessionLineItemRecord(
                    line_item_id=_field(item, "id"),
                    product_id=_object_id(_field(_field(item, "price"), "product")),
                    description=_field(item, "description"),
                    quantity=_field(item, "quantity") or 1,
                )
                for item in _field(page, "data", [])
            ]
        except _SHAPE_ERRORS as e:
            raise self._shape_error("checkout.sessions.list_line_items", e) from e

    async def retrieve_product(self, product_id: str) -> ProductRecord:
        product = await self._call("products.retrieve", stripe.Product.retrieve, product_id)
        try:
            return ProductRecord(
                id=_field(product, "id"),
                name=_field(product, "name"),
                metadata=_metadata(product),
            )
        except _SHAPE_ERRORS as e:
            raise self._shape_error("products.retrieve", e) from e

    async def list_recent_payments(self, limit: int, status: Optional[str] = None) -> List[PaymentSummary]:
        page = await self._call(
            "payment_intents.list",
            stripe.PaymentIntent.list,
            limit=min(max(limit, 1), 100),
            expand=["data.customer", "data.payment_method"],
        )
        summaries = []
        try:
            for intent in _field(page, "data", []):
                # The list endpoint has no status filter, so filter here
                if status and _field(intent, "status") != status:
                    continue
                customer = _field(intent, "customer")
                metadata = _metadata(intent)
                created = _field(intent, "created") or 0
                summaries.append(PaymentSummary(
                    id=_field(intent, "id"),
                    amount=_field(intent, "amount"),
                    currency=_field(intent, "currency"),
                    status=_field(intent, "status"),
                    customer_email=(
                        _field(customer, "email") if not isinstance(customer, str) else None
                    ) or "Unknown",
                    minecraft_username=(
                        metadata.get("minecraft_username")
                        or metadata.get("minecraftUsername")
                        or "Unknown"
                    ),
                    created=datetime.fromtimestamp(created, tz=timezone.utc).isoformat(),
                    payment_method=_card_details(_field(intent, "payment_method")),
                ))
        except _SHAPE_ERRORS as e:
            raise self._shape_error("payment_intents.list", e) from e
        return summaries
