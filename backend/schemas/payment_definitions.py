# schemas/payment_definitions.py
# ============================================================================
# MCNATION STORE BACKEND — PAYMENT SCHEMAS
# ============================================================================
# Purpose: Type-safe records for the checkout → webhook → sync → delivery flow.
#
# Provider objects and remote command responses are converted into these
# records at the boundary; nothing downstream touches raw SDK objects.
# ============================================================================

import math
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel


# ============================================================================
# SECTION 1: ENUMS
# ============================================================================

class StripeEventType(str, Enum):
    """Allow-list of webhook event types. Anything else is acknowledged and dropped."""
    CHECKOUT_SESSION_COMPLETED = "checkout.session.completed"
    PAYMENT_INTENT_SUCCEEDED = "payment_intent.succeeded"
    PAYMENT_INTENT_FAILED = "payment_intent.payment_failed"
    PAYMENT_INTENT_CANCELED = "payment_intent.canceled"
    SUBSCRIPTION_CREATED = "customer.subscription.created"
    SUBSCRIPTION_UPDATED = "customer.subscription.updated"
    SUBSCRIPTION_DELETED = "customer.subscription.deleted"
    INVOICE_PAID = "invoice.paid"
    INVOICE_PAYMENT_FAILED = "invoice.payment_failed"

    @classmethod
    def parse(cls, value: str) -> Optional["StripeEventType"]:
        try:
            return cls(value)
        except ValueError:
            return None


class PaymentStatus(str, Enum):
    SUCCEEDED = "succeeded"
    PROCESSING = "processing"
    REQUIRES_PAYMENT_METHOD = "requires_payment_method"
    REQUIRES_CONFIRMATION = "requires_confirmation"
    REQUIRES_ACTION = "requires_action"
    CANCELED = "canceled"
    REQUIRES_CAPTURE = "requires_capture"
    NONE = "none"


class ProcessingOutcome(str, Enum):
    PROCESSED = "processed"
    DUPLICATE = "duplicate"
    IN_FLIGHT = "in_flight"


# ============================================================================
# SECTION 2: CHECKOUT
# ============================================================================

class AuthenticatedUser(BaseModel):
    """Caller identity as resolved by the panel's session provider."""
    user_id: str = Field(min_length=1)
    email: str = ""
    role: str = "user"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


class CartItem(BaseModel):
    """One cart line as sent by the storefront. Client-held, never authoritative."""
    model_config = ConfigDict(populate_by_name=True)

    id: int
    name: str = Field(min_length=1, max_length=200)
    price: float
    sale_price: Optional[float] = Field(default=None, alias="salePrice")
    quantity: int = Field(default=1, gt=0)
    payment_method: Optional[str] = Field(default=None, alias="paymentMethod")
    discount_code: Optional[str] = Field(default=None, alias="discountCode")


class CheckoutLineItem(BaseModel):
    """Line item as submitted to the provider (amount in minor units)."""
    item_id: int
    name: str
    unit_amount: int = Field(gt=0)
    quantity: int = Field(gt=0)


class CheckoutSession(BaseModel):
    """Provider checkout session. Immutable after creation."""
    model_config = ConfigDict(frozen=True)

    session_id: str
    customer_id: str
    url: str
    status: Optional[str] = None
    line_items: List[CheckoutLineItem] = Field(default_factory=list)
    success_url: str
    cancel_url: str
    metadata: Dict[str, str] = Field(default_factory=dict)
    created: Optional[int] = None


class CheckoutResult(BaseModel):
    checkout_url: str
    session_id: str
    customer_id: str


# ============================================================================
# SECTION 3: PAYMENT STATE
# ============================================================================

class PaymentMethodDetails(BaseModel):
    brand: Optional[str] = None
    last4: Optional[str] = None


class PaymentIntentRecord(BaseModel):
    """Validated view of a provider payment intent."""
    id: str
    status: PaymentStatus
    amount: int
    currency: str
    customer_id: Optional[str] = None
    payment_method_id: Optional[str] = None
    metadata: Dict[str, str] = Field(default_factory=dict)
    created: int

    @model_validator(mode="after")
    def _real_intent_status(self) -> "PaymentIntentRecord":
        if self.status == PaymentStatus.NONE:
            raise ValueError("payment intents cannot carry the 'none' status")
        return self


class PaymentSnapshot(BaseModel):
    """
    Normalized payment state cached per customer.

    A snapshot with status "none" carries no other fields: it means the
    customer has no payment intents at all.
    """
    payment_intent_id: Optional[str] = None
    status: PaymentStatus
    amount: Optional[int] = None
    currency: Optional[str] = None
    payment_method: Optional[PaymentMethodDetails] = None
    metadata: Dict[str, str] = Field(default_factory=dict)
    created_at: Optional[int] = None

    @model_validator(mode="after")
    def _consistent_with_status(self) -> "PaymentSnapshot":
        if self.status == PaymentStatus.NONE:
            if self.payment_intent_id is not None or self.amount is not None:
                raise ValueError("a 'none' snapshot cannot reference a payment intent")
        elif not self.payment_intent_id:
            raise ValueError("snapshot requires payment_intent_id unless status is 'none'")
        return self

    @classmethod
    def none(cls) -> "PaymentSnapshot":
        return cls(status=PaymentStatus.NONE)

    @classmethod
    def from_intent(
        cls,
        intent: PaymentIntentRecord,
        payment_method: Optional[PaymentMethodDetails] = None,
    ) -> "PaymentSnapshot":
        return cls(
            payment_intent_id=intent.id,
            status=intent.status,
            amount=intent.amount,
            currency=intent.currency,
            payment_method=payment_method,
            metadata=dict(intent.metadata),
            created_at=intent.created,
        )

    def to_cache(self) -> Dict[str, Any]:
        if self.status == PaymentStatus.NONE:
            return {"status": PaymentStatus.NONE.value}
        return self.model_dump(mode="json")


# ============================================================================
# SECTION 4: WEBHOOKS
# ============================================================================

class StripeEventData(BaseModel):
    model_config = ConfigDict(extra="allow")

    object: Dict[str, Any]


class StripeWebhookEvent(BaseModel):
    """Signature-verified webhook event. `type` is left open; filtering happens later."""
    model_config = ConfigDict(extra="allow")

    id: str = Field(min_length=1)
    type: str = Field(min_length=1)
    data: StripeEventData
    created: Optional[int] = None
    livemode: bool = False

    @property
    def event_type(self) -> Optional[StripeEventType]:
        return StripeEventType.parse(self.type)

    @property
    def object_id(self) -> Optional[str]:
        return self.data.object.get("id")

    @property
    def customer_id(self) -> Optional[str]:
        customer = self.data.object.get("customer")
        if isinstance(customer, dict):
            customer = customer.get("id")
        return customer or None


class WebhookAck(BaseModel):
    received: bool = True
    status: str
    event_id: Optional[str] = None


# ============================================================================
# SECTION 5: DELIVERY
# ============================================================================

class CompletedSessionRecord(BaseModel):
    """Completed checkout session as re-fetched for delivery."""
    session_id: str
    customer_id: Optional[str] = None
    payment_status: Optional[str] = None
    metadata: Dict[str, str] = Field(default_factory=dict)

    @property
    def buyer_username(self) -> Optional[str]:
        # Sessions created before the metadata key was normalized used camelCase.
        username = self.metadata.get("minecraft_username") or self.metadata.get("minecraftUsername")
        return username.strip() if username and username.strip() else None


class SessionLineItemRecord(BaseModel):
    line_item_id: str
    product_id: str
    description: Optional[str] = None
    quantity: int = Field(default=1, ge=1)


class ProductRecord(BaseModel):
    id: str
    name: str = Field(min_length=1)
    metadata: Dict[str, str] = Field(default_factory=dict)


class DeliveryReceipt(BaseModel):
    """Dedup marker: presence means the grant for (session, product) already ran."""
    session_id: str
    product_id: str
    product_name: str
    username: str
    quantity: int
    command: str
    timestamp: datetime = Field(default_factory=datetime.utcnow)


class ItemDeliveryFailure(BaseModel):
    line_item_id: str
    product_id: str
    error: str


class DeliveryReport(BaseModel):
    session_id: str
    username: str
    delivered: List[DeliveryReceipt] = Field(default_factory=list)
    skipped: List[str] = Field(default_factory=list)
    failed: List[ItemDeliveryFailure] = Field(default_factory=list)

    @property
    def complete(self) -> bool:
        return not self.failed


# ============================================================================
# SECTION 6: REMOTE COMMAND API
# ============================================================================

class CommandResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    success: bool
    message: str = ""


# ============================================================================
# SECTION 7: ADMIN VIEWS
# ============================================================================

class PaymentSummary(BaseModel):
    """Admin listing row. Serialized with camelCase keys for the dashboard."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str
    amount: int
    currency: str
    status: str
    customer_email: str = "Unknown"
    minecraft_username: str = "Unknown"
    created: str
    payment_method: Optional[PaymentMethodDetails] = None


def is_valid_price(value: Optional[float]) -> bool:
    return value is not None and not math.isnan(value) and not math.isinf(value) and value > 0
