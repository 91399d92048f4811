# storage/payment_cache.py
# ============================================================================
# MCNATION STORE BACKEND — PAYMENT CACHE
# ============================================================================
# Typed access to the key-value store. Key layout:
#   stripe:user:<userId>                 → customer id
#   stripe:customer:<customerId>         → PaymentSnapshot
#   stripe:payment:<paymentIntentId>     → PaymentSnapshot
#   stripe:session:<sessionId>           → checkout session summary
#   stripe:webhook:<eventId>             → processed marker (true)
#   purchase:<sessionId>:<productId>     → DeliveryReceipt
#
# Each key family has exactly one writer: the checkout initiator owns user and
# session keys, the synchronizer owns customer and payment keys, the event
# processor owns webhook markers, the delivery agent owns purchase receipts.
# ============================================================================

from typing import Optional

import structlog
from pydantic import ValidationError

from pipeline.settings import Settings
from schemas.payment_definitions import CheckoutSession, DeliveryReceipt, PaymentSnapshot
from storage.kv_store import IKeyValueStore

logger = structlog.get_logger().bind(component="payment_cache")


class CacheKeys:
    USER = "stripe:user:"
    CUSTOMER = "stripe:customer:"
    PAYMENT = "stripe:payment:"
    SESSION = "stripe:session:"
    WEBHOOK = "stripe:webhook:"
    PURCHASE = "purchase:"

    @classmethod
    def user(cls, user_id: str) -> str:
        return f"{cls.USER}{user_id}"

    @classmethod
    def customer(cls, customer_id: str) -> str:
        return f"{cls.CUSTOMER}{customer_id}"

    @classmethod
    def payment(cls, payment_intent_id: str) -> str:
        return f"{cls.PAYMENT}{payment_intent_id}"

    @classmethod
    def session(cls, session_id: str) -> str:
        return f"{cls.SESSION}{session_id}"

    @classmethod
    def webhook(cls, event_id: str) -> str:
        return f"{cls.WEBHOOK}{event_id}"

    @classmethod
    def purchase(cls, session_id: str, product_id: str) -> str:
        return f"{cls.PURCHASE}{session_id}:{product_id}"


class PaymentCache:
    """Namespaced, typed helpers over an `IKeyValueStore`."""

    def __init__(self, store: IKeyValueStore, settings: Settings):
        self.store = store
        self._settings = settings

    # -------------------------------------------------------------------------
    # Customer identity
    # -------------------------------------------------------------------------

    async def cache_customer_id(self, user_id: str, customer_id: str) -> None:
        await self.store.set(CacheKeys.user(user_id), customer_id, self._settings.ttl_customer_id)

    async def get_customer_id(self, user_id: str) -> Optional[str]:
        value = await self.store.get(CacheKeys.user(user_id))
        return value if isinstance(value, str) and value else None

    # -------------------------------------------------------------------------
    # Payment snapshots
    # -------------------------------------------------------------------------

    async def cache_payment_snapshot(self, customer_id: str, snapshot: PaymentSnapshot) -> None:
        if not customer_id:
            return
        await self.store.set(
            CacheKeys.customer(customer_id),
            snapshot.to_cache(),
            self._settings.ttl_payment_data,
        )

    async def get_payment_snapshot(self, customer_id: str) -> Optional[PaymentSnapshot]:
        return self._load(
            PaymentSnapshot, CacheKeys.customer(customer_id),
            await self.store.get(CacheKeys.customer(customer_id)),
        )

    async def cache_payment_intent(self, payment_intent_id: str, snapshot: PaymentSnapshot) -> None:
        await self.store.set(
            CacheKeys.payment(payment_intent_id),
            snapshot.to_cache(),
            self._settings.ttl_payment_data,
        )

    async def get_payment_intent(self, payment_intent_id: str) -> Optional[PaymentSnapshot]:
        return self._load(
            PaymentSnapshot, CacheKeys.payment(payment_intent_id),
            await self.store.get(CacheKeys.payment(payment_intent_id)),
        )

    # -------------------------------------------------------------------------
    # Checkout sessions
    # -------------------------------------------------------------------------

    async def cache_checkout_session(self, session: CheckoutSession) -> None:
        await self.store.set(
            CacheKeys.session(session.session_id),
            {
                "id": session.session_id,
                "status": session.status,
                "customer_id": session.customer_id,
                "metadata": session.metadata,
                "created": session.created,
            },
            self._settings.ttl_checkout_session,
        )

    async def get_checkout_session(self, session_id: str) -> Optional[dict]:
        value = await self.store.get(CacheKeys.session(session_id))
        return value if isinstance(value, dict) else None

    # -------------------------------------------------------------------------
    # Webhook markers
    # -------------------------------------------------------------------------

    async def mark_webhook_processed(self, event_id: str) -> None:
        await self.store.set(CacheKeys.webhook(event_id), True, self._settings.ttl_webhook_event)

    async def has_webhook_been_processed(self, event_id: str) -> bool:
        return await self.store.get(CacheKeys.webhook(event_id)) is True

    # -------------------------------------------------------------------------
    # Delivery receipts
    # -------------------------------------------------------------------------

    async def save_delivery_receipt(self, receipt: DeliveryReceipt) -> None:
        await self.store.set(
            CacheKeys.purchase(receipt.session_id, receipt.product_id),
            receipt.model_dump(mode="json"),
            self._settings.ttl_delivery_receipt,
        )

    async def has_delivery_receipt(self, session_id: str, product_id: str) -> bool:
        return await self.store.exists(CacheKeys.purchase(session_id, product_id))

    async def get_delivery_receipt(self, session_id: str, product_id: str) -> Optional[DeliveryReceipt]:
        key = CacheKeys.purchase(session_id, product_id)
        return self._load(DeliveryReceipt, key, await self.store.get(key))

    @staticmethod
    def _load(model, key: str, value):
        if value is None:
            return None
        try:
            return model.model_validate(value)
        except ValidationError as e:
            # Unreadable entries are treated as a cache miss; the next sync overwrites them
            logger.warning("cache_entry_invalid", key=key, error=str(e))
            return None
