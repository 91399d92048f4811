"""
Agent 3: State Synchronizer
===========================
Recomputes a customer's payment snapshot from Stripe and overwrites the cache.

- Reads the most recent intents (newest first) and picks the first succeeded one
- Falls back to the most recent intent when nothing has succeeded yet
- Card brand/last4 lookup is best-effort
- Always a full overwrite, so concurrent syncs for one customer are harmless

pip install stripe pydantic structlog
"""

from typing import List, Optional

import structlog

from pipeline.settings import Settings
from schemas.payment_definitions import (
    PaymentIntentRecord,
    PaymentMethodDetails,
    PaymentSnapshot,
    PaymentStatus,
)
from services.stripe_provider import IPaymentProvider
from storage.payment_cache import PaymentCache


def select_actionable_intent(intents: List[PaymentIntentRecord]) -> Optional[PaymentIntentRecord]:
    """First succeeded intent, else the most recent one. `intents` is newest first."""
    if not intents:
        return None
    for intent in intents:
        if intent.status == PaymentStatus.SUCCEEDED:
            return intent
    return intents[0]


class StateSynchronizer:
    """
    Example:
        sync = StateSynchronizer(provider, cache, settings)
        snapshot = await sync.sync_customer("cus_123")
    """

    def __init__(self, provider: IPaymentProvider, cache: PaymentCache, settings: Settings):
        self.provider = provider
        self.cache = cache
        self.settings = settings
        self._logger = structlog.get_logger().bind(component="state_synchronizer")

    async def _card_details(self, intent: PaymentIntentRecord, log) -> Optional[PaymentMethodDetails]:
        if not intent.payment_method_id:
            return None
        try:
            return await self.provider.retrieve_card_details(intent.payment_method_id)
        except Exception as e:
            log.warning("payment_method_lookup_failed",
                        payment_method_id=intent.payment_method_id,
                        error=str(e),
                        error_type=type(e).__name__)
            return None

    async def sync_customer(self, customer_id: str) -> PaymentSnapshot:
        """
        Fetch, select, persist. The customer snapshot write is the last step,
        so a returned snapshot is already what the cache holds.
        """
        log = self._logger.bind(customer_id=customer_id)

        intents = await self.provider.list_payment_intents(
            customer_id, limit=self.settings.payment_sync_limit
        )
        intent = select_actionable_intent(intents)

        if intent is None:
            snapshot = PaymentSnapshot.none()
            await self.cache.cache_payment_snapshot(customer_id, snapshot)
            log.info("payment_state_synced", status=snapshot.status.value)
            return snapshot

        snapshot = PaymentSnapshot.from_intent(intent, await self._card_details(intent, log))

        await self.cache.cache_payment_intent(intent.id, snapshot)
        await self.cache.cache_payment_snapshot(customer_id, snapshot)

        log.info("payment_state_synced",
                 status=snapshot.status.value,
                 payment_intent_id=intent.id,
                 intents_seen=len(intents))
        return snapshot

    async def sync_for_user(self, user_id: str) -> Optional[PaymentSnapshot]:
        """Sync via the cached user -> customer mapping. None if the user never checked out."""
        customer_id = await self.cache.get_customer_id(user_id)
        if not customer_id:
            self._logger.info("sync_skipped_no_customer", user_id=user_id)
            return None
        return await self.sync_customer(customer_id)
