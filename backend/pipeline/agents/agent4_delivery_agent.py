"""
Agent 4: Delivery Agent
=======================
Grants purchased store packages to the buyer's Minecraft account.

- Buyer identity comes from the checkout session metadata
- One grant command per line item, built from a sanitized template
- Receipts keyed by (session, product) make redelivery skip finished items
- One item failing never stops the others; the report lists what failed

pip install pydantic structlog httpx
"""

from datetime import datetime
from typing import Optional, Set

import structlog

from pipeline.exceptions import DeliveryInProgressError, MissingBuyerIdentityError
from schemas.payment_definitions import (
    DeliveryReceipt,
    DeliveryReport,
    ItemDeliveryFailure,
    SessionLineItemRecord,
)
from services.server_commands import ServerCommandClient, build_grant_command
from services.stripe_provider import IPaymentProvider
from storage.payment_cache import PaymentCache


class DeliveryAgent:
    """
    Example:
        agent = DeliveryAgent(provider, cache, commands)
        report = await agent.deliver_session("cs_test_123")
        if not report.complete:
            ...  # failed items are retried on redelivery
    """

    def __init__(
        self,
        provider: IPaymentProvider,
        cache: PaymentCache,
        commands: ServerCommandClient,
    ):
        self.provider = provider
        self.cache = cache
        self.commands = commands
        self._active_sessions: Set[str] = set()
        self._logger = structlog.get_logger().bind(component="delivery_agent")

    async def deliver_session(self, session_id: str) -> DeliveryReport:
        # Claimed before the first await; a second concurrent run is refused
        if session_id in self._active_sessions:
            raise DeliveryInProgressError(session_id)
        self._active_sessions.add(session_id)
        try:
            return await self._deliver(session_id)
        finally:
            self._active_sessions.discard(session_id)

    async def _deliver(self, session_id: str) -> DeliveryReport:
        log = self._logger.bind(session_id=session_id)

        session = await self.provider.retrieve_checkout_session(session_id)
        line_items = await self.provider.list_session_line_items(session_id)

        username = session.buyer_username
        if not username:
            log.error("delivery_aborted_no_username")
            raise MissingBuyerIdentityError(session_id)

        report = DeliveryReport(session_id=session_id, username=username)
        log = log.bind(username=username)
        log.info("delivery_started", line_items=len(line_items))

        for item in line_items:
            try:
                receipt = await self._deliver_item(session_id, username, item, log)
            except Exception as e:
                log.error("item_delivery_failed",
                          line_item_id=item.line_item_id,
                          product_id=item.product_id,
                          error=str(e),
                          error_type=type(e).__name__)
                report.failed.append(ItemDeliveryFailure(
                    line_item_id=item.line_item_id,
                    product_id=item.product_id,
                    error=str(e),
                ))
                continue

            if receipt is None:
                report.skipped.append(item.product_id)
            else:
                report.delivered.append(receipt)

        log.info("delivery_finished",
                 delivered=len(report.delivered),
                 skipped=len(report.skipped),
                 failed=len(report.failed))
        return report

    async def _deliver_item(
        self,
        session_id: str,
        username: str,
        item: SessionLineItemRecord,
        log,
    ) -> Optional[DeliveryReceipt]:
        """Grant one line item. Returns None when a receipt already exists."""
        if await self.cache.has_delivery_receipt(session_id, item.product_id):
            log.info("item_already_delivered", product_id=item.product_id)
            return None

        product = await self.provider.retrieve_product(item.product_id)
        command = build_grant_command(username, product.name)
        await self.commands.grant_package(username, product.name)

        receipt = DeliveryReceipt(
            session_id=session_id,
            product_id=item.product_id,
            product_name=product.name,
            username=username,
            quantity=item.quantity,
            command=command,
            timestamp=datetime.utcnow(),
        )
        await self.cache.save_delivery_receipt(receipt)

        log.info("item_delivered", product_id=item.product_id, product_name=product.name)
        return receipt
