"""
Agent 2: Payment Gateway
========================
Stripe webhook intake and event processing.

- Signature verified against the raw body BEFORE anything is parsed
- Allow-listed events are processed in a detached task; the HTTP ack never waits
- Webhook router sealed against the allow-list: a missing arm fails at startup
- Event ids are claimed in-process and marked processed only after success

pip install pydantic stripe structlog
"""

import asyncio
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional, Set

import stripe
import structlog
from pydantic import ValidationError

from pipeline.agents.agent3_state_synchronizer import StateSynchronizer
from pipeline.agents.agent4_delivery_agent import DeliveryAgent
from pipeline.exceptions import (
    DeliveryIncompleteError,
    InvalidSignatureError,
    MalformedEventError,
    MissingSignatureError,
)
from pipeline.settings import Settings
from schemas.payment_definitions import (
    ProcessingOutcome,
    StripeEventType,
    StripeWebhookEvent,
    WebhookAck,
)
from storage.payment_cache import PaymentCache


# =============================================================================
# WEBHOOK ROUTER
# =============================================================================

WebhookHandler = Callable[[StripeWebhookEvent, Any], Awaitable[Any]]


class WebhookRouter:
    """
    Event-type to handler dispatch table.
    `seal()` closes the table: every allow-listed type must have an arm.
    """

    def __init__(self):
        self._handlers: Dict[StripeEventType, WebhookHandler] = {}
        self._sealed = False
        self._logger = structlog.get_logger().bind(component="webhook_router")

    def register(self, event_type: StripeEventType):
        """Decorator to register handler for event type"""
        def decorator(handler: WebhookHandler):
            if self._sealed:
                raise RuntimeError(f"Router is sealed; cannot register {event_type.value}")
            self._handlers[event_type] = handler
            self._logger.debug("handler_registered", event_type=event_type.value)
            return handler
        return decorator

    def seal(self, event_types: Iterable[StripeEventType]) -> None:
        missing = [t.value for t in event_types if t not in self._handlers]
        if missing:
            raise RuntimeError(f"Webhook event types without a handler: {', '.join(missing)}")
        self._sealed = True

    async def route(self, event: StripeWebhookEvent, log) -> Any:
        event_type = event.event_type
        if event_type is None:
            raise MalformedEventError(f"Event type {event.type} is not routable", {"event_id": event.id})
        return await self._handlers[event_type](event, log)

    @property
    def supported_events(self) -> list:
        return [t.value for t in self._handlers]


# =============================================================================
# EVENT PROCESSOR
# =============================================================================

class EventProcessor:
    """
    Performs the side effects for one allow-listed event, at most once per event id.

    The webhook marker is written only after every side effect succeeded, so a
    failure part-way leaves the event eligible for Stripe's redelivery.
    """

    def __init__(
        self,
        cache: PaymentCache,
        synchronizer: StateSynchronizer,
        delivery: DeliveryAgent,
    ):
        self.cache = cache
        self.synchronizer = synchronizer
        self.delivery = delivery
        self._claimed: Set[str] = set()
        self._logger = structlog.get_logger().bind(component="event_processor")

        self.router = WebhookRouter()
        self._register_handlers()
        self.router.seal(StripeEventType)

    async def process(self, event: StripeWebhookEvent) -> ProcessingOutcome:
        log = self._logger.bind(event_id=event.id, event_type=event.type)

        # Claimed before the first await so a concurrent duplicate sees it
        if event.id in self._claimed:
            log.info("webhook_in_flight")
            return ProcessingOutcome.IN_FLIGHT
        self._claimed.add(event.id)

        try:
            if await self.cache.has_webhook_been_processed(event.id):
                log.info("webhook_duplicate")
                return ProcessingOutcome.DUPLICATE

            await self.router.route(event, log)
            await self.cache.mark_webhook_processed(event.id)

            log.info("webhook_processed")
            return ProcessingOutcome.PROCESSED
        finally:
            self._claimed.discard(event.id)

    # =========================================================================
    # HANDLERS (one arm per allow-listed type)
    # =========================================================================

    def _register_handlers(self):
        router = self.router

        @router.register(StripeEventType.CHECKOUT_SESSION_COMPLETED)
        async def handle_checkout_completed(event: StripeWebhookEvent, log):
            return await self._on_checkout_completed(event, log)

        @router.register(StripeEventType.PAYMENT_INTENT_SUCCEEDED)
        @router.register(StripeEventType.PAYMENT_INTENT_FAILED)
        @router.register(StripeEventType.PAYMENT_INTENT_CANCELED)
        async def handle_payment_intent(event: StripeWebhookEvent, log):
            return await self._resync(event, log)

        @router.register(StripeEventType.SUBSCRIPTION_CREATED)
        @router.register(StripeEventType.SUBSCRIPTION_UPDATED)
        @router.register(StripeEventType.SUBSCRIPTION_DELETED)
        @router.register(StripeEventType.INVOICE_PAID)
        @router.register(StripeEventType.INVOICE_PAYMENT_FAILED)
        async def handle_billing(event: StripeWebhookEvent, log):
            # No delivery for recurring billing in this store
            return await self._resync(event, log)

    async def _resync(self, event: StripeWebhookEvent, log):
        customer_id = event.customer_id
        if not customer_id:
            log.warning("sync_skipped_no_customer")
            return None
        return await self.synchronizer.sync_customer(customer_id)

    async def _on_checkout_completed(self, event: StripeWebhookEvent, log):
        session_id = event.object_id
        if not session_id:
            raise MalformedEventError("Checkout event carries no session id", {"event_id": event.id})
        log = log.bind(session_id=session_id)

        # Delivery must not wait on a healthy sync; a failed sync is re-raised after it
        sync_error: Optional[Exception] = None
        try:
            await self._resync(event, log)
        except Exception as e:
            log.error("checkout_sync_failed", error=str(e), error_type=type(e).__name__)
            sync_error = e

        report = await self.delivery.deliver_session(session_id)
        if not report.complete:
            raise DeliveryIncompleteError(session_id, [f.product_id for f in report.failed])
        if sync_error is not None:
            raise sync_error
        return report


# =============================================================================
# PAYMENT GATEWAY
# =============================================================================

class PaymentGateway:
    """
    Webhook receiver.

    Example:
        gateway = PaymentGateway(processor, settings)
        ack = await gateway.process_webhook(body, request.headers.get("stripe-signature"))
        # processing continues in the background; `await gateway.drain()` on shutdown
    """

    def __init__(self, processor: EventProcessor, settings: Settings):
        self.processor = processor
        self.settings = settings
        self._tasks: Set[asyncio.Task] = set()
        self._logger = structlog.get_logger().bind(component="payment_gateway")

    def _verify(self, payload: bytes, signature: Optional[str]) -> None:
        if not signature:
            self._logger.warning("webhook_signature_missing")
            raise MissingSignatureError()
        if not self.settings.stripe_webhook_secret:
            self._logger.error("webhook_secret_not_configured")
            raise InvalidSignatureError("webhook secret not configured")
        try:
            stripe.WebhookSignature.verify_header(
                payload.decode("utf-8"),
                signature,
                self.settings.stripe_webhook_secret,
                self.settings.stripe_webhook_tolerance,
            )
        except stripe.SignatureVerificationError as e:
            self._logger.warning("webhook_signature_invalid", error=str(e))
            raise InvalidSignatureError(str(e)) from e
        except UnicodeDecodeError as e:
            self._logger.warning("webhook_payload_not_utf8")
            raise InvalidSignatureError("payload is not valid UTF-8") from e

    async def process_webhook(self, payload: bytes, signature: Optional[str]) -> WebhookAck:
        """
        Verify, parse, filter, detach. Returns as soon as processing is scheduled.
        """
        # CRITICAL: Verify signature BEFORE parsing
        self._verify(payload, signature)

        try:
            event = StripeWebhookEvent.model_validate_json(payload)
        except ValidationError as e:
            self._logger.warning("webhook_malformed", error=str(e))
            raise MalformedEventError("Webhook payload is not a valid event") from e

        log = self._logger.bind(event_id=event.id, event_type=event.type)

        if event.event_type is None:
            log.info("webhook_ignored")
            return WebhookAck(status="ignored", event_id=event.id)

        log.info("webhook_received")
        self.detach(self.processor.process(event), event_id=event.id, event_type=event.type)
        return WebhookAck(status="received", event_id=event.id)

    # =========================================================================
    # DETACHED TASKS
    # =========================================================================

    def detach(self, coro: Awaitable[Any], **context) -> asyncio.Task:
        """Schedule `coro` without awaiting it. Its failures are logged and dropped."""
        task = asyncio.create_task(self._run_detached(coro, context))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run_detached(self, coro: Awaitable[Any], context: dict) -> Any:
        try:
            return await coro
        except Exception as e:
            self._logger.error("webhook_processing_failed",
                               error=str(e),
                               error_type=type(e).__name__,
                               **context)
            return None

    async def drain(self) -> None:
        """Wait for every detached task, including ones scheduled while waiting."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    @property
    def in_flight(self) -> int:
        return len(self._tasks)
