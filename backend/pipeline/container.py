"""
Pipeline wiring.

One `PaymentPipeline` per process: a single store, a single provider client and
a single command client shared by all agents. Tests inject fakes for any part.
"""

from dataclasses import dataclass
from typing import Optional

import structlog

from pipeline.agents.agent1_checkout_initiator import CheckoutInitiator
from pipeline.agents.agent2_payment_gateway import EventProcessor, PaymentGateway
from pipeline.agents.agent3_state_synchronizer import StateSynchronizer
from pipeline.agents.agent4_delivery_agent import DeliveryAgent
from pipeline.settings import Settings
from services.server_commands import ServerCommandClient, ServerCommandConfig
from services.stripe_provider import IPaymentProvider, StripePaymentProvider
from storage.kv_store import IKeyValueStore, create_store
from storage.payment_cache import PaymentCache

logger = structlog.get_logger().bind(component="pipeline")


@dataclass
class PaymentPipeline:
    settings: Settings
    store: IKeyValueStore
    cache: PaymentCache
    provider: IPaymentProvider
    commands: ServerCommandClient
    checkout: CheckoutInitiator
    synchronizer: StateSynchronizer
    delivery: DeliveryAgent
    processor: EventProcessor
    gateway: PaymentGateway

    @classmethod
    def create(
        cls,
        settings: Settings,
        store: Optional[IKeyValueStore] = None,
        provider: Optional[IPaymentProvider] = None,
        commands: Optional[ServerCommandClient] = None,
    ) -> "PaymentPipeline":
        # Dependency injection with defaults
        store = store or create_store(settings.redis_url)
        provider = provider or StripePaymentProvider(settings.stripe_secret_key, settings.currency)
        commands = commands or ServerCommandClient(ServerCommandConfig.from_settings(settings))

        cache = PaymentCache(store, settings)
        synchronizer = StateSynchronizer(provider, cache, settings)
        delivery = DeliveryAgent(provider, cache, commands)
        processor = EventProcessor(cache, synchronizer, delivery)

        logger.info("pipeline_created", store_backend=store.backend_name)

        return cls(
            settings=settings,
            store=store,
            cache=cache,
            provider=provider,
            commands=commands,
            checkout=CheckoutInitiator(provider, cache, settings),
            synchronizer=synchronizer,
            delivery=delivery,
            processor=processor,
            gateway=PaymentGateway(processor, settings),
        )

    async def close(self) -> None:
        await self.gateway.drain()
        await self.commands.close()
        await self.store.close()
