# Pipeline Agents
# ===============
# Checkout -> webhook -> sync -> delivery

from .agent1_checkout_initiator import (
    CheckoutInitiator,
    PriceCalculator,
)
from .agent2_payment_gateway import (
    EventProcessor,
    PaymentGateway,
    WebhookRouter,
)
from .agent3_state_synchronizer import (
    StateSynchronizer,
    select_actionable_intent,
)
from .agent4_delivery_agent import (
    DeliveryAgent,
)

__all__ = [
    # Agent 1: Checkout Initiator
    "CheckoutInitiator",
    "PriceCalculator",
    # Agent 2: Payment Gateway
    "EventProcessor",
    "PaymentGateway",
    "WebhookRouter",
    # Agent 3: State Synchronizer
    "StateSynchronizer",
    "select_actionable_intent",
    # Agent 4: Delivery Agent
    "DeliveryAgent",
]
