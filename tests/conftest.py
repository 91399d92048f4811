import hashlib
import hmac
import json
import time
from typing import Dict, List, Optional

import pytest

from pipeline.container import PaymentPipeline
from pipeline.exceptions import CommandExecutionError, PaymentProviderError
from pipeline.settings import Settings
from schemas.payment_definitions import (
    CheckoutSession,
    CommandResponse,
    CompletedSessionRecord,
    PaymentIntentRecord,
    PaymentMethodDetails,
    PaymentSummary,
    ProductRecord,
    SessionLineItemRecord,
)
from services.server_commands import build_grant_command
from services.stripe_provider import IPaymentProvider
from storage.kv_store import InMemoryKeyValueStore
from storage.payment_cache import PaymentCache

WEBHOOK_SECRET = "whsec_test_secret"


# =============================================================================
# FAKES
# =============================================================================

class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakePaymentProvider(IPaymentProvider):
    """Scripted in-memory Stripe. Checkout sessions become retrievable, completed sessions."""

    def __init__(self):
        self.customers: Dict[str, dict] = {}
        self.sessions: Dict[str, CompletedSessionRecord] = {}
        self.line_items: Dict[str, List[SessionLineItemRecord]] = {}
        self.products: Dict[str, ProductRecord] = {}
        self.intents: Dict[str, List[PaymentIntentRecord]] = {}
        self.cards: Dict[str, PaymentMethodDetails] = {}
        self.failing_cards: set = set()
        self.recent_payments: List[PaymentSummary] = []
        self.fail_checkout = False
        self.fail_intents = False
        self.checkout_calls: List[dict] = []
        self.intent_list_calls: List[tuple] = []
        self.product_lookups: List[str] = []

    async def create_customer(self, user_id: str, email: str) -> str:
        customer_id = f"cus_{len(self.customers) + 1}"
        self.customers[customer_id] = {"user_id": user_id, "email": email}
        return customer_id

    async def create_checkout_session(self, customer_id, line_items, success_url, cancel_url, metadata):
        if self.fail_checkout:
            raise PaymentProviderError("Stripe checkout.sessions.create failed", "checkout.sessions.create")
        self.checkout_calls.append({
            "customer_id": customer_id,
            "line_items": line_items,
            "success_url": success_url,
            "cancel_url": cancel_url,
            "metadata": metadata,
        })
        session_id = f"cs_test_{len(self.checkout_calls)}"
        self.sessions[session_id] = CompletedSessionRecord(
            session_id=session_id,
            customer_id=customer_id,
            payment_status="paid",
            metadata=metadata,
        )
        self.line_items[session_id] = []
        for index, item in enumerate(line_items, start=1):
            product_id = f"prod_{item.item_id}"
            self.products[product_id] = ProductRecord(id=product_id, name=item.name)
            self.line_items[session_id].append(SessionLineItemRecord(
                line_item_id=f"li_{session_id}_{index}",
                product_id=product_id,
                description=item.name,
                quantity=item.quantity,
            ))
        return CheckoutSession(
            session_id=session_id,
            customer_id=customer_id,
            url=f"https://checkout.stripe.test/pay/{session_id}",
            status="open",
            line_items=line_items,
            success_url=success_url,
            cancel_url=cancel_url,
            metadata=metadata,
            created=1700000000,
        )

    async def list_payment_intents(self, customer_id, limit):
        self.intent_list_calls.append((customer_id, limit))
        if self.fail_intents:
            raise PaymentProviderError("Stripe payment_intents.list failed", "payment_intents.list")
        return list(self.intents.get(customer_id, []))[:limit]

    async def retrieve_card_details(self, payment_method_id):
        if payment_method_id in self.failing_cards:
            raise PaymentProviderError("Stripe payment_methods.retrieve failed", "payment_methods.retrieve")
        return self.cards.get(payment_method_id)

    async def retrieve_checkout_session(self, session_id):
        return self.sessions[session_id]

    async def list_session_line_items(self, session_id):
        return list(self.line_items.get(session_id, []))

    async def retrieve_product(self, product_id):
        self.product_lookups.append(product_id)
        return self.products[product_id]

    async def list_recent_payments(self, limit, status=None):
        rows = [p for p in self.recent_payments if status is None or p.status == status]
        return rows[:limit]

    # -- scripting helpers ---------------------------------------------------

    def add_intent(self, customer_id: str, intent_id: str, status: str, created: int,
                   amount: int = 999, payment_method_id: Optional[str] = None) -> PaymentIntentRecord:
        """Insert keeping newest-first order."""
        record = PaymentIntentRecord(
            id=intent_id,
            status=status,
            amount=amount,
            currency="usd",
            customer_id=customer_id,
            payment_method_id=payment_method_id,
            created=created,
        )
        intents = self.intents.setdefault(customer_id, [])
        intents.append(record)
        intents.sort(key=lambda r: r.created, reverse=True)
        return record

    def add_session(self, session_id: str, username: Optional[str], products: List[str],
                    customer_id: str = "cus_1") -> None:
        metadata = {"minecraft_username": username} if username is not None else {}
        self.sessions[session_id] = CompletedSessionRecord(
            session_id=session_id, customer_id=customer_id, payment_status="paid", metadata=metadata,
        )
        self.line_items[session_id] = []
        for index, name in enumerate(products, start=1):
            product_id = f"prod_{name.lower().replace(' ', '_')}"
            self.products[product_id] = ProductRecord(id=product_id, name=name)
            self.line_items[session_id].append(SessionLineItemRecord(
                line_item_id=f"li_{session_id}_{index}", product_id=product_id, quantity=1,
            ))


class FakeCommandClient:
    """Records grants instead of calling the game server."""

    def __init__(self):
        self.grants: List[tuple] = []
        self.commands: List[str] = []
        self.fail_packages: set = set()
        self.closed = False

    async def grant_package(self, username: str, package_name: str) -> CommandResponse:
        command = build_grant_command(username, package_name)
        if package_name in self.fail_packages:
            raise CommandExecutionError("Failed to execute command: HTTP 500", {"command": command})
        self.grants.append((username, package_name))
        self.commands.append(command)
        return CommandResponse(success=True, message="ok")

    async def close(self):
        self.closed = True


# =============================================================================
# WEBHOOK HELPERS
# =============================================================================

def sign_payload(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: Optional[int] = None) -> str:
    """Stripe-Signature header value for `payload`."""
    timestamp = int(time.time()) if timestamp is None else timestamp
    signed = f"{timestamp}.{payload.decode('utf-8')}".encode("utf-8")
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def event_payload(event_id: str, event_type: str, obj: dict) -> bytes:
    return json.dumps({
        "id": event_id,
        "object": "event",
        "type": event_type,
        "created": 1700000000,
        "livemode": False,
        "data": {"object": obj},
    }).encode("utf-8")


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def settings():
    return Settings(
        stripe_secret_key="sk_test_123",
        stripe_webhook_secret=WEBHOOK_SECRET,
        base_url="https://panel.test",
        mc_server_api_key="mc-key",
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return InMemoryKeyValueStore(clock=clock)


@pytest.fixture
def cache(store, settings):
    return PaymentCache(store, settings)


@pytest.fixture
def provider():
    return FakePaymentProvider()


@pytest.fixture
def commands():
    return FakeCommandClient()


@pytest.fixture
def pipeline(settings, store, provider, commands):
    return PaymentPipeline.create(settings, store=store, provider=provider, commands=commands)
