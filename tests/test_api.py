import httpx
import pytest
from unittest.mock import AsyncMock

from api.server import create_app
from conftest import event_payload, sign_payload
from schemas.payment_definitions import PaymentMethodDetails, PaymentSummary

USER = {"X-User-Id": "user-1", "X-User-Email": "steve@example.com"}
ADMIN = {"X-User-Id": "admin-1", "X-User-Role": "admin"}
CART = {"cartItems": [{"id": 1, "name": "VIP", "price": 9.99, "quantity": 1}], "minecraftUsername": "Steve"}


@pytest.fixture
def app(pipeline):
    return create_app(pipeline)


@pytest.fixture
def client(app):
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test")


# =============================================================================
# CHECKOUT
# =============================================================================

@pytest.mark.asyncio
async def test_checkout_returns_url(client, provider):
    async with client:
        response = await client.post("/api/stripe/checkout", json=CART, headers=USER)

    assert response.status_code == 200
    assert response.json() == {"checkoutUrl": "https://checkout.stripe.test/pay/cs_test_1"}
    assert provider.checkout_calls[0]["metadata"]["minecraft_username"] == "Steve"


@pytest.mark.asyncio
async def test_checkout_requires_login(client, provider):
    async with client:
        response = await client.post("/api/stripe/checkout", json=CART)

    assert response.status_code == 401
    assert response.json() == {"error": "Unauthorized. Please log in."}
    assert provider.checkout_calls == []


@pytest.mark.asyncio
async def test_checkout_empty_cart(client):
    async with client:
        response = await client.post(
            "/api/stripe/checkout", json={"cartItems": [], "minecraftUsername": "Steve"}, headers=USER,
        )

    assert response.status_code == 400
    assert response.json() == {"error": "Your cart is empty."}


@pytest.mark.asyncio
async def test_checkout_missing_username(client):
    async with client:
        response = await client.post("/api/stripe/checkout", json={"cartItems": CART["cartItems"]}, headers=USER)

    assert response.status_code == 400
    assert response.json() == {"error": "Minecraft username is required."}


@pytest.mark.asyncio
async def test_checkout_invalid_quantity(client):
    body = {"cartItems": [{"id": 1, "name": "VIP", "price": 9.99, "quantity": 0}], "minecraftUsername": "Steve"}
    async with client:
        response = await client.post("/api/stripe/checkout", json=body, headers=USER)

    assert response.status_code == 400
    assert response.json()["error"] == "Invalid request"


@pytest.mark.asyncio
async def test_checkout_price_out_of_range(client, provider):
    body = {"cartItems": [{"id": 1, "name": "VIP", "price": 1e307, "quantity": 1}], "minecraftUsername": "Steve"}
    async with client:
        response = await client.post("/api/stripe/checkout", json=body, headers=USER)

    assert response.status_code == 400
    assert response.json() == {"error": "Item price is out of range"}
    assert provider.checkout_calls == []


@pytest.mark.asyncio
async def test_checkout_provider_failure(client, provider):
    provider.fail_checkout = True
    async with client:
        response = await client.post("/api/stripe/checkout", json=CART, headers=USER)

    assert response.status_code == 500
    assert "error" in response.json()


# =============================================================================
# WEBHOOK
# =============================================================================

@pytest.mark.asyncio
async def test_webhook_without_signature(client, store):
    payload = event_payload("evt_1", "invoice.paid", {"id": "in_1", "customer": "cus_1"})
    async with client:
        response = await client.post("/api/webhooks/stripe", content=payload)

    assert response.status_code == 400
    assert response.json() == {"error": "Missing stripe-signature header"}
    assert len(store) == 0


@pytest.mark.asyncio
async def test_webhook_with_bad_signature(client, store):
    payload = event_payload("evt_1", "invoice.paid", {"id": "in_1", "customer": "cus_1"})
    async with client:
        response = await client.post(
            "/api/webhooks/stripe",
            content=payload,
            headers={"stripe-signature": sign_payload(payload, secret="whsec_wrong")},
        )

    assert response.status_code == 400
    assert response.json() == {"error": "Invalid signature"}
    assert len(store) == 0


@pytest.mark.asyncio
async def test_webhook_acknowledged(client, pipeline, cache):
    payload = event_payload("evt_1", "invoice.paid", {"id": "in_1", "customer": "cus_1"})
    async with client:
        response = await client.post(
            "/api/webhooks/stripe", content=payload, headers={"stripe-signature": sign_payload(payload)},
        )
    await pipeline.gateway.drain()

    assert response.status_code == 200
    assert response.json() == {"received": True, "status": "received", "event_id": "evt_1"}
    assert await cache.has_webhook_been_processed("evt_1")


@pytest.mark.asyncio
async def test_webhook_ignored_type(client):
    payload = event_payload("evt_1", "charge.refunded", {"id": "ch_1"})
    async with client:
        response = await client.post(
            "/api/webhooks/stripe", content=payload, headers={"stripe-signature": sign_payload(payload)},
        )

    assert response.status_code == 200
    assert response.json()["status"] == "ignored"


# =============================================================================
# CHECKOUT RETURN PATH
# =============================================================================

@pytest.mark.asyncio
async def test_success_redirects_anonymous_to_login(client):
    async with client:
        response = await client.get("/store/checkout/success?session_id=cs_1")

    assert response.status_code == 303
    assert response.headers["location"] == "https://panel.test/login"


@pytest.mark.asyncio
async def test_success_without_customer_redirects_home(client):
    async with client:
        response = await client.get("/store/checkout/success?session_id=cs_1", headers=USER)

    assert response.headers["location"] == "https://panel.test/"


@pytest.mark.asyncio
async def test_success_syncs_eagerly(client, cache, provider):
    await cache.cache_customer_id("user-1", "cus_1")
    provider.add_intent("cus_1", "pi_1", "succeeded", created=100)

    async with client:
        response = await client.get("/store/checkout/success?session_id=cs_1", headers=USER)

    assert response.headers["location"] == "https://panel.test/store/thank-you"
    assert (await cache.get_payment_snapshot("cus_1")).payment_intent_id == "pi_1"


@pytest.mark.asyncio
async def test_success_sync_failure_still_redirects(client, cache, provider):
    await cache.cache_customer_id("user-1", "cus_1")
    provider.fail_intents = True

    async with client:
        response = await client.get("/store/checkout/success?session_id=cs_1", headers=USER)

    assert response.headers["location"] == "https://panel.test/store/thank-you?sync=failed"


# =============================================================================
# PAYMENT STATUS
# =============================================================================

@pytest.mark.asyncio
async def test_payment_status_without_customer(client):
    async with client:
        response = await client.get("/api/stripe/payment", headers=USER)

    assert response.json() == {"status": "none"}


@pytest.mark.asyncio
async def test_payment_status_syncs_on_cache_miss(client, cache, provider):
    await cache.cache_customer_id("user-1", "cus_1")
    provider.add_intent("cus_1", "pi_1", "processing", created=100, amount=1999)

    async with client:
        first = await client.get("/api/stripe/payment", headers=USER)
        second = await client.get("/api/stripe/payment", headers=USER)

    assert first.json()["status"] == "processing"
    assert first.json()["amount"] == 1999
    assert second.json() == first.json()
    assert len(provider.intent_list_calls) == 1


# =============================================================================
# ADMIN
# =============================================================================

@pytest.mark.asyncio
async def test_admin_payments_requires_admin(client):
    async with client:
        anonymous = await client.get("/api/admin/payments")
        regular = await client.get("/api/admin/payments", headers=USER)

    assert anonymous.status_code == 401
    assert regular.status_code == 403
    assert regular.json() == {"error": "Forbidden"}


@pytest.mark.asyncio
async def test_admin_payments_listing(client, provider):
    provider.recent_payments = [
        PaymentSummary(
            id="pi_1", amount=999, currency="usd", status="succeeded",
            customer_email="steve@example.com", minecraft_username="Steve",
            created="2023-11-14T22:13:20+00:00",
            payment_method=PaymentMethodDetails(brand="visa", last4="4242"),
        ),
        PaymentSummary(id="pi_2", amount=500, currency="usd", status="canceled", created="2023-11-14T22:13:20+00:00"),
    ]
    async with client:
        response = await client.get("/api/admin/payments?status=succeeded", headers=ADMIN)

    assert response.status_code == 200
    assert response.json() == [{
        "id": "pi_1",
        "amount": 999,
        "currency": "usd",
        "status": "succeeded",
        "customerEmail": "steve@example.com",
        "minecraftUsername": "Steve",
        "created": "2023-11-14T22:13:20+00:00",
        "paymentMethod": {"brand": "visa", "last4": "4242"},
    }]


@pytest.mark.asyncio
async def test_admin_payments_limit_is_capped(client, provider):
    provider.list_recent_payments = AsyncMock(return_value=[])
    async with client:
        await client.get("/api/admin/payments?limit=500", headers=ADMIN)

    provider.list_recent_payments.assert_awaited_once_with(100, None)


@pytest.mark.asyncio
async def test_admin_redelivery(client, provider, commands):
    provider.add_session("cs_1", "Steve", ["VIP"])
    async with client:
        first = await client.post("/api/admin/deliveries/cs_1", headers=ADMIN)
        second = await client.post("/api/admin/deliveries/cs_1", headers=ADMIN)
        forbidden = await client.post("/api/admin/deliveries/cs_1", headers=USER)

    assert first.json()["complete"] is True
    assert len(first.json()["delivered"]) == 1
    assert second.json()["skipped"] == ["prod_vip"]
    assert forbidden.status_code == 403
    assert commands.grants == [("Steve", "VIP")]


@pytest.mark.asyncio
async def test_admin_redelivery_missing_username(client, provider):
    provider.add_session("cs_1", None, ["VIP"])
    async with client:
        response = await client.post("/api/admin/deliveries/cs_1", headers=ADMIN)

    assert response.status_code == 422
    assert response.json() == {"error": "No Minecraft username found in session metadata"}


# =============================================================================
# HEALTH
# =============================================================================

@pytest.mark.asyncio
async def test_health(client):
    async with client:
        response = await client.get("/health")

    assert response.status_code == 200
    assert response.json()["store_backend"] == "memory"
    assert response.json()["webhooks_in_flight"] == 0
    assert "X-Request-ID" in response.headers
