"""
HTTP surface: auth enforcement, error rendering and the full
order → payment → pickup flow through the FastAPI app.
"""
import httpx
import pytest
import pytest_asyncio

from rescuebag.core.config import Settings
from rescuebag.core.security import create_access_token
from rescuebag.core.session import Role
from rescuebag.main import create_app

from conftest import BUSINESS_ID


class DictRedis:
    """Just enough of the Redis API for the idempotency middleware."""

    def __init__(self):
        self.data: dict[str, str] = {}

    async def get(self, key):
        return self.data.get(key)

    async def setex(self, key, ttl, value):
        self.data[key] = value

    async def ping(self):
        return True


def bearer(user_id: str, role: Role = Role.USER, business_id: str | None = None) -> dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token(user_id, role, business_id)}"}


USER = bearer("user-a")
OTHER_USER = bearer("user-b")
BUSINESS = bearer("owner-1", Role.BUSINESS, BUSINESS_ID)


def make_settings(**overrides) -> Settings:
    values = dict(
        STORE_BACKEND="memory",
        WATCH_BACKEND="polling",
        IDEMPOTENCY_ENABLED=False,
        METRICS_ENABLED=False,
        QR_SECRET_KEY="api-test-qr-secret",
    )
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def scheduled():
    return []


@pytest_asyncio.fixture
async def client(store, provider, clock, scheduled):
    app = create_app(
        settings=make_settings(),
        store=store,
        provider=provider,
        clock=clock,
        poll_scheduler=lambda *args: scheduled.append(args),
    )
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as c:
        yield c


@pytest_asyncio.fixture
async def pack_id(client):
    r = await client.post(
        "/packs",
        json={"title": "Bakery bag", "original_price": 25000, "discounted_price": 10000, "stock": 3},
        headers=BUSINESS,
    )
    assert r.status_code == 201, r.text
    return r.json()["id"]


async def create_order(client, pack_id, quantity=1, headers=USER):
    r = await client.post("/orders", json={"pack_id": pack_id, "quantity": quantity}, headers=headers)
    assert r.status_code == 201, r.text
    return r.json()


# ─── Auth ─────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_rejects_unauthenticated_request(client):
    r = await client.post("/orders", json={"pack_id": "p", "quantity": 1})
    assert r.status_code == 401


@pytest.mark.asyncio
async def test_rejects_invalid_jwt(client):
    r = await client.get("/orders", headers={"Authorization": "Bearer not.a.jwt"})
    assert r.status_code == 401


@pytest.mark.asyncio
async def test_rejects_business_token_without_business(client):
    r = await client.get("/orders", headers=bearer("owner-1", Role.BUSINESS))
    assert r.status_code == 401
    assert "business_id" in r.json()["detail"]


@pytest.mark.asyncio
async def test_public_endpoints(client):
    assert (await client.get("/")).json()["service"] == "rescuebag"
    health = await client.get("/health")
    assert health.status_code == 200
    assert health.json()["dependencies"] == {"store": "ok"}


@pytest.mark.asyncio
async def test_customers_cannot_list_packs(client):
    r = await client.post(
        "/packs",
        json={"title": "x", "original_price": 100, "discounted_price": 50, "stock": 1},
        headers=USER,
    )
    assert r.status_code == 403
    assert r.json()["code"] == "not_authorized"


# ─── Orders ───────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_out_of_stock_is_a_typed_conflict(client, pack_id):
    r = await client.post("/orders", json={"pack_id": pack_id, "quantity": 4}, headers=USER)
    assert r.status_code == 409
    assert r.json()["code"] == "insufficient_stock"
    assert r.json()["retryable"] is False


@pytest.mark.asyncio
async def test_quantity_is_validated(client, pack_id):
    r = await client.post("/orders", json={"pack_id": pack_id, "quantity": 0}, headers=USER)
    assert r.status_code == 422


@pytest.mark.asyncio
async def test_idempotency_key_creates_one_order(client, pack_id):
    headers = {**USER, "Idempotency-Key": "checkout-1"}
    first = await client.post("/orders", json={"pack_id": pack_id, "quantity": 1}, headers=headers)
    second = await client.post("/orders", json={"pack_id": pack_id, "quantity": 1}, headers=headers)

    assert first.json()["id"] == second.json()["id"]
    assert (await client.get(f"/packs/{pack_id}")).json()["stock"] == 2


@pytest.mark.asyncio
async def test_orders_are_private(client, pack_id):
    order = await create_order(client, pack_id)
    r = await client.get(f"/orders/{order['id']}", headers=OTHER_USER)
    assert r.status_code == 403

    listing = (await client.get("/orders", headers=OTHER_USER)).json()
    assert listing["total"] == 0


@pytest.mark.asyncio
async def test_list_orders_for_business(client, pack_id):
    await create_order(client, pack_id)
    await create_order(client, pack_id, headers=OTHER_USER)

    r = await client.get("/orders", params={"status": "CREATED", "limit": 1}, headers=BUSINESS)
    body = r.json()
    assert r.status_code == 200
    assert body["total"] == 2
    assert len(body["orders"]) == 1
    assert body["limit"] == 1


@pytest.mark.asyncio
async def test_cancel_restocks_and_streams_final_state(client, pack_id):
    order = await create_order(client, pack_id, quantity=2)

    r = await client.post(f"/orders/{order['id']}/cancel", json={"reason": "plans changed"}, headers=USER)
    assert r.status_code == 200
    assert r.json()["fulfillment_status"] == "CANCELED"
    assert (await client.get(f"/packs/{pack_id}")).json()["stock"] == 3

    again = await client.post(f"/orders/{order['id']}/cancel", headers=USER)
    assert again.status_code == 409
    assert again.json()["code"] == "already_canceled"

    stream = await client.get(f"/orders/{order['id']}/stream", headers=USER)
    assert stream.status_code == 200
    assert stream.headers["content-type"].startswith("text/event-stream")
    assert "event: order_update" in stream.text
    assert '"fulfillment_status":"CANCELED"' in stream.text


@pytest.mark.asyncio
async def test_advance_rejects_skipping(client, pack_id):
    order = await create_order(client, pack_id)
    r = await client.post(f"/orders/{order['id']}/advance", json={"to": "READY"}, headers=BUSINESS)
    assert r.status_code == 409
    assert r.json()["code"] == "invalid_transition"


# ─── Payment → pickup ─────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_pay_prepare_and_pick_up(client, pack_id, scheduled):
    order = await create_order(client, pack_id, quantity=2)

    r = await client.post(
        "/payments/create",
        json={"order_id": order["id"], "method": "STRIPE", "customer_email": "ana@example.com"},
        headers=USER,
    )
    assert r.status_code == 201, r.text
    payment = r.json()
    assert payment["order"]["payment_status"] == "PROCESSING"
    assert payment["payment_url"].startswith("https://pay.example/")
    assert scheduled == [(order["id"], payment["provider_reference"], "STRIPE")]

    webhook = {
        "type": "payment_intent.succeeded",
        "data": {"object": {
            "id": payment["provider_reference"], "amount": 20000, "metadata": {"orderId": order["id"]},
        }},
    }
    ack = await client.post("/payments/webhook/stripe", json=webhook)
    assert ack.status_code == 200
    assert ack.json() == {
        "success": True, "order_id": order["id"], "payment_status": "PAID", "duplicate": False,
    }
    replay = await client.post("/payments/webhook/stripe", json=webhook)
    assert replay.json()["duplicate"] is True

    view = (await client.get(f"/payments/order/{order['id']}", headers=USER)).json()
    assert view["can_show_qr"] is True
    assert len(view["attempts"]) == 2
    qr_token = view["order"]["qr_token"]

    early = await client.post("/orders/redeem", json={"qr_token": qr_token}, headers=BUSINESS)
    assert early.status_code == 409
    assert early.json()["code"] == "not_ready_for_pickup"

    for step in ("PREPARING", "READY"):
        r = await client.post(f"/orders/{order['id']}/advance", json={"to": step}, headers=BUSINESS)
        assert r.status_code == 200, r.text

    preview = await client.post("/orders/verify-qr", json={"qr_token": qr_token}, headers=BUSINESS)
    assert preview.json()["valid"] is True
    assert preview.json()["order"]["redeemed_at"] is None

    stranger = bearer("owner-2", Role.BUSINESS, "biz-2")
    mismatch = await client.post("/orders/redeem", json={"qr_token": qr_token}, headers=stranger)
    assert mismatch.status_code == 403
    assert mismatch.json()["code"] == "business_mismatch"

    customer_scan = await client.post("/orders/redeem", json={"qr_token": qr_token}, headers=USER)
    assert customer_scan.status_code == 403

    redeemed = await client.post("/orders/redeem", json={"qr_token": qr_token}, headers=BUSINESS)
    assert redeemed.status_code == 200
    assert redeemed.json()["order"]["fulfillment_status"] == "PICKED_UP"

    second = await client.post("/orders/redeem", json={"qr_token": qr_token}, headers=BUSINESS)
    assert second.status_code == 409
    assert second.json()["code"] == "already_redeemed"

    view = (await client.get(f"/payments/order/{order['id']}", headers=USER)).json()
    assert view["can_show_qr"] is False


@pytest.mark.asyncio
async def test_webhook_rejects_bad_payloads(client, pack_id):
    order = await create_order(client, pack_id)

    not_json = await client.post(
        "/payments/webhook/stripe", content=b"<xml/>", headers={"Content-Type": "application/json"}
    )
    assert not_json.status_code == 400
    assert not_json.json()["code"] == "invalid_webhook"

    unknown = await client.post("/payments/webhook/paypal", json={"id": 1})
    assert unknown.status_code == 400

    wrong_amount = await client.post(
        "/payments/webhook/payu",
        json={"state_pol": "4", "reference_sale": order["id"], "value": "1.00", "transaction_id": "t-1"},
    )
    assert wrong_amount.status_code == 400
    assert wrong_amount.json()["code"] == "amount_mismatch"


@pytest.mark.asyncio
async def test_malformed_qr_scan(client):
    r = await client.post("/orders/redeem", json={"qr_token": "hello"}, headers=BUSINESS)
    assert r.status_code == 400
    assert r.json()["code"] == "qr_malformed"


# ─── Idempotency middleware ───────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_idempotency_middleware_replays_response(store, provider, clock):
    redis = DictRedis()
    app = create_app(
        settings=make_settings(IDEMPOTENCY_ENABLED=True),
        store=store,
        provider=provider,
        clock=clock,
        redis_factory=lambda: redis,
        poll_scheduler=lambda *args: None,
    )
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as c:
        pack = await c.post(
            "/packs",
            json={"title": "Bag", "original_price": 100, "discounted_price": 50, "stock": 5},
            headers=BUSINESS,
        )
        headers = {**USER, "Idempotency-Key": "k-1"}
        body = {"pack_id": pack.json()["id"], "quantity": 1}

        first = await c.post("/orders", json=body, headers=headers)
        second = await c.post("/orders", json=body, headers=headers)

    assert first.status_code == 201
    assert second.status_code == 201
    assert second.headers["X-Idempotency-Replay"] == "true"
    assert second.json()["id"] == first.json()["id"]
    assert any(key.startswith("idempotent:user-a:/orders:") for key in redis.data)
