import uuid
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from payment_service.consumer import PaymentConsumer
from payment_service.main import create_app, get_payment_service

from conftest import make_message


@pytest_asyncio.fixture
async def client(service, settings):
    app = create_app(settings)
    app.dependency_overrides[get_payment_service] = lambda: service
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c


@pytest.mark.asyncio
async def test_health_check(client):
    resp = await client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"


@pytest.mark.asyncio
async def test_create_and_get_payment(client):
    resp = await client.post("/v1/payments", json={"amount": 100.50, "currency": "USD", "reference": "order-1"})

    assert resp.status_code == 201
    created = resp.json()
    assert created["status"] == "PENDING"
    assert created["amount"] == 100.5
    assert created["currency"] == "USD"
    assert created["reference"] == "order-1"
    uuid.UUID(created["id"])

    resp = await client.get(f"/v1/payments/{created['id']}")
    assert resp.status_code == 200
    fetched = resp.json()
    for field in ("id", "amount", "currency", "reference", "status"):
        assert fetched[field] == created[field]


@pytest.mark.asyncio
async def test_duplicate_reference_returns_conflict(client):
    body = {"amount": 10, "currency": "ETB", "reference": "order-dup"}
    assert (await client.post("/v1/payments", json=body)).status_code == 201

    resp = await client.post("/v1/payments", json=body)

    assert resp.status_code == 409
    assert resp.json()["kind"] == "CONFLICT"
    assert resp.json()["params"] == {"reference": "order-dup"}


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "body, field",
    [
        ({"currency": "USD", "reference": "order-1"}, "amount"),
        ({"amount": -100, "currency": "USD", "reference": "order-1"}, "amount"),
        ({"amount": 0, "currency": "USD", "reference": "order-1"}, "amount"),
        ({"amount": 10, "currency": "EUR", "reference": "order-1"}, "currency"),
        ({"amount": 10, "currency": "USD"}, "reference"),
    ],
)
async def test_invalid_payment_request_returns_bad_request(client, publisher, body, field):
    resp = await client.post("/v1/payments", json=body)

    assert resp.status_code == 400
    assert resp.json()["kind"] == "VALIDATION"
    assert field in resp.json()["params"]["errors"]
    assert publisher.published == []


@pytest.mark.asyncio
async def test_malformed_json_returns_bad_request(client):
    resp = await client.post("/v1/payments", content=b"{not json", headers={"Content-Type": "application/json"})
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_get_payment_with_malformed_id(client):
    resp = await client.get("/v1/payments/invalid-uuid")
    assert resp.status_code == 400
    assert resp.json()["message"] == "Invalid payment ID format"


@pytest.mark.asyncio
async def test_get_unknown_payment_returns_not_found(client):
    resp = await client.get(f"/v1/payments/{uuid.uuid4()}")
    assert resp.status_code == 404
    assert resp.json()["kind"] == "NOT_FOUND"


@pytest.mark.asyncio
async def test_end_to_end_payment_is_processed_by_consumer(client, service, publisher, settings):
    resp = await client.post("/v1/payments", json={"amount": 100.50, "currency": "USD", "reference": "order-1"})
    assert resp.status_code == 201
    payment_id = resp.json()["id"]
    assert publisher.published == [payment_id]

    consumer = PaymentConsumer(channel=None, service=service, settings=settings)
    message = make_message(publisher.published[0])
    await consumer.handle_message(message)
    message.ack.assert_awaited_once()

    # Redelivery of the same id is an idempotent no-op.
    duplicate = make_message(publisher.published[0], message_id="msg-2")
    await consumer.handle_message(duplicate)
    duplicate.ack.assert_awaited_once()

    resp = await client.get(f"/v1/payments/{payment_id}")
    assert resp.status_code == 200
    assert resp.json()["status"] in {"SUCCESS", "FAILED"}


@pytest.mark.asyncio
@pytest.mark.parametrize("create_all", [False, True])
async def test_startup_creates_tables_only_when_enabled(settings, create_all):
    app = create_app(settings.model_copy(update={"database_create_all": create_all}))

    with patch("payment_service.main.create_engine", return_value=AsyncMock()), \
            patch("payment_service.main.init_db", new=AsyncMock()) as init_db, \
            patch("payment_service.main.MessageChannel", return_value=AsyncMock()), \
            patch("payment_service.main.create_gateway", return_value=AsyncMock()), \
            patch("payment_service.main.create_session_factory", return_value=MagicMock()):
        async with app.router.lifespan_context(app):
            pass

    assert init_db.await_count == (1 if create_all else 0)
