import pytest
from fastapi.testclient import TestClient

from order_intake.commands import OrderIntakeOrchestrator
from order_intake.config import Settings
from order_intake.idempotency import RedisIdempotencyStore
from order_intake.main import build_container, create_app
from order_intake.models import OrderStatus

from tests.fakes import (
    FakeRedis,
    InMemoryOrderStore,
    RecordingCache,
    RecordingPublisher,
)

SETTINGS = Settings(
    database_url="sqlite+aiosqlite:///:memory:",
    order_gateway_url="http://order-gw",
)


class FakeContainer:
    def __init__(self, publisher=None) -> None:
        self.settings = SETTINGS
        self.store = InMemoryOrderStore()
        self.cache = RecordingCache()
        self.redis = FakeRedis()
        self.orchestrator = OrderIntakeOrchestrator(
            self.store,
            RedisIdempotencyStore(self.redis, ttl_seconds=60, lock_ttl_seconds=5),
            publisher or RecordingPublisher(),
            self.cache,
        )
        self.started = False
        self.stopped = False

    async def startup(self) -> None:
        self.started = True

    async def shutdown(self) -> None:
        self.stopped = True


@pytest.fixture
def container():
    return FakeContainer()


@pytest.fixture
def client(container):
    with TestClient(create_app(lambda: container)) as client:
        yield client


BODY = {"userId": "u1", "amount": {"cents": 500, "currency": "USD"}, "items": "[]"}


def test_lifespan_starts_and_stops_container(container):
    with TestClient(create_app(lambda: container)):
        assert container.started
    assert container.stopped


def test_create_order_is_accepted_and_idempotent(client, container):
    headers = {"X-Idempotency-Key": "k1"}

    first = client.post("/orders", json=BODY, headers=headers)
    second = client.post("/orders", json=BODY, headers=headers)

    assert first.status_code == 202
    assert first.json()["status"] == "PROCESSING"
    assert second.json() == first.json()
    assert len(container.store.orders) == 1


@pytest.mark.parametrize(
    "body",
    [
        {"userId": "u1", "items": "[]"},
        {"userId": "u1", "amount": {"cents": 0, "currency": "USD"}, "items": "[]"},
        {"userId": "u1", "amount": {"cents": 5, "currency": ""}, "items": "[]"},
        {"userId": "", "amount": {"cents": 5, "currency": "USD"}, "items": "[]"},
    ],
)
def test_invalid_body_is_bad_request(client, body):
    resp = client.post("/orders", json=body)

    assert resp.status_code == 400
    assert resp.json() == {"error": "bad_request"}


def test_in_flight_key_is_conflict(client, container):
    container.redis.data["idem:lock:2:u1:k1"] = "1"

    resp = client.post("/orders", json=BODY, headers={"X-Idempotency-Key": "k1"})

    assert resp.status_code == 409
    assert resp.json() == {"error": "duplicate_request"}


def test_infrastructure_failure_is_generic_error():
    container = FakeContainer(publisher=RecordingPublisher(fail=True))
    with TestClient(create_app(lambda: container)) as client:
        resp = client.post("/orders", json=BODY)

    assert resp.status_code == 500
    assert resp.json() == {"error": "internal_error"}


def test_get_order_and_status(client, container):
    order_id = client.post("/orders", json=BODY).json()["orderId"]

    detail = client.get(f"/orders/{order_id}")
    assert detail.status_code == 200
    assert detail.json()["amount_cents"] == 500

    container.cache.statuses.clear()
    container.store.orders[order_id].status = OrderStatus.CONFIRMED
    status = client.get(f"/orders/{order_id}/status")
    assert status.json() == {"orderId": order_id, "status": "CONFIRMED"}
    assert container.cache.statuses[order_id] == "CONFIRMED"


def test_unknown_order_is_not_found(client):
    assert client.get("/orders/nope").status_code == 404
    assert client.get("/orders/nope/status").status_code == 404


def test_health(client):
    assert client.get("/health").json() == {"status": "ok", "service": "order-intake"}


async def test_build_container_wiring():
    container = build_container(SETTINGS)
    try:
        assert container.dispatcher.queues == ["order.created.q", "order.status.changed"]
        assert container.dispatcher.prefetch == 50
        assert container.dispatcher.requeue_on_error is True
        assert container.broker.redis is container.stream_redis
        assert container.stream_redis.connection_pool.connection_kwargs["decode_responses"] is False
    finally:
        await container.gateway.aclose()
        await container.stream_redis.aclose()
        await container.redis.aclose()
        await container.engine.dispose()
