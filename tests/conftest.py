import pytest

from order_intake.commands import OrderIntakeOrchestrator
from order_intake.idempotency import RedisIdempotencyStore

from tests.fakes import FakeRedis, InMemoryOrderStore, RecordingCache, RecordingPublisher


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def idempotency(fake_redis):
    return RedisIdempotencyStore(fake_redis, ttl_seconds=86400, lock_ttl_seconds=30)


@pytest.fixture
def store():
    return InMemoryOrderStore()


@pytest.fixture
def cache():
    return RecordingCache()


@pytest.fixture
def publisher():
    return RecordingPublisher()


@pytest.fixture
def orchestrator(store, idempotency, publisher, cache):
    return OrderIntakeOrchestrator(store, idempotency, publisher, cache)
