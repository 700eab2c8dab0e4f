import asyncio

import pytest

from order_intake.commands import OrderIntakeOrchestrator
from order_intake.errors import DuplicateError, TransientInfrastructureError, ValidationError
from order_intake.models import OrderStatus

from tests.fakes import RecordingCache, RecordingPublisher

ITEMS = '[{"sku":"A-1","qty":2}]'


async def test_create_order_persists_processing_and_publishes(orchestrator, store, publisher, cache):
    result = await orchestrator.create_order("u1", "k1", 500, "USD", ITEMS)

    assert result.status == "PROCESSING"
    order = await store.get_by_id(result.order_id)
    assert order.status is OrderStatus.PROCESSING
    assert order.amount.cents == 500
    assert order.amount.currency == "USD"
    assert order.idempotency_key == "k1"
    assert cache.statuses[result.order_id] == "PROCESSING"

    assert len(publisher.events) == 1
    event = publisher.events[0]
    assert (event.order_id, event.user_id, event.cents, event.currency) == (
        result.order_id, "u1", 500, "USD",
    )


async def test_repeat_with_same_key_returns_same_order(orchestrator, store, publisher):
    first = await orchestrator.create_order("u1", "k1", 500, "USD", ITEMS)
    second = await orchestrator.create_order("u1", "k1", 500, "USD", ITEMS)

    assert second.order_id == first.order_id
    assert second.status == "PROCESSING"
    assert len(store.orders) == 1
    assert store.create_calls == 1
    assert len(publisher.events) == 1


async def test_same_key_is_scoped_per_user(orchestrator, store):
    a = await orchestrator.create_order("u1", "k1", 500, "USD", ITEMS)
    b = await orchestrator.create_order("u2", "k1", 500, "USD", ITEMS)

    assert a.order_id != b.order_id
    assert len(store.orders) == 2


async def test_colon_in_user_or_key_does_not_leak_another_users_order(orchestrator, store):
    a = await orchestrator.create_order("alice", "x:k", 500, "USD", ITEMS)
    b = await orchestrator.create_order("alice:x", "k", 500, "USD", ITEMS)

    assert a.order_id != b.order_id
    assert (await store.get_by_id(b.order_id)).user_id == "alice:x"


async def test_concurrent_same_key_never_yields_two_orders(orchestrator, store):
    results = await asyncio.gather(
        *(orchestrator.create_order("u1", "k1", 500, "USD", ITEMS) for _ in range(8)),
        return_exceptions=True,
    )

    created = [r for r in results if not isinstance(r, Exception)]
    errors = [r for r in results if isinstance(r, Exception)]
    assert created
    assert all(isinstance(e, DuplicateError) for e in errors)
    assert len({r.order_id for r in created}) == 1
    assert len(store.orders) == 1


async def test_locked_key_without_mapping_is_duplicate(orchestrator, idempotency, store):
    assert await idempotency.try_lock("u1", "k1")

    with pytest.raises(DuplicateError):
        await orchestrator.create_order("u1", "k1", 500, "USD", ITEMS)
    assert store.orders == {}


async def test_lost_mapping_falls_back_to_persisted_row(orchestrator, fake_redis, store, publisher):
    first = await orchestrator.create_order("u1", "k1", 500, "USD", ITEMS)
    fake_redis.expire_now("idem:map:2:u1:k1")
    fake_redis.expire_now("idem:lock:2:u1:k1")

    second = await orchestrator.create_order("u1", "k1", 500, "USD", ITEMS)

    assert second.order_id == first.order_id
    assert len(store.orders) == 1
    assert len(publisher.events) == 1
    assert fake_redis.data["idem:map:2:u1:k1"] == first.order_id


async def test_without_key_every_call_creates_an_order(orchestrator, store):
    a = await orchestrator.create_order("u1", None, 500, "USD", ITEMS)
    b = await orchestrator.create_order("u1", "", 500, "USD", ITEMS)

    assert a.order_id != b.order_id
    assert len(store.orders) == 2


@pytest.mark.parametrize(
    "user_id, cents, currency, items",
    [
        ("", 500, "USD", ITEMS),
        ("u1", 0, "USD", ITEMS),
        ("u1", -1, "USD", ITEMS),
        ("u1", True, "USD", ITEMS),
        ("u1", 500, "", ITEMS),
        ("u1", 500, "USD", ""),
    ],
)
async def test_invalid_input_has_no_side_effects(
    orchestrator, store, publisher, fake_redis, user_id, cents, currency, items
):
    with pytest.raises(ValidationError):
        await orchestrator.create_order(user_id, "k1", cents, currency, items)

    assert store.orders == {}
    assert publisher.events == []
    assert fake_redis.data == {}


async def test_persist_failure_aborts_without_publishing(orchestrator, store, publisher):
    store.fail_create = True

    with pytest.raises(TransientInfrastructureError):
        await orchestrator.create_order("u1", "k1", 500, "USD", ITEMS)
    assert publisher.events == []

    # the lock is left to expire on its own
    store.fail_create = False
    with pytest.raises(DuplicateError):
        await orchestrator.create_order("u1", "k1", 500, "USD", ITEMS)


async def test_publish_failure_surfaces_and_keeps_row(store, idempotency, fake_redis):
    orchestrator = OrderIntakeOrchestrator(
        store, idempotency, RecordingPublisher(fail=True), RecordingCache()
    )

    with pytest.raises(TransientInfrastructureError):
        await orchestrator.create_order("u1", "k1", 500, "USD", ITEMS)

    [order] = store.orders.values()
    assert order.status is OrderStatus.PROCESSING
    assert "idem:map:2:u1:k1" not in fake_redis.data


async def test_cache_failure_does_not_fail_request(store, idempotency, publisher):
    orchestrator = OrderIntakeOrchestrator(
        store, idempotency, publisher, RecordingCache(fail=True)
    )

    result = await orchestrator.create_order("u1", "k1", 500, "USD", ITEMS)

    assert result.status == "PROCESSING"
    assert len(publisher.events) == 1


async def test_remember_failure_does_not_fail_request(store, publisher, idempotency):
    class ForgetfulGate:
        async def recall(self, scope, key):
            return await idempotency.recall(scope, key)

        async def try_lock(self, scope, key):
            return await idempotency.try_lock(scope, key)

        async def remember(self, scope, key, value):
            raise TransientInfrastructureError("redis down")

    orchestrator = OrderIntakeOrchestrator(store, ForgetfulGate(), publisher)

    result = await orchestrator.create_order("u1", "k1", 500, "USD", ITEMS)

    assert result.order_id in store.orders


async def test_lock_store_outage_propagates(orchestrator, fake_redis, store):
    fake_redis.fail = True

    with pytest.raises(TransientInfrastructureError):
        await orchestrator.create_order("u1", "k1", 500, "USD", ITEMS)
    assert store.orders == {}
