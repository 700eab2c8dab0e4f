import pytest

from order_intake.errors import TransientInfrastructureError
from order_intake.events import OrderStatusChanged
from order_intake.models import Money, Order, OrderStatus
from order_intake.reconciler import StatusReconciler, map_external_status

from tests.fakes import InMemoryOrderStore, RecordingCache


def _event(order_id: str, status: str) -> OrderStatusChanged:
    return OrderStatusChanged.model_validate(
        {"orderId": order_id, "userId": "u1", "cents": 500, "currency": "USD", "status": status}
    )


@pytest.fixture
async def seeded_store():
    store = InMemoryOrderStore()
    await store.create(Order(id="X", user_id="u1", amount=Money(500, "USD"), items_json="[]"))
    return store


@pytest.mark.parametrize(
    "code, expected",
    [
        ("SUCCESS", OrderStatus.CONFIRMED),
        ("success", OrderStatus.CONFIRMED),
        ("CONFIRMED", OrderStatus.CONFIRMED),
        ("REJECTED", OrderStatus.FAILED),
        ("", OrderStatus.FAILED),
        (None, OrderStatus.FAILED),
        ("something-new", OrderStatus.FAILED),
    ],
)
def test_map_external_status_is_total(code, expected):
    assert map_external_status(code) is expected


async def test_success_event_confirms_order(seeded_store):
    cache = RecordingCache()
    reconciler = StatusReconciler(seeded_store, cache)

    assert await reconciler.handle(_event("X", "SUCCESS")) is True

    assert (await seeded_store.get_by_id("X")).status is OrderStatus.CONFIRMED
    assert cache.statuses["X"] == "CONFIRMED"


async def test_duplicate_event_is_noop(seeded_store):
    reconciler = StatusReconciler(seeded_store, RecordingCache())

    await reconciler.handle(_event("X", "SUCCESS"))
    version = (await seeded_store.get_by_id("X")).version
    assert await reconciler.handle(_event("X", "SUCCESS")) is False

    order = await seeded_store.get_by_id("X")
    assert order.status is OrderStatus.CONFIRMED
    assert order.version == version


@pytest.mark.parametrize(
    "first, second, expected",
    [
        ("SUCCESS", "ERROR", OrderStatus.CONFIRMED),
        ("ERROR", "SUCCESS", OrderStatus.FAILED),
    ],
)
async def test_out_of_order_events_first_one_wins(seeded_store, first, second, expected):
    reconciler = StatusReconciler(seeded_store)

    await reconciler.handle(_event("X", first))
    await reconciler.handle(_event("X", second))

    assert (await seeded_store.get_by_id("X")).status is expected


async def test_unknown_order_is_noop():
    cache = RecordingCache()
    reconciler = StatusReconciler(InMemoryOrderStore(), cache)

    assert await reconciler.handle(_event("missing", "SUCCESS")) is False
    assert cache.statuses == {}


async def test_cache_failure_is_swallowed(seeded_store):
    reconciler = StatusReconciler(seeded_store, RecordingCache(fail=True))

    assert await reconciler.handle(_event("X", "SUCCESS")) is True
    assert (await seeded_store.get_by_id("X")).status is OrderStatus.CONFIRMED


async def test_store_failure_propagates_for_redelivery():
    class BrokenStore:
        async def update_status_if(self, order_id, from_status, to_status):
            raise TransientInfrastructureError("db down")

    with pytest.raises(TransientInfrastructureError):
        await StatusReconciler(BrokenStore()).handle(_event("X", "SUCCESS"))
