"""
Order Intake: 注文受付オーケストレーター (CQRS の Write 側)

create_order のフロー:
  ┌──────────────────────────────────────────────────────────────┐
  │  1. 入力を検証                                               │
  │  2. 冪等キーがあれば recall → ヒットしたら同じ注文 ID を返す │
  │  3. try_lock → 取れなければ DuplicateError (処理中)          │
  │  4. 同じ (user, key) の行が既にあればそれを返す              │
  │  5. 注文を PROCESSING で永続化                               │
  │  6. ステータスキャッシュ更新 (best-effort)                   │
  │  7. OrderCreated を発行                                      │
  │  8. 冪等キー → 注文 ID を remember (best-effort)             │
  └──────────────────────────────────────────────────────────────┘

5 の後で 7 が失敗しても行は残る (補償はしない)。
PROCESSING のまま取り残された注文は外部の照合ジョブが回収する。
"""

import logging
import uuid
from dataclasses import dataclass
from typing import Protocol

from .errors import DuplicateError, ValidationError
from .events import OrderCreated
from .models import INITIAL_STATUS, Money, Order, OrderStatus

logger = logging.getLogger(__name__)


class IdempotencyStore(Protocol):
    async def try_lock(self, scope: str, key: str) -> bool: ...

    async def remember(self, scope: str, key: str, value: str) -> None: ...

    async def recall(self, scope: str, key: str) -> tuple[str | None, bool]: ...


class OrderStore(Protocol):
    async def create(self, order: Order) -> None: ...

    async def get_by_user_and_idem_key(self, user_id: str, idem_key: str) -> Order | None: ...


class StatusCache(Protocol):
    async def set_status(self, order_id: str, status: str) -> None: ...


class EventPublisher(Protocol):
    async def publish_created(self, event: OrderCreated) -> None: ...


@dataclass(frozen=True)
class CreateOrderResult:
    order_id: str
    status: str


def _validate(user_id: str, amount_cents: int, currency: str, items: str) -> None:
    if not user_id:
        raise ValidationError("user_id is required")
    if isinstance(amount_cents, bool) or not isinstance(amount_cents, int):
        raise ValidationError("amount_cents must be an integer")
    if amount_cents <= 0:
        raise ValidationError("amount_cents must be positive")
    if not currency:
        raise ValidationError("currency is required")
    if not items:
        raise ValidationError("items are required")


def new_order_id() -> str:
    return str(uuid.uuid4())


class OrderIntakeOrchestrator:
    """注文作成のエントリーポイント"""

    def __init__(
        self,
        store: OrderStore,
        idempotency: IdempotencyStore,
        publisher: EventPublisher,
        cache: StatusCache | None = None,
    ) -> None:
        self.store = store
        self.idempotency = idempotency
        self.publisher = publisher
        self.cache = cache

    async def create_order(
        self,
        user_id: str,
        idempotency_key: str | None,
        amount_cents: int,
        currency: str,
        items: str,
    ) -> CreateOrderResult:
        """
        注文作成コマンド

        同じ (user_id, idempotency_key) での再試行は常に同じ注文 ID を返す。
        同時に走っている同一キーのリクエストがあれば DuplicateError。
        戻り値のステータスは常に PROCESSING。
        """
        _validate(user_id, amount_cents, currency, items)
        key = idempotency_key or None

        if key is not None:
            # ── 冪等性チェック ──────────────────────
            remembered, found = await self.idempotency.recall(user_id, key)
            if found:
                logger.info("Idempotent replay user=%s key=%s order_id=%s", user_id, key, remembered)
                return CreateOrderResult(remembered, INITIAL_STATUS.value)

            if not await self.idempotency.try_lock(user_id, key):
                raise DuplicateError("duplicate idempotency key")

            existing = await self.store.get_by_user_and_idem_key(user_id, key)
            if existing is not None:
                # remember が失われていた: 永続化済みの行を正とする
                await self._remember(user_id, key, existing.id)
                return CreateOrderResult(existing.id, INITIAL_STATUS.value)

        order = Order(
            id=new_order_id(),
            user_id=user_id,
            amount=Money(cents=amount_cents, currency=currency),
            items_json=items,
            status=INITIAL_STATUS,
            idempotency_key=key,
        )

        # ── 永続化 ──────────────────────────────────
        await self.store.create(order)

        await self._cache_status(order.id, order.status)

        # ── イベント発行 ────────────────────────────
        try:
            await self.publisher.publish_created(
                OrderCreated(
                    order_id=order.id,
                    user_id=order.user_id,
                    cents=order.amount.cents,
                    currency=order.amount.currency,
                )
            )
        except Exception:
            logger.error(
                "Publish failed after persist; order %s left in %s",
                order.id, order.status.value,
            )
            raise

        if key is not None:
            await self._remember(user_id, key, order.id)

        logger.info("Created order %s for user %s", order.id, user_id)
        return CreateOrderResult(order.id, order.status.value)

    async def _cache_status(self, order_id: str, status: OrderStatus) -> None:
        if self.cache is None:
            return
        try:
            await self.cache.set_status(order_id, status.value)
        except Exception:
            logger.warning("Status cache update failed for order %s", order_id, exc_info=True)

    async def _remember(self, user_id: str, key: str, order_id: str) -> None:
        try:
            await self.idempotency.remember(user_id, key, order_id)
        except Exception:
            logger.warning(
                "Could not remember idempotency key user=%s key=%s", user_id, key, exc_info=True
            )
