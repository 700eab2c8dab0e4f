"""
Order Intake: ステータス照合 (Status Reconciler)

下流サービスから届く OrderStatusChanged を受け取り、
PROCESSING の注文だけを CONFIRMED / FAILED へ遷移させる。

同じイベントの重複配信や、CONFIRMED と FAILED の到着順の入れ替わりは
ストアのガード付き遷移で吸収する: 先に PROCESSING の行へ届いた方が勝ち、
後から来たものは no-op になる。
"""

import logging
from typing import Protocol

from .errors import OrderIntakeError
from .events import OrderStatusChanged
from .models import INITIAL_STATUS, OrderStatus

logger = logging.getLogger(__name__)

_SUCCESS_CODES = frozenset({"SUCCESS", "CONFIRMED"})


class GuardedOrderStore(Protocol):
    async def update_status_if(
        self, order_id: str, from_status: OrderStatus, to_status: OrderStatus
    ) -> bool: ...


class StatusCache(Protocol):
    async def set_status(self, order_id: str, status: str) -> None: ...


def map_external_status(code: str | None) -> OrderStatus:
    """外部ステータスを内部の状態に写像する。不明なコードは FAILED (エラーにはしない)。"""
    if code and code.strip().upper() in _SUCCESS_CODES:
        return OrderStatus.CONFIRMED
    return OrderStatus.FAILED


class StatusReconciler:
    def __init__(self, store: GuardedOrderStore, cache: StatusCache | None = None) -> None:
        self.store = store
        self.cache = cache

    async def handle(self, event: OrderStatusChanged) -> bool:
        """
        イベントを 1 件適用する。遷移した場合は True。

        行が存在しない、または既に照合済みの場合は no-op。
        ストアの障害はそのまま送出し、ディスパッチャに再配信させる。
        """
        new_status = map_external_status(event.status)
        changed = await self.store.update_status_if(
            event.order_id, INITIAL_STATUS, new_status
        )
        if not changed:
            logger.info(
                "Ignored status event order_id=%s status=%s (not %s or not found)",
                event.order_id, event.status, INITIAL_STATUS.value,
            )
            return False

        logger.info("Order %s → %s", event.order_id, new_status.value)
        if self.cache is not None:
            try:
                await self.cache.set_status(event.order_id, new_status.value)
            except OrderIntakeError:
                logger.warning(
                    "Status cache update failed for order %s", event.order_id, exc_info=True
                )
        return True
