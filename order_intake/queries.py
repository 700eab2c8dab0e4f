"""
Order Intake: クエリハンドラ (CQRS の Read 側)

ステータスはキャッシュを先に見て、無ければストアから読んでキャッシュに書き戻す。
キャッシュの障害は無視してストアを正とする。
"""

import logging

from .cache import RedisStatusCache
from .errors import OrderIntakeError
from .store import SQLOrderStore

logger = logging.getLogger(__name__)


async def get_order(store: SQLOrderStore, order_id: str) -> dict:
    """注文を取得する。存在しなければ NotFoundError。"""
    order = await store.get_by_id(order_id)
    return order.to_dict()


async def get_order_status(
    store: SQLOrderStore,
    cache: RedisStatusCache | None,
    order_id: str,
) -> str:
    if cache is not None:
        try:
            cached = await cache.get_status(order_id)
        except OrderIntakeError:
            logger.warning("Status cache read failed for order %s", order_id, exc_info=True)
            cached = None
        if cached:
            return cached

    order = await store.get_by_id(order_id)
    if cache is not None:
        try:
            await cache.set_status(order.id, order.status.value)
        except OrderIntakeError:
            logger.warning("Status cache refill failed for order %s", order_id, exc_info=True)
    return order.status.value
