"""
Order Intake: イベント発行

永続化済みの注文 1 件につき OrderCreated を 1 回ブローカーへ渡す。
発行の失敗は呼び出し元へそのまま伝える (補償処理は行わない)。
"""

import logging
from typing import Protocol

from .events import OrderCreated

logger = logging.getLogger(__name__)


class Broker(Protocol):
    async def publish(self, queue: str, body: str) -> str: ...


class EventPublisher:
    def __init__(self, broker: Broker, created_queue: str) -> None:
        self.broker = broker
        self.created_queue = created_queue

    async def publish_created(self, event: OrderCreated) -> None:
        message_id = await self.broker.publish(self.created_queue, event.to_json())
        logger.info(
            "Published OrderCreated order_id=%s queue=%s message_id=%s",
            event.order_id, self.created_queue, message_id,
        )
