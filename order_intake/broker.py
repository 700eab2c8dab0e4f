"""
Order Intake: メッセージブローカー (Redis Streams)

Pub/Sub は fire-and-forget でサービス停止中のメッセージが失われるため、
コンシューマグループ付きの Redis Streams を使う。

    publish        XADD {queue} * body <json> attempt 1
    fetch          XREADGROUP GROUP {group} {consumer} ... STREAMS {queue} >
    ack            XACK
    nack(requeue)  attempt+1 で XADD し直してから元メッセージを XACK
    nack(drop)     {queue}.dlq に XADD してから XACK

起動直後の最初の fetch では自分が受け取ったまま ACK していないメッセージ (id=0)
を先に再配信する。クラッシュ後も at-least-once になる。

ストリーム用のクライアントは decode_responses=False で作ること。
フィールドはエントリごとに UTF-8 でデコードし、デコードできないエントリは
{queue}.dlq に移して ACK する。
"""

import logging
from typing import Protocol

import redis.asyncio as aioredis
from redis.exceptions import RedisError, ResponseError

from .errors import TransientInfrastructureError

logger = logging.getLogger(__name__)

DEAD_LETTER_SUFFIX = ".dlq"


class Delivery(Protocol):
    queue: str
    message_id: str
    body: str
    attempt: int

    async def ack(self) -> None: ...

    async def nack(self, requeue: bool, reason: str = "") -> None: ...


class StreamDelivery:
    """XREADGROUP で受け取った 1 件のメッセージ"""

    def __init__(
        self,
        broker: "RedisStreamBroker",
        queue: str,
        message_id: str,
        fields: dict,
    ) -> None:
        self.broker = broker
        self.queue = queue
        self.message_id = message_id
        self.body = fields.get("body", "")
        try:
            self.attempt = int(fields.get("attempt", 1))
        except (TypeError, ValueError):
            self.attempt = 1
        self.settled = False

    async def ack(self) -> None:
        if self.settled:
            return
        await self.broker.ack(self.queue, self.message_id)
        self.settled = True

    async def nack(self, requeue: bool, reason: str = "") -> None:
        if self.settled:
            return
        if requeue:
            await self.broker.publish(self.queue, self.body, attempt=self.attempt + 1)
        else:
            await self.broker.dead_letter(self, reason)
        await self.broker.ack(self.queue, self.message_id)
        self.settled = True


def _normalize(response) -> list[tuple[str, list]]:
    # RESP2 はリスト、RESP3 は dict で返ってくる
    if not response:
        return []
    if isinstance(response, dict):
        return [(name, entries) for name, entries in response.items()]
    return [(name, entries) for name, entries in response]


def _decode(value):
    return value.decode("utf-8") if isinstance(value, bytes) else value


def _field_name(value) -> str:
    return value.decode("utf-8", "replace") if isinstance(value, bytes) else value


class RedisStreamBroker:
    def __init__(
        self,
        redis: aioredis.Redis,
        group: str,
        consumer: str,
        maxlen: int | None = None,
    ) -> None:
        self.redis = redis
        self.group = group
        self.consumer = consumer
        self.maxlen = maxlen
        self._backlog_drained: set[str] = set()

    async def ensure_group(self, queue: str) -> None:
        """コンシューマグループを作成する。既に存在する場合は何もしない。"""
        try:
            await self.redis.xgroup_create(queue, self.group, id="0", mkstream=True)
            logger.info("Created consumer group %s on %s", self.group, queue)
        except ResponseError as e:
            if "BUSYGROUP" not in str(e):
                raise TransientInfrastructureError(f"broker unavailable: {e}") from e
        except (RedisError, TimeoutError) as e:
            raise TransientInfrastructureError(f"broker unavailable: {e}") from e

    async def publish(self, queue: str, body: str, attempt: int = 1) -> str:
        try:
            message_id = await self.redis.xadd(
                queue,
                {"body": body, "attempt": str(attempt)},
                maxlen=self.maxlen,
                approximate=self.maxlen is not None,
            )
        except (RedisError, TimeoutError) as e:
            raise TransientInfrastructureError(f"broker unavailable: {e}") from e
        return _decode(message_id)

    async def fetch(self, queue: str, count: int, block_ms: int) -> list[StreamDelivery]:
        """
        最大 count 件のメッセージを受け取る。
        新着が無ければ block_ms ミリ秒待って空リストを返す。
        """
        from_backlog = queue not in self._backlog_drained
        start_id = "0" if from_backlog else ">"
        try:
            response = await self.redis.xreadgroup(
                self.group,
                self.consumer,
                streams={queue: start_id},
                count=count,
                block=None if from_backlog else block_ms,
            )
        except (RedisError, TimeoutError) as e:
            raise TransientInfrastructureError(f"broker unavailable: {e}") from e

        deliveries: list[StreamDelivery] = []
        seen = 0
        for _name, entries in _normalize(response):
            for message_id, fields in entries:
                seen += 1
                message_id = _decode(message_id)
                if not fields:
                    # 保留中だがストリームからは削除済み
                    await self.ack(queue, message_id)
                    continue
                try:
                    fields = {_decode(k): _decode(v) for k, v in fields.items()}
                except UnicodeDecodeError as e:
                    await self._drop_undecodable(queue, message_id, fields, e)
                    continue
                deliveries.append(StreamDelivery(self, queue, message_id, fields))

        if from_backlog and not seen:
            self._backlog_drained.add(queue)
        elif from_backlog:
            logger.info(
                "Redelivering %d pending message(s) on %s", len(deliveries), queue
            )
        return deliveries

    async def ack(self, queue: str, message_id: str) -> None:
        try:
            await self.redis.xack(queue, self.group, message_id)
        except (RedisError, TimeoutError) as e:
            # 次の fetch で保留中メッセージを読み直す
            self._backlog_drained.discard(queue)
            raise TransientInfrastructureError(f"broker unavailable: {e}") from e

    async def _drop_undecodable(
        self, queue: str, message_id: str, raw_fields: dict, error: UnicodeDecodeError
    ) -> None:
        logger.error("Undecodable message on %s id=%s: %s", queue, message_id, error)
        raw = {_field_name(k): v for k, v in raw_fields.items()}
        try:
            await self.redis.xadd(
                queue + DEAD_LETTER_SUFFIX,
                {
                    "body": raw.get("body", b""),
                    "attempt": raw.get("attempt", b"1"),
                    "source_id": message_id,
                    "reason": f"undecodable message: {error}",
                },
            )
        except (RedisError, TimeoutError) as e:
            self._backlog_drained.discard(queue)
            raise TransientInfrastructureError(f"broker unavailable: {e}") from e
        await self.ack(queue, message_id)

    async def dead_letter(self, delivery: StreamDelivery, reason: str) -> None:
        try:
            await self.redis.xadd(
                delivery.queue + DEAD_LETTER_SUFFIX,
                {
                    "body": delivery.body,
                    "attempt": str(delivery.attempt),
                    "source_id": delivery.message_id,
                    "reason": reason,
                },
            )
        except (RedisError, TimeoutError) as e:
            raise TransientInfrastructureError(f"broker unavailable: {e}") from e
