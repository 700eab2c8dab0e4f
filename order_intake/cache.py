"""
Order Intake: 注文ステータスキャッシュ

Read-through キャッシュ。ここでの失敗は呼び出し側で握りつぶされる前提なので、
例外は TransientInfrastructureError に変換して投げるだけにする。
"""

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from .errors import TransientInfrastructureError


class RedisStatusCache:
    def __init__(self, redis: aioredis.Redis, ttl_seconds: int = 0) -> None:
        self.redis = redis
        self.ttl_seconds = ttl_seconds

    @staticmethod
    def _key(order_id: str) -> str:
        return f"order:status:{order_id}"

    async def set_status(self, order_id: str, status: str) -> None:
        try:
            await self.redis.set(self._key(order_id), status, ex=self.ttl_seconds or None)
        except (RedisError, TimeoutError) as e:
            raise TransientInfrastructureError(f"status cache unavailable: {e}") from e

    async def get_status(self, order_id: str) -> str | None:
        try:
            value = await self.redis.get(self._key(order_id))
        except (RedisError, TimeoutError) as e:
            raise TransientInfrastructureError(f"status cache unavailable: {e}") from e
        if isinstance(value, bytes):
            value = value.decode("utf-8")
        return value
