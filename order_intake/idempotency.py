"""
Order Intake: 冪等性ゲート (Idempotency Gate)

Redis 上で (scope, key) ごとに 2 つのエントリを管理する。

    idem:lock:{len(scope)}:{scope}:{key}  短命のロック。SET NX EX の 1 コマンドで取得する
    idem:map:{len(scope)}:{scope}:{key}   作成済み注文 ID への対応。ロックとは独立した TTL を持つ

scope の長さを前置するので、scope や key に ":" が含まれても別の組と衝突しない。

ロックは同時に走る同一キーのリクエストを直列化するためだけに存在し、
対応エントリより先に失効してよい。
"""

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from .errors import TransientInfrastructureError


def _scoped(scope: str, key: str) -> str:
    return f"{len(scope)}:{scope}:{key}"


class RedisIdempotencyStore:
    def __init__(
        self,
        redis: aioredis.Redis,
        ttl_seconds: int,
        lock_ttl_seconds: int,
    ) -> None:
        self.redis = redis
        self.ttl_seconds = ttl_seconds
        self.lock_ttl_seconds = lock_ttl_seconds

    @staticmethod
    def _lock_key(scope: str, key: str) -> str:
        return f"idem:lock:{_scoped(scope, key)}"

    @staticmethod
    def _map_key(scope: str, key: str) -> str:
        return f"idem:map:{_scoped(scope, key)}"

    async def try_lock(self, scope: str, key: str) -> bool:
        """
        ロックを取得する。競争に勝った 1 つの呼び出しだけが True を受け取る。

        読んでから書く方式は使わない: SET NX が唯一の原子的操作。
        """
        try:
            acquired = await self.redis.set(
                self._lock_key(scope, key), "1", nx=True, ex=self.lock_ttl_seconds
            )
        except (RedisError, TimeoutError) as e:
            raise TransientInfrastructureError(f"idempotency lock unavailable: {e}") from e
        return bool(acquired)

    async def remember(self, scope: str, key: str, value: str) -> None:
        try:
            await self.redis.set(self._map_key(scope, key), value, ex=self.ttl_seconds)
        except (RedisError, TimeoutError) as e:
            raise TransientInfrastructureError(f"idempotency store unavailable: {e}") from e

    async def recall(self, scope: str, key: str) -> tuple[str | None, bool]:
        """記録済みの値を返す。見つからないのはエラーではない。"""
        try:
            value = await self.redis.get(self._map_key(scope, key))
        except (RedisError, TimeoutError) as e:
            raise TransientInfrastructureError(f"idempotency store unavailable: {e}") from e
        if value is None:
            return None, False
        if isinstance(value, bytes):
            value = value.decode("utf-8")
        return value, True
