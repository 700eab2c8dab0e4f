"""
Order Intake: 設定

すべての設定は環境変数から読み込む。
必須項目が欠けている、または値が不正な場合は起動時に ValueError を送出する。
"""

import os
import socket
from dataclasses import dataclass
from typing import Mapping


def _get_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError as e:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from e
    if value <= 0:
        raise ValueError(f"{name} must be positive, got {value}")
    return value


def _get_float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = float(raw)
    except ValueError as e:
        raise ValueError(f"{name} must be a number, got {raw!r}") from e
    if value <= 0:
        raise ValueError(f"{name} must be positive, got {value}")
    return value


def _get_bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    lowered = raw.strip().lower()
    if lowered in ("1", "true", "yes", "on"):
        return True
    if lowered in ("0", "false", "no", "off"):
        return False
    raise ValueError(f"{name} must be a boolean, got {raw!r}")


def _require(env: Mapping[str, str], name: str) -> str:
    value = env.get(name, "")
    if not value:
        raise ValueError(f"{name} is required")
    return value


@dataclass(frozen=True)
class Settings:
    database_url: str
    order_gateway_url: str
    redis_url: str = "redis://localhost:6379"

    idempotency_ttl_seconds: int = 86400
    idempotency_lock_ttl_seconds: int = 30
    status_cache_ttl_seconds: int = 3600

    request_timeout_seconds: float = 3.0
    handler_timeout_seconds: float = 10.0
    gateway_timeout_seconds: float = 8.0
    redis_socket_timeout_seconds: float = 2.0

    dispatch_prefetch: int = 50
    dispatch_requeue_on_error: bool = True
    created_queue: str = "order.created.q"
    status_queue: str = "order.status.changed"
    consumer_group: str = "order-api"
    consumer_name: str = "order-api-1"

    log_level: str = "INFO"

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> "Settings":
        """環境変数から設定を組み立てる。"""
        env = os.environ if env is None else env
        return cls(
            database_url=_require(env, "DATABASE_URL"),
            order_gateway_url=_require(env, "ORDER_GATEWAY_URL"),
            redis_url=env.get("REDIS_URL", "redis://localhost:6379"),
            idempotency_ttl_seconds=_get_int(env, "IDEMPOTENCY_TTL_SECONDS", 86400),
            idempotency_lock_ttl_seconds=_get_int(env, "IDEMPOTENCY_LOCK_TTL_SECONDS", 30),
            status_cache_ttl_seconds=_get_int(env, "STATUS_CACHE_TTL_SECONDS", 3600),
            request_timeout_seconds=_get_float(env, "REQUEST_TIMEOUT_SECONDS", 3.0),
            handler_timeout_seconds=_get_float(env, "HANDLER_TIMEOUT_SECONDS", 10.0),
            gateway_timeout_seconds=_get_float(env, "GATEWAY_TIMEOUT_SECONDS", 8.0),
            redis_socket_timeout_seconds=_get_float(env, "REDIS_SOCKET_TIMEOUT_SECONDS", 2.0),
            dispatch_prefetch=_get_int(env, "DISPATCH_PREFETCH", 50),
            dispatch_requeue_on_error=_get_bool(env, "DISPATCH_REQUEUE_ON_ERROR", True),
            created_queue=env.get("CREATED_QUEUE", "order.created.q"),
            status_queue=env.get("STATUS_QUEUE", "order.status.changed"),
            consumer_group=env.get("CONSUMER_GROUP", "order-api"),
            consumer_name=env.get("CONSUMER_NAME") or socket.gethostname(),
            log_level=env.get("LOG_LEVEL", "INFO").upper(),
        )
