"""
Order Intake: 注文モデル

状態遷移:
    PROCESSING → CONFIRMED  (下流サービスで成功)
    PROCESSING → FAILED     (下流サービスで失敗)

PENDING は閉じた状態集合の一員として残しているが、
このサービスが新規注文を PENDING で作ることはない。
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum


class OrderStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    CONFIRMED = "CONFIRMED"
    FAILED = "FAILED"


# 新規注文の初期状態。Reconciler のガード条件と必ず一致させる。
INITIAL_STATUS = OrderStatus.PROCESSING


@dataclass(frozen=True)
class Money:
    cents: int
    currency: str


@dataclass
class Order:
    id: str
    user_id: str
    amount: Money
    items_json: str
    status: OrderStatus = INITIAL_STATUS
    idempotency_key: str | None = None
    version: int = 0
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "status": self.status.value,
            "amount_cents": self.amount.cents,
            "currency": self.amount.currency,
            "items_json": self.items_json,
            "version": self.version,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
