"""
Order Intake: イベント定義

ブローカー上を流れるメッセージ。イベントは不変(immutable)として扱う。
ワイヤ上のフィールド名は camelCase (orderId, userId, ...)。
"""

from pydantic import BaseModel, ConfigDict, Field


class _WireModel(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)


class OrderCreated(_WireModel):
    """注文が永続化された (下流サービスへの注文作成依頼)"""
    order_id: str = Field(alias="orderId", min_length=1)
    user_id: str = Field(alias="userId", min_length=1)
    cents: int
    currency: str = Field(min_length=1)


class OrderStatusChanged(_WireModel):
    """下流サービスが注文の処理結果を通知した"""
    order_id: str = Field(alias="orderId", min_length=1)
    user_id: str = Field(alias="userId", default="")
    cents: int = 0
    currency: str = ""
    status: str
