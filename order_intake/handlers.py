"""
Order Intake: キューハンドラ

JSONHandler はメッセージ本文を pydantic モデルにデコードしてから
型付きの関数を呼ぶアダプタ。デコードの失敗は PoisonMessageError。
"""

import logging
from typing import Awaitable, Callable, Generic, Protocol, TypeVar

import pydantic

from .errors import PoisonMessageError
from .events import OrderCreated

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=pydantic.BaseModel)


class JSONHandler(Generic[T]):
    def __init__(self, model: type[T], func: Callable[[T], Awaitable[None]]) -> None:
        self.model = model
        self.func = func

    def decode(self, body: str | bytes) -> T:
        try:
            return self.model.model_validate_json(body)
        except pydantic.ValidationError as e:
            raise PoisonMessageError(
                f"cannot decode {self.model.__name__}: {e.error_count()} error(s)"
            ) from e

    async def handle(self, message: T) -> None:
        await self.func(message)


class OrderGateway(Protocol):
    async def create_order(
        self, order_id: str, user_id: str, amount_cents: int, currency: str
    ) -> None: ...


class OrderCreatedHandler:
    """OrderCreated を下流サービスへ転送する。再配信されても安全であること。"""

    def __init__(self, gateway: OrderGateway) -> None:
        self.gateway = gateway

    async def handle(self, event: OrderCreated) -> None:
        await self.gateway.create_order(
            event.order_id, event.user_id, event.cents, event.currency
        )
        logger.info("Forwarded order %s to gateway", event.order_id)
