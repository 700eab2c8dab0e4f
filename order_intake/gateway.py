"""
Order Intake: 下流サービス (order-gw) クライアント

キューのハンドラから呼ばれる。オーケストレーターが直接呼ぶことはない。
同じ注文が再配信されても安全なように、409 (作成済み) は成功として扱う。
"""

import logging

import httpx

from .errors import GatewayRejectedError, TransientInfrastructureError

logger = logging.getLogger(__name__)


class OrderGatewayClient:
    def __init__(
        self,
        base_url: str,
        client: httpx.AsyncClient | None = None,
        timeout: float = 8.0,
        user_agent: str = "order-intake/worker",
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.client = client or httpx.AsyncClient(
            timeout=timeout, headers={"User-Agent": user_agent}
        )

    async def create_order(
        self,
        order_id: str,
        user_id: str,
        amount_cents: int,
        currency: str,
    ) -> None:
        """下流サービスに注文作成を依頼する。"""
        try:
            resp = await self.client.post(
                f"{self.base_url}/orders",
                json={
                    "orderId": order_id,
                    "userId": user_id,
                    "amountCents": amount_cents,
                    "currency": currency,
                },
            )
        except httpx.HTTPError as e:
            raise TransientInfrastructureError(f"order gateway unavailable: {e}") from e

        if resp.status_code == 409:
            logger.info("Order %s already known to gateway", order_id)
            return
        if resp.status_code >= 500:
            raise TransientInfrastructureError(
                f"order gateway error: status={resp.status_code}"
            )
        if resp.status_code >= 400:
            raise GatewayRejectedError(
                f"order gateway rejected {order_id}: status={resp.status_code} body={resp.text}"
            )

    async def aclose(self) -> None:
        await self.client.aclose()
