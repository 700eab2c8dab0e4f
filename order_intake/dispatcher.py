"""
Order Intake: キューディスパッチャ

複数のキューをそれぞれのハンドラに紐付け、キューごとに 1 つのワーカーで消費する。
ワーカー同士は並行に動くが、1 つのワーカーの中では 1 件ずつ順に処理する。
prefetch はすべてのキューで共有する 1 つの上限で、受け取ってから ACK / NACK
するまでの配信の数を数える。ワーカーは fetch の前に枠を予約し、
確定した配信の分だけ枠を返す。

配信ごとのルール:
    デコード失敗 (ポイズンメッセージ)  → 再試行せずに破棄 (デッドレター)
    ハンドラ成功                        → ACK
    ハンドラ失敗                        → NACK。requeue フラグは登録ごとに設定可能

配信順序は保証しない。同じ注文のイベントでも順不同で届く前提で
ハンドラを書くこと。
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Protocol

from .broker import Delivery
from .errors import PoisonMessageError, TransientInfrastructureError

logger = logging.getLogger(__name__)


class Handler(Protocol):
    def decode(self, body: str | bytes) -> Any: ...

    async def handle(self, message: Any) -> None: ...


class ConsumingBroker(Protocol):
    async def fetch(self, queue: str, count: int, block_ms: int) -> list[Delivery]: ...


@dataclass
class Registration:
    queue: str
    handler: Handler
    requeue_on_error: bool
    consumer_tag: str


class DeliveryLimit:
    """全キュー共通の枠。保持中 (未確定) の配信数が limit を超えない。"""

    def __init__(self, limit: int) -> None:
        self.limit = limit
        self.held = 0
        self._freed = asyncio.Event()

    async def reserve(self, want: int) -> int:
        """空きが 1 つ以上になるまで待ち、最大 want 個の枠を確保する。"""
        while self.held >= self.limit:
            self._freed.clear()
            await self._freed.wait()
        granted = min(want, self.limit - self.held)
        self.held += granted
        return granted

    def release(self, count: int = 1) -> None:
        if count:
            self.held -= count
            self._freed.set()


class QueueWorker:
    """1 つのキューを消費するワーカー。停止トークンを持ち、stop() で合流する。"""

    def __init__(self, dispatcher: "Dispatcher", registration: Registration) -> None:
        self.dispatcher = dispatcher
        self.registration = registration
        self.stop_event = asyncio.Event()
        self.task: asyncio.Task | None = None

    def start(self) -> None:
        self.task = asyncio.create_task(
            self.run(), name=f"queue-worker:{self.registration.queue}"
        )

    async def run(self) -> None:
        reg = self.registration
        d = self.dispatcher
        logger.info("Consuming queue=%s tag=%s", reg.queue, reg.consumer_tag)
        while not self.stop_event.is_set():
            reserved = await d.limit.reserve(d.share)
            if self.stop_event.is_set():
                d.limit.release(reserved)
                break
            try:
                await self._consume(reserved)
            except TransientInfrastructureError:
                logger.warning("Fetch failed on queue=%s, backing off", reg.queue, exc_info=True)
                await self._pause(d.error_backoff)
            except Exception:
                logger.exception("Unexpected error on queue=%s, backing off", reg.queue)
                await self._pause(d.error_backoff)
        logger.info("Consumer stopped queue=%s tag=%s", reg.queue, reg.consumer_tag)

    async def _consume(self, reserved: int) -> None:
        """予約した枠の数まで受け取って処理する。使わなかった枠はすぐに返す。"""
        reg = self.registration
        d = self.dispatcher
        held = reserved
        try:
            deliveries = await d.broker.fetch(reg.queue, reserved, d.block_ms)
            d.limit.release(held - len(deliveries))
            held = len(deliveries)
            for delivery in deliveries:
                if self.stop_event.is_set():
                    # 未処理分は ACK していないので再起動後に再配信される
                    break
                try:
                    await d.dispatch(reg, delivery)
                except TransientInfrastructureError:
                    logger.warning(
                        "Could not settle message %s on queue=%s",
                        delivery.message_id, reg.queue, exc_info=True,
                    )
                finally:
                    held -= 1
                    d.limit.release()
        finally:
            d.limit.release(held)

    async def _pause(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self.stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass


class Dispatcher:
    """
    キューとハンドラのルーター。

    既定値: prefetch=50, call_timeout=10 秒, requeue_on_error=True
    """

    def __init__(
        self,
        broker: ConsumingBroker,
        prefetch: int = 50,
        call_timeout: float = 10.0,
        requeue_on_error: bool = True,
        block_ms: int = 1000,
        error_backoff: float = 1.0,
    ) -> None:
        if prefetch <= 0:
            raise ValueError("prefetch must be positive")
        self.broker = broker
        self.prefetch = prefetch
        self.call_timeout = call_timeout
        self.requeue_on_error = requeue_on_error
        self.block_ms = block_ms
        self.error_backoff = error_backoff
        self.limit = DeliveryLimit(prefetch)
        self.share = prefetch
        self.registrations: list[Registration] = []
        self.workers: list[QueueWorker] = []

    def register(
        self,
        queue: str,
        handler: Handler,
        requeue_on_error: bool | None = None,
    ) -> None:
        """
        キューにハンドラを登録する。複数のキューに対して何度でも呼べる。

        冪等でないハンドラは requeue_on_error=False で登録すること。
        """
        if self.workers:
            raise RuntimeError("cannot register after the dispatcher has started")
        if any(r.queue == queue for r in self.registrations):
            raise ValueError(f"queue {queue!r} is already registered")
        self.registrations.append(
            Registration(
                queue=queue,
                handler=handler,
                requeue_on_error=(
                    self.requeue_on_error if requeue_on_error is None else requeue_on_error
                ),
                consumer_tag=f"c_{queue}",
            )
        )

    @property
    def queues(self) -> list[str]:
        return [r.queue for r in self.registrations]

    async def dispatch(self, reg: Registration, delivery: Delivery) -> None:
        """1 件の配信を処理し、ACK / NACK を確定させる。"""
        try:
            message = reg.handler.decode(delivery.body)
        except PoisonMessageError as e:
            logger.error(
                "Bad message on queue=%s id=%s: %s body=%r",
                reg.queue, delivery.message_id, e, delivery.body,
            )
            await delivery.nack(requeue=False, reason=str(e))
            return

        try:
            async with asyncio.timeout(self.call_timeout):
                await reg.handler.handle(message)
        except Exception as e:
            logger.warning(
                "Handler error queue=%s tag=%s id=%s attempt=%d err=%r requeue=%s",
                reg.queue, reg.consumer_tag, delivery.message_id,
                delivery.attempt, e, reg.requeue_on_error,
            )
            await delivery.nack(requeue=reg.requeue_on_error, reason=repr(e))
            return

        await delivery.ack()

    def start(self) -> None:
        """キューごとにワーカーを起動する。ブロックしない。"""
        if self.workers:
            raise RuntimeError("dispatcher already started")
        # 1 つのワーカーが待機中に枠を抱え込まないよう、予約は等分まで
        self.share = max(1, self.prefetch // max(1, len(self.registrations)))
        for reg in self.registrations:
            worker = QueueWorker(self, reg)
            worker.start()
            self.workers.append(worker)

    async def stop(self, grace: float = 5.0) -> None:
        """すべてのワーカーに停止を通知し、終了を待つ。猶予を過ぎたらキャンセルする。"""
        for worker in self.workers:
            worker.stop_event.set()
        tasks = [w.task for w in self.workers if w.task is not None]
        if not tasks:
            return
        _done, pending = await asyncio.wait(tasks, timeout=grace)
        for task in pending:
            task.cancel()
        results = await asyncio.gather(*tasks, return_exceptions=True)
        for worker, result in zip(self.workers, results):
            if isinstance(result, Exception):
                logger.error(
                    "Worker for queue=%s exited with error",
                    worker.registration.queue, exc_info=result,
                )
