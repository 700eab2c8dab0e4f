"""
Order Intake: 注文ストア

注文の永続化を担当する。SQL は PostgreSQL と SQLite の両方で動く範囲で書く。

update_status_if がステータス遷移の正しさを保証する唯一の仕組み:
現在のステータスが期待値と一致する行だけを更新する (compare-and-swap)。
重複配信・順序の入れ替わったイベントはここで no-op になる。
"""

from datetime import datetime, timezone

from sqlalchemy import text
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession
from sqlalchemy.orm import sessionmaker

from .errors import DuplicateError, NotFoundError, TransientInfrastructureError
from .models import Money, Order, OrderStatus

SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS orders (
        id              VARCHAR(36)  PRIMARY KEY,
        user_id         VARCHAR(128) NOT NULL,
        status          VARCHAR(16)  NOT NULL,
        amount_cents    BIGINT       NOT NULL,
        currency        VARCHAR(8)   NOT NULL,
        items_json      TEXT         NOT NULL,
        idempotency_key VARCHAR(255),
        version         INTEGER      NOT NULL DEFAULT 0,
        created_at      TIMESTAMPTZ  NOT NULL,
        updated_at      TIMESTAMPTZ  NOT NULL
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS ux_orders_user_idem
        ON orders (user_id, idempotency_key)
    """,
)

_SELECT_COLUMNS = """
    SELECT id, user_id, status, amount_cents, currency, items_json,
           idempotency_key, version, created_at, updated_at
    FROM orders
"""


async def init_schema(engine: AsyncEngine) -> None:
    """orders テーブルが無ければ作成する。"""
    async with engine.begin() as conn:
        for stmt in SCHEMA_STATEMENTS:
            await conn.execute(text(stmt))


def _as_datetime(value) -> datetime | None:
    # SQLite はタイムスタンプを文字列で返す
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


def _row_to_order(row) -> Order:
    return Order(
        id=row.id,
        user_id=row.user_id,
        amount=Money(cents=row.amount_cents, currency=row.currency),
        items_json=row.items_json,
        status=OrderStatus(row.status),
        idempotency_key=row.idempotency_key,
        version=row.version,
        created_at=_as_datetime(row.created_at),
        updated_at=_as_datetime(row.updated_at),
    )


class SQLOrderStore:
    def __init__(self, session_factory: sessionmaker) -> None:
        self.session_factory = session_factory

    async def create(self, order: Order) -> None:
        """
        注文を INSERT する。

        (user_id, idempotency_key) の一意制約違反は DuplicateError。
        """
        try:
            async with self.session_factory() as session:
                await session.execute(
                    text("""
                        INSERT INTO orders
                            (id, user_id, status, amount_cents, currency, items_json,
                             idempotency_key, version, created_at, updated_at)
                        VALUES
                            (:id, :user_id, :status, :amount_cents, :currency, :items_json,
                             :idempotency_key, 0, :created_at, :updated_at)
                    """),
                    {
                        "id": order.id,
                        "user_id": order.user_id,
                        "status": order.status.value,
                        "amount_cents": order.amount.cents,
                        "currency": order.amount.currency,
                        "items_json": order.items_json,
                        "idempotency_key": order.idempotency_key,
                        "created_at": order.created_at,
                        "updated_at": order.updated_at,
                    },
                )
                await session.commit()
        except IntegrityError as e:
            raise DuplicateError(
                f"order already exists for user={order.user_id} key={order.idempotency_key}"
            ) from e
        except SQLAlchemyError as e:
            raise TransientInfrastructureError(f"order store unavailable: {e}") from e

    async def get_by_id(self, order_id: str) -> Order:
        row = await self._fetch_one(
            _SELECT_COLUMNS + " WHERE id = :id", {"id": order_id}
        )
        if row is None:
            raise NotFoundError(f"order {order_id} not found")
        return _row_to_order(row)

    async def get_by_user_and_idem_key(self, user_id: str, idem_key: str) -> Order | None:
        row = await self._fetch_one(
            _SELECT_COLUMNS + " WHERE user_id = :user_id AND idempotency_key = :key",
            {"user_id": user_id, "key": idem_key},
        )
        return _row_to_order(row) if row is not None else None

    async def update_status(self, order_id: str, to_status: OrderStatus) -> None:
        """
        無条件の更新。ガード付き遷移 (update_status_if) より安全性が低いので、
        運用での手動修正にだけ使う。
        """
        changed = await self._execute_update(
            """
                UPDATE orders
                SET status = :to_status, version = version + 1, updated_at = :now
                WHERE id = :id
            """,
            {"id": order_id, "to_status": OrderStatus(to_status).value},
        )
        if not changed:
            raise NotFoundError(f"order {order_id} not found")

    async def update_status_if(
        self,
        order_id: str,
        from_status: OrderStatus,
        to_status: OrderStatus,
    ) -> bool:
        """現在のステータスが from_status の場合だけ更新する。更新したら True。"""
        return await self._execute_update(
            """
                UPDATE orders
                SET status = :to_status, version = version + 1, updated_at = :now
                WHERE id = :id AND status = :from_status
            """,
            {
                "id": order_id,
                "from_status": OrderStatus(from_status).value,
                "to_status": OrderStatus(to_status).value,
            },
        )

    # ── 内部ヘルパー ─────────────────────────────

    async def _fetch_one(self, sql: str, params: dict):
        try:
            async with self.session_factory() as session:
                result = await session.execute(text(sql), params)
                return result.fetchone()
        except SQLAlchemyError as e:
            raise TransientInfrastructureError(f"order store unavailable: {e}") from e

    async def _execute_update(self, sql: str, params: dict) -> bool:
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    text(sql), {**params, "now": datetime.now(timezone.utc)}
                )
                await session.commit()
                return result.rowcount == 1
        except SQLAlchemyError as e:
            raise TransientInfrastructureError(f"order store unavailable: {e}") from e


def make_session_factory(engine: AsyncEngine) -> sessionmaker:
    return sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
