"""
Order Service — 注文ストア

orders テーブルへの読み書き。INSERT 時に ID が採番される。
ステータスの更新 (transition_status) は在庫リコンサイラの結果イベントからのみ呼ばれ、
pending の行だけを更新する (再配信・順序入れ替わりは何もしない)。
"""

import logging
from datetime import datetime, timezone

from sqlalchemy import (
    BigInteger,
    Column,
    DateTime,
    Integer,
    MetaData,
    String,
    Table,
    bindparam,
    text,
)
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from .domain import Order, OrderStatus

logger = logging.getLogger(__name__)

metadata = MetaData()

orders_table = Table(
    "orders",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("product_id", BigInteger, nullable=False, index=True),
    Column("total_price", BigInteger, nullable=False),
    Column("status", String(16), nullable=False, default="pending"),
    Column("created_at", DateTime(timezone=True), nullable=False),
)


async def create_schema(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)


_ORDER_COLUMNS = {"created_at": DateTime(timezone=True)}


def _row_to_order(row) -> Order:
    created_at: datetime = row.created_at
    # SQLite はタイムゾーンを保持しない。保存値は常に UTC
    if created_at.tzinfo is None:
        created_at = created_at.replace(tzinfo=timezone.utc)
    return Order(
        id=row.id,
        product_id=row.product_id,
        total_price=row.total_price,
        status=OrderStatus(row.status),
        created_at=created_at,
    )


class SqlOrderStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def insert(self, order: Order) -> Order:
        """注文を INSERT し、採番された ID を持つ Order を返す。"""
        stmt = text("""
            INSERT INTO orders (product_id, total_price, status, created_at)
            VALUES (:product_id, :total_price, :status, :created_at)
            RETURNING id
        """).bindparams(bindparam("created_at", type_=DateTime(timezone=True)))

        async with self.session_factory() as session:
            result = await session.execute(
                stmt,
                {
                    "product_id": order.product_id,
                    "total_price": order.total_price,
                    "status": order.status.value,
                    "created_at": order.created_at,
                },
            )
            order_id = result.scalar_one_or_none()
            await session.commit()

        if not order_id:
            logger.warning("Order inserted but no ID assigned: %s", order)
            return order
        return order.with_id(order_id)

    async def get_by_id(self, order_id: int) -> Order | None:
        async with self.session_factory() as session:
            result = await session.execute(
                text("SELECT * FROM orders WHERE id = :id").columns(**_ORDER_COLUMNS),
                {"id": order_id},
            )
            row = result.fetchone()
        if not row:
            return None
        return _row_to_order(row)

    async def get_by_product_id(self, product_id: int) -> list[Order]:
        """商品の注文一覧 (新しい順)"""
        async with self.session_factory() as session:
            result = await session.execute(
                text("""
                    SELECT * FROM orders
                    WHERE product_id = :product_id
                    ORDER BY created_at DESC, id DESC
                """).columns(**_ORDER_COLUMNS),
                {"product_id": product_id},
            )
            return [_row_to_order(row) for row in result.fetchall()]

    async def transition_status(
        self, order_id: int, status: OrderStatus
    ) -> Order | None:
        """
        pending の注文を status に遷移させる。
        更新した場合は更新後の Order、対象が無ければ None を返す。
        """
        if not OrderStatus.PENDING.can_transition(status):
            raise ValueError(f"Cannot transition an order to {status.value}")

        async with self.session_factory() as session:
            result = await session.execute(
                text("""
                    UPDATE orders SET status = :status
                    WHERE id = :id AND status = :pending
                """),
                {
                    "status": status.value,
                    "id": order_id,
                    "pending": OrderStatus.PENDING.value,
                },
            )
            await session.commit()
            if result.rowcount == 0:
                return None

        return await self.get_by_id(order_id)
