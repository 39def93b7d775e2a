"""
Product Service — 商品ストア

products テーブルの CRUD と、注文ごとの在庫減算。

在庫減算は注文 ID 単位で冪等:
  processed_orders に注文 ID (主キー) と結果を記録し、同じ注文の再配信では
  在庫に触れずに記録済みの結果を返す。減算と記録は同じトランザクション。
"""

import logging
from datetime import datetime, timezone
from enum import Enum

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
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

logger = logging.getLogger(__name__)

metadata = MetaData()

products_table = Table(
    "products",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(255), nullable=False),
    Column("price", BigInteger, nullable=False),
    Column("qty", BigInteger, nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
)

processed_orders_table = Table(
    "processed_orders",
    metadata,
    Column("order_id", BigInteger, primary_key=True, autoincrement=False),
    Column("product_id", BigInteger, nullable=False),
    Column("outcome", String(16), nullable=False),
    Column("processed_at", DateTime(timezone=True), nullable=False),
)


class Outcome(str, Enum):
    CONFIRMED = "confirmed"
    FAILED = "failed"


async def create_schema(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)


def _row_to_dict(row) -> dict:
    return {
        "id": row.id,
        "name": row.name,
        "price": row.price,
        "qty": row.qty,
    }


class SqlProductStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def get_product(self, product_id: int) -> dict | None:
        async with self.session_factory() as session:
            result = await session.execute(
                text("SELECT id, name, price, qty FROM products WHERE id = :id"),
                {"id": product_id},
            )
            row = result.fetchone()
        if not row:
            return None
        return _row_to_dict(row)

    async def create_product(self, name: str, price: int, qty: int) -> dict:
        async with self.session_factory() as session:
            result = await session.execute(
                text("""
                    INSERT INTO products (name, price, qty, created_at)
                    VALUES (:name, :price, :qty, :now)
                    RETURNING id
                """).bindparams(bindparam("now", type_=DateTime(timezone=True))),
                {
                    "name": name,
                    "price": price,
                    "qty": qty,
                    "now": datetime.now(timezone.utc),
                },
            )
            product_id = result.scalar_one()
            await session.commit()
        return {"id": product_id, "name": name, "price": price, "qty": qty}

    async def decrement_for_order(self, product_id: int, order_id: int) -> tuple[Outcome, bool]:
        """
        注文1件分の在庫を1つ減らす。

        Returns:
            (結果, 再配信かどうか)
        """
        recorded = await self._recorded_outcome(order_id)
        if recorded is not None:
            return recorded, True

        async with self.session_factory() as session:
            result = await session.execute(
                text("""
                    UPDATE products SET qty = qty - 1
                    WHERE id = :id AND qty > 0
                """),
                {"id": product_id},
            )
            outcome = Outcome.CONFIRMED if result.rowcount == 1 else Outcome.FAILED
            try:
                await session.execute(
                    text("""
                        INSERT INTO processed_orders
                            (order_id, product_id, outcome, processed_at)
                        VALUES (:order_id, :product_id, :outcome, :now)
                    """).bindparams(bindparam("now", type_=DateTime(timezone=True))),
                    {
                        "order_id": order_id,
                        "product_id": product_id,
                        "outcome": outcome.value,
                        "now": datetime.now(timezone.utc),
                    },
                )
                await session.commit()
            except IntegrityError:
                # 同じ注文を別の配信が先に処理した。減算はロールバックされる
                await session.rollback()
                logger.info("Order %s processed concurrently, using recorded outcome", order_id)
                recorded = await self._recorded_outcome(order_id)
                return recorded or Outcome.FAILED, True

        return outcome, False

    async def _recorded_outcome(self, order_id: int) -> Outcome | None:
        async with self.session_factory() as session:
            result = await session.execute(
                text("SELECT outcome FROM processed_orders WHERE order_id = :id"),
                {"id": order_id},
            )
            row = result.fetchone()
        if not row:
            return None
        return Outcome(row.outcome)
