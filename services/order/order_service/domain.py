"""
Order Service — ドメインモデル

Order は Admission Pipeline が pending で作成し、永続化後は変更しない。
ステータス遷移 (pending → confirmed / failed) は在庫リコンサイラ側の
イベントでのみ行われる。

ProductInfo は商品サービスが所有するデータの読み取り専用スナップショット。
"""

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class OrderStatus(str, Enum):
    """
    注文ステータス

    状態遷移:
        PENDING → CONFIRMED  (在庫の減算に成功)
        PENDING → FAILED     (在庫不足 / 商品なし)
    """

    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not OrderStatus.PENDING

    def can_transition(self, to: "OrderStatus") -> bool:
        return self is OrderStatus.PENDING and to.is_terminal


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Order(BaseModel):
    model_config = ConfigDict(
        frozen=True, alias_generator=to_camel, populate_by_name=True
    )

    id: int | None = None
    product_id: int
    total_price: int = Field(ge=0)
    status: OrderStatus = OrderStatus.PENDING
    created_at: datetime = Field(default_factory=utcnow)

    @classmethod
    def pending(cls, product_id: int, total_price: int) -> "Order":
        """Admission Pipeline が永続化前に組み立てる注文。"""
        return cls(product_id=product_id, total_price=total_price)

    def with_id(self, order_id: int) -> "Order":
        return self.model_copy(update={"id": order_id})


class ProductInfo(BaseModel):
    """商品サービスの GET /products/{id} のレスポンス。qty=0 は在庫切れ (not found ではない)。"""

    model_config = ConfigDict(frozen=True)

    id: int
    name: str
    price: int
    qty: int = Field(ge=0)

    @property
    def in_stock(self) -> bool:
        return self.qty > 0
