"""
Order Service — イベント定義

ドメインで発生した事実(イベント)を定義する。
イベントは過去形で命名し、不変(immutable)として扱う。

ワイヤ形式はこのモジュールの encode_event / decode_event だけが扱う:
    {"event_type": "order.created", "data": {"orderId": 1, ...}}
"""

import json
from datetime import datetime
from typing import ClassVar

from pydantic import BaseModel, ConfigDict, ValidationError
from pydantic.alias_generators import to_camel

from .domain import Order

ORDER_CREATED = "order.created"
QTY_CONFIRMED = "order.qty_confirmed"
QTY_FAILED = "order.qty_failed"


class UnknownEventError(ValueError):
    pass


class Event(BaseModel):
    model_config = ConfigDict(
        frozen=True, alias_generator=to_camel, populate_by_name=True
    )

    topic: ClassVar[str]


class OrderCreated(Event):
    """注文が作成された"""

    topic: ClassVar[str] = ORDER_CREATED

    order_id: int
    product_id: int
    total_price: int
    created_at: datetime

    @classmethod
    def from_order(cls, order: Order) -> "OrderCreated":
        return cls(
            order_id=order.id,
            product_id=order.product_id,
            total_price=order.total_price,
            created_at=order.created_at,
        )


class QtyConfirmed(Event):
    """在庫の減算に成功した"""

    topic: ClassVar[str] = QTY_CONFIRMED

    order_id: int


class QtyFailed(Event):
    """在庫の減算に失敗した（在庫不足 / 商品なし）"""

    topic: ClassVar[str] = QTY_FAILED

    order_id: int
    reason: str = ""


EVENT_TYPES: dict[str, type[Event]] = {
    cls.topic: cls for cls in (OrderCreated, QtyConfirmed, QtyFailed)
}


def encode_event(event: Event) -> str:
    return json.dumps(
        {
            "event_type": event.topic,
            "data": event.model_dump(mode="json", by_alias=True),
        }
    )


def decode_event(raw: str | bytes) -> Event:
    try:
        envelope = json.loads(raw)
        event_type = envelope["event_type"]
        data = envelope.get("data", {})
    except (ValueError, KeyError, TypeError) as e:
        raise UnknownEventError(f"Malformed event envelope: {e}") from e

    event_cls = EVENT_TYPES.get(event_type)
    if event_cls is None:
        raise UnknownEventError(f"Unknown event type: {event_type}")
    try:
        return event_cls.model_validate(data)
    except ValidationError as e:
        raise UnknownEventError(f"Invalid {event_type} payload: {e}") from e
