"""
Product Service — イベント定義

Order Service と同じワイヤ形式 (サービスごとに独自の定義を持つ):
    {"event_type": "order.created", "data": {"orderId": 1, ...}}
"""

import json
from datetime import datetime
from typing import ClassVar

from pydantic import BaseModel, ConfigDict, ValidationError
from pydantic.alias_generators import to_camel

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
    """注文が作成された (Order Service から)"""

    topic: ClassVar[str] = ORDER_CREATED

    order_id: int
    product_id: int
    total_price: int
    created_at: datetime


class QtyConfirmed(Event):
    """在庫を1つ減算した"""

    topic: ClassVar[str] = QTY_CONFIRMED

    order_id: int


class QtyFailed(Event):
    """在庫を減算できなかった"""

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
