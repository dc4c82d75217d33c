"""
Message contracts shared by the order and inventory services.

Every message on the bus is an :class:`Envelope`; ``data`` holds one of the
payload structs below converted to builtins.
"""
from datetime import datetime, timezone
from typing import Any

import msgspec
from msgspec import Struct, field


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def isoformat(moment: datetime) -> str:
    return moment.astimezone(timezone.utc).isoformat()


class Envelope(Struct):
    event_type: str = field(name="eventType")
    timestamp: str
    data: dict[str, Any]


class OrderItem(Struct):
    product_id: str
    qty: int
    unit_price: int = 0
    promo_id: str | None = None
    deducted_price: int = 0
    line_total: int = 0


class OrderEventData(Struct, kw_only=True):
    order_id: str
    username: str
    order_status: str
    total_price: int
    order_date: str | None = None
    updated_at: str | None = None
    items: list[OrderItem] = []
    reason: str | None = None
    message: str | None = None
    stock_validation_details: list[dict[str, Any]] | None = None
    promo_validation_details: list[dict[str, Any]] | None = None


class LineVerdict(Struct, kw_only=True):
    product_id: str
    requested_qty: int
    available_qty: int
    is_valid: bool
    reason: str
    product_name: str | None = None
    has_promo: bool = False
    promo_id: str | None = None
    max_promo_qty: int | None = None


class ValidationVerdict(Struct, kw_only=True):
    order_id: str
    is_stock_valid: bool
    has_promo_items: bool
    validation_details: list[LineVerdict] = []
    validated_at: str | None = None
    error: str | None = None


class ValidationResponse(Struct, kw_only=True):
    order_id: str
    username: str
    validation_result: ValidationVerdict


def build_envelope(event_type: str, data: Struct | dict) -> Envelope:
    if isinstance(data, Struct):
        data = msgspec.to_builtins(data)
    return Envelope(event_type=event_type, timestamp=isoformat(utc_now()), data=data)


def encode_envelope(envelope: Envelope) -> bytes:
    return msgspec.json.encode(envelope)


def decode_envelope(raw: bytes) -> Envelope:
    return msgspec.json.decode(raw, type=Envelope)


def decode_data(envelope: Envelope, type_):
    """Convert the untyped ``data`` of an envelope into one of the payload structs."""
    return msgspec.convert(envelope.data, type=type_)
