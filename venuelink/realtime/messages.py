"""
Realtime channel frames.

Inbound frames are ``{"type": ..., "payload": {...}}`` (the backend also sends
the payload under ``data``) and decode into one model per type. Types this
client does not know decode to UnknownFrame instead of failing.
"""

import json
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from venuelink.services.casing import KeyCodec


class InboundType(str, Enum):
    CONNECTION_ESTABLISHED = "connection_established"
    CONNECTION_LOST = "connection_lost"
    ERROR = "error"
    ORDER_CREATED = "order_created"
    ORDER_STATUS_UPDATED = "order_status_updated"
    TABLE_STATUS_UPDATED = "table_status_updated"
    MENU_ITEM_UPDATED = "menu_item_updated"
    SYSTEM_NOTIFICATION = "system_notification"
    VENUE_STATUS_SNAPSHOT = "venue_status"
    NOTIFICATIONS_SNAPSHOT = "notifications"
    PONG = "pong"


class OutboundType(str, Enum):
    ORDER_STATUS_UPDATE = "order_status_update"
    TABLE_STATUS_UPDATE = "table_status_update"
    GET_VENUE_STATUS = "get_venue_status"
    GET_NOTIFICATIONS = "get_notifications"
    PING = "ping"


class MessageDecodeError(ValueError):
    """A frame was not valid JSON or did not carry a ``type``."""


class InboundFrame(BaseModel):
    model_config = ConfigDict(extra="ignore")

    payload: Any = None
    timestamp: str | None = None


class ConnectionEstablished(InboundFrame):
    type: Literal["connection_established"] = "connection_established"


class ConnectionLost(InboundFrame):
    """Synthesized locally when the socket closes unexpectedly."""

    type: Literal["connection_lost"] = "connection_lost"


class ErrorFrame(InboundFrame):
    type: Literal["error"] = "error"
    message: str = "Unknown error"


class OrderCreated(InboundFrame):
    type: Literal["order_created"] = "order_created"


class OrderStatusUpdated(InboundFrame):
    type: Literal["order_status_updated"] = "order_status_updated"


class TableStatusUpdated(InboundFrame):
    type: Literal["table_status_updated"] = "table_status_updated"


class MenuItemUpdated(InboundFrame):
    type: Literal["menu_item_updated"] = "menu_item_updated"


class SystemNotification(InboundFrame):
    type: Literal["system_notification"] = "system_notification"


class VenueStatusSnapshot(InboundFrame):
    type: Literal["venue_status"] = "venue_status"


class NotificationsSnapshot(InboundFrame):
    type: Literal["notifications"] = "notifications"


class Pong(InboundFrame):
    type: Literal["pong"] = "pong"


class UnknownFrame(BaseModel):
    """A frame whose type this client does not handle."""

    type: str
    raw: dict[str, Any] = Field(default_factory=dict)


InboundMessage = Annotated[
    Union[
        ConnectionEstablished,
        ConnectionLost,
        ErrorFrame,
        OrderCreated,
        OrderStatusUpdated,
        TableStatusUpdated,
        MenuItemUpdated,
        SystemNotification,
        VenueStatusSnapshot,
        NotificationsSnapshot,
        Pong,
    ],
    Field(discriminator="type"),
]

_inbound_adapter: TypeAdapter[Any] = TypeAdapter(InboundMessage)
_KNOWN_TYPES = {t.value for t in InboundType}

# Older backend message types and what they decode as
_ALIASES: dict[str, tuple[InboundType, dict[str, Any]]] = {
    "new_order_notification": (InboundType.ORDER_CREATED, {}),
    "order_ready_notification": (InboundType.SYSTEM_NOTIFICATION, {"kind": "order_ready"}),
}


def decode_frame(raw: str | bytes | dict[str, Any], codec: KeyCodec | None = None) -> Any:
    """
    Decode one inbound frame.

    Returns an InboundMessage variant, or UnknownFrame for an unrecognized
    type. Payload keys are converted to the internal case when a codec is
    given.

    Raises:
        MessageDecodeError: the frame is not a JSON object with a ``type``
    """
    if isinstance(raw, (str, bytes)):
        try:
            raw = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise MessageDecodeError(f"Invalid JSON frame: {e}") from e

    if not isinstance(raw, dict) or not isinstance(raw.get("type"), str):
        raise MessageDecodeError(f"Frame has no type: {str(raw)[:100]}")

    frame_type = raw["type"]
    payload = raw.get("payload", raw.get("data"))
    if codec is not None:
        payload = codec.decode(payload)

    if frame_type in _ALIASES:
        target, extra = _ALIASES[frame_type]
        frame_type = target.value
        if extra:
            payload = {**extra, **(payload if isinstance(payload, dict) else {})}

    if frame_type not in _KNOWN_TYPES:
        return UnknownFrame(type=frame_type, raw=raw)

    fields: dict[str, Any] = {"type": frame_type, "payload": payload}
    if raw.get("timestamp") is not None:
        fields["timestamp"] = str(raw["timestamp"])
    if frame_type == InboundType.ERROR.value:
        message = raw.get("message")
        if message is None and isinstance(payload, dict):
            message = payload.get("message")
        if message is not None:
            fields["message"] = str(message)

    try:
        return _inbound_adapter.validate_python(fields)
    except PydanticValidationError as e:
        raise MessageDecodeError(f"Invalid {frame_type} frame: {e}") from e


class OutboundFrame(BaseModel):
    type: OutboundType
    payload: dict[str, Any] | None = None
    timestamp: str | None = None

    def to_wire(self, codec: KeyCodec | None = None) -> dict[str, Any]:
        message: dict[str, Any] = {"type": self.type.value}
        if self.payload is not None:
            message["payload"] = codec.encode(self.payload) if codec else self.payload
        if self.timestamp is not None:
            message["timestamp"] = self.timestamp
        return message

    def to_json(self, codec: KeyCodec | None = None) -> str:
        return json.dumps(self.to_wire(codec))


def order_status_update(order_id: str, new_status: str) -> OutboundFrame:
    return OutboundFrame(
        type=OutboundType.ORDER_STATUS_UPDATE,
        payload={"order_id": order_id, "new_status": new_status},
    )


def table_status_update(table_id: str, new_status: str) -> OutboundFrame:
    return OutboundFrame(
        type=OutboundType.TABLE_STATUS_UPDATE,
        payload={"table_id": table_id, "new_status": new_status},
    )


def get_venue_status() -> OutboundFrame:
    return OutboundFrame(type=OutboundType.GET_VENUE_STATUS)


def get_notifications() -> OutboundFrame:
    return OutboundFrame(type=OutboundType.GET_NOTIFICATIONS)


def ping() -> OutboundFrame:
    return OutboundFrame(
        type=OutboundType.PING,
        timestamp=datetime.now(timezone.utc).isoformat(),
    )
