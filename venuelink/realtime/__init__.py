"""
Realtime push channel - reconnecting WebSocket with typed frame dispatch.
"""

from venuelink.realtime.channel import (
    AiohttpConnector,
    ChannelEndpoint,
    ChannelManager,
    ConnectionState,
)
from venuelink.realtime.messages import (
    InboundFrame,
    InboundType,
    OutboundFrame,
    OutboundType,
    UnknownFrame,
    decode_frame,
)

__all__ = [
    "AiohttpConnector",
    "ChannelEndpoint",
    "ChannelManager",
    "ConnectionState",
    "InboundFrame",
    "InboundType",
    "OutboundFrame",
    "OutboundType",
    "UnknownFrame",
    "decode_frame",
]
