"""Realtime channel client for Astarte AppEngine rooms."""

from .messages import (
    ChannelError,
    ChannelProtocolError,
    Event,
    EventType,
    Frame,
    IncomingData,
    PushEvent,
    Reply,
    ReplyStatus,
    classify,
    parse_event,
)
from .session import (
    ChannelClosedError,
    ChannelConnectionError,
    ChannelSession,
    ChannelStateError,
    ChannelTimeoutError,
    InboundQueue,
    Relay,
    build_socket_url,
    receive_loop,
    room_name,
)
from .triggers import (
    DataTrigger,
    DataTriggerCondition,
    DeviceTrigger,
    DeviceTriggerCondition,
    TransitiveTrigger,
    default_triggers,
    register_triggers,
)

__all__ = [
    "ChannelClosedError",
    "ChannelConnectionError",
    "ChannelError",
    "ChannelProtocolError",
    "ChannelSession",
    "ChannelStateError",
    "ChannelTimeoutError",
    "DataTrigger",
    "DataTriggerCondition",
    "DeviceTrigger",
    "DeviceTriggerCondition",
    "Event",
    "EventType",
    "Frame",
    "InboundQueue",
    "IncomingData",
    "PushEvent",
    "Relay",
    "Reply",
    "ReplyStatus",
    "TransitiveTrigger",
    "build_socket_url",
    "classify",
    "default_triggers",
    "parse_event",
    "receive_loop",
    "register_triggers",
    "room_name",
]
