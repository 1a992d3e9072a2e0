"""Phoenix channel frames and the Astarte event data model.

Frames use the Phoenix V2 JSON serializer: a five element array
``[join_ref, ref, topic, event, payload]``. Two inbound events matter here:

- ``phx_reply``: the reply to a request we pushed, correlated by ``ref``.
- ``new_event``: an Astarte trigger firing, pushed without a request.
"""

from __future__ import annotations

import dataclasses
import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, ClassVar, Mapping, Optional, Union

from ..values import ValueDecodeError, parse_timestamp

PHX_JOIN = "phx_join"
PHX_LEAVE = "phx_leave"
PHX_REPLY = "phx_reply"
NEW_EVENT = "new_event"
HEARTBEAT = "heartbeat"


class ChannelError(RuntimeError):
    """Base class for realtime channel failures."""


class ChannelProtocolError(ChannelError):
    """Raised when a frame cannot be decoded or a reply carries an error."""


@dataclass(frozen=True, slots=True)
class Frame:
    join_ref: Optional[str]
    ref: Optional[str]
    topic: str
    event: str
    payload: Any = field(default_factory=dict)

    def encode(self) -> str:
        return json.dumps([self.join_ref, self.ref, self.topic, self.event, self.payload])

    @classmethod
    def decode(cls, raw: str | bytes) -> "Frame":
        try:
            data = json.loads(raw)
        except (TypeError, ValueError) as exc:
            raise ChannelProtocolError(f"frame is not valid JSON: {raw!r}") from exc

        if not isinstance(data, list) or len(data) != 5:
            raise ChannelProtocolError(f"expected a 5 element frame, got {data!r}")

        join_ref, ref, topic, event, payload = data
        if not isinstance(topic, str) or not isinstance(event, str):
            raise ChannelProtocolError(f"frame topic and event must be strings: {data!r}")

        return cls(
            join_ref=None if join_ref is None else str(join_ref),
            ref=None if ref is None else str(ref),
            topic=topic,
            event=event,
            payload=payload,
        )


# ----------------------------------------------------------------------
# Replies
# ----------------------------------------------------------------------
class ReplyStatus(str, Enum):
    OK = "ok"
    ERROR = "error"


@dataclass(frozen=True, slots=True)
class Reply:
    topic: str
    reference_id: Optional[str]
    status: ReplyStatus
    response: Any

    @property
    def ok(self) -> bool:
        return self.status is ReplyStatus.OK

    @classmethod
    def from_frame(cls, frame: Frame) -> "Reply":
        payload = frame.payload
        if not isinstance(payload, Mapping):
            raise ChannelProtocolError(f"reply payload must be an object: {payload!r}")

        try:
            status = ReplyStatus(payload.get("status"))
        except ValueError as exc:
            raise ChannelProtocolError(
                f"unknown reply status {payload.get('status')!r} (ref={frame.ref})"
            ) from exc

        return cls(
            topic=frame.topic,
            reference_id=frame.ref,
            status=status,
            response=payload.get("response"),
        )


# ----------------------------------------------------------------------
# Astarte events
# ----------------------------------------------------------------------
class EventType(str, Enum):
    INCOMING_DATA = "incoming_data"
    VALUE_CHANGE = "value_change"
    VALUE_CHANGE_APPLIED = "value_change_applied"
    PATH_CREATED = "path_created"
    PATH_REMOVED = "path_removed"
    VALUE_STORED = "value_stored"
    DEVICE_CONNECTED = "device_connected"
    DEVICE_DISCONNECTED = "device_disconnected"
    DEVICE_EMPTY_CACHE_RECEIVED = "device_empty_cache_received"
    DEVICE_ERROR = "device_error"
    INCOMING_INTROSPECTION = "incoming_introspection"
    INTERFACE_ADDED = "interface_added"
    INTERFACE_REMOVED = "interface_removed"
    INTERFACE_MINOR_UPDATED = "interface_minor_updated"
    DEVICE_REGISTERED = "device_registered"
    DEVICE_DELETION_STARTED = "device_deletion_started"
    DEVICE_DELETION_FINISHED = "device_deletion_finished"


@dataclass(frozen=True, slots=True)
class Event:
    """Base class of the event variants carried by ``new_event``."""

    type: ClassVar[EventType]


@dataclass(frozen=True, slots=True)
class IncomingData(Event):
    type: ClassVar[EventType] = EventType.INCOMING_DATA
    interface: str
    path: str
    value: Any


@dataclass(frozen=True, slots=True)
class ValueChange(Event):
    type: ClassVar[EventType] = EventType.VALUE_CHANGE
    interface: str
    path: str
    old_value: Any
    new_value: Any


@dataclass(frozen=True, slots=True)
class ValueChangeApplied(Event):
    type: ClassVar[EventType] = EventType.VALUE_CHANGE_APPLIED
    interface: str
    path: str
    old_value: Any
    new_value: Any


@dataclass(frozen=True, slots=True)
class PathCreated(Event):
    type: ClassVar[EventType] = EventType.PATH_CREATED
    interface: str
    path: str
    value: Any


@dataclass(frozen=True, slots=True)
class PathRemoved(Event):
    type: ClassVar[EventType] = EventType.PATH_REMOVED
    interface: str
    path: str


@dataclass(frozen=True, slots=True)
class ValueStored(Event):
    type: ClassVar[EventType] = EventType.VALUE_STORED
    interface: str
    path: str
    value: Any


@dataclass(frozen=True, slots=True)
class DeviceConnected(Event):
    type: ClassVar[EventType] = EventType.DEVICE_CONNECTED
    device_ip_address: str


@dataclass(frozen=True, slots=True)
class DeviceDisconnected(Event):
    type: ClassVar[EventType] = EventType.DEVICE_DISCONNECTED


@dataclass(frozen=True, slots=True)
class DeviceEmptyCacheReceived(Event):
    type: ClassVar[EventType] = EventType.DEVICE_EMPTY_CACHE_RECEIVED


@dataclass(frozen=True, slots=True)
class DeviceError(Event):
    type: ClassVar[EventType] = EventType.DEVICE_ERROR
    error_name: str
    metadata: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class IncomingIntrospection(Event):
    type: ClassVar[EventType] = EventType.INCOMING_INTROSPECTION
    introspection: str


@dataclass(frozen=True, slots=True)
class InterfaceAdded(Event):
    type: ClassVar[EventType] = EventType.INTERFACE_ADDED
    interface: str
    major_version: int
    minor_version: int


@dataclass(frozen=True, slots=True)
class InterfaceRemoved(Event):
    type: ClassVar[EventType] = EventType.INTERFACE_REMOVED
    interface: str
    major_version: int


@dataclass(frozen=True, slots=True)
class InterfaceMinorUpdated(Event):
    type: ClassVar[EventType] = EventType.INTERFACE_MINOR_UPDATED
    interface: str
    major_version: int
    old_minor_version: int
    new_minor_version: int


@dataclass(frozen=True, slots=True)
class DeviceRegistered(Event):
    type: ClassVar[EventType] = EventType.DEVICE_REGISTERED


@dataclass(frozen=True, slots=True)
class DeviceDeletionStarted(Event):
    type: ClassVar[EventType] = EventType.DEVICE_DELETION_STARTED


@dataclass(frozen=True, slots=True)
class DeviceDeletionFinished(Event):
    type: ClassVar[EventType] = EventType.DEVICE_DELETION_FINISHED


EVENT_CLASSES: dict[EventType, type[Event]] = {
    cls.type: cls
    for cls in (
        IncomingData,
        ValueChange,
        ValueChangeApplied,
        PathCreated,
        PathRemoved,
        ValueStored,
        DeviceConnected,
        DeviceDisconnected,
        DeviceEmptyCacheReceived,
        DeviceError,
        IncomingIntrospection,
        InterfaceAdded,
        InterfaceRemoved,
        InterfaceMinorUpdated,
        DeviceRegistered,
        DeviceDeletionStarted,
        DeviceDeletionFinished,
    )
}


def parse_event(payload: Any) -> Event:
    """Build the event variant named by ``payload["type"]``."""

    if not isinstance(payload, Mapping):
        raise ChannelProtocolError(f"event must be an object: {payload!r}")

    try:
        cls = EVENT_CLASSES[EventType(payload.get("type"))]
    except ValueError as exc:
        raise ChannelProtocolError(f"unknown event type {payload.get('type')!r}") from exc

    kwargs: dict[str, Any] = {}
    for item in dataclasses.fields(cls):
        if item.name in payload:
            kwargs[item.name] = payload[item.name]
        elif item.default is dataclasses.MISSING and item.default_factory is dataclasses.MISSING:
            raise ChannelProtocolError(
                f"{cls.type.value} event is missing field {item.name!r}: {payload!r}"
            )

    return cls(**kwargs)


@dataclass(frozen=True, slots=True)
class PushEvent:
    """An Astarte ``new_event`` push, not correlated to any request."""

    topic: str
    device_id: str
    timestamp: datetime
    event: Event

    @classmethod
    def from_frame(cls, frame: Frame) -> "PushEvent":
        payload = frame.payload
        if not isinstance(payload, Mapping):
            raise ChannelProtocolError(f"new_event payload must be an object: {payload!r}")

        try:
            device_id = payload["device_id"]
            raw_timestamp = payload["timestamp"]
            raw_event = payload["event"]
        except KeyError as exc:
            raise ChannelProtocolError(
                f"new_event payload missing field {exc.args[0]!r}"
            ) from exc

        try:
            timestamp = parse_timestamp(raw_timestamp)
        except ValueDecodeError as exc:
            raise ChannelProtocolError(str(exc)) from exc

        return cls(
            topic=frame.topic,
            device_id=str(device_id),
            timestamp=timestamp,
            event=parse_event(raw_event),
        )


InboundMessage = Union[Reply, PushEvent]


def classify(frame: Frame) -> Optional[InboundMessage]:
    """Turn a frame into a reply or a push event; ``None`` for anything else."""

    if frame.event == PHX_REPLY:
        return Reply.from_frame(frame)
    if frame.event == NEW_EVENT:
        return PushEvent.from_frame(frame)
    return None
