"""Transient trigger declarations installed through the channel ``watch`` event."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Union

if TYPE_CHECKING:
    from .session import ChannelSession

LOGGER = logging.getLogger(__name__)

ANY_INTERFACE = "*"
ANY_PATH = "/*"
ANY_VALUE = "*"


class DeviceTriggerCondition(str, Enum):
    DEVICE_CONNECTED = "device_connected"
    DEVICE_DISCONNECTED = "device_disconnected"
    DEVICE_ERROR = "device_error"
    DEVICE_EMPTY_CACHE_RECEIVED = "device_empty_cache_received"
    INCOMING_INTROSPECTION = "incoming_introspection"
    INTERFACE_ADDED = "interface_added"
    INTERFACE_REMOVED = "interface_removed"
    INTERFACE_MINOR_UPDATED = "interface_minor_updated"
    DEVICE_REGISTERED = "device_registered"
    DEVICE_DELETION_STARTED = "device_deletion_started"
    DEVICE_DELETION_FINISHED = "device_deletion_finished"


class DataTriggerCondition(str, Enum):
    INCOMING_DATA = "incoming_data"
    VALUE_STORED = "value_stored"
    VALUE_CHANGE = "value_change"
    VALUE_CHANGE_APPLIED = "value_change_applied"
    PATH_CREATED = "path_created"
    PATH_REMOVED = "path_removed"


@dataclass(frozen=True, slots=True)
class DeviceTrigger:
    on: DeviceTriggerCondition
    device_id: str

    def to_payload(self) -> dict[str, Any]:
        return {
            "type": "device_trigger",
            "on": self.on.value,
            "device_id": self.device_id,
        }


@dataclass(frozen=True, slots=True)
class DataTrigger:
    on: DataTriggerCondition
    device_id: str
    interface_name: str = ANY_INTERFACE
    match_path: str = ANY_PATH
    value_match_operator: str = ANY_VALUE

    def to_payload(self) -> dict[str, Any]:
        return {
            "type": "data_trigger",
            "on": self.on.value,
            "device_id": self.device_id,
            "interface_name": self.interface_name,
            "match_path": self.match_path,
            "value_match_operator": self.value_match_operator,
        }


SimpleTrigger = Union[DeviceTrigger, DataTrigger]


@dataclass(frozen=True, slots=True)
class TransitiveTrigger:
    """A named trigger living as long as the channel room."""

    name: str
    device_id: str
    simple_trigger: SimpleTrigger

    def to_payload(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "device_id": self.device_id,
            "simple_trigger": self.simple_trigger.to_payload(),
        }


def default_triggers(device_id: str) -> list[TransitiveTrigger]:
    """Connection, disconnection, error and catch-all incoming data triggers."""

    return [
        TransitiveTrigger(
            name=f"connectiontrigger-{device_id}",
            device_id=device_id,
            simple_trigger=DeviceTrigger(DeviceTriggerCondition.DEVICE_CONNECTED, device_id),
        ),
        TransitiveTrigger(
            name=f"disconnectiontrigger-{device_id}",
            device_id=device_id,
            simple_trigger=DeviceTrigger(DeviceTriggerCondition.DEVICE_DISCONNECTED, device_id),
        ),
        TransitiveTrigger(
            name=f"errortrigger-{device_id}",
            device_id=device_id,
            simple_trigger=DeviceTrigger(DeviceTriggerCondition.DEVICE_ERROR, device_id),
        ),
        TransitiveTrigger(
            name=f"datatrigger-{device_id}",
            device_id=device_id,
            simple_trigger=DataTrigger(DataTriggerCondition.INCOMING_DATA, device_id),
        ),
    ]


async def register_triggers(channel: ChannelSession) -> list[TransitiveTrigger]:
    """Join the room if needed and install the default triggers in order.

    The first failing ``watch`` aborts registration and propagates.
    """

    if not channel.joined:
        await channel.join()

    triggers = default_triggers(channel.device_id)
    for trigger in triggers:
        await channel.watch(trigger)

    LOGGER.info("Registered %d triggers for device %s", len(triggers), channel.device_id)
    return triggers
