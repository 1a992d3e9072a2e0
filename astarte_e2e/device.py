"""Test device publishing over the Astarte MQTT v1 protocol."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Iterable, Optional

import bson
from bson.int64 import Int64

from .adapters import MQTTClient, MQTTConnectionError
from .config import DeviceConfig
from .core import Interface, base_interfaces
from .values import TelemetryValue, ValueType

LOGGER = logging.getLogger(__name__)


class DeviceTransportError(RuntimeError):
    """Raised when a value cannot be published on the requested interface."""


def _native(value_type: ValueType, value: Any) -> Any:
    if value_type is ValueType.LONG_INTEGER:
        return Int64(value)
    if value_type is ValueType.LONG_INTEGER_ARRAY:
        return [Int64(item) for item in value]
    if value_type is ValueType.DOUBLE:
        return float(value)
    if value_type is ValueType.DOUBLE_ARRAY:
        return [float(item) for item in value]
    if value_type.is_array:
        return list(value)
    return value


def encode_payload(value: TelemetryValue, timestamp: Optional[datetime] = None) -> bytes:
    """BSON document carrying ``value`` and, optionally, its explicit timestamp."""

    document: dict[str, Any] = {"v": _native(value.type, value.value)}
    if timestamp is not None:
        document["t"] = timestamp
    return bson.encode(document)


class AstarteDevice:
    """A device with a static set of certificates and a mutable introspection.

    Implements :class:`astarte_e2e.core.DeviceTransport`.
    """

    def __init__(
        self,
        config: DeviceConfig,
        realm: str,
        device_id: str,
        *,
        interfaces: Iterable[Interface] = (),
        mqtt_client: Optional[MQTTClient] = None,
    ) -> None:
        self.realm = realm
        self.device_id = device_id
        self.base_topic = f"{realm}/{device_id}"
        self._interfaces: dict[str, Interface] = {
            interface.name: interface for interface in (interfaces or base_interfaces())
        }
        self._mqtt = mqtt_client or MQTTClient(config, client_id=self.base_topic)
        self._mqtt.register_connect_handler(self._handle_connect)
        self._mqtt.register_disconnect_handler(self._handle_disconnect)

    @property
    def introspection(self) -> str:
        return ";".join(
            self._interfaces[name].introspection_entry for name in sorted(self._interfaces)
        )

    @property
    def interfaces(self) -> tuple[Interface, ...]:
        return tuple(self._interfaces[name] for name in sorted(self._interfaces))

    def is_connected(self) -> bool:
        return self._mqtt.is_connected()

    async def connect(self, timeout: float = 30.0) -> None:
        await self._mqtt.connect(timeout=timeout)

    async def disconnect(self) -> None:
        await self._mqtt.disconnect()

    async def send_individual(
        self,
        interface: str,
        path: str,
        value: TelemetryValue,
        timestamp: datetime,
    ) -> None:
        definition = self._interfaces.get(interface)
        if definition is None:
            raise DeviceTransportError(f"interface {interface} is not in the introspection")
        if not definition.is_device_owned:
            raise DeviceTransportError(f"interface {interface} is not device owned")
        if definition.aggregation != "individual":
            raise DeviceTransportError(f"interface {interface} only accepts whole objects")

        mapping = definition.mapping_for(path)
        if mapping is None:
            raise DeviceTransportError(f"no mapping for {path} in {interface}")
        if mapping.type is not value.type:
            raise DeviceTransportError(
                f"{interface}{path} expects {mapping.type.value}, got {value.type.value}"
            )

        payload = encode_payload(value, timestamp if mapping.explicit_timestamp else None)
        topic = f"{self.base_topic}/{interface}{path}"
        LOGGER.debug("Publishing %s on %s (qos=%d)", value, topic, mapping.reliability.qos)
        self._mqtt.publish(topic, payload, qos=mapping.reliability.qos)

    async def extend_interfaces(self, interfaces: Iterable[Interface]) -> None:
        for interface in interfaces:
            self._interfaces[interface.name] = interface
        self._publish_introspection()

    async def remove_interfaces(self, names: Iterable[str]) -> None:
        for name in names:
            self._interfaces.pop(name, None)
        self._publish_introspection()

    def _publish_introspection(self) -> None:
        LOGGER.info("Publishing introspection: %s", self.introspection)
        self._mqtt.publish(self.base_topic, self.introspection, qos=2)

    def _handle_connect(self, reason_code: Any) -> None:
        try:
            self._publish_introspection()
            self._mqtt.publish(f"{self.base_topic}/control/emptyCache", "1", qos=2)
        except MQTTConnectionError as exc:
            LOGGER.error("Failed to announce device after connect: %s", exc)

    def _handle_disconnect(self, reason_code: Any) -> None:
        LOGGER.warning("Device %s disconnected (%s)", self.device_id, reason_code)
