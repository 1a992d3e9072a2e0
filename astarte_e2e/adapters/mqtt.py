"""MQTT adapter encapsulating paho-mqtt client usage."""

from __future__ import annotations

import asyncio
import logging
import ssl
from typing import Any, Callable, List, Optional

import paho.mqtt.client as mqtt

from ..config import DeviceConfig

LOGGER = logging.getLogger(__name__)


class MQTTConnectionError(RuntimeError):
    """Raised when the MQTT client fails to establish a connection."""


class MQTTClient:
    """Async-friendly wrapper over the threaded paho-mqtt client."""

    def __init__(self, config: DeviceConfig, *, client_id: str) -> None:
        self.config = config
        self.client_id = client_id

        self._client: Optional[mqtt.Client] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._connected_event: Optional[asyncio.Event] = None
        self._disconnect_event: Optional[asyncio.Event] = None
        self._last_connect_failed: Optional[bool] = None
        self._last_reason: Any = None
        self._connected: bool = False
        self._disconnect_handlers: List[Callable[[Any], None]] = []
        self._connect_handlers: List[Callable[[Any], None]] = []

    async def connect(self, timeout: float = 30.0) -> None:
        """Connect to the MQTT broker and wait for acknowledgement."""

        self._loop = asyncio.get_running_loop()
        self._connected_event = asyncio.Event()
        self._disconnect_event = asyncio.Event()
        self._last_connect_failed = None
        self._last_reason = None

        client = mqtt.Client(mqtt.CallbackAPIVersion.VERSION2, client_id=self.client_id)
        client.enable_logger(LOGGER)

        if self.config.use_tls:
            self._configure_tls(client)

        client.on_connect = self._on_connect
        client.on_disconnect = self._on_disconnect

        self._client = client

        LOGGER.info(
            "Connecting to MQTT broker %s:%s as %s",
            self.config.broker_host,
            self.config.broker_port,
            self.client_id,
        )

        client.connect_async(
            self.config.broker_host, self.config.broker_port, self.config.keepalive
        )
        client.loop_start()

        try:
            await asyncio.wait_for(self._connected_event.wait(), timeout=timeout)
            if self._last_connect_failed is None or self._last_connect_failed:
                raise MQTTConnectionError(
                    f"MQTT broker rejected connection ({self._last_reason})"
                )
        except asyncio.TimeoutError as exc:
            client.loop_stop()
            raise MQTTConnectionError("Timed out connecting to MQTT broker") from exc
        except MQTTConnectionError:
            client.loop_stop()
            raise

    async def disconnect(self, timeout: float = 5.0) -> None:
        """Gracefully disconnect from the broker."""

        if not self._client:
            return

        assert self._disconnect_event is not None

        self._client.disconnect()

        try:
            await asyncio.wait_for(self._disconnect_event.wait(), timeout=timeout)
        finally:
            self._client.loop_stop()
            self._client = None
        self._connected = False

    def publish(
        self, topic: str, payload: bytes | str, qos: int = 1, retain: bool = False
    ) -> None:
        if not self._client:
            raise RuntimeError("MQTT client not connected")

        info = self._client.publish(topic, payload, qos=qos, retain=retain)
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            raise MQTTConnectionError(f"Publish failed with rc={info.rc}")

    def register_disconnect_handler(self, handler: Callable[[Any], None]) -> None:
        self._disconnect_handlers.append(handler)

    def register_connect_handler(self, handler: Callable[[Any], None]) -> None:
        self._connect_handlers.append(handler)

    def is_connected(self) -> bool:
        return self._connected

    def _configure_tls(self, client: mqtt.Client) -> None:
        config = self.config
        client.tls_set(
            ca_certs=str(config.ca_cert) if config.ca_cert else None,
            certfile=str(config.client_cert) if config.client_cert else None,
            keyfile=str(config.client_key) if config.client_key else None,
            cert_reqs=ssl.CERT_NONE if config.ignore_ssl_errors else ssl.CERT_REQUIRED,
        )
        if config.ignore_ssl_errors:
            LOGGER.warning("TLS verification disabled for MQTT broker")
            client.tls_insecure_set(True)

    # ------------------------------------------------------------------
    # Internal callbacks bridging the threaded paho callbacks into asyncio
    # ------------------------------------------------------------------
    def _on_connect(self, client: mqtt.Client, userdata, flags, reason_code, properties) -> None:
        self._last_reason = reason_code
        self._last_connect_failed = reason_code.is_failure
        if not reason_code.is_failure:
            LOGGER.info("Connected to MQTT broker")
            self._connected = True
            self._signal(self._connected_event)
            if self._loop:
                for handler in self._connect_handlers:
                    self._loop.call_soon_threadsafe(handler, reason_code)
        else:
            LOGGER.error("MQTT connection failed: %s", reason_code)
            self._connected = False
            self._signal(self._connected_event)

    def _on_disconnect(
        self, client: mqtt.Client, userdata, flags, reason_code, properties
    ) -> None:
        LOGGER.info("Disconnected from MQTT broker (%s)", reason_code)
        self._connected = False
        self._signal(self._disconnect_event)
        if self._loop:
            for handler in self._disconnect_handlers:
                self._loop.call_soon_threadsafe(handler, reason_code)

    def _signal(self, event: Optional[asyncio.Event]) -> None:
        if event is None:
            return
        if self._loop:
            self._loop.call_soon_threadsafe(event.set)
        else:
            event.set()
