import asyncio
import json
from datetime import datetime, timezone
from types import SimpleNamespace
from typing import Any, Callable, Optional

import paho.mqtt.client as mqtt
import pytest
import pytest_asyncio
from aiohttp import WSMsgType, web
from aiohttp.test_utils import TestServer
from paho.mqtt.packettypes import PacketTypes
from paho.mqtt.reasoncodes import ReasonCode

from astarte_e2e.channel import IncomingData
from astarte_e2e.values import encode

SOCKET_PATH = "/v1/socket/websocket"


def connack(name: str = "Success") -> ReasonCode:
    return ReasonCode(PacketTypes.CONNACK, name)


def disconnect_code(name: str = "Normal disconnection") -> ReasonCode:
    return ReasonCode(PacketTypes.DISCONNECT, name)


class PhoenixServer:
    """Scriptable Phoenix socket recording every frame it receives."""

    def __init__(self) -> None:
        self.received: list[list[Any]] = []
        self.sockets: list[web.WebSocketResponse] = []
        self.query: dict[str, str] = {}
        # Events answered automatically, with the status to answer.
        self.replies: dict[str, str] = {"phx_join": "ok", "watch": "ok", "heartbeat": "ok"}
        self.url = ""

    async def handler(self, request: web.Request) -> web.WebSocketResponse:
        self.query = dict(request.query)
        ws = web.WebSocketResponse()
        await ws.prepare(request)
        self.sockets.append(ws)

        async for message in ws:
            if message.type != WSMsgType.TEXT:
                break
            frame = json.loads(message.data)
            self.received.append(frame)
            join_ref, ref, topic, event, _ = frame
            status = self.replies.get(event)
            if status is not None:
                await ws.send_str(
                    json.dumps(
                        [join_ref, ref, topic, "phx_reply", {"status": status, "response": {}}]
                    )
                )
        return ws

    def frames(self, event: str) -> list[list[Any]]:
        return [frame for frame in self.received if frame[3] == event]

    async def wait_for(self, predicate: Callable[[], bool], timeout: float = 2.0) -> None:
        async with asyncio.timeout(timeout):
            while not predicate():
                await asyncio.sleep(0.01)

    async def send_raw(self, raw: str) -> None:
        await self.sockets[-1].send_str(raw)

    async def push_event(
        self,
        topic: str,
        event: dict[str, Any],
        *,
        device_id: str = "device-1",
        timestamp: str = "2021-09-29T17:46:48.000Z",
    ) -> None:
        payload = {"device_id": device_id, "timestamp": timestamp, "event": event}
        await self.send_raw(json.dumps([None, None, topic, "new_event", payload]))

    async def close_sockets(self) -> None:
        for ws in self.sockets:
            if not ws.closed:
                await ws.close()


@pytest_asyncio.fixture
async def phoenix():
    server = PhoenixServer()
    app = web.Application()
    app.router.add_get(SOCKET_PATH, server.handler)

    async with TestServer(app) as test_server:
        server.url = str(test_server.make_url(SOCKET_PATH)).replace("http", "ws", 1)
        yield server
        await server.close_sockets()


class FakeMqttClient:
    """Minimal fake paho-mqtt client for testing."""

    def __init__(
        self,
        loop: asyncio.AbstractEventLoop,
        events: dict,
        *args: Any,
        connect_reason: Optional[ReasonCode] = None,
        publish_rc: int = mqtt.MQTT_ERR_SUCCESS,
        client_id: str = "",
        **unused: Any,
    ) -> None:
        self._loop = loop
        self._events = events
        self._connect_reason = connect_reason or connack()
        self._publish_rc = publish_rc

        events["client_args"] = args
        events["client_id"] = client_id

        self.on_connect = None
        self.on_disconnect = None

    # paho interface -------------------------------------------------
    def enable_logger(self, logger):
        self._events.setdefault("logger_enabled", True)

    def tls_set(self, ca_certs=None, certfile=None, keyfile=None, cert_reqs=None, **kwargs):
        self._events["tls"] = (ca_certs, certfile, keyfile, cert_reqs)

    def tls_insecure_set(self, value):
        self._events["tls_insecure"] = value

    def connect_async(self, host, port, keepalive):
        self._events["connect_args"] = (host, port, keepalive)
        if self.on_connect:
            self._loop.call_soon(
                self.on_connect, self, None, None, self._connect_reason, None
            )

    def loop_start(self):
        self._events["loop_start"] = self._events.get("loop_start", 0) + 1

    def loop_stop(self):
        self._events["loop_stop"] = self._events.get("loop_stop", 0) + 1

    def disconnect(self):
        self._events["disconnect_called"] = True
        if self.on_disconnect:
            self._loop.call_soon(
                self.on_disconnect, self, None, None, disconnect_code(), None
            )

    def publish(self, topic, payload=None, qos=0, retain=False, properties=None):
        self._events.setdefault("published", []).append((topic, payload, qos, retain))
        return SimpleNamespace(rc=self._publish_rc)


@pytest.fixture
def fake_mqtt(monkeypatch):
    """Patch paho's client class; returns the dict the fake records into."""

    events: dict = {}
    options: dict = {}

    def factory(*args, **kwargs):
        return FakeMqttClient(asyncio.get_running_loop(), events, *args, **options, **kwargs)

    monkeypatch.setattr("astarte_e2e.adapters.mqtt.mqtt.Client", factory)
    events["options"] = options
    return events


class FakeChannel:
    """Stands in for a joined ChannelSession, fed by an echoing device."""

    def __init__(self) -> None:
        self.events: asyncio.Queue[Any] = asyncio.Queue()

    async def next_data_event(self) -> IncomingData:
        item = await self.events.get()
        if isinstance(item, BaseException):
            raise item
        return item


class EchoDevice:
    """Device transport that reflects each sent value back as an incoming_data event.

    ``mutate`` may rewrite the (interface, path, wire value) triple before it is
    pushed, to simulate a misbehaving platform.
    """

    def __init__(self, channel: FakeChannel, mutate=None) -> None:
        self.channel = channel
        self.mutate = mutate
        self.sent: list[tuple[str, str, Any, datetime]] = []
        self.extended: list[list[str]] = []
        self.removed: list[list[str]] = []

    async def send_individual(self, interface, path, value, timestamp):
        self.sent.append((interface, path, value, timestamp))
        triple = (interface, path, encode(value))
        if self.mutate is not None:
            triple = self.mutate(*triple)
        if isinstance(triple, BaseException):
            self.channel.events.put_nowait(triple)
            return
        # Round-trip through JSON like the channel does.
        wire = json.loads(json.dumps(triple[2]))
        self.channel.events.put_nowait(IncomingData(triple[0], triple[1], wire))

    async def extend_interfaces(self, interfaces):
        self.extended.append(sorted(interface.name for interface in interfaces))

    async def remove_interfaces(self, names):
        self.removed.append(sorted(names))


def fixed_clock() -> datetime:
    return datetime(2024, 1, 1, tzinfo=timezone.utc)
