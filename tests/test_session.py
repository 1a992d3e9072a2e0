"""Tests for the realtime channel session against a fake Phoenix socket."""

import asyncio
import json
from urllib.parse import parse_qs, urlsplit

import aiohttp
import pytest

from astarte_e2e.channel import (
    ChannelClosedError,
    ChannelConnectionError,
    ChannelProtocolError,
    ChannelSession,
    ChannelStateError,
    ChannelTimeoutError,
    InboundQueue,
    IncomingData,
    Relay,
    build_socket_url,
    receive_loop,
    register_triggers,
    room_name,
)
from astarte_e2e.channel.messages import DeviceConnected, DeviceDisconnected

REALM = "test"
DEVICE_ID = "device-1"
ROOM = room_name(REALM, DEVICE_ID)


async def _connect(phoenix, **kwargs) -> ChannelSession:
    options = {"reply_timeout": 0.5, "heartbeat_interval": None}
    options.update(kwargs)
    return await ChannelSession.connect(phoenix.url, REALM, "jwt-token", DEVICE_ID, **options)


def _incoming(path: str, value=1) -> dict:
    return {
        "type": "incoming_data",
        "interface": "org.astarte-platform.e2e.DeviceDatastream",
        "path": path,
        "value": value,
    }


def test_build_socket_url_appends_query():
    url = build_socket_url("wss://api.example.com/appengine/v1/socket/websocket", "test", "abc")
    parts = urlsplit(url)

    assert parts.scheme == "wss"
    assert parts.path == "/appengine/v1/socket/websocket"
    assert parse_qs(parts.query) == {"vsn": ["2.0.0"], "realm": ["test"], "token": ["abc"]}


def test_room_name():
    assert room_name("test", "f0VMRgIBAQAAAAAAAAAAAA") == "rooms:test:e2e_test_f0VMRgIBAQAAAAAAAAAAAA"


@pytest.mark.asyncio
async def test_inbound_queue_drains_before_reporting_close():
    queue: InboundQueue[int] = InboundQueue(2)
    await queue.put(1)
    queue.close()

    assert await queue.get(0.1) == 1
    with pytest.raises(ChannelClosedError):
        await queue.get(0.1)
    with pytest.raises(ChannelClosedError):
        await queue.put(2)


@pytest.mark.asyncio
async def test_inbound_queue_get_times_out():
    queue: InboundQueue[int] = InboundQueue(2)

    with pytest.raises(ChannelTimeoutError) as excinfo:
        await queue.get(0.05)

    assert isinstance(excinfo.value, TimeoutError)


@pytest.mark.asyncio
async def test_inbound_queue_close_wakes_blocked_consumer():
    queue: InboundQueue[int] = InboundQueue(2)
    consumer = asyncio.create_task(queue.get(1.0))
    await asyncio.sleep(0)

    queue.close()

    with pytest.raises(ChannelClosedError):
        await consumer


@pytest.mark.asyncio
async def test_inbound_queue_put_suspends_until_consumer_makes_room():
    queue: InboundQueue[int] = InboundQueue(2)

    async def produce() -> None:
        for item in (1, 2, 3):
            await queue.put(item)

    producer = asyncio.create_task(produce())
    await asyncio.sleep(0.01)

    assert not producer.done()
    assert queue.qsize() == 2

    assert [await queue.get(0.1) for _ in range(3)] == [1, 2, 3]
    await asyncio.wait_for(producer, timeout=1.0)


@pytest.mark.asyncio
async def test_relay_push_never_blocks_and_keeps_order():
    queue: InboundQueue[int] = InboundQueue(2)
    relay: Relay[int] = Relay(queue)

    for item in range(5):
        relay.push(item)
    relay.close()
    await asyncio.sleep(0.01)

    assert queue.qsize() == 2
    assert not queue.closed

    assert [await queue.get(0.1) for _ in range(5)] == [0, 1, 2, 3, 4]
    await relay.wait_closed()
    assert queue.closed
    with pytest.raises(ChannelClosedError):
        await queue.get(0.1)


@pytest.mark.asyncio
async def test_join_sends_phx_join_on_room(phoenix):
    channel = await _connect(phoenix)
    try:
        await channel.join()

        assert channel.joined
        assert phoenix.query == {"vsn": "2.0.0", "realm": REALM, "token": "jwt-token"}
        join_ref, ref, topic, event, payload = phoenix.frames("phx_join")[0]
        assert join_ref == ref == "1"
        assert topic == ROOM
        assert payload == {}
    finally:
        await channel.close()


@pytest.mark.asyncio
async def test_operations_require_join(phoenix):
    channel = await _connect(phoenix)
    try:
        with pytest.raises(ChannelStateError):
            await channel.watch({"name": "t"})
        with pytest.raises(ChannelStateError):
            await channel.next_data_event()
    finally:
        await channel.close()

    assert phoenix.frames("watch") == []


@pytest.mark.asyncio
async def test_register_triggers_joins_and_watches_in_order(phoenix):
    channel = await _connect(phoenix)
    try:
        triggers = await register_triggers(channel)
    finally:
        await channel.close()

    watches = phoenix.frames("watch")
    assert [frame[4]["name"] for frame in watches] == [
        f"connectiontrigger-{DEVICE_ID}",
        f"disconnectiontrigger-{DEVICE_ID}",
        f"errortrigger-{DEVICE_ID}",
        f"datatrigger-{DEVICE_ID}",
    ]
    assert [trigger.name for trigger in triggers] == [frame[4]["name"] for frame in watches]
    assert all(frame[0] == "1" and frame[2] == ROOM for frame in watches)
    assert watches[3][4]["simple_trigger"] == {
        "type": "data_trigger",
        "on": "incoming_data",
        "device_id": DEVICE_ID,
        "interface_name": "*",
        "match_path": "/*",
        "value_match_operator": "*",
    }


@pytest.mark.asyncio
async def test_await_reply_times_out_without_reply(phoenix):
    phoenix.replies.pop("watch")
    channel = await _connect(phoenix, reply_timeout=0.1)
    try:
        await channel.join()
        with pytest.raises(ChannelTimeoutError):
            await channel.watch({"name": "never-acked"})
    finally:
        await channel.close()


@pytest.mark.asyncio
async def test_error_reply_raises_protocol_error(phoenix):
    phoenix.replies["watch"] = "error"
    channel = await _connect(phoenix)
    try:
        await channel.join()
        with pytest.raises(ChannelProtocolError):
            await channel.watch({"name": "rejected"})
    finally:
        await channel.close()


@pytest.mark.asyncio
async def test_await_reply_discards_other_refs(phoenix):
    phoenix.replies.pop("watch")
    channel = await _connect(phoenix)
    try:
        await channel.join()
        await phoenix.send_raw(
            json.dumps(["1", "99", ROOM, "phx_reply", {"status": "ok", "response": {"stale": True}}])
        )
        ref = await channel.push("watch", {"name": "t"})
        await phoenix.send_raw(
            json.dumps(["1", ref, ROOM, "phx_reply", {"status": "ok", "response": {"ref": ref}}])
        )

        assert await channel.await_reply(ref) == {"ref": ref}
    finally:
        await channel.close()


@pytest.mark.asyncio
async def test_next_data_event_skips_other_events(phoenix):
    channel = await _connect(phoenix)
    try:
        await channel.join()
        await phoenix.push_event(ROOM, {"type": "device_connected", "device_ip_address": "1.2.3.4"})
        await phoenix.push_event(ROOM, _incoming("/integer_endpoint", 1))

        event = await channel.next_data_event()

        assert event == IncomingData(
            "org.astarte-platform.e2e.DeviceDatastream", "/integer_endpoint", 1
        )
    finally:
        await channel.close()


@pytest.mark.asyncio
async def test_next_event_returns_requested_variant(phoenix):
    channel = await _connect(phoenix)
    try:
        await channel.join()
        await phoenix.push_event(ROOM, {"type": "device_connected", "device_ip_address": "1.2.3.4"})

        event = await channel.next_event(DeviceConnected)

        assert event.device_ip_address == "1.2.3.4"
    finally:
        await channel.close()


@pytest.mark.asyncio
async def test_undecodable_frames_are_skipped(phoenix):
    channel = await _connect(phoenix)
    try:
        await channel.join()
        await phoenix.send_raw("definitely not a frame")
        await phoenix.push_event(ROOM, {"type": "incoming_data"})
        await phoenix.push_event(ROOM, _incoming("/boolean_endpoint", True))

        event = await channel.next_data_event()

        assert event.path == "/boolean_endpoint"
        assert event.value is True
    finally:
        await channel.close()


@pytest.mark.asyncio
async def test_server_close_fails_pending_waits(phoenix):
    channel = await _connect(phoenix)
    try:
        await channel.join()
        await phoenix.close_sockets()

        with pytest.raises(ChannelClosedError) as excinfo:
            await channel.next_data_event()
        assert isinstance(excinfo.value.__cause__, ChannelConnectionError)

        with pytest.raises(ChannelClosedError):
            await channel.await_reply("42")
    finally:
        await channel.close()


@pytest.mark.asyncio
async def test_close_leaves_room_once(phoenix):
    channel = await _connect(phoenix)
    await channel.join()

    await channel.close()
    await channel.close()
    await channel.leave()

    await phoenix.wait_for(lambda: len(phoenix.frames("phx_leave")) == 1)
    await asyncio.sleep(0.05)
    leaves = phoenix.frames("phx_leave")
    assert len(leaves) == 1
    assert leaves[0][0] == "1"
    assert leaves[0][2] == ROOM
    assert channel.cancel_event.is_set()


@pytest.mark.asyncio
async def test_close_without_join_sends_no_leave(phoenix):
    channel = await _connect(phoenix)

    await channel.close()
    await asyncio.sleep(0.05)

    assert phoenix.frames("phx_leave") == []


@pytest.mark.asyncio
async def test_heartbeat_replies_do_not_fill_reply_queue(phoenix):
    channel = await _connect(phoenix, heartbeat_interval=0.02, queue_size=2)
    try:
        await channel.join()
        await phoenix.wait_for(lambda: len(phoenix.frames("heartbeat")) >= 4)

        heartbeat = phoenix.frames("heartbeat")[0]
        assert heartbeat[0] is None
        assert heartbeat[2] == "phoenix"

        # The queue is tiny; heartbeat acks must not block a real reply.
        await channel.watch({"name": "after-heartbeats"})
    finally:
        await channel.close()


@pytest.mark.asyncio
async def test_full_event_queue_does_not_hold_back_replies(phoenix):
    channel = await _connect(phoenix, queue_size=2)
    try:
        await channel.join()
        for _ in range(3):
            await phoenix.push_event(ROOM, {"type": "device_disconnected"})

        await channel.watch({"name": "while-events-pending"})

        for _ in range(3):
            await channel.next_event(DeviceDisconnected)
    finally:
        await channel.close()


@pytest.mark.asyncio
async def test_connect_failure_raises_connection_error(unused_tcp_port):
    with pytest.raises(ChannelConnectionError):
        await ChannelSession.connect(
            f"ws://127.0.0.1:{unused_tcp_port}/v1/socket/websocket",
            REALM,
            "jwt",
            DEVICE_ID,
        )


class _ScriptedSocket:
    def __init__(self, messages) -> None:
        self._messages = list(messages)
        self.close_code = 1000

    async def receive(self):
        if self._messages:
            return self._messages.pop(0)
        await asyncio.Event().wait()

    def exception(self):
        return None


@pytest.mark.asyncio
async def test_receive_loop_routes_and_closes_queues():
    reply = json.dumps(["1", "1", ROOM, "phx_reply", {"status": "ok", "response": {}}])
    ws = _ScriptedSocket(
        [
            aiohttp.WSMessage(aiohttp.WSMsgType.TEXT, reply, None),
            aiohttp.WSMessage(aiohttp.WSMsgType.CLOSE, 1000, ""),
        ]
    )
    replies: InboundQueue = InboundQueue(4)
    events: InboundQueue = InboundQueue(4)
    relays = (Relay(replies), Relay(events))

    with pytest.raises(ChannelConnectionError):
        await receive_loop(ws, *relays, asyncio.Event())

    assert (await replies.get(0.1)).reference_id == "1"
    for relay in relays:
        await relay.wait_closed()
    assert replies.closed and events.closed
    with pytest.raises(ChannelClosedError):
        await events.get(0.1)


@pytest.mark.asyncio
async def test_receive_loop_delivers_everything_past_queue_capacity():
    frames = [
        json.dumps([None, None, ROOM, "new_event", {
            "device_id": DEVICE_ID,
            "timestamp": "2021-09-29T17:46:48.000Z",
            "event": _incoming(f"/p{index}", index),
        }])
        for index in range(5)
    ]
    frames.append(json.dumps(["1", "7", ROOM, "phx_reply", {"status": "ok", "response": {}}]))
    ws = _ScriptedSocket([aiohttp.WSMessage(aiohttp.WSMsgType.TEXT, raw, None) for raw in frames])
    replies: InboundQueue = InboundQueue(2)
    events: InboundQueue = InboundQueue(2)
    relays = (Relay(replies), Relay(events))
    cancel = asyncio.Event()
    task = asyncio.create_task(receive_loop(ws, *relays, cancel))

    # The reply behind five events arrives while the event queue is full.
    assert (await replies.get(0.5)).reference_id == "7"
    assert events.qsize() == 2
    assert not task.done()

    received = [await events.get(0.5) for _ in range(5)]
    assert [message.event.path for message in received] == [f"/p{index}" for index in range(5)]

    cancel.set()
    await asyncio.wait_for(task, timeout=1.0)
    for relay in relays:
        await relay.wait_closed()
    assert replies.closed and events.closed


@pytest.mark.asyncio
async def test_receive_loop_stops_on_cancel():
    replies: InboundQueue = InboundQueue(4)
    events: InboundQueue = InboundQueue(4)
    relays = (Relay(replies), Relay(events))
    cancel = asyncio.Event()
    task = asyncio.create_task(receive_loop(_ScriptedSocket([]), *relays, cancel))
    await asyncio.sleep(0)

    cancel.set()
    await asyncio.wait_for(task, timeout=1.0)

    for relay in relays:
        await relay.wait_closed()
    assert replies.closed and events.closed
