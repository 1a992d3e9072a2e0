"""Phoenix realtime channel session against Astarte AppEngine.

The session owns one websocket and one room (``rooms:<realm>:e2e_test_<id>``).
A background receiver task reads frames, classifies them and routes replies
and push events into two bounded queues. Requests are correlated to replies by
their reference id.
"""

from __future__ import annotations

import asyncio
import contextlib
import itertools
import logging
from typing import Any, Generic, Optional, TypeVar
from urllib.parse import urlencode, urlsplit, urlunsplit

import aiohttp

from .. import constants
from .messages import (
    HEARTBEAT,
    PHX_JOIN,
    PHX_LEAVE,
    ChannelError,
    ChannelProtocolError,
    Event,
    Frame,
    IncomingData,
    PushEvent,
    Reply,
    classify,
)

LOGGER = logging.getLogger(__name__)

E = TypeVar("E", bound=Event)
T = TypeVar("T")


class ChannelConnectionError(ChannelError):
    """Raised when the websocket fails; the session must be rebuilt."""


class ChannelClosedError(ChannelConnectionError):
    """Raised when waiting on a queue whose producer has gone away."""


class ChannelTimeoutError(ChannelError, TimeoutError):
    """Raised when a single receive exceeds the reply window."""


class ChannelStateError(ChannelError):
    """Raised when an operation is attempted in the wrong session state."""


_CLOSED = object()


class InboundQueue(Generic[T]):
    """Bounded FIFO that can be closed by its producer.

    ``put`` suspends while the queue is full. Once closed, consumers drain the
    remaining items and then get :class:`ChannelClosedError`.
    """

    def __init__(self, maxsize: int = constants.DEFAULT_QUEUE_SIZE) -> None:
        self._queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=maxsize)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def qsize(self) -> int:
        return self._queue.qsize()

    async def put(self, item: T) -> None:
        if self._closed:
            raise ChannelClosedError("queue is closed")
        await self._queue.put(item)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        # Wakes a consumer blocked on an empty queue; a full queue is drained first.
        with contextlib.suppress(asyncio.QueueFull):
            self._queue.put_nowait(_CLOSED)

    async def get(self, timeout: float) -> T:
        if self._closed and self._queue.empty():
            raise ChannelClosedError("queue is closed")

        try:
            async with asyncio.timeout(timeout):
                item = await self._queue.get()
        except TimeoutError as exc:
            raise ChannelTimeoutError(f"nothing received within {timeout:.1f}s") from exc

        if item is _CLOSED:
            raise ChannelClosedError("queue is closed")
        return item


class Relay(Generic[T]):
    """Non-blocking hand-off in front of an :class:`InboundQueue`.

    ``push`` never waits. A forwarder task moves items into the bounded queue
    in order and suspends while it is full, so a full queue holds back only
    its own kind of message. After ``close`` the backlog is still delivered
    before the queue is closed.
    """

    def __init__(self, target: InboundQueue[T]) -> None:
        self.target = target
        self._pending: asyncio.Queue[Any] = asyncio.Queue()
        self._task: asyncio.Task[None] = asyncio.create_task(self._forward())

    def push(self, item: T) -> None:
        self._pending.put_nowait(item)

    def close(self) -> None:
        self._pending.put_nowait(_CLOSED)

    def backlog(self) -> int:
        return self._pending.qsize()

    async def wait_closed(self) -> None:
        """Wait until the backlog is delivered and the queue is closed."""

        with contextlib.suppress(asyncio.CancelledError):
            await asyncio.shield(self._task)

    async def aclose(self) -> None:
        """Stop forwarding now, dropping the backlog, and close the queue."""

        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self.target.close()

    async def _forward(self) -> None:
        try:
            while True:
                item = await self._pending.get()
                if item is _CLOSED:
                    return
                await self.target.put(item)
        finally:
            self.target.close()


def build_socket_url(endpoint: str, realm: str, token: str) -> str:
    """Append the Phoenix version, realm and token to the socket URL."""

    parts = urlsplit(endpoint)
    query = urlencode({"vsn": constants.PHOENIX_VSN, "realm": realm, "token": token})
    if parts.query:
        query = f"{parts.query}&{query}"
    return urlunsplit((parts.scheme, parts.netloc, parts.path, query, parts.fragment))


def room_name(realm: str, device_id: str) -> str:
    return f"rooms:{realm}:e2e_test_{device_id}"


class ChannelSession:
    """Client side of an AppEngine room subscription for one device."""

    def __init__(
        self,
        ws: aiohttp.ClientWebSocketResponse,
        *,
        realm: str,
        device_id: str,
        session: Optional[aiohttp.ClientSession] = None,
        cancel: Optional[asyncio.Event] = None,
        reply_timeout: float = constants.DEFAULT_REPLY_TIMEOUT_SECONDS,
        queue_size: int = constants.DEFAULT_QUEUE_SIZE,
        heartbeat_interval: Optional[float] = constants.DEFAULT_HEARTBEAT_INTERVAL_SECONDS,
    ) -> None:
        self.realm = realm
        self.device_id = device_id
        self.room = room_name(realm, device_id)
        self.reply_timeout = reply_timeout

        self._ws = ws
        self._session = session
        self._cancel = cancel or asyncio.Event()
        self._refs = itertools.count(1)
        self._join_ref: Optional[str] = None
        self._joined = False
        self._closed = False

        self._replies: InboundQueue[Reply] = InboundQueue(queue_size)
        self._events: InboundQueue[PushEvent] = InboundQueue(queue_size)
        self._relays = (Relay(self._replies), Relay(self._events))
        self._receiver_task: asyncio.Task[None] = asyncio.create_task(
            receive_loop(ws, *self._relays, self._cancel)
        )
        self._heartbeat_task: Optional[asyncio.Task[None]] = None
        if heartbeat_interval:
            self._heartbeat_task = asyncio.create_task(self._heartbeat_loop(heartbeat_interval))

    @classmethod
    async def connect(
        cls,
        endpoint: str,
        realm: str,
        token: str,
        device_id: str,
        *,
        session: Optional[aiohttp.ClientSession] = None,
        cancel: Optional[asyncio.Event] = None,
        ssl: bool = True,
        **kwargs: Any,
    ) -> "ChannelSession":
        """Open the socket and start the receiver loop.

        When ``session`` is omitted the channel creates and owns one.
        """

        owns_session = session is None
        if session is None:
            session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=None))

        url = build_socket_url(endpoint, realm, token)
        try:
            ws = await session.ws_connect(url, ssl=ssl)
        except (aiohttp.ClientError, OSError) as exc:
            if owns_session:
                await session.close()
            raise ChannelConnectionError(f"couldn't connect to {endpoint}: {exc}") from exc

        LOGGER.info("Connected to AppEngine channel at %s (realm=%s)", endpoint, realm)

        return cls(
            ws,
            realm=realm,
            device_id=device_id,
            session=session if owns_session else None,
            cancel=cancel,
            **kwargs,
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    @property
    def joined(self) -> bool:
        return self._joined

    @property
    def cancel_event(self) -> asyncio.Event:
        return self._cancel

    async def join(self) -> Any:
        """Join the device room; must succeed before watching or receiving events."""

        ref = self._next_ref()
        self._join_ref = ref
        await self._send(Frame(ref, ref, self.room, PHX_JOIN, {}))
        response = await self.await_reply(ref)
        self._joined = True
        LOGGER.info("Joined room %s", self.room)
        return response

    async def watch(self, trigger: Any) -> Any:
        """Install a transient trigger on the room and wait for the ack."""

        self._ensure_joined("watch")
        payload = trigger.to_payload() if hasattr(trigger, "to_payload") else trigger
        ref = await self.push("watch", payload)
        response = await self.await_reply(ref)
        LOGGER.debug("Trigger %s installed", payload.get("name"))
        return response

    async def push(self, event: str, payload: Any) -> str:
        """Send ``event`` on the room and return its reference id."""

        ref = self._next_ref()
        await self._send(Frame(self._join_ref, ref, self.room, event, payload))
        return ref

    async def await_reply(self, ref: str) -> Any:
        """Wait for the reply correlated to ``ref``.

        Replies to other references are discarded. Each receive is bounded by
        ``reply_timeout``.

        Raises:
            ChannelTimeoutError: If a single receive exceeds the window.
            ChannelProtocolError: If the matching reply has an error status.
            ChannelClosedError: If the receiver loop has stopped.
        """

        LOGGER.debug("Waiting for reply to ref %s", ref)
        while True:
            try:
                reply = await self._replies.get(self.reply_timeout)
            except ChannelTimeoutError as exc:
                raise ChannelTimeoutError(f"waiting for reply to ref {ref}") from exc
            except ChannelClosedError as exc:
                raise ChannelClosedError(
                    f"channel closed while waiting for ref {ref}"
                ) from self._receiver_error() or exc

            if reply.reference_id != ref:
                LOGGER.debug("Skipping reply to ref %s", reply.reference_id)
                continue

            if not reply.ok:
                raise ChannelProtocolError(f"channel error for ref {ref}: {reply.response!r}")

            return reply.response

    async def next_event(self, kind: type[E]) -> E:
        """Return the next pushed event of ``kind``, discarding other events."""

        self._ensure_joined("next_event")
        while True:
            try:
                message = await self._events.get(self.reply_timeout)
            except ChannelTimeoutError as exc:
                raise ChannelTimeoutError(f"waiting for {kind.type.value} event") from exc
            except ChannelClosedError as exc:
                raise ChannelClosedError(
                    f"channel closed while waiting for {kind.type.value} event"
                ) from self._receiver_error() or exc

            if isinstance(message.event, kind):
                return message.event

            LOGGER.debug("Skipping %s event", message.event.type.value)

    async def next_data_event(self) -> IncomingData:
        return await self.next_event(IncomingData)

    async def leave(self) -> None:
        """Leave the room, at most once. Failures are only logged."""

        if not self._joined:
            return
        self._joined = False

        try:
            await self.push(PHX_LEAVE, {})
        except Exception as exc:
            LOGGER.error("Failed to leave room %s: %s", self.room, exc)
        else:
            LOGGER.info("Left room %s", self.room)

    async def close(self) -> None:
        """Leave the room, stop background tasks and close the socket."""

        if self._closed:
            return
        self._closed = True

        await self.leave()
        self._cancel.set()

        for task in (self._heartbeat_task, self._receiver_task):
            if task is None:
                continue
            try:
                await asyncio.wait_for(task, timeout=self.reply_timeout)
            except (asyncio.TimeoutError, asyncio.CancelledError):
                pass
            except ChannelError as exc:
                LOGGER.debug("Channel task ended with error: %s", exc)

        for relay in self._relays:
            await relay.aclose()

        await self._ws.close()
        if self._session is not None:
            await self._session.close()
            self._session = None

    async def __aenter__(self) -> "ChannelSession":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _next_ref(self) -> str:
        return str(next(self._refs))

    def _ensure_joined(self, operation: str) -> None:
        if not self._joined:
            raise ChannelStateError(f"{operation} requires joining {self.room} first")

    def _receiver_error(self) -> Optional[BaseException]:
        task = self._receiver_task
        if task.done() and not task.cancelled():
            return task.exception()
        return None

    async def _send(self, frame: Frame) -> None:
        try:
            await self._ws.send_str(frame.encode())
        except (aiohttp.ClientError, ConnectionError, RuntimeError) as exc:
            raise ChannelConnectionError(
                f"couldn't send {frame.event} (ref={frame.ref}) on {frame.topic}: {exc}"
            ) from exc

    async def _heartbeat_loop(self, interval: float) -> None:
        while not self._cancel.is_set():
            try:
                await asyncio.wait_for(self._cancel.wait(), timeout=interval)
                return
            except asyncio.TimeoutError:
                pass

            try:
                await self._send(
                    Frame(None, self._next_ref(), constants.PHOENIX_TOPIC, HEARTBEAT, {})
                )
            except ChannelConnectionError as exc:
                LOGGER.warning("Heartbeat failed: %s", exc)
                return


async def receive_loop(
    ws: aiohttp.ClientWebSocketResponse,
    replies: Relay[Reply],
    events: Relay[PushEvent],
    cancel: asyncio.Event,
) -> None:
    """Read frames until cancelled, routing replies and push events.

    Routing never waits on queue capacity, so a reply is delivered even
    while the event queue is full.

    Raises:
        ChannelConnectionError: If the socket errors or is closed by the server.
    """

    cancel_task = asyncio.ensure_future(cancel.wait())
    receive_task: Optional[asyncio.Future[aiohttp.WSMessage]] = None
    try:
        while True:
            receive_task = asyncio.ensure_future(ws.receive())
            done, _ = await asyncio.wait(
                {cancel_task, receive_task}, return_when=asyncio.FIRST_COMPLETED
            )

            if cancel_task in done:
                receive_task.cancel()
                with contextlib.suppress(asyncio.CancelledError, Exception):
                    await receive_task
                LOGGER.debug("Channel receiver cancelled")
                return

            message = receive_task.result()

            if message.type == aiohttp.WSMsgType.TEXT:
                _route(message.data, replies, events)
            elif message.type == aiohttp.WSMsgType.ERROR:
                error = ws.exception()
                LOGGER.error("Channel receive error: %s", error)
                raise ChannelConnectionError(f"channel receive error: {error}") from error
            elif message.type in (
                aiohttp.WSMsgType.CLOSE,
                aiohttp.WSMsgType.CLOSING,
                aiohttp.WSMsgType.CLOSED,
            ):
                LOGGER.error("Channel socket closed by server (code=%s)", ws.close_code)
                raise ChannelConnectionError(f"socket closed (code={ws.close_code})")
    finally:
        cancel_task.cancel()
        if receive_task is not None and not receive_task.done():
            receive_task.cancel()
        replies.close()
        events.close()


def _route(
    raw: str,
    replies: Relay[Reply],
    events: Relay[PushEvent],
) -> None:
    try:
        message = classify(Frame.decode(raw))
    except ChannelProtocolError as exc:
        LOGGER.warning("Dropping undecodable frame: %s", exc)
        return

    if isinstance(message, Reply):
        if message.topic == constants.PHOENIX_TOPIC:
            return  # heartbeat ack
        replies.push(message)
    elif isinstance(message, PushEvent):
        events.push(message)
    else:
        LOGGER.debug("Ignoring frame: %s", raw)
