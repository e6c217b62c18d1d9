"""
Peer Transport
==============

Full-duplex, ordered message channels between two peers, addressed by peer
id. Every channel exposes its lifecycle as a single stream of events
(open / data / close / error) meant to be consumed by exactly one task.

Channels are multiplexed over one link to a signaling broker. Frames on the
link are JSON objects:

    {"op": "connect", "dst": <id>, "cid": <channel id>}
    {"op": "accept",  "dst": <id>, "cid": ...}
    {"op": "data",    "dst": <id>, "cid": ..., "payload": {...}}
    {"op": "close",   "dst": <id>, "cid": ...}

The broker stamps ``src`` on every frame it forwards, answers frames for an
unknown ``dst`` with ``{"op": "error", "cid", "reason"}`` and announces a
vanished peer to everyone with ``{"op": "gone", "src": <id>}``.
"""

import asyncio
import json
import logging
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterator, Optional

import aiohttp

from .errors import TransportFailure
from .peers import Direction

logger = logging.getLogger(__name__)


class EventKind(str, Enum):
    OPEN = "open"
    DATA = "data"
    CLOSE = "close"
    ERROR = "error"


@dataclass
class ChannelEvent:
    kind: EventKind
    data: Any = None


class Channel:
    """One peer-to-peer message channel.

    Created by a Transport, either by ``Transport.connect`` (outgoing) or
    for an inbound attempt handed out by ``Transport.incoming`` (incoming).
    An incoming channel only opens once ``accept`` is called.
    """

    def __init__(self, transport: "Transport", peer_id: str, channel_id: str, direction: Direction):
        self.peer_id = peer_id
        self.channel_id = channel_id
        self.direction = direction
        self.open = False
        self.closed = False
        self._transport = transport
        self._events: asyncio.Queue = asyncio.Queue()

    def __repr__(self) -> str:
        state = "closed" if self.closed else "open" if self.open else "pending"
        return f"<Channel {self.direction.value} {self.peer_id} {self.channel_id} {state}>"

    # ---- Consumer side -------------------------------------------------------

    async def events(self) -> AsyncIterator[ChannelEvent]:
        """Yield events until (and including) the close event."""
        while True:
            event = await self._events.get()
            yield event
            if event.kind == EventKind.CLOSE:
                return

    async def send(self, message: dict):
        """Send a JSON-serializable message.

        Raises:
            TransportFailure: Channel not open or the link is down.
        """
        if not self.open:
            raise TransportFailure(f"Channel to {self.peer_id} is not open")
        await self._transport._send_frame(self._frame("data", payload=message))

    async def accept(self):
        """Accept an inbound attempt; the remote side sees the channel open."""
        if self.direction != Direction.INCOMING or self.open or self.closed:
            raise TransportFailure(f"Cannot accept {self!r}")
        # open before the frame goes out; the remote may answer immediately
        self._opened()
        try:
            await self._transport._send_frame(self._frame("accept"))
        except TransportFailure:
            self._finish()
            raise

    async def close(self):
        """Close locally and notify the remote side. Idempotent."""
        if self.closed:
            return
        self._finish()
        try:
            await self._transport._send_frame(self._frame("close"))
        except TransportFailure as e:
            logger.debug(f"Close notice to {self.peer_id} not delivered: {e}")

    # ---- Transport side ------------------------------------------------------

    def _frame(self, op: str, **extra) -> dict:
        return {"op": op, "dst": self.peer_id, "cid": self.channel_id, **extra}

    def _opened(self):
        if self.open or self.closed:
            return
        self.open = True
        self._events.put_nowait(ChannelEvent(EventKind.OPEN))

    def _received(self, payload):
        if self.open:
            self._events.put_nowait(ChannelEvent(EventKind.DATA, payload))

    def _failed(self, error: Exception):
        if not self.closed:
            self._events.put_nowait(ChannelEvent(EventKind.ERROR, error))

    def _finish(self):
        if self.closed:
            return
        self.closed = True
        self.open = False
        self._transport._forget(self)
        self._events.put_nowait(ChannelEvent(EventKind.CLOSE))


class Transport:
    """Channel multiplexer over a link to the signaling broker.

    Subclasses own the link: ``start`` brings it up, ``_send_frame`` writes a
    frame, and every frame read from the link goes to ``_dispatch``.
    """

    def __init__(self, peer_id: str):
        self.peer_id = peer_id
        self._channels: dict[str, Channel] = {}
        self._incoming: asyncio.Queue = asyncio.Queue()

    @property
    def connected(self) -> bool:
        raise NotImplementedError

    async def start(self):
        raise NotImplementedError

    async def reconnect(self):
        raise NotImplementedError

    async def _send_frame(self, frame: dict):
        raise NotImplementedError

    async def connect(self, peer_id: str) -> Channel:
        """Start an outbound attempt; the channel emits OPEN once accepted.

        Raises:
            TransportFailure: The connect frame could not be sent.
        """
        channel = Channel(self, peer_id, uuid.uuid4().hex[:12], Direction.OUTGOING)
        self._channels[channel.channel_id] = channel
        try:
            await self._send_frame(channel._frame("connect"))
        except TransportFailure:
            self._forget(channel)
            raise
        return channel

    async def incoming(self) -> Channel:
        """Wait for the next inbound attempt (not yet accepted)."""
        return await self._incoming.get()

    def _forget(self, channel: Channel):
        if self._channels.get(channel.channel_id) is channel:
            del self._channels[channel.channel_id]

    def _dispatch(self, frame: dict):
        """Route one frame read from the link."""
        op = frame.get("op")
        src = frame.get("src")

        if op == "connect":
            if not isinstance(src, str) or not frame.get("cid"):
                logger.debug(f"Malformed connect frame: {frame}")
                return
            channel = Channel(self, src, str(frame["cid"]), Direction.INCOMING)
            self._channels[channel.channel_id] = channel
            self._incoming.put_nowait(channel)
            return

        if op == "gone":
            for channel in [c for c in self._channels.values() if c.peer_id == src]:
                channel._finish()
            return

        channel = self._channels.get(frame.get("cid"))
        if channel is None:
            logger.debug(f"Frame for unknown channel: {frame}")
            return

        if op == "accept":
            channel._opened()
        elif op == "data":
            channel._received(frame.get("payload"))
        elif op == "close":
            channel._finish()
        elif op == "error":
            channel._failed(TransportFailure(frame.get("reason", "unknown error")))
            channel._finish()
        else:
            logger.debug(f"Unknown frame op: {op!r}")

    def _drop_all(self, reason: str):
        """Close every channel after the link went away."""
        for channel in list(self._channels.values()):
            channel._failed(TransportFailure(reason))
            channel._finish()

    async def close(self):
        for channel in list(self._channels.values()):
            await channel.close()


class RelayTransport(Transport):
    """Transport over an aiohttp WebSocket to the relay broker.

    Args:
        url:       Base URL of the broker (http(s) or ws(s)); ``/ws`` is appended.
        peer_id:   Id to register under.
        heartbeat: WebSocket ping interval in seconds.
    """

    def __init__(self, url: str, peer_id: str, heartbeat: float = 25.0):
        super().__init__(peer_id)
        base = url.rstrip("/")
        if base.startswith("http"):
            base = "ws" + base[len("http"):]
        self.url = base + "/ws"
        self._heartbeat = heartbeat
        self._session: Optional[aiohttp.ClientSession] = None
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self._recv_task: Optional[asyncio.Task] = None
        self._closing = False

    @property
    def connected(self) -> bool:
        return self._ws is not None and not self._ws.closed

    async def start(self):
        """Connect to the broker and register ``peer_id``.

        Raises:
            TransportFailure: Broker unreachable or registration refused.
        """
        self._closing = False
        try:
            if self._session is None or self._session.closed:
                self._session = aiohttp.ClientSession()
            self._ws = await self._session.ws_connect(
                self.url, params={"id": self.peer_id}, heartbeat=self._heartbeat
            )

            # Wait for welcome message
            msg = await asyncio.wait_for(self._ws.receive(), timeout=5.0)
            data = json.loads(msg.data) if msg.type == aiohttp.WSMsgType.TEXT else {}
            if data.get("op") != "welcome":
                raise TransportFailure(f"Registration refused: {data.get('reason', msg.type)}")
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            await self._close_link()
            raise TransportFailure(f"Broker connect failed: {e}") from e
        except TransportFailure:
            await self._close_link()
            raise

        logger.info(f"Registered with broker as {self.peer_id}")
        self._recv_task = asyncio.create_task(self._recv_loop())

    async def reconnect(self):
        await self._close_link()
        await self.start()

    async def _recv_loop(self):
        """Read frames until the broker link closes."""
        try:
            async for msg in self._ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    try:
                        frame = json.loads(msg.data)
                    except ValueError:
                        logger.debug(f"Non-JSON frame ignored: {msg.data[:80]!r}")
                        continue
                    if isinstance(frame, dict):
                        self._dispatch(frame)
                elif msg.type in (aiohttp.WSMsgType.CLOSE, aiohttp.WSMsgType.CLOSED, aiohttp.WSMsgType.ERROR):
                    break
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Broker recv error: {e}")
        finally:
            if not self._closing:
                logger.warning("Broker link lost")
            self._drop_all("broker link lost")

    async def _send_frame(self, frame: dict):
        if not self.connected:
            raise TransportFailure("Broker link is down")
        try:
            await self._ws.send_json(frame)
        except (ConnectionError, RuntimeError, aiohttp.ClientError) as e:
            raise TransportFailure(f"Send failed: {e}") from e

    async def _close_link(self):
        self._closing = True
        task, self._recv_task = self._recv_task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        if self._ws is not None and not self._ws.closed:
            await self._ws.close()
        self._ws = None

    async def close(self):
        """Close all channels, then the broker link and HTTP session."""
        await super().close()
        await self._close_link()
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None
