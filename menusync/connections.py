"""
Connection Lifecycle Manager
============================

Forms and maintains the peer mesh: one connection per pair of peers, with
no coordinator deciding who dials whom.

Per-peer lifecycle:
    unknown -> pending -> open -> closed-lingering -> removed

Both sides of a pair may dial each other at the same time. When an inbound
attempt arrives from a peer we are already dialing (or connected to
outbound), it is accepted only if ``remote_id <= local_id``; otherwise it is
closed and the remote's acceptance of our own attempt forms the edge. The
surviving connection is therefore outgoing on the lower id and incoming on
the higher id.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from .directory import DirectoryClient
from .errors import ProtocolViolation, TransportFailure
from .event_log import EventLog
from .peers import Direction, PeerTable
from .protocol import is_namespaced
from .transport import Channel, EventKind, Transport

logger = logging.getLogger(__name__)

OpenHandler = Callable[[str, Channel], Awaitable[None]]
MessageHandler = Callable[[str, Channel, object], Awaitable[None]]


@dataclass
class Connection:
    channel: Channel
    direction: Direction
    created: float
    opened: bool = False


class ConnectionTable:
    """Peer id -> Connection, at most one entry per id.

    ``lock`` serializes multi-step changes (check, dial or accept, insert)
    across tasks; single reads need no lock.
    """

    def __init__(self):
        self.lock = asyncio.Lock()
        self._entries: dict[str, Connection] = {}

    def get(self, peer_id: str) -> Optional[Connection]:
        return self._entries.get(peer_id)

    async def put(self, peer_id: str, conn: Connection):
        """Insert ``conn``, closing whatever channel the id had before."""
        old = self._entries.get(peer_id)
        self._entries[peer_id] = conn
        if old is not None and old.channel is not conn.channel:
            await old.channel.close()

    def pop(self, peer_id: str, conn: Optional[Connection] = None) -> Optional[Connection]:
        """Remove the entry; with ``conn`` given, only if it is still current."""
        current = self._entries.get(peer_id)
        if current is None or (conn is not None and current is not conn):
            return None
        return self._entries.pop(peer_id)

    def items(self) -> list[tuple[str, Connection]]:
        return list(self._entries.items())

    def open_items(self) -> list[tuple[str, Connection]]:
        return [(pid, c) for pid, c in self._entries.items() if c.opened and c.channel.open]

    def __contains__(self, peer_id: str) -> bool:
        return peer_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)


class ConnectionManager:
    """Dials, accepts, validates and prunes peer connections.

    Args:
        peer_id:         Local peer id.
        transport:       Channel transport.
        directory:       Directory client used for discovery and validation.
        peers:           PeerTable receiving open/close transitions.
        events:          EventLog for human-readable transitions.
        connect_timeout: Seconds an outbound attempt may stay pending.
        now:             Time source in seconds.
    """

    def __init__(
        self,
        peer_id: str,
        transport: Transport,
        directory: DirectoryClient,
        peers: PeerTable,
        events: EventLog,
        connect_timeout: float = 10.0,
        now: Optional[Callable[[], float]] = None,
    ):
        self.peer_id = peer_id
        self.transport = transport
        self.directory = directory
        self.peers = peers
        self.events = events
        self.connect_timeout = connect_timeout
        self._now = now or time.time

        self.table = ConnectionTable()
        self.discovered: set[str] = set()
        self.on_open: Optional[OpenHandler] = None
        self.on_message: Optional[MessageHandler] = None
        self._tasks: set[asyncio.Task] = set()

    # ---- Properties ----------------------------------------------------------

    @property
    def peer_count(self) -> int:
        """Number of open connections."""
        return len(self.table.open_items())

    @property
    def total_peers(self) -> int:
        """Number of other peers in the latest directory snapshot."""
        return len(self.discovered)

    def open_channels(self, exclude: Optional[str] = None) -> list[tuple[str, Channel]]:
        return [(pid, c.channel) for pid, c in self.table.open_items() if pid != exclude]

    # ---- Discovery -----------------------------------------------------------

    async def discover(self) -> int:
        """Refresh the discovery set and dial every listed peer with no entry.

        Returns:
            Number of outbound attempts issued.
        """
        listed = await self.directory.list_peers()
        listed.discard(self.peer_id)
        new = sorted(pid for pid in listed if pid not in self.table)
        if new:
            self.events.log(f"Found {len(new)} peer(s), connecting...")
        self.discovered = listed

        dialed = 0
        for pid in new:
            if await self._dial(pid):
                dialed += 1
        return dialed

    async def _dial(self, peer_id: str) -> bool:
        async with self.table.lock:
            if peer_id in self.table:
                return False
            try:
                channel = await self.transport.connect(peer_id)
            except TransportFailure as e:
                self.events.log(f"Connect to {peer_id} failed: {e}")
                return False
            conn = Connection(channel, Direction.OUTGOING, created=self._now())
            await self.table.put(peer_id, conn)
        self.events.log(f"Connecting to peer: {peer_id}")
        self._spawn(self._consume(peer_id, conn))
        return True

    # ---- Inbound attempts ----------------------------------------------------

    async def accept_loop(self):
        """Handle inbound attempts as they arrive, forever."""
        while True:
            channel = await self.transport.incoming()
            await self.handle_incoming(channel)

    async def handle_incoming(self, channel: Channel) -> bool:
        """Validate, tie-break and accept (or close) one inbound attempt.

        Returns:
            True if the attempt was accepted.
        """
        remote = channel.peer_id
        if not is_namespaced(remote):
            self.events.log(f"Rejected non-namespaced peer id: {remote!r}")
            await channel.close()
            return False

        if not await self.directory.is_registered(remote):
            self.events.log(f"Rejected unregistered peer: {remote}")
            await channel.close()
            return False

        async with self.table.lock:
            existing = self.table.get(remote)
            if existing is not None and existing.direction == Direction.OUTGOING and not remote <= self.peer_id:
                logger.debug(f"Tie-break: keeping our outbound attempt to {remote}")
                await channel.close()
                return False
            try:
                await channel.accept()
            except TransportFailure as e:
                self.events.log(f"Accept from {remote} failed: {e}")
                await channel.close()
                return False
            conn = Connection(channel, Direction.INCOMING, created=self._now())
            await self.table.put(remote, conn)

        self.events.log(f"Incoming connection from: {remote}")
        self._spawn(self._consume(remote, conn))
        return True

    # ---- Per-channel event stream --------------------------------------------

    async def _consume(self, peer_id: str, conn: Connection):
        """Forward one channel's events to the shared state, until it closes."""
        async for event in conn.channel.events():
            try:
                if event.kind == EventKind.OPEN:
                    await self._on_open(peer_id, conn)
                elif event.kind == EventKind.DATA:
                    await self._on_data(peer_id, conn, event.data)
                elif event.kind == EventKind.ERROR:
                    self.events.log(f"Connection error with {peer_id}: {event.data}")
                elif event.kind == EventKind.CLOSE:
                    await self._on_close(peer_id, conn)
            except TransportFailure as e:
                self.events.log(f"Connection error with {peer_id}: {e}")
                await self.disconnect(peer_id, conn)
            except Exception as e:
                logger.exception(f"Unexpected error handling {event.kind.value} from {peer_id}")
                self.events.log(f"Connection error with {peer_id}: {e!r}")
                await self.disconnect(peer_id, conn)

    async def _on_open(self, peer_id: str, conn: Connection):
        if self.table.get(peer_id) is not conn:
            await conn.channel.close()
            return
        if conn.direction == Direction.OUTGOING and not await self.directory.is_registered(peer_id):
            self.events.log(f"Rejected unregistered peer: {peer_id}")
            self.table.pop(peer_id, conn)
            await conn.channel.close()
            return
        # the registration check may have been overtaken by a replacement
        if self.table.get(peer_id) is not conn or not conn.channel.open:
            return

        conn.opened = True
        self.peers.opened(peer_id, conn.direction)
        self.events.log(f"Connection established with: {peer_id}")
        if self.on_open is not None:
            await self.on_open(peer_id, conn.channel)

    async def _on_data(self, peer_id: str, conn: Connection, data):
        if self.table.get(peer_id) is not conn or not conn.opened or self.on_message is None:
            return
        try:
            await self.on_message(peer_id, conn.channel, data)
        except ProtocolViolation as e:
            self.events.log(f"Protocol violation from {peer_id}: {e}")
            await self.disconnect(peer_id, conn)

    async def _on_close(self, peer_id: str, conn: Connection):
        if self.table.pop(peer_id, conn) is None:
            return
        if conn.opened:
            self.peers.disconnected(peer_id)
            self.events.log(f"Peer disconnected: {peer_id}")
        else:
            self.events.log(f"Connection to {peer_id} closed before opening")

    async def disconnect(self, peer_id: str, conn: Optional[Connection] = None) -> bool:
        """Close a peer's connection from this side and start its linger window.

        Returns:
            False if there was no (matching) entry.
        """
        conn = self.table.pop(peer_id, conn)
        if conn is None:
            return False
        if conn.opened:
            self.peers.disconnected(peer_id)
        await conn.channel.close()
        return True

    # ---- Periodic passes -----------------------------------------------------

    async def revalidate(self) -> list[str]:
        """Close connections to peers the directory no longer lists.

        Returns:
            Ids that were dropped.
        """
        dropped = []
        for peer_id, conn in self.table.open_items():
            if await self.directory.is_registered(peer_id):
                continue
            if await self.disconnect(peer_id, conn):
                self.events.log(f"Peer no longer registered: {peer_id}")
                dropped.append(peer_id)
        return dropped

    async def cleanup(self) -> list[str]:
        """Evict lingering and stale records and expire stuck outbound attempts.

        Returns:
            Ids whose records were removed.
        """
        removed = []
        for record, reason in self.peers.expired():
            removed.append(record.id)
            if reason == "stale":
                conn = self.table.pop(record.id)
                if conn is not None:
                    await conn.channel.close()
                self.events.log(f"Peer timed out: {record.id}")
            else:
                self.events.log(f"Removed peer: {record.id}")

        now = self._now()
        for peer_id, conn in self.table.items():
            if not conn.opened and conn.direction == Direction.OUTGOING and now - conn.created >= self.connect_timeout:
                self.table.pop(peer_id, conn)
                await conn.channel.close()
                self.events.log(f"Connection attempt to {peer_id} timed out")
        return removed

    # ---- Tasks ---------------------------------------------------------------

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def close(self):
        """Close every connection and stop the per-channel consumers."""
        for peer_id, conn in self.table.items():
            self.table.pop(peer_id, conn)
            await conn.channel.close()
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
