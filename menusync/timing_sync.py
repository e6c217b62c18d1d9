"""
Timing Synchronization Protocol
===============================

Keeps the shared motion clock aligned across the mesh.

  sync-request    sent once by each side right after a connection opens;
                  answered with a sync-response carrying the responder's
                  currently queried clock state.
  sync-response   applied to the local clock, then relayed once as a
                  sync-broadcast to every other open connection.
  sync-broadcast  applied to the local clock. Never relayed further.

Relaying only responses lets a fresh joiner's bootstrap reach the
responder's neighbours without flooding the mesh. A periodic broadcast of
the local state to all neighbours bounds drift between connected nodes.
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

from .connections import ConnectionManager
from .errors import TransportFailure
from .event_log import EventLog
from .motion_clock import MotionClock
from .peers import PeerTable
from .protocol import SyncBroadcast, SyncRequest, SyncResponse
from .transport import Channel

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LastSyncRecord:
    """Most recently applied external clock update (observability only)."""
    timestamp: float
    source_peer_id: str
    position: float


class TimingSync:
    """Request/response/broadcast handling for the motion clock.

    Args:
        peer_id:     Local peer id, stamped on outgoing states.
        clock:       The process-wide MotionClock.
        connections: Source of the currently open channels.
        peers:       PeerTable refreshed by every sync message.
        events:      EventLog for applied syncs.
        now:         Time source in seconds.
    """

    def __init__(
        self,
        peer_id: str,
        clock: MotionClock,
        connections: ConnectionManager,
        peers: PeerTable,
        events: EventLog,
        now: Optional[Callable[[], float]] = None,
    ):
        self.peer_id = peer_id
        self.clock = clock
        self.connections = connections
        self.peers = peers
        self.events = events
        self._now = now or time.time
        self.last_sync: Optional[LastSyncRecord] = None

    def _now_ms(self) -> int:
        return int(self._now() * 1000)

    async def request(self, peer_id: str, channel: Channel):
        await channel.send(SyncRequest().encode())

    async def handle(self, peer_id: str, channel: Channel, message):
        if isinstance(message, SyncBroadcast):
            self._apply(peer_id, message)
        elif isinstance(message, SyncResponse):
            self._apply(peer_id, message)
            await self._relay(peer_id, message)
        elif isinstance(message, SyncRequest):
            response = SyncResponse.from_state(self.clock.query(), self.peer_id, self._now_ms())
            await channel.send(response.encode())

    def _apply(self, peer_id: str, message: SyncResponse):
        state = self.clock.update(**message.fields)
        source = message.peer_id or peer_id
        self.last_sync = LastSyncRecord(self._now(), source, state.position)
        self.peers.touch(peer_id)
        self.events.log(f"Synchronized timing with peer: {source}")

    async def _relay(self, source_peer_id: str, message: SyncResponse) -> int:
        """Forward a response as a broadcast to everyone but its sender."""
        broadcast = message.as_broadcast().encode()
        targets = self.connections.open_channels(exclude=source_peer_id)
        for peer_id, channel in targets:
            await self._send(peer_id, channel, broadcast)
        return len(targets)

    async def broadcast(self) -> int:
        """Send the current clock state to every open connection.

        Returns:
            Number of connections the state was sent to.
        """
        targets = self.connections.open_channels()
        if not targets:
            return 0
        message = SyncBroadcast.from_state(self.clock.query(), self.peer_id, self._now_ms()).encode()
        for peer_id, channel in targets:
            await self._send(peer_id, channel, message)
        return len(targets)

    async def _send(self, peer_id: str, channel: Channel, message: dict):
        # one broken neighbour must not stop the fan-out
        try:
            await channel.send(message)
        except TransportFailure as e:
            logger.debug(f"Sync send to {peer_id} failed: {e}")
