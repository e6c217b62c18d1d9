"""
Latency Prober
==============

Sends a timestamped ping over every open connection; the remote echoes the
timestamp back in a pong and the round trip becomes the peer's latency.
A lost echo is never retried: the record simply stops being refreshed and
the cleanup pass eventually treats it as stale.
"""

import logging
import time
from typing import Callable, Optional

from .connections import ConnectionManager
from .errors import TransportFailure
from .peers import PeerTable
from .protocol import Ping, Pong
from .transport import Channel

logger = logging.getLogger(__name__)


class LatencyProber:
    """Round-trip probing of open connections.

    Args:
        connections: Source of the currently open channels.
        peers:       PeerTable receiving latency and refresh times.
        now:         Time source in seconds.
    """

    def __init__(
        self,
        connections: ConnectionManager,
        peers: PeerTable,
        now: Optional[Callable[[], float]] = None,
    ):
        self.connections = connections
        self.peers = peers
        self._now = now or time.time
        self.latency: float = 0.0   # ms, most recent echo from any peer

    def _now_ms(self) -> int:
        return int(self._now() * 1000)

    async def ping(self, peer_id: str, channel: Channel):
        """Send one probe. A failed send is left for the staleness sweep."""
        try:
            await channel.send(Ping(time=self._now_ms()).encode())
        except TransportFailure as e:
            logger.debug(f"Ping to {peer_id} failed: {e}")

    async def probe(self) -> int:
        """Ping every open connection.

        Returns:
            Number of probes sent.
        """
        channels = self.connections.open_channels()
        for peer_id, channel in channels:
            await self.ping(peer_id, channel)
        return len(channels)

    async def handle(self, peer_id: str, channel: Channel, message):
        """Answer a ping, or record the latency carried back by a pong."""
        if isinstance(message, Ping):
            await channel.send(Pong(time=message.time).encode())
        elif isinstance(message, Pong):
            latency = self._now_ms() - message.time
            self.latency = latency
            self.peers.touch(peer_id, latency=latency)
            logger.debug(f"Latency to {peer_id}: {latency}ms")
