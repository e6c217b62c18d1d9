"""
Mesh Node
=========

Wires one peer together: motion clock, directory, transport, connection
manager, latency prober and timing sync, plus the periodic tasks that drive
them. The rendering layer polls ``status()`` (or ``clock.query()``) once per
frame; the node never schedules frames itself.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from .config import NodeConfig
from .connections import ConnectionManager
from .directory import DirectoryClient
from .errors import TransportFailure
from .event_log import EventLog
from .motion_clock import MotionClock
from .peers import PeerRecord, PeerTable
from .prober import LatencyProber
from .protocol import Ping, Pong, decode_message
from .timing_sync import LastSyncRecord, TimingSync
from .transport import Channel, RelayTransport, Transport

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MeshStatus:
    """Everything the rendering layer reads per frame."""
    position: float
    cycle_position: float
    peer_count: int
    total_peers: int
    peer_records: list[PeerRecord]
    last_sync: Optional[LastSyncRecord]
    event_log: list[str]
    latency: float

    def __str__(self) -> str:
        return (
            f"peers={self.peer_count}/{self.total_peers} "
            f"pos={self.position:.2f} cycle={self.cycle_position:.2f} "
            f"lat={self.latency:.0f}ms"
        )


class MeshNode:
    """One display node in the synchronized mesh.

    Args:
        config:    Node settings.
        transport: Channel transport (default: RelayTransport to the broker).
        directory: Directory client (default: DirectoryClient on the directory URL).
        now:       Time source in seconds, shared by every component.
    """

    def __init__(
        self,
        config: NodeConfig,
        transport: Optional[Transport] = None,
        directory: Optional[DirectoryClient] = None,
        now: Optional[Callable[[], float]] = None,
    ):
        self.config = config
        self.peer_id = config.peer_id

        self.clock = MotionClock(velocity=config.initial_velocity, now=now)
        self.events = EventLog(config.event_log_size)
        self.peers = PeerTable(config.linger_window, config.stale_window, now=now)
        self.directory = directory or DirectoryClient(config.directory_url)
        self.transport = transport or RelayTransport(config.broker_url, self.peer_id)

        self.connections = ConnectionManager(
            self.peer_id, self.transport, self.directory, self.peers, self.events,
            connect_timeout=config.connect_timeout, now=now,
        )
        self.prober = LatencyProber(self.connections, self.peers, now=now)
        self.sync = TimingSync(self.peer_id, self.clock, self.connections, self.peers, self.events, now=now)

        self.connections.on_open = self._on_open
        self.connections.on_message = self._on_message
        self._tasks: list[asyncio.Task] = []

    # ---- Rendering-layer surface ---------------------------------------------

    def status(self) -> MeshStatus:
        position = self.clock.query().position
        return MeshStatus(
            position=position,
            cycle_position=position % self.config.cycle_duration,
            peer_count=self.connections.peer_count,
            total_peers=self.connections.total_peers,
            peer_records=self.peers.snapshot(),
            last_sync=self.sync.last_sync,
            event_log=self.events.lines(),
            latency=self.prober.latency,
        )

    # ---- Lifecycle -----------------------------------------------------------

    async def start(self, periodic: bool = True) -> bool:
        """Register with the broker and start accepting peers.

        Args:
            periodic: Also start discovery, revalidation, probing,
                      broadcasting and cleanup timers.

        Returns:
            True if registration succeeded.
        """
        try:
            await self.transport.start()
        except TransportFailure as e:
            logger.error(f"Start failed: {e}")
            return False

        self.events.log(f"Registered with ID: {self.peer_id}")
        self._tasks = [asyncio.create_task(self.connections.accept_loop())]
        if not periodic:
            return True

        cfg = self.config
        self._tasks += [
            asyncio.create_task(self._every(cfg.discovery_interval, self._discover)),
            asyncio.create_task(self._every(cfg.revalidate_interval, self.connections.revalidate, delay=True)),
            asyncio.create_task(self._every(cfg.probe_interval, self.prober.probe, delay=True)),
            asyncio.create_task(self._every(cfg.broadcast_interval, self.sync.broadcast, delay=True)),
            asyncio.create_task(self._every(cfg.cleanup_interval, self.connections.cleanup, delay=True)),
        ]
        return True

    async def close(self):
        """Stop all tasks, freeze the clock and close every connection."""
        logger.info("Closing...")
        for task in self._tasks:
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []

        self.clock.freeze()
        await self.connections.close()
        await self.transport.close()
        await self.directory.close()

    # ---- Periodic passes -----------------------------------------------------

    async def _every(self, interval: float, action: Callable[[], Awaitable], delay: bool = False):
        """Run ``action`` every ``interval`` seconds until cancelled."""
        if delay:
            await asyncio.sleep(interval)
        while True:
            try:
                await action()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"{getattr(action, '__name__', action)} failed: {e}")
            await asyncio.sleep(interval)

    async def _discover(self):
        if not self.transport.connected:
            self.events.log("Disconnected from server, attempting to reconnect...")
            try:
                await self.transport.reconnect()
            except TransportFailure as e:
                logger.warning(f"Reconnect failed: {e}")
                return
            self.events.log(f"Registered with ID: {self.peer_id}")
        await self.connections.discover()

    # ---- Connection callbacks ------------------------------------------------

    async def _on_open(self, peer_id: str, channel: Channel):
        await self.prober.ping(peer_id, channel)
        await self.sync.request(peer_id, channel)

    async def _on_message(self, peer_id: str, channel: Channel, data):
        message = decode_message(data)
        if isinstance(message, (Ping, Pong)):
            await self.prober.handle(peer_id, channel, message)
        else:
            await self.sync.handle(peer_id, channel, message)
