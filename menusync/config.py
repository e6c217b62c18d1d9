"""
Node Configuration
==================

Intervals and endpoints of a mesh node. All durations are in seconds.
"""

from dataclasses import dataclass, field
from typing import Optional

from .protocol import generate_peer_id, is_namespaced

DEFAULT_SERVER = "http://localhost:9000"


@dataclass
class NodeConfig:
    """Settings for one MeshNode.

    ``directory_url`` and ``broker_url`` default to ``server_url``: the
    bundled broker serves both the ``/peers`` listing and the ``/ws`` relay.
    """

    server_url: str = DEFAULT_SERVER
    peer_id: str = field(default_factory=generate_peer_id)
    directory_url: Optional[str] = None
    broker_url: Optional[str] = None

    # Animation
    cycle_duration: float = 27.0
    initial_velocity: float = 1.0

    # Periodic passes
    discovery_interval: float = 5.0
    revalidate_interval: float = 10.0
    probe_interval: float = 2.0
    broadcast_interval: float = 5.0
    cleanup_interval: float = 1.0

    # Windows
    linger_window: float = 8.0
    stale_window: float = 10.0
    connect_timeout: float = 10.0

    event_log_size: int = 5

    def __post_init__(self):
        if not is_namespaced(self.peer_id):
            raise ValueError(f"Peer id must carry the MENUSYNC_ prefix: {self.peer_id!r}")
        if self.cycle_duration <= 0:
            raise ValueError(f"cycle_duration must be positive, got {self.cycle_duration}")
        self.directory_url = self.directory_url or self.server_url
        self.broker_url = self.broker_url or self.server_url
