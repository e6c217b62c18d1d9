"""
MenuSync Package
================

Peer mesh that keeps display nodes on a shared animation clock, with no
coordinator beyond a peer directory.

Modules:
    motion_clock  - Extrapolating position/velocity/acceleration clock
    protocol      - JSON message envelopes and peer id namespace
    directory     - Peer directory client
    transport     - Peer channels over the relay broker
    peers         - Per-peer latency/liveness records
    connections   - Connection lifecycle and tie-break
    prober        - Ping/pong latency probing
    timing_sync   - Clock sync request/response/broadcast
    event_log     - Recent status lines
    node          - Node orchestration
    broker        - Minimal directory + relay service
"""

from .errors import MenuSyncError, TransportFailure, DirectoryUnavailable, ProtocolViolation
from .motion_clock import ClockState, MotionClock
from .protocol import (
    MessageType,
    Ping,
    Pong,
    SyncRequest,
    SyncResponse,
    SyncBroadcast,
    PEER_PREFIX,
    decode_message,
    generate_peer_id,
)
from .peers import Direction, PeerRecord, PeerTable
from .event_log import EventLog
from .directory import DirectoryClient
from .transport import Channel, ChannelEvent, EventKind, Transport, RelayTransport
from .connections import ConnectionManager, ConnectionTable
from .prober import LatencyProber
from .timing_sync import LastSyncRecord, TimingSync
from .config import NodeConfig
from .node import MeshNode, MeshStatus

__all__ = [
    "MenuSyncError",
    "TransportFailure",
    "DirectoryUnavailable",
    "ProtocolViolation",
    "ClockState",
    "MotionClock",
    "MessageType",
    "Ping",
    "Pong",
    "SyncRequest",
    "SyncResponse",
    "SyncBroadcast",
    "PEER_PREFIX",
    "decode_message",
    "generate_peer_id",
    "Direction",
    "PeerRecord",
    "PeerTable",
    "EventLog",
    "DirectoryClient",
    "Channel",
    "ChannelEvent",
    "EventKind",
    "Transport",
    "RelayTransport",
    "ConnectionManager",
    "ConnectionTable",
    "LatencyProber",
    "LastSyncRecord",
    "TimingSync",
    "NodeConfig",
    "MeshNode",
    "MeshStatus",
]
