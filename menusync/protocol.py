"""
Mesh Message Protocol
=====================

JSON envelopes exchanged over every open peer channel. Each message is a
flat object with a ``type`` discriminator.

MESSAGES:
  ping            {"type": "ping", "time": <ms>}
  pong            {"type": "pong", "time": <ms echoed from ping>}
  sync-request    {"type": "sync-request"}
  sync-response   {"type": "sync-response", "state": <state>, "peer_id": <id>, "time": <ms>}
  sync-broadcast  {"type": "sync-broadcast", "state": <state>, "peer_id": <id>, "time": <ms>}

  <state> = {"timestamp": <s>, "position": f, "velocity": f, "acceleration": f}
  Any state field may be omitted; omitted fields keep their local value.

Peer ids carry the ``MENUSYNC_`` namespace prefix so that unrelated entries
in a shared directory are ignored.
"""

import math
import random
import string
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union

from .errors import ProtocolViolation
from .motion_clock import ClockState


# =================
# CONSTANTS
# =================

PEER_PREFIX = "MENUSYNC_"
PEER_SUFFIX_LENGTH = 9
_ID_ALPHABET = string.ascii_lowercase + string.digits

STATE_FIELDS = ("position", "velocity", "acceleration")


class MessageType(str, Enum):
    """Message type identifiers (value of the ``type`` field)."""
    PING = "ping"
    PONG = "pong"
    SYNC_REQUEST = "sync-request"
    SYNC_RESPONSE = "sync-response"
    SYNC_BROADCAST = "sync-broadcast"


# ===================
# UTILITY FUNCTIONS
# ===================

def generate_peer_id() -> str:
    """Random namespaced peer id, e.g. ``MENUSYNC_k3j9x0a1b``."""
    suffix = "".join(random.choice(_ID_ALPHABET) for _ in range(PEER_SUFFIX_LENGTH))
    return f"{PEER_PREFIX}{suffix}"


def is_namespaced(peer_id) -> bool:
    return isinstance(peer_id, str) and peer_id.startswith(PEER_PREFIX) and len(peer_id) > len(PEER_PREFIX)


def _number(value, name: str) -> float:
    # bool is an int subclass; reject it explicitly
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ProtocolViolation(f"Field '{name}' must be a number, got {value!r}")
    try:
        number = float(value)
    except OverflowError:
        number = math.inf
    if not math.isfinite(number):
        raise ProtocolViolation(f"Field '{name}' must be finite, got {value!r}")
    return number


def decode_state(obj) -> dict:
    """Validate a carried clock state and return the fields to merge.

    Returns:
        Mapping of the present fields among position/velocity/acceleration.

    Raises:
        ProtocolViolation: Not an object, a non-numeric field, or no field at all.
    """
    if not isinstance(obj, dict):
        raise ProtocolViolation(f"State must be an object, got {type(obj).__name__}")
    fields = {name: _number(obj[name], name) for name in STATE_FIELDS if obj.get(name) is not None}
    if not fields:
        raise ProtocolViolation("State carries no clock fields")
    return fields


# =================
# DATA CLASSES
# =================

@dataclass
class Ping:
    time: int

    type = MessageType.PING

    def encode(self) -> dict:
        return {"type": self.type.value, "time": self.time}


@dataclass
class Pong:
    time: int

    type = MessageType.PONG

    def encode(self) -> dict:
        return {"type": self.type.value, "time": self.time}


@dataclass
class SyncRequest:

    type = MessageType.SYNC_REQUEST

    def encode(self) -> dict:
        return {"type": self.type.value}


@dataclass
class SyncResponse:
    """Queried clock state sent in answer to a sync-request.

    ``fields`` is the subset of state fields to merge on receipt; a locally
    built message carries all three.
    """
    fields: dict
    peer_id: str
    time: int
    timestamp: Optional[float] = None

    type = MessageType.SYNC_RESPONSE

    @classmethod
    def from_state(cls, state: ClockState, peer_id: str, time_ms: int):
        return cls(
            fields={name: getattr(state, name) for name in STATE_FIELDS},
            peer_id=peer_id,
            time=time_ms,
            timestamp=state.timestamp,
        )

    def encode(self) -> dict:
        state = dict(self.fields)
        if self.timestamp is not None:
            state["timestamp"] = self.timestamp
        return {"type": self.type.value, "state": state, "peer_id": self.peer_id, "time": self.time}

    def as_broadcast(self) -> "SyncBroadcast":
        return SyncBroadcast(dict(self.fields), self.peer_id, self.time, self.timestamp)


@dataclass
class SyncBroadcast(SyncResponse):
    """Same payload as SyncResponse; receivers apply it and never relay it."""

    type = MessageType.SYNC_BROADCAST


Message = Union[Ping, Pong, SyncRequest, SyncResponse, SyncBroadcast]


def decode_message(data) -> Message:
    """Decode a received envelope.

    Raises:
        ProtocolViolation: Unknown type or malformed fields.
    """
    if not isinstance(data, dict):
        raise ProtocolViolation(f"Message must be an object, got {type(data).__name__}")

    try:
        msg_type = MessageType(data.get("type"))
    except ValueError:
        raise ProtocolViolation(f"Unknown message type: {data.get('type')!r}") from None

    if msg_type in (MessageType.PING, MessageType.PONG):
        if "time" not in data:
            raise ProtocolViolation(f"{msg_type.value} without 'time'")
        value = data["time"]
        _number(value, "time")
        cls = Ping if msg_type == MessageType.PING else Pong
        # echoed verbatim, so keep the sender's representation
        return cls(time=value)

    if msg_type == MessageType.SYNC_REQUEST:
        return SyncRequest()

    raw_state = data.get("state")
    fields = decode_state(raw_state)
    timestamp = raw_state.get("timestamp")
    peer_id = data.get("peer_id")
    if peer_id is not None and not isinstance(peer_id, str):
        raise ProtocolViolation(f"Field 'peer_id' must be a string, got {peer_id!r}")
    sent = data.get("time")
    cls = SyncResponse if msg_type == MessageType.SYNC_RESPONSE else SyncBroadcast
    return cls(
        fields=fields,
        peer_id=peer_id,
        time=int(_number(sent, "time")) if sent is not None else 0,
        timestamp=_number(timestamp, "timestamp") if timestamp is not None else None,
    )
