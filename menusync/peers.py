"""
Peer Records
============

Per-peer liveness and latency bookkeeping. A record appears when a
connection opens, is refreshed by probe echoes and sync messages, lingers
for a grace window after its connection closes, and is evicted when that
window elapses or when it stops being refreshed.
"""

import logging
import threading
import time
from dataclasses import dataclass, replace
from enum import Enum
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class Direction(str, Enum):
    """Which side initiated the connection backing a record."""
    INCOMING = "incoming"
    OUTGOING = "outgoing"


@dataclass(frozen=True)
class PeerRecord:
    id: str
    direction: Direction
    last_update: float
    latency: float = 0.0            # ms
    disconnected: bool = False
    disconnected_at: Optional[float] = None


class PeerTable:
    """Lock-guarded set of PeerRecords keyed by peer id.

    Records are immutable; every mutation swaps in a new record, so readers
    get consistent snapshots without holding the lock.

    Args:
        linger: Seconds a disconnected record stays before eviction.
        stale:  Seconds a connected record may go without refresh.
        now:    Time source in seconds.
    """

    def __init__(
        self,
        linger: float = 8.0,
        stale: float = 10.0,
        now: Optional[Callable[[], float]] = None,
    ):
        self.linger = linger
        self.stale = stale
        self._now = now or time.time
        self._records: dict[str, PeerRecord] = {}
        self._lock = threading.Lock()

    def opened(self, peer_id: str, direction: Direction) -> PeerRecord:
        """Create (or reset) the record for a freshly opened connection."""
        record = PeerRecord(id=peer_id, direction=direction, last_update=self._now())
        with self._lock:
            self._records[peer_id] = record
        return record

    def touch(self, peer_id: str, latency: Optional[float] = None) -> Optional[PeerRecord]:
        """Refresh ``last_update`` (and latency, if measured) of a live record."""
        with self._lock:
            record = self._records.get(peer_id)
            if record is None or record.disconnected:
                return None
            changes = {"last_update": self._now()}
            if latency is not None:
                changes["latency"] = latency
            record = self._records[peer_id] = replace(record, **changes)
        return record

    def disconnected(self, peer_id: str) -> Optional[PeerRecord]:
        """Mark a record as closed; the linger window starts now."""
        with self._lock:
            record = self._records.get(peer_id)
            if record is None or record.disconnected:
                return record
            record = self._records[peer_id] = replace(
                record, disconnected=True, disconnected_at=self._now()
            )
        return record

    def expired(self) -> list[tuple[PeerRecord, str]]:
        """Remove and return records past their linger or staleness window.

        Returns:
            ``(record, reason)`` pairs, reason being ``"linger"`` or ``"stale"``.
        """
        now = self._now()
        evicted = []
        with self._lock:
            for peer_id, record in list(self._records.items()):
                if record.disconnected:
                    if now - record.disconnected_at >= self.linger:
                        evicted.append((record, "linger"))
                elif now - record.last_update >= self.stale:
                    evicted.append((record, "stale"))
            for record, _ in evicted:
                del self._records[record.id]
        return evicted

    def get(self, peer_id: str) -> Optional[PeerRecord]:
        with self._lock:
            return self._records.get(peer_id)

    def snapshot(self) -> list[PeerRecord]:
        """All records, sorted by peer id."""
        with self._lock:
            return sorted(self._records.values(), key=lambda r: r.id)

    def __contains__(self, peer_id: str) -> bool:
        with self._lock:
            return peer_id in self._records

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)
