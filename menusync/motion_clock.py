"""
Shared Motion Clock
===================

A position that advances on its own from a stored reference point using
constant-acceleration kinematics. Every node holds one; peers keep them
aligned by exchanging queried states (see timing_sync).

Extrapolation from the reference ``(t0, p0, v0, a0)`` to instant ``t``:
    dt       = t - t0
    position = p0 + v0 * dt + 0.5 * a0 * dt^2
    velocity = v0 + a0 * dt
"""

import logging
import threading
import time
from dataclasses import dataclass, asdict
from typing import Callable, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ClockState:
    """Snapshot of the motion clock as of ``timestamp`` (seconds, epoch)."""
    timestamp: float
    position: float = 0.0
    velocity: float = 0.0
    acceleration: float = 0.0

    def at(self, instant: float) -> "ClockState":
        """Extrapolate this state to another instant."""
        dt = instant - self.timestamp
        return ClockState(
            timestamp=instant,
            position=self.position + self.velocity * dt + 0.5 * self.acceleration * dt * dt,
            velocity=self.velocity + self.acceleration * dt,
            acceleration=self.acceleration,
        )

    def to_dict(self) -> dict:
        return asdict(self)


class MotionClock:
    """Thread-safe motion clock with partial-merge updates.

    Args:
        position:     Initial position.
        velocity:     Initial velocity (position units per second).
        acceleration: Initial acceleration.
        now:          Time source in seconds; defaults to ``time.time``.
    """

    def __init__(
        self,
        position: float = 0.0,
        velocity: float = 1.0,
        acceleration: float = 0.0,
        now: Optional[Callable[[], float]] = None,
    ):
        self._now = now or time.time
        self._lock = threading.Lock()
        self._state = ClockState(self._now(), position, velocity, acceleration)

    def query(self) -> ClockState:
        """Current state, extrapolated to the query instant."""
        with self._lock:
            state = self._state
        return state.at(self._now())

    def update(
        self,
        position: Optional[float] = None,
        velocity: Optional[float] = None,
        acceleration: Optional[float] = None,
    ) -> ClockState:
        """Merge new values into the clock and rebase it at the current instant.

        Omitted fields keep the value they have *now* (extrapolated), so the
        timeline does not jump for the fields that were not given.

        Returns:
            The committed state.
        """
        with self._lock:
            current = self._state.at(self._now())
            self._state = ClockState(
                timestamp=current.timestamp,
                position=current.position if position is None else float(position),
                velocity=current.velocity if velocity is None else float(velocity),
                acceleration=current.acceleration if acceleration is None else float(acceleration),
            )
            committed = self._state
        logger.debug(
            f"Clock update: pos={committed.position:.3f} vel={committed.velocity:.3f} "
            f"acc={committed.acceleration:.3f}"
        )
        return committed

    def freeze(self) -> ClockState:
        """Stop the clock where it is (velocity and acceleration zeroed)."""
        return self.update(velocity=0.0, acceleration=0.0)
