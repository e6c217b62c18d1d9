"""
Error Types
===========

Exceptions raised inside the mesh. None of them is fatal to a node: each is
caught at the task boundary that owns the failing operation, logged, and
corrected on the next periodic pass.
"""


class MenuSyncError(Exception):
    """Base class for all mesh errors."""


class TransportFailure(MenuSyncError):
    """Connect, send or receive failed on a peer channel or the broker link."""


class DirectoryUnavailable(MenuSyncError):
    """The peer directory could not be reached or returned garbage."""


class ProtocolViolation(MenuSyncError):
    """A peer sent a malformed message or is not allowed to connect."""


__all__ = [
    "MenuSyncError",
    "TransportFailure",
    "DirectoryUnavailable",
    "ProtocolViolation",
]
