"""
Pytest configuration and fixtures for menusync tests.

Most tests run nodes over an in-memory hub that routes channel frames the
same way the relay broker does, with a hand-driven time source, so every
periodic pass can be triggered explicitly.
"""

import asyncio
import contextlib
import sys
from pathlib import Path

import pytest
from aiohttp import web

# Add repo root to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from menusync.config import NodeConfig
from menusync.errors import TransportFailure
from menusync.node import MeshNode
from menusync.protocol import PEER_PREFIX
from menusync.transport import Transport


class FakeClock:
    """Manually advanced time source (seconds)."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.t = start

    def __call__(self) -> float:
        return self.t

    def advance(self, seconds: float):
        self.t += seconds


class MemoryHub:
    """In-process stand-in for the relay broker."""

    def __init__(self):
        self.transports: dict[str, "MemoryTransport"] = {}
        self.frames: list[dict] = []

    def route(self, src: str, frame: dict):
        frame = dict(frame, src=src)
        self.frames.append(frame)
        target = self.transports.get(frame.get("dst"))
        if target is None:
            if frame.get("op") in ("connect", "accept", "data"):
                self.transports[src]._dispatch({"op": "error", "cid": frame.get("cid"), "reason": "unknown-peer"})
            return
        target._dispatch(frame)

    def detach(self, peer_id: str):
        transport = self.transports.pop(peer_id, None)
        if transport is not None:
            transport._drop_all("broker link lost")
        for other in list(self.transports.values()):
            other._dispatch({"op": "gone", "src": peer_id})

    def data_frames(self, src=None, dst=None, msg_type=None) -> list[dict]:
        return [
            f for f in self.frames
            if f["op"] == "data"
            and (src is None or f["src"] == src)
            and (dst is None or f["dst"] == dst)
            and (msg_type is None or f["payload"].get("type") == msg_type)
        ]


class MemoryTransport(Transport):

    def __init__(self, hub: MemoryHub, peer_id: str):
        super().__init__(peer_id)
        self.hub = hub

    @property
    def connected(self) -> bool:
        return self.hub.transports.get(self.peer_id) is self

    async def start(self):
        self.hub.transports[self.peer_id] = self

    async def reconnect(self):
        await self.start()

    async def _send_frame(self, frame: dict):
        if not self.connected:
            raise TransportFailure("hub link is down")
        self.hub.route(self.peer_id, frame)

    async def close(self):
        await super().close()
        if self.connected:
            self.hub.detach(self.peer_id)


class FakeDirectory:
    """Directory listing every hub member unless told otherwise."""

    def __init__(self, hub: MemoryHub = None, ids=None):
        self.hub = hub
        self.ids = set(ids) if ids is not None else None
        self.unregistered: set[str] = set()
        self.down = False
        self.checks: list[str] = []

    def listing(self) -> set[str]:
        ids = self.ids if self.ids is not None else set(self.hub.transports)
        return {pid for pid in ids if pid.startswith(PEER_PREFIX)} - self.unregistered

    async def list_peers(self) -> set[str]:
        return self.listing()

    async def is_registered(self, peer_id: str) -> bool:
        self.checks.append(peer_id)
        return not self.down and peer_id in self.listing()

    async def close(self):
        pass


async def settle(rounds: int = 100):
    """Let every ready task run until the hub goes quiet."""
    for _ in range(rounds):
        await asyncio.sleep(0)


def make_node(peer_id: str, hub: MemoryHub, directory: FakeDirectory, clock: FakeClock, **config) -> MeshNode:
    return MeshNode(
        NodeConfig(peer_id=peer_id, **config),
        transport=MemoryTransport(hub, peer_id),
        directory=directory,
        now=clock,
    )


@contextlib.asynccontextmanager
async def serve(app: web.Application):
    """Run an aiohttp app on a free local port; yields its base URL."""
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, "127.0.0.1", 0)
    await site.start()
    try:
        host, port = runner.addresses[0][:2]
        yield f"http://{host}:{port}"
    finally:
        await runner.cleanup()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def hub():
    return MemoryHub()


@pytest.fixture
def directory(hub):
    return FakeDirectory(hub)
