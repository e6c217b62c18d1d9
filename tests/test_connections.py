"""
Tests for the connection lifecycle manager.

Nodes talk over the in-memory hub from conftest; periodic passes are
invoked by hand and ``settle()`` lets the per-channel tasks catch up.
"""

import asyncio
import math

import pytest

from conftest import FakeDirectory, MemoryTransport, make_node, settle
from menusync.peers import Direction

A = "MENUSYNC_aaa"
B = "MENUSYNC_bbb"
C = "MENUSYNC_ccc"


def run(coro):
    return asyncio.run(coro)


class TestDiscovery:

    def test_single_outbound_connect_to_other_peer(self, hub, clock):
        """Directory lists aaa and bbb; bbb dials aaa exactly once."""

        async def scenario():
            directory = FakeDirectory(ids=[A, B, "OTHERAPP_zzz"])
            node = make_node(B, hub, directory, clock)
            await node.start(periodic=False)
            # aaa is listed but not on the hub yet, so nothing can open
            hub.transports[A] = MemoryTransport(hub, A)

            assert await node.connections.discover() == 1
            assert await node.connections.discover() == 0
            connects = [f for f in hub.frames if f["op"] == "connect"]
            assert [(f["src"], f["dst"]) for f in connects] == [(B, A)]
            assert node.connections.total_peers == 1
            await node.close()

        run(scenario())

    def test_accepts_inbound_from_lower_id(self, hub, clock):
        """bbb accepts aaa's attempt even while dialing aaa itself."""

        async def scenario():
            directory = FakeDirectory(ids=[A, B])
            node = make_node(B, hub, directory, clock)
            await node.start(periodic=False)
            remote = MemoryTransport(hub, A)
            await remote.start()

            await node.connections.discover()
            outbound = await remote.incoming()      # bbb's attempt, left pending
            channel = await remote.connect(B)
            await settle()

            assert channel.open
            conn = node.connections.table.get(A)
            assert conn.direction == Direction.INCOMING
            assert conn.opened
            assert outbound.closed                  # replaced by the accepted one
            await node.close()

        run(scenario())


class TestTieBreak:

    def test_mutual_dial_leaves_one_edge(self, hub, directory, clock):
        """Both sides dial at once; the lower id ends up outgoing."""

        async def scenario():
            a = make_node(A, hub, directory, clock)
            b = make_node(B, hub, directory, clock)
            await a.start(periodic=False)
            await b.start(periodic=False)

            await a.connections.discover()
            await b.connections.discover()
            await settle()

            conn_a = a.connections.table.get(B)
            conn_b = b.connections.table.get(A)
            assert conn_a.direction == Direction.OUTGOING
            assert conn_b.direction == Direction.INCOMING
            assert conn_a.opened and conn_b.opened
            assert a.connections.peer_count == 1
            assert b.connections.peer_count == 1
            assert a.peers.get(B).direction == Direction.OUTGOING
            assert b.peers.get(A).direction == Direction.INCOMING

            # the surviving channels are the two ends of the same edge
            assert conn_a.channel.channel_id == conn_b.channel.channel_id
            assert not a.peers.get(B).disconnected
            assert not b.peers.get(A).disconnected

            await a.close()
            await b.close()

        run(scenario())

    def test_mutual_dial_other_order(self, hub, directory, clock):

        async def scenario():
            a = make_node(A, hub, directory, clock)
            b = make_node(B, hub, directory, clock)
            await a.start(periodic=False)
            await b.start(periodic=False)

            await b.connections.discover()
            await a.connections.discover()
            await settle()

            assert a.connections.table.get(B).direction == Direction.OUTGOING
            assert b.connections.table.get(A).direction == Direction.INCOMING
            assert len(a.connections.open_channels()) == 1
            assert len(b.connections.open_channels()) == 1

            await a.close()
            await b.close()

        run(scenario())

    def test_rejects_inbound_from_higher_id_while_dialing(self, hub, clock):

        async def scenario():
            directory = FakeDirectory(ids=[A, B])
            node = make_node(A, hub, directory, clock)
            await node.start(periodic=False)
            remote = MemoryTransport(hub, B)
            await remote.start()

            await node.connections.discover()
            channel = await remote.connect(A)
            await settle()

            assert channel.closed
            assert node.connections.table.get(B).direction == Direction.OUTGOING
            await node.close()

        run(scenario())


class TestValidation:

    def test_unregistered_inbound_rejected(self, hub, clock):

        async def scenario():
            directory = FakeDirectory(ids=[A])
            node = make_node(A, hub, directory, clock)
            await node.start(periodic=False)
            remote = MemoryTransport(hub, C)
            await remote.start()

            channel = await remote.connect(A)
            await settle()

            assert channel.closed
            assert C not in node.connections.table
            assert node.peers.get(C) is None
            assert "Rejected unregistered peer: MENUSYNC_ccc" in node.events.lines()
            await node.close()

        run(scenario())

    def test_non_namespaced_inbound_rejected(self, hub, directory, clock):

        async def scenario():
            node = make_node(A, hub, directory, clock)
            await node.start(periodic=False)
            remote = MemoryTransport(hub, "OTHERAPP_1")
            await remote.start()

            channel = await remote.connect(A)
            await settle()

            assert channel.closed
            assert directory.checks == []
            assert "Rejected non-namespaced peer id: 'OTHERAPP_1'" in node.events.lines()
            await node.close()

        run(scenario())

    def test_unregistered_outbound_closed_on_open(self, hub, clock):

        async def scenario():
            directory = FakeDirectory(ids=[A, B])
            node = make_node(B, hub, directory, clock)
            await node.start(periodic=False)
            remote = MemoryTransport(hub, A)
            await remote.start()

            await node.connections.discover()
            directory.unregistered.add(A)
            attempt = await remote.incoming()
            await attempt.accept()
            await settle()

            assert attempt.closed
            assert A not in node.connections.table
            assert node.peers.get(A) is None
            await node.close()

        run(scenario())

    def test_revalidation_closes_unregistered_peer(self, hub, directory, clock):
        """Dropped from the directory: closed locally, disconnected in the same pass."""

        async def scenario():
            a = make_node(A, hub, directory, clock)
            b = make_node(B, hub, directory, clock)
            await a.start(periodic=False)
            await b.start(periodic=False)
            await a.connections.discover()
            await settle()
            channel = a.connections.table.get(B).channel

            directory.unregistered.add(B)
            dropped = await a.connections.revalidate()

            assert dropped == [B]
            assert channel.closed
            assert a.peers.get(B).disconnected is True
            assert a.peers.get(B).disconnected_at == clock.t
            assert B not in a.connections.table

            await settle()
            assert b.peers.get(A).disconnected is True

            await a.close()
            await b.close()

        run(scenario())


    def test_directory_outage_drops_open_peers(self, hub, directory, clock):
        """An unreachable directory counts as unregistered at revalidation."""

        async def scenario():
            a = make_node(A, hub, directory, clock)
            b = make_node(B, hub, directory, clock)
            await a.start(periodic=False)
            await b.start(periodic=False)
            await a.connections.discover()
            await settle()
            channel = a.connections.table.get(B).channel

            directory.down = True
            assert await a.connections.revalidate() == [B]
            assert channel.closed
            assert a.peers.get(B).disconnected is True
            assert f"Peer no longer registered: {B}" in a.events.lines()

            await a.close()
            await b.close()

        run(scenario())


class TestClosing:

    def test_close_lingers_then_removed(self, hub, directory, clock):

        async def scenario():
            a = make_node(A, hub, directory, clock)
            b = make_node(B, hub, directory, clock)
            await a.start(periodic=False)
            await b.start(periodic=False)
            await a.connections.discover()
            await settle()

            t0 = clock.t
            await b.connections.table.get(A).channel.close()
            await settle()

            record = a.peers.get(B)
            assert record.disconnected and record.disconnected_at == t0
            assert "Peer disconnected: MENUSYNC_bbb" in a.events.lines()

            clock.t = t0 + 7.999
            assert await a.connections.cleanup() == []
            clock.t = t0 + 8.0
            assert await a.connections.cleanup() == [B]
            assert a.peers.get(B) is None

            await a.close()
            await b.close()

        run(scenario())

    def test_stale_record_evicted_and_channel_closed(self, hub, directory, clock):

        async def scenario():
            a = make_node(A, hub, directory, clock)
            b = make_node(B, hub, directory, clock)
            await a.start(periodic=False)
            await b.start(periodic=False)
            await a.connections.discover()
            await settle()
            channel = a.connections.table.get(B).channel

            clock.advance(10.0)
            assert await a.connections.cleanup() == [B]
            assert channel.closed
            assert f"Peer timed out: {B}" in a.events.lines()
            assert B not in a.connections.table
            await settle()
            assert a.peers.get(B) is None

            # next discovery pass reconnects
            await a.connections.discover()
            await settle()
            assert a.connections.table.get(B).opened

            await a.close()
            await b.close()

        run(scenario())

    def test_pending_attempt_times_out(self, hub, clock):

        async def scenario():
            directory = FakeDirectory(ids=[A, B])
            node = make_node(B, hub, directory, clock, connect_timeout=10.0)
            await node.start(periodic=False)
            remote = MemoryTransport(hub, A)
            await remote.start()

            await node.connections.discover()
            attempt = await remote.incoming()       # never accepted
            clock.advance(10.0)
            await node.connections.cleanup()
            await settle()

            assert A not in node.connections.table
            assert attempt.closed
            assert await node.connections.discover() == 1
            await node.close()

        run(scenario())

    def test_reconnect_replaces_old_channel(self, hub, directory, clock):

        async def scenario():
            node = make_node(B, hub, directory, clock)
            await node.start(periodic=False)
            remote = MemoryTransport(hub, A)
            await remote.start()

            first = await remote.connect(B)
            await settle()
            second = await remote.connect(B)
            await settle()

            assert first.closed
            assert second.open
            assert node.connections.table.get(A).channel.channel_id == second.channel_id
            assert node.peers.get(A).disconnected is False
            await node.close()

        run(scenario())

    def test_protocol_violation_closes_connection(self, hub, directory, clock):

        async def scenario():
            node = make_node(B, hub, directory, clock)
            await node.start(periodic=False)
            remote = MemoryTransport(hub, A)
            await remote.start()

            channel = await remote.connect(B)
            await settle()
            await channel.send({"type": "teleport"})
            await settle()

            assert channel.closed
            assert node.peers.get(A).disconnected is True
            assert any("Protocol violation" in line for line in node.events.lines())
            await node.close()

        run(scenario())

    @pytest.mark.parametrize("payload", [
        {"type": "sync-broadcast", "state": {"position": 1.0}, "time": math.inf},
        {"type": "sync-broadcast", "state": {"position": math.nan}, "time": 1},
        {"type": "ping", "time": -math.inf},
    ])
    def test_non_finite_numbers_close_connection(self, hub, directory, clock, payload):
        """Infinity and NaN never reach the clock; the sender is cut off."""

        async def scenario():
            node = make_node(B, hub, directory, clock)
            await node.start(periodic=False)
            remote = MemoryTransport(hub, A)
            await remote.start()

            channel = await remote.connect(B)
            await settle()
            before = node.clock.query().position
            await channel.send(payload)
            await settle()

            assert channel.closed
            assert A not in node.connections.table
            assert node.peers.get(A).disconnected is True
            assert node.clock.query().position == before
            assert any("Protocol violation from MENUSYNC_aaa" in line for line in node.events.lines())
            await node.close()

        run(scenario())

    def test_handler_error_closes_connection(self, hub, directory, clock):
        """A failing message handler drops the peer instead of ending its consumer silently."""

        async def scenario():
            node = make_node(B, hub, directory, clock)
            await node.start(periodic=False)
            remote = MemoryTransport(hub, A)
            await remote.start()

            async def broken(peer_id, channel, data):
                raise OverflowError("cannot convert float infinity to integer")

            channel = await remote.connect(B)
            await settle()
            node.connections.on_message = broken
            await channel.send({"type": "ping", "time": 1})
            await settle()

            assert channel.closed
            assert A not in node.connections.table
            assert node.peers.get(A).disconnected is True
            assert any(line.startswith("Connection error with MENUSYNC_aaa") for line in node.events.lines())
            assert node.connections._tasks == set()
            await node.close()

        run(scenario())

    def test_broker_loss_marks_peers_disconnected(self, hub, directory, clock):

        async def scenario():
            a = make_node(A, hub, directory, clock)
            b = make_node(B, hub, directory, clock)
            await a.start(periodic=False)
            await b.start(periodic=False)
            await a.connections.discover()
            await settle()

            hub.detach(A)
            await settle()
            assert a.peers.get(B).disconnected is True
            assert b.peers.get(A).disconnected is True
            assert not a.transport.connected

            await a._discover()
            await settle()
            assert a.transport.connected
            assert a.connections.table.get(B).opened

            await a.close()
            await b.close()

        run(scenario())
