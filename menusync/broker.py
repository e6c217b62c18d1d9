"""
Relay Broker
============

Minimal signaling service for local meshes: lists registered peer ids and
relays channel frames between them over WebSocket.

Endpoints:
    GET /peers        JSON array of registered ids
    GET /ws?id=<id>   WebSocket; registers <id> for the lifetime of the socket

Usage:
    python -m menusync.broker [--host 0.0.0.0] [--port 9000]
"""

import argparse
import json
import logging
import sys

from aiohttp import web, WSMsgType

logger = logging.getLogger(__name__)

PEERS = web.AppKey("peers", dict)

# ops that expect the destination to exist; the sender is told when it doesn't
_ROUTED_OPS = ("connect", "accept", "data")


async def list_peers(request: web.Request) -> web.Response:
    return web.json_response(sorted(request.app[PEERS]))


async def relay(request: web.Request) -> web.WebSocketResponse:
    """Register the caller and forward its frames until it disconnects."""
    peers = request.app[PEERS]
    peer_id = request.query.get("id")

    ws = web.WebSocketResponse(heartbeat=25.0)
    await ws.prepare(request)

    if not peer_id or peer_id in peers:
        await ws.send_json({"op": "error", "reason": "id-taken" if peer_id else "missing-id"})
        await ws.close()
        return ws

    peers[peer_id] = ws
    logger.info(f"Registered: {peer_id} ({len(peers)} online)")
    await ws.send_json({"op": "welcome", "id": peer_id})

    try:
        async for msg in ws:
            if msg.type == WSMsgType.TEXT:
                try:
                    frame = json.loads(msg.data)
                except ValueError:
                    continue
                if isinstance(frame, dict):
                    await _route(peers, peer_id, ws, frame)
            elif msg.type == WSMsgType.ERROR:
                logger.error(f"Socket error from {peer_id}: {ws.exception()}")
                break
    finally:
        if peers.get(peer_id) is ws:
            del peers[peer_id]
        logger.info(f"Unregistered: {peer_id} ({len(peers)} online)")
        for other in list(peers.values()):
            await _send(other, {"op": "gone", "src": peer_id})

    return ws


async def _route(peers: dict, src: str, ws: web.WebSocketResponse, frame: dict):
    frame["src"] = src
    target = peers.get(frame.get("dst"))
    if target is None:
        if frame.get("op") in _ROUTED_OPS:
            await _send(ws, {"op": "error", "cid": frame.get("cid"), "reason": "unknown-peer"})
        return
    await _send(target, frame)


async def _send(ws: web.WebSocketResponse, frame: dict):
    if ws.closed:
        return
    try:
        await ws.send_json(frame)
    except ConnectionError as e:
        logger.debug(f"Relay send failed: {e}")


def create_app() -> web.Application:
    app = web.Application()
    app[PEERS] = {}
    app.router.add_get("/peers", list_peers)
    app.router.add_get("/ws", relay)
    return app


def main():
    parser = argparse.ArgumentParser(description="MenuSync relay broker")
    parser.add_argument("--host", default="0.0.0.0")
    parser.add_argument("--port", "-p", type=int, default=9000)
    parser.add_argument("--verbose", "-v", action="store_true")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )
    web.run_app(create_app(), host=args.host, port=args.port)


if __name__ == "__main__":
    main()
