"""
Entry point for `python -m menusync`.

Usage:
    python -m menusync [--server http://localhost:9000] [--peer-id MENUSYNC_xxx]
"""

import asyncio
import argparse
import logging
import signal
import sys

from .config import DEFAULT_SERVER, NodeConfig
from .node import MeshNode

logger = logging.getLogger("MenuSync")


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="MenuSync - synchronized display node")
    parser.add_argument("--server", "-s", default=DEFAULT_SERVER, help="Directory/broker base URL")
    parser.add_argument("--peer-id", default=None, help="Peer id (default: random MENUSYNC_ id)")
    parser.add_argument("--status-interval", type=float, default=5.0)
    parser.add_argument("--verbose", "-v", action="store_true")
    return parser.parse_args(argv)


async def run(argv=None):
    args = parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )

    overrides = {"peer_id": args.peer_id} if args.peer_id else {}
    config = NodeConfig(server_url=args.server, **overrides)

    print(f"Server:  {config.server_url}")
    print(f"Peer ID: {config.peer_id}\n")

    node = MeshNode(config)

    shutdown = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, shutdown.set)

    try:
        if await node.start():
            print("Registered. Joining mesh...\n")

            async def status_printer():
                while not shutdown.is_set():
                    await asyncio.sleep(args.status_interval)
                    logger.info(f"Status: {node.status()}")

            task = asyncio.create_task(status_printer())
            await shutdown.wait()
            task.cancel()
        else:
            print("Registration failed")
            return 1
    finally:
        await node.close()

    return 0


def main():
    try:
        sys.exit(asyncio.run(run()))
    except KeyboardInterrupt:
        sys.exit(0)
    except ValueError as e:
        print(f"Invalid configuration: {e}")
        sys.exit(2)


if __name__ == "__main__":
    main()
