"""
Directory Client
================

Polls the peer directory (``GET /peers`` returning a JSON array of ids) for
the namespaced peers currently registered.

Failure policy:
    list_peers     fail-soft   - keep the last known snapshot
    is_registered  fail-closed - an unreachable directory means "not registered"
"""

import asyncio
import logging
from typing import Optional

import aiohttp

from .errors import DirectoryUnavailable
from .protocol import PEER_PREFIX

logger = logging.getLogger(__name__)


class DirectoryClient:
    """HTTP client for the peer directory.

    Args:
        url:     Base URL of the directory (``/peers`` is appended).
        prefix:  Namespace prefix that ids must carry to be listed.
        timeout: Per-request timeout in seconds.
    """

    def __init__(self, url: str, prefix: str = PEER_PREFIX, timeout: float = 5.0):
        self.url = url.rstrip("/") + "/peers"
        self.prefix = prefix
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._session: Optional[aiohttp.ClientSession] = None
        self._known: set[str] = set()

    @property
    def known(self) -> set[str]:
        """Last successful snapshot."""
        return set(self._known)

    async def _fetch(self) -> set[str]:
        """GET the directory listing, filtered to this namespace.

        Raises:
            DirectoryUnavailable: Network error, bad status or non-list body.
        """
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        try:
            async with self._session.get(self.url) as resp:
                resp.raise_for_status()
                body = await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            raise DirectoryUnavailable(f"{self.url}: {e}") from e

        if not isinstance(body, list):
            raise DirectoryUnavailable(f"{self.url}: expected a JSON array, got {type(body).__name__}")
        return {pid for pid in body if isinstance(pid, str) and pid.startswith(self.prefix)}

    async def list_peers(self) -> set[str]:
        """Current namespaced peer ids; the previous snapshot on failure."""
        try:
            self._known = await self._fetch()
        except DirectoryUnavailable as e:
            logger.warning(f"Directory listing failed, keeping {len(self._known)} known peer(s): {e}")
        return set(self._known)

    async def is_registered(self, peer_id: str) -> bool:
        """True only if the directory is reachable and lists ``peer_id``."""
        try:
            return peer_id in await self._fetch()
        except DirectoryUnavailable as e:
            logger.warning(f"Directory check for {peer_id} failed, treating as unregistered: {e}")
            return False

    async def close(self):
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None
