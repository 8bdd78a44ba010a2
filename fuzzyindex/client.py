"""
Matcher Client - Control channel to the running matcher.

The matcher listens on a loopback port. Two operations are used:

- GET /           -> {"matches": [{"text": "<path>"}, ...]}
- POST / change-query:<text>

Every request carries the `x-api-key` header generated by the supervisor.
"""

import asyncio
import logging
from typing import Callable, List, Optional

import httpx

from .config import EngineConfig
from .errors import NetworkChannelFailure


logger = logging.getLogger(__name__)


class MatcherClient:
    """
    Async HTTP client for the matcher's listen port.

    Failures of any kind (refused connection, timeout, bad status, bad JSON)
    are raised as NetworkChannelFailure; callers treat the channel as dead.
    """

    def __init__(
        self,
        config: EngineConfig,
        api_key: Callable[[], str],
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.config = config
        self._api_key = api_key
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def base_url(self) -> str:
        return f"http://127.0.0.1:{self.config.control_port}"

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.config.request_timeout,
                transport=self._transport,
            )
        return self._client

    def _headers(self) -> dict:
        return {"x-api-key": self._api_key()}

    async def fetch_matches(self, limit: int) -> List[str]:
        """
        Current match list, in the matcher's relevance order.

        Args:
            limit: Number of matches requested from the matcher

        Returns:
            Path strings as the matcher reports them
        """
        try:
            response = await self._get_client().get(
                "/", params={"limit": limit}, headers=self._headers()
            )
            response.raise_for_status()
            payload = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise NetworkChannelFailure(f"fetch failed: {e}") from e

        matches = payload.get("matches") if isinstance(payload, dict) else None
        if not isinstance(matches, list):
            raise NetworkChannelFailure("fetch failed: response has no match list")

        return [
            m["text"] for m in matches
            if isinstance(m, dict) and isinstance(m.get("text"), str)
        ]

    async def change_query(self, text: str) -> None:
        """Replace the matcher's query with `text` (already escaped)."""
        try:
            response = await self._get_client().post(
                "/",
                content=f"change-query:{text}".encode("utf-8"),
                headers=self._headers(),
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise NetworkChannelFailure(f"query delivery failed: {e}") from e
        logger.debug(f"Sent query: {text!r}")

    async def wait_ready(self, timeout: float = 10.0, interval: float = 0.1) -> bool:
        """Poll until the matcher answers, e.g. right after it was spawned."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            try:
                await self.fetch_matches(1)
                return True
            except NetworkChannelFailure:
                if loop.time() >= deadline:
                    return False
            await asyncio.sleep(interval)

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
