"""
Result Notifier - Loopback listener for "results changed" pings.

The matcher runs `nc` against this port on every result change. The
payload is ignored: any inbound connection means "refetch".
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional, Union

from .errors import NetworkChannelFailure


logger = logging.getLogger(__name__)


class ResultNotifier:
    """asyncio TCP server that turns connections into callback invocations."""

    def __init__(
        self,
        port: int,
        on_notify: Callable[[], Union[None, Awaitable[None]]],
        host: str = "127.0.0.1",
    ):
        self.host = host
        self.port = port
        self.on_notify = on_notify
        self.notifications = 0
        self._server: Optional[asyncio.AbstractServer] = None

    @property
    def running(self) -> bool:
        return self._server is not None and self._server.is_serving()

    async def start(self) -> None:
        if self.running:
            return
        try:
            self._server = await asyncio.start_server(self._handle, self.host, self.port)
        except OSError as e:
            raise NetworkChannelFailure(f"cannot listen on {self.host}:{self.port}: {e}") from e
        logger.info(f"Listening for result notifications on {self.host}:{self.port}")

    async def stop(self) -> None:
        if self._server is None:
            return
        self._server.close()
        await self._server.wait_closed()
        self._server = None
        logger.debug("Result notifier stopped")

    async def _handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        writer.close()
        self.notifications += 1
        result = self.on_notify()
        if asyncio.iscoroutine(result):
            await result
