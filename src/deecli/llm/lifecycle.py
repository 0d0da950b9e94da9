"""Connection lifecycle: idle-connection reaping and warm-up.

``ConnectionLifecycle`` is an explicit resource owned by whoever builds
the conversation service::

    lifecycle = ConnectionLifecycle(client)
    lifecycle.start()
    await lifecycle.warm_up()
    ...
    await lifecycle.shutdown()
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from typing import TYPE_CHECKING

from .errors import APIError

if TYPE_CHECKING:
    from .client import AsyncChatClient

_logger = logging.getLogger(__name__)

CHECK_INTERVAL = 30.0  # seconds between idle checks
IDLE_THRESHOLD = 600.0  # close pooled connections after 10 minutes idle


class ActivityTracker:
    """Last-request timestamp shared by the client and the lifecycle loop."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._last = time.monotonic()

    def touch(self) -> None:
        with self._lock:
            self._last = time.monotonic()

    def idle_for(self) -> float:
        with self._lock:
            return time.monotonic() - self._last


class ConnectionLifecycle:
    """Background loop that closes idle pooled connections.

    Parameters
    ----------
    client:
        The client whose pool is managed.
    interval:
        Seconds between idle checks.
    idle_threshold:
        Inactivity (seconds) after which idle connections are closed.
    """

    def __init__(
        self,
        client: AsyncChatClient,
        interval: float = CHECK_INTERVAL,
        idle_threshold: float = IDLE_THRESHOLD,
    ) -> None:
        self._client = client
        self._interval = interval
        self._idle_threshold = idle_threshold
        self._task: asyncio.Task[None] | None = None
        self._stop: asyncio.Event | None = None
        self._shut_down = False

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start the idle-check loop on the running event loop."""
        if self._shut_down:
            raise RuntimeError("lifecycle already shut down")
        if self.running:
            return
        self._stop = asyncio.Event()
        self._task = asyncio.create_task(self._run(), name="deecli-idle-reaper")
        _logger.info(
            "Connection lifecycle started (interval=%ss, idle threshold=%ss)",
            self._interval, self._idle_threshold,
        )

    async def _run(self) -> None:
        assert self._stop is not None
        while not self._stop.is_set():
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self._interval)
            except asyncio.TimeoutError:
                pass
            if self._stop.is_set():
                break
            await self.check_idle()

    async def check_idle(self) -> bool:
        """Close idle connections if the threshold passed.  Returns True if so."""
        idle = self._client.activity.idle_for()
        if idle <= self._idle_threshold:
            return False
        closed = await self._client.close_idle_connections()
        if closed:
            _logger.info("Closed idle connections after %.0fs of inactivity", idle)
        return closed

    async def warm_up(self) -> APIError | None:
        """Pre-establish the TLS connection with a minimal request.

        Failure is advisory: it is logged and returned, never raised.
        """
        try:
            await self._client.ping()
        except APIError as exc:
            _logger.warning("Connection warm-up failed: %s", exc.message)
            return exc
        _logger.info("Connection warm-up succeeded")
        return None

    async def shutdown(self) -> None:
        """Stop the loop and close idle connections.  Only the first call acts."""
        if self._shut_down:
            return
        self._shut_down = True
        if self._stop is not None:
            self._stop.set()
        if self._task is not None:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
        await self._client.close_idle_connections(force=True)
        _logger.info("Connection lifecycle stopped")

    async def __aenter__(self) -> ConnectionLifecycle:
        self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.shutdown()
