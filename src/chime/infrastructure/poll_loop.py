"""Shared async polling loop used by the planning trigger and the dispatcher."""

from __future__ import annotations

import asyncio
import time
from typing import Awaitable, Callable

from chime.infrastructure.logger import logger


class PollLoop:
    """Calls `fn` every `interval_s` seconds until stopped.

    The interval is measured from the start of one call to the start of the
    next, so a slow poll does not push later polls back. A failing poll is
    logged and the loop keeps going.
    """

    def __init__(self, name: str, interval_s: float, fn: Callable[[], Awaitable[None]]) -> None:
        self._name = name
        self._interval = interval_s
        self._fn = fn
        self._task: asyncio.Task[None] | None = None
        self._stopped = False
        self.polls = 0
        self.failures = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._stopped

    def start(self) -> None:
        """Start the polling loop as a background task."""
        self._stopped = False
        self._task = asyncio.create_task(self._loop(), name=f"{self._name.lower()}-poll")
        logger.info("Poll loop started", loop=self._name, interval_s=self._interval)

    def stop(self) -> None:
        """Stop the polling loop."""
        self._stopped = True
        if self._task:
            self._task.cancel()
            self._task = None
            logger.info("Poll loop stopped", loop=self._name, polls=self.polls, failures=self.failures)

    async def poll_once(self) -> None:
        self.polls += 1
        try:
            await self._fn()
        except asyncio.CancelledError:
            raise
        except Exception:
            self.failures += 1
            logger.exception("Poll failed", loop=self._name)

    async def _loop(self) -> None:
        while not self._stopped:
            started = time.monotonic()
            try:
                await self.poll_once()
            except asyncio.CancelledError:
                break
            if not self._stopped:
                await asyncio.sleep(max(0.0, self._interval - (time.monotonic() - started)))


def start_poll_loop(name: str, interval_s: float, fn: Callable[[], Awaitable[None]]) -> PollLoop:
    """Create and start a polling loop. Returns a handle to stop it."""
    loop = PollLoop(name, interval_s, fn)
    loop.start()
    return loop
