"""Per-key coalescing of concurrent async calls."""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Generic, Hashable, TypeVar

from chime.infrastructure.logger import logger

T = TypeVar("T")


class SingleFlight(Generic[T]):
    """At most one in-flight call per key; concurrent callers for the same key share its result.

    Calls for different keys run independently.
    """

    def __init__(self) -> None:
        self._inflight: dict[Hashable, asyncio.Future[T]] = {}

    def in_flight(self, key: Hashable) -> bool:
        return key in self._inflight

    async def do(self, key: Hashable, fn: Callable[[], Awaitable[T]]) -> T:
        existing = self._inflight.get(key)
        if existing is not None:
            logger.debug("Joining in-flight call", key=str(key))
            return await asyncio.shield(existing)

        future: asyncio.Future[T] = asyncio.get_running_loop().create_future()
        self._inflight[key] = future
        try:
            result = await fn()
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as err:
            future.set_exception(err)
            # Mark retrieved so an unawaited failure is not reported twice
            future.exception()
            raise
        else:
            future.set_result(result)
            return result
        finally:
            del self._inflight[key]
