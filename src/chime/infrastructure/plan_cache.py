"""In-memory TTL cache for day plans. The store stays authoritative."""

from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import date
from typing import Callable, Protocol, runtime_checkable

from chime.infrastructure.config import PLAN_CACHE_TTL
from chime.scheduling.types import ExecutionPlanEntry


@runtime_checkable
class PlanCache(Protocol):
    def put(self, plan_date: date, entries: list[ExecutionPlanEntry], ttl: float | None = None) -> None: ...

    def get(self, plan_date: date) -> list[ExecutionPlanEntry] | None: ...

    def invalidate(self, plan_date: date) -> None: ...


@dataclass
class _CacheEntry:
    entries: list[ExecutionPlanEntry]
    expires_at: float


class InMemoryPlanCache:
    def __init__(self, default_ttl: float = PLAN_CACHE_TTL, clock: Callable[[], float] = time.monotonic) -> None:
        self._default_ttl = default_ttl
        self._clock = clock
        self._plans: dict[date, _CacheEntry] = {}

    def put(self, plan_date: date, entries: list[ExecutionPlanEntry], ttl: float | None = None) -> None:
        ttl = self._default_ttl if ttl is None else ttl
        self._plans[plan_date] = _CacheEntry(list(entries), self._clock() + ttl)

    def get(self, plan_date: date) -> list[ExecutionPlanEntry] | None:
        """Cached entries, or None on miss or expiry."""
        cached = self._plans.get(plan_date)
        if cached is None:
            return None
        if self._clock() >= cached.expires_at:
            del self._plans[plan_date]
            return None
        return list(cached.entries)

    def invalidate(self, plan_date: date) -> None:
        self._plans.pop(plan_date, None)
