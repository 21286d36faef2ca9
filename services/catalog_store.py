"""Short-lived cache of the installed-driver catalog and the problem-device list."""
from __future__ import annotations

import asyncio
import logging
import subprocess
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Generic, TypeVar

from services.models import CatalogEntry
from services.sources import DriverCatalogSource

logger = logging.getLogger(__name__)

T = TypeVar("T")

# CollaboratorError and CatalogParseError are caught through their OSError and ValueError bases.
FETCH_FAILURES = (OSError, ValueError, subprocess.TimeoutExpired)


@dataclass(frozen=True)
class _CacheEntry(Generic[T]):
    value: T
    fetched_at: float

    def is_fresh(self, now: float, ttl_seconds: float) -> bool:
        return (now - self.fetched_at) < ttl_seconds


class CatalogStore:
    """Caches catalog rows and problem-device names, each with its own TTL clock.

    Fetch failures never propagate: the store logs them and falls back to the
    previous value while it is still within TTL, otherwise to an empty result.
    """

    def __init__(
        self,
        source: DriverCatalogSource,
        *,
        ttl_seconds: float = 60.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._source = source
        self._ttl = ttl_seconds
        self._clock = clock
        self._catalog: _CacheEntry[tuple[CatalogEntry, ...]] | None = None
        self._problems: _CacheEntry[frozenset[str]] | None = None

    async def get_catalog(self) -> tuple[CatalogEntry, ...]:
        now = self._clock()
        if self._catalog and self._catalog.is_fresh(now, self._ttl):
            logger.debug("Using cached driver catalog (%d entries)", len(self._catalog.value))
            return self._catalog.value
        logger.info("Fetching fresh driver catalog...")
        fetched = await self._fetch(self._source.fetch_catalog, "driver catalog")
        if fetched is None:
            return self._fallback(self._catalog, ())
        self._catalog = _CacheEntry(tuple(fetched), self._clock())
        logger.info("Found %d drivers in catalog", len(self._catalog.value))
        return self._catalog.value

    async def get_problem_device_names(self) -> frozenset[str]:
        now = self._clock()
        if self._problems and self._problems.is_fresh(now, self._ttl):
            return self._problems.value
        fetched = await self._fetch(self._source.fetch_problem_device_names, "problem device list")
        if fetched is None:
            return self._fallback(self._problems, frozenset())
        self._problems = _CacheEntry(frozenset(fetched), self._clock())
        logger.info("Found %d problematic devices", len(self._problems.value))
        return self._problems.value

    async def get_snapshot(self) -> tuple[tuple[CatalogEntry, ...], frozenset[str]]:
        catalog, problems = await asyncio.gather(self.get_catalog(), self.get_problem_device_names())
        return catalog, problems

    def clear(self) -> None:
        self._catalog = None
        self._problems = None
        logger.info("Driver catalog cache cleared")

    async def _fetch(self, fetch: Callable[[], Awaitable[T]], label: str) -> T | None:
        started = time.perf_counter()
        try:
            value = await fetch()
        except FETCH_FAILURES as exc:
            logger.warning("Failed to fetch %s: %s", label, exc)
            return None
        logger.info("Fetched %s in %.0fms", label, (time.perf_counter() - started) * 1000)
        return value

    def _fallback(self, entry: _CacheEntry[T] | None, empty: T) -> T:
        if entry and entry.is_fresh(self._clock(), self._ttl):
            return entry.value
        return empty
