"""Single-flight coordinator for the slow Windows Update driver search.

A bulk check reads whatever snapshot is already known without waiting, while at
most one background search runs at a time. Callers that need the authoritative
answer either await the in-flight search or register a one-shot callback that
fires when it settles.
"""
from __future__ import annotations

import asyncio
import logging
import math
import subprocess
import time
from typing import Callable, Iterable

from services.models import CacheDiagnostics, UpdateSnapshot
from services.sources import UpdateSource

logger = logging.getLogger(__name__)

CompletionCallback = Callable[[tuple[str, ...]], None]

_EMPTY_SNAPSHOT = UpdateSnapshot(titles=(), fetched_at=0.0)


def _dedupe(titles: Iterable[str] | None) -> tuple[str, ...]:
    seen: dict[str, None] = {}
    for title in titles or ():
        text = str(title).strip()
        if text:
            seen.setdefault(text, None)
    return tuple(seen)


class UpdateLookupCoordinator:
    def __init__(
        self,
        source: UpdateSource,
        *,
        ttl_seconds: float = 60.0,
        timeout_seconds: float = 15.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._source = source
        self._ttl = ttl_seconds
        self._timeout = timeout_seconds
        self._clock = clock
        self._snapshot = _EMPTY_SNAPSHOT
        self._task: asyncio.Task[tuple[str, ...]] | None = None
        self._callbacks: list[CompletionCallback] = []

    @property
    def is_fetching(self) -> bool:
        return self._task is not None

    def has_fresh_snapshot(self) -> bool:
        return self._snapshot.is_fresh(self._clock(), self._ttl)

    def start_background_fetch(self) -> bool:
        """Launch the update search unless a fresh snapshot or a running search exists.

        Must be called from inside a running event loop. Returns ``True`` only when
        this call started a new search.
        """
        if self.has_fresh_snapshot():
            logger.debug("Using cached update results (%d updates)", len(self._snapshot.titles))
            return False
        if self._task is not None:
            logger.debug("Update search already in progress")
            return False
        logger.info("Starting background update search...")
        self._task = asyncio.get_running_loop().create_task(self._run_fetch())
        return True

    def get_current_snapshot(self) -> tuple[str, ...]:
        if self.has_fresh_snapshot():
            return self._snapshot.titles
        return ()

    async def await_in_flight_fetch(self) -> tuple[str, ...]:
        task = self._task
        if task is None:
            return self.get_current_snapshot()
        # Shielded so a cancelled waiter leaves the shared search running.
        return await asyncio.shield(task)

    def register_completion_callback(self, callback: CompletionCallback, *, start_if_idle: bool = False) -> bool:
        """Attach a one-shot callback to the in-flight search.

        Returns ``False`` when no search is in flight (after optionally trying to
        start one), in which case the callback is not kept and will never fire.
        """
        if self._task is None and start_if_idle:
            self.start_background_fetch()
        if self._task is None:
            return False
        self._callbacks.append(callback)
        return True

    def diagnostics(self) -> CacheDiagnostics:
        now = self._clock()
        is_valid = self._snapshot.is_fresh(now, self._ttl)
        remaining = math.ceil(self._ttl - (now - self._snapshot.fetched_at)) if is_valid else 0
        return CacheDiagnostics(
            is_valid=is_valid,
            remaining_ttl_seconds=max(remaining, 0),
            last_fetch_timestamp=self._snapshot.fetched_at,
            cached_update_count=len(self._snapshot.titles),
        )

    def clear(self) -> None:
        """Forget the snapshot; an in-flight search still delivers to its callbacks."""
        self._snapshot = _EMPTY_SNAPSHOT
        logger.info("Update snapshot cleared")

    async def _run_fetch(self) -> tuple[str, ...]:
        started = time.perf_counter()
        try:
            try:
                raw = await asyncio.wait_for(self._source.fetch_pending_update_titles(self._timeout), self._timeout)
                titles = _dedupe(raw)
            except (asyncio.TimeoutError, subprocess.TimeoutExpired):
                logger.warning("Update search timed out after %.0fs", self._timeout)
                titles = ()
            except Exception as exc:
                logger.warning("Update search failed: %s", exc)
                titles = ()
            self._snapshot = UpdateSnapshot(titles=titles, fetched_at=self._clock())
            logger.info(
                "Update search complete: %d updates found in %.0fms",
                len(titles),
                (time.perf_counter() - started) * 1000,
            )
            callbacks, self._callbacks = self._callbacks, []
            for callback in callbacks:
                try:
                    callback(titles)
                except Exception:
                    logger.exception("Update completion callback failed")
            return titles
        finally:
            self._task = None
