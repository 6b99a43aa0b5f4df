"""Holder of the actor's permission summary.

States:
  EMPTY   -- no snapshot; synchronous checks fail closed
  LOADING -- a fetch is outstanding; concurrent loads join it
  READY   -- snapshot younger than the staleness threshold
  STALE   -- snapshot too old; still served while a background refresh runs

The snapshot is swapped atomically under a lock and never edited in place,
so a reader sees either the old set of grants or the new one.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from enum import Enum
from typing import Awaitable, Callable, Optional

from ..schemas.permission import UserPermissionSummary

logger = logging.getLogger(__name__)

DEFAULT_STALE_SECONDS = 15 * 60

SummaryFetcher = Callable[[], Awaitable[UserPermissionSummary]]
ChangeCallback = Callable[[Optional[UserPermissionSummary], UserPermissionSummary], None]


class SummaryState(str, Enum):
    EMPTY = "empty"
    LOADING = "loading"
    READY = "ready"
    STALE = "stale"


class SummaryStore:
    """Single-flight, stale-while-revalidate store for one actor's summary.

    Args:
        fetch: Coroutine function returning a fresh summary from the backend.
        stale_after: Snapshot age in seconds at which it becomes STALE.
        retry_attempts: Extra fetch attempts after a failure.
        clock: Monotonic time source in seconds.
        on_change: Called with ``(old, new)`` after every successful swap.
    """

    def __init__(
        self,
        fetch: SummaryFetcher,
        stale_after: float = DEFAULT_STALE_SECONDS,
        retry_attempts: int = 1,
        clock: Callable[[], float] = time.monotonic,
        on_change: Optional[ChangeCallback] = None,
    ) -> None:
        self._fetch = fetch
        self._stale_after = stale_after
        self._retry_attempts = retry_attempts
        self._clock = clock
        self._on_change = on_change

        self._summary: Optional[UserPermissionSummary] = None
        self._inflight: Optional[asyncio.Task] = None
        self._background: set[asyncio.Task] = set()
        self._generation = 0
        self._last_error: Optional[str] = None
        self._lock = threading.Lock()

    # ----- read side -------------------------------------------------------

    @property
    def state(self) -> SummaryState:
        with self._lock:
            if self._inflight is not None and not self._inflight.done():
                return SummaryState.LOADING
            if self._summary is None:
                return SummaryState.EMPTY
            if self._is_stale_locked():
                return SummaryState.STALE
            return SummaryState.READY

    @property
    def last_error(self) -> Optional[str]:
        with self._lock:
            return self._last_error

    def snapshot(self) -> Optional[UserPermissionSummary]:
        """Current summary, stale or not. Never blocks on I/O."""
        with self._lock:
            return self._summary

    def is_stale(self) -> bool:
        with self._lock:
            return self._summary is not None and self._is_stale_locked()

    def _is_stale_locked(self) -> bool:
        return self._clock() - self._summary.fetched_at >= self._stale_after

    # ----- loading ---------------------------------------------------------

    async def load(self, force: bool = False) -> Optional[UserPermissionSummary]:
        """Return a fresh summary, fetching it if needed.

        Concurrent callers share one fetch. With *force*, a new fetch is
        started even if the snapshot is fresh, and any fetch already in
        flight is superseded: its result will be discarded.

        Returns:
            The current summary after the fetch, or None if nothing could
            be loaded. Fetch failures are logged, not raised.
        """
        with self._lock:
            if not force and self._summary is not None and not self._is_stale_locked():
                return self._summary
            task = self._inflight
            if force or task is None or task.done():
                if force:
                    self._generation += 1
                task = asyncio.get_running_loop().create_task(
                    self._fetch_and_swap(self._generation)
                )
                self._inflight = task
        return await asyncio.shield(task)

    def maybe_refresh(self) -> bool:
        """Start a background refresh if the snapshot is stale.

        Returns True if a refresh was scheduled. Without a running event
        loop nothing can be scheduled and the stale snapshot keeps serving.
        """
        with self._lock:
            if self._summary is None or not self._is_stale_locked():
                return False
            if self._inflight is not None and not self._inflight.done():
                return False
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("Summary is stale but no event loop is running; refresh deferred")
            return False

        logger.info("Permission summary is stale, revalidating in background")
        task = loop.create_task(self.load())
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return True

    def clear(self) -> None:
        """Drop the snapshot (logout). A fetch in flight is discarded when it lands."""
        with self._lock:
            self._generation += 1
            self._summary = None
            self._last_error = None
            self._inflight = None
        logger.info("Permission summary cleared")

    async def _fetch_and_swap(self, generation: int) -> Optional[UserPermissionSummary]:
        try:
            summary = await self._fetch_with_retry()
            if summary is None:
                return self.snapshot()

            stamped = summary.model_copy(update={"fetched_at": self._clock()})
            with self._lock:
                if generation != self._generation:
                    logger.info("Discarding permission summary fetched before a reset")
                    return self._summary
                old = self._summary
                self._summary = stamped
                self._last_error = None

            logger.info(
                "Permission summary loaded",
                extra={"permission_count": len(stamped.permissions), "user_id": stamped.user_id},
            )
            if self._on_change is not None:
                try:
                    self._on_change(old, stamped)
                except Exception:
                    logger.exception("Summary change callback failed")
            return stamped
        finally:
            with self._lock:
                if self._inflight is asyncio.current_task():
                    self._inflight = None

    async def _fetch_with_retry(self) -> Optional[UserPermissionSummary]:
        attempts = self._retry_attempts + 1
        last_exc: Exception | None = None

        for attempt in range(attempts):
            try:
                return await self._fetch()
            except Exception as exc:
                last_exc = exc
                logger.warning(
                    "Permission summary fetch failed (attempt %d/%d): %s",
                    attempt + 1, attempts, exc,
                )

        logger.error("Permission summary unavailable after %d attempts: %s", attempts, last_exc)
        with self._lock:
            self._last_error = str(last_exc)
        return None
