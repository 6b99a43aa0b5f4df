"""TTL cache of allow/deny decisions keyed by evaluation key.

Thread-safe: one RLock guards the entry map and the generation counter,
so render code on any thread can read while the event loop writes.

Expired entries are treated exactly like missing ones and are dropped
lazily when read. There is no background sweeper; a session holds a few
hundred keys at most.

Every invalidation bumps a monotonic ``generation``. Writers that started
work before an invalidation use :meth:`DecisionCache.set_if_generation`,
which refuses the write, so a late backend response cannot bring back a
decision the caller already invalidated.
"""

from __future__ import annotations

import dataclasses
import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional

from ..keys import resource_of
from ..schemas.permission import EvaluationSource, PermissionEvaluationResult

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 15 * 60


@dataclass(frozen=True)
class DecisionCacheEntry:
    key: str
    allowed: bool
    reason: Optional[str]
    source: str
    created_at: float
    ttl: float

    def is_expired(self, now: float) -> bool:
        return now - self.created_at >= self.ttl

    def to_result(self, source: Optional[EvaluationSource] = None) -> PermissionEvaluationResult:
        """Rebuild the decision; *source* overrides the stored one (e.g. ``cache`` on a hit)."""
        return PermissionEvaluationResult(
            allowed=self.allowed,
            reason=self.reason,
            source=source.value if source else self.source,
            ttl=self.ttl,
        )

    @classmethod
    def from_result(
        cls,
        key: str,
        result: PermissionEvaluationResult,
        created_at: float,
        ttl: float,
    ) -> "DecisionCacheEntry":
        return cls(
            key=key,
            allowed=result.allowed,
            reason=result.reason,
            source=result.source,
            created_at=created_at,
            ttl=ttl,
        )


@dataclass(frozen=True)
class CacheStats:
    total_entries: int
    valid_entries: int
    expired_entries: int

    def to_dict(self) -> dict[str, int]:
        return {
            "totalEntries": self.total_entries,
            "validEntries": self.valid_entries,
            "expiredEntries": self.expired_entries,
        }


class DecisionCache:
    """Decision store with lazy expiry and generation-checked writes.

    Args:
        default_ttl: TTL in seconds applied when a write carries none.
        clock: Monotonic time source in seconds (injectable for testing).
    """

    def __init__(
        self,
        default_ttl: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._default_ttl = default_ttl
        self._clock = clock
        self._entries: dict[str, DecisionCacheEntry] = {}
        self._generation = 0
        self._lock = threading.RLock()

    @property
    def default_ttl(self) -> float:
        return self._default_ttl

    @property
    def generation(self) -> int:
        with self._lock:
            return self._generation

    def now(self) -> float:
        return self._clock()

    def get(self, key: str) -> tuple[Optional[DecisionCacheEntry], bool]:
        """Return ``(entry, True)`` on a live hit, ``(None, False)`` otherwise.

        Never-cached and expired are indistinguishable to callers.
        """
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None, False
            if entry.is_expired(self._clock()):
                del self._entries[key]
                return None, False
            return entry, True

    def set(self, key: str, entry: DecisionCacheEntry, ttl: Optional[float] = None) -> None:
        """Store *entry* under *key*, replacing whatever was there."""
        entry = self._normalize(key, entry, ttl)
        with self._lock:
            self._entries[key] = entry

    def set_if_generation(
        self,
        key: str,
        entry: DecisionCacheEntry,
        generation: int,
        ttl: Optional[float] = None,
    ) -> bool:
        """Store *entry* only if no invalidation happened since *generation* was read.

        Returns:
            True if the entry was written.
        """
        entry = self._normalize(key, entry, ttl)
        with self._lock:
            if generation != self._generation:
                logger.debug(
                    "Rejected stale decision for %s (generation %d, current %d)",
                    key, generation, self._generation,
                )
                return False
            self._entries[key] = entry
            return True

    def invalidate_all(self) -> int:
        """Drop every entry. Returns the new generation."""
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
            self._generation += 1
            logger.debug("Decision cache cleared (%d entries)", count)
            return self._generation

    def invalidate_prefix(self, resource: str) -> int:
        """Drop entries for one resource. Returns the number removed.

        The generation is bumped even when nothing matched, so writes for
        this resource already in flight are rejected.
        """
        with self._lock:
            doomed = [key for key in self._entries if resource_of(key) == resource]
            for key in doomed:
                del self._entries[key]
            self._generation += 1
            logger.debug("Decision cache: dropped %d entries for resource %s", len(doomed), resource)
            return len(doomed)

    def stats(self) -> CacheStats:
        with self._lock:
            now = self._clock()
            expired = sum(1 for entry in self._entries.values() if entry.is_expired(now))
            total = len(self._entries)
        return CacheStats(
            total_entries=total,
            valid_entries=total - expired,
            expired_entries=expired,
        )

    def _normalize(self, key: str, entry: DecisionCacheEntry, ttl: Optional[float]) -> DecisionCacheEntry:
        effective_ttl = ttl if ttl is not None else entry.ttl
        if not effective_ttl or effective_ttl <= 0:
            effective_ttl = self._default_ttl
        if entry.key != key or entry.ttl != effective_ttl:
            entry = dataclasses.replace(entry, key=key, ttl=effective_ttl)
        return entry
