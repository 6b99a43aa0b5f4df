"""Permission evaluator: cache first, then local grants, then the backend.

Deep module: callers hand in specs and get decisions back. Caching,
single-flight deduplication, batching and fail-closed recovery all happen
in here.

Synchronous path (``evaluate_sync``) never awaits and never does I/O:
    1. unauthenticated → deny; a stale summary starts revalidating
    2. decision cache hit → cached answer
    3. spec with context → last cached answer or deny, plus a background
       backend evaluation so a later render sees the real answer
    4. no summary yet → deny
    5. scope resolver against the summary, cached before returning

Asynchronous path (``evaluate_bulk_async``):
    1. dedupe specs by evaluation key
    2. split into cache hits and keys to fetch
    3. keys already in flight are joined; the rest are queued into a
       micro-batch so concurrent callers share one backend request
    4. one bulk request per batch; results are cached under the
       generation read when the request went out
    5. on failure every spec in the batch resolves to deny with
       ``source="default"`` and the error is reported, never raised

Every request is tagged with the session it was sent for. ``reset()``
starts a new session: callers still waiting are denied, and answers that
arrive for the old session are dropped.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Mapping, Optional

from ..keys import display_key, evaluation_key, merge_context, permission_key
from ..schemas.permission import (
    EvaluationSource,
    PermissionEvaluationResult,
    PermissionSpec,
    deny,
)
from ..transport.base import PermissionTransport
from .decision_cache import DecisionCache, DecisionCacheEntry
from .notifications import DecisionNotifier, DecisionUpdate
from .scope_resolver import (
    REASON_INVALID_SPEC,
    has_platform_access,
    is_valid_spec,
    resolve,
)
from .summary_store import SummaryStore

logger = logging.getLogger(__name__)

REASON_UNAUTHENTICATED = "User not authenticated"
REASON_NOT_LOADED = "permissions not loaded"
REASON_PENDING = "awaiting server decision"
REASON_CHECK_FAILED = "Permission check failed"
REASON_MISSING = "no result returned for permission"
REASON_SESSION_ENDED = "session ended before the decision arrived"

DEFAULT_BATCH_DELAY = 0.01
DEFAULT_FETCH_TIMEOUT = 10.0


@dataclass(frozen=True)
class _Outcome:
    """What a waiting caller receives for one key."""
    result: PermissionEvaluationResult
    errors: tuple[str, ...] = ()


@dataclass
class BulkEvaluation:
    """Bulk evaluation output keyed by evaluation key."""
    results: dict[str, PermissionEvaluationResult] = field(default_factory=dict)
    specs: dict[str, PermissionSpec] = field(default_factory=dict)
    cached: int = 0
    evaluated: int = 0
    errors: list[str] = field(default_factory=list)

    def add_errors(self, errors: Iterable[str]) -> None:
        for error in errors:
            if error not in self.errors:
                self.errors.append(error)


class Evaluator:
    """Orchestrates cache, summary store and backend for permission checks.

    Owns no state of its own beyond single-flight bookkeeping; it reads
    and writes the cache and the store only through their public methods.

    Args:
        cache: Decision cache shared with the facade.
        store: Summary store for the current actor.
        transport: Backend client.
        notifier: Receives an update whenever a backend decision is cached.
        is_authenticated: Returns whether an actor session exists right now.
        batch_delay: Seconds to collect concurrent bulk requests before sending.
        fetch_timeout: Upper bound for one backend call before it fails closed.
    """

    def __init__(
        self,
        cache: DecisionCache,
        store: SummaryStore,
        transport: PermissionTransport,
        notifier: DecisionNotifier,
        is_authenticated: Callable[[], bool],
        batch_delay: float = DEFAULT_BATCH_DELAY,
        fetch_timeout: float = DEFAULT_FETCH_TIMEOUT,
    ) -> None:
        self._cache = cache
        self._store = store
        self._transport = transport
        self._notifier = notifier
        self._is_authenticated = is_authenticated
        self._batch_delay = batch_delay
        self._fetch_timeout = fetch_timeout

        # Single-flight bookkeeping. Only touched from the event loop.
        # Every queued key also has its future in _inflight.
        self._inflight: dict[str, asyncio.Future] = {}
        self._queued: dict[str, PermissionSpec] = {}
        self._flush_task: Optional[asyncio.Task] = None
        self._background: set[asyncio.Task] = set()
        self._session = 0

        # Diagnostics
        self.backend_requests = 0

    def reset(self) -> None:
        """Detach every backend request from the session that is ending.

        Callers still waiting get a deny. Responses that land afterwards
        are neither cached nor handed to anyone in the next session. Call
        from the event loop thread.
        """
        self._session += 1
        pending, self._inflight = self._inflight, {}
        self._queued = {}
        outcome = _Outcome(deny(REASON_SESSION_ENDED), (REASON_SESSION_ENDED,))
        for future in pending.values():
            if not future.done():
                future.set_result(outcome)
        if pending:
            logger.info("Dropped %d permission checks in flight for the previous session", len(pending))

    # ----- synchronous path ------------------------------------------------

    def evaluate_sync(self, spec: PermissionSpec) -> PermissionEvaluationResult:
        """Decide *spec* without blocking. Safe to call during render."""
        if not self._is_authenticated():
            return deny(REASON_UNAUTHENTICATED)
        if not is_valid_spec(spec):
            return deny(REASON_INVALID_SPEC)

        # Cache hits must not hide a stale summary from revalidation.
        self._store.maybe_refresh()

        key = evaluation_key(spec)
        entry, found = self._cache.get(key)
        if found:
            return entry.to_result(EvaluationSource.CACHE)

        generation = self._cache.generation
        summary = self._store.snapshot()

        if spec.context:
            # Platform access short-circuits even instance-level checks.
            if summary is not None and has_platform_access(summary.permissions):
                return self._cache_local(key, resolve(spec, summary), generation)
            self._schedule_remote(spec)
            return deny(REASON_PENDING)

        if summary is None:
            return deny(REASON_NOT_LOADED)

        return self._cache_local(key, resolve(spec, summary), generation)

    def is_allowed(self, spec: PermissionSpec) -> bool:
        return self.evaluate_sync(spec).allowed

    def cached_result(self, spec: PermissionSpec) -> Optional[PermissionEvaluationResult]:
        """Cached decision for *spec*, or None. Never computes anything."""
        entry, found = self._cache.get(evaluation_key(spec))
        return entry.to_result(EvaluationSource.CACHE) if found else None

    def _cache_local(
        self,
        key: str,
        result: PermissionEvaluationResult,
        generation: int,
    ) -> PermissionEvaluationResult:
        entry = DecisionCacheEntry.from_result(
            key, result, created_at=self._cache.now(), ttl=self._cache.default_ttl,
        )
        self._cache.set_if_generation(key, entry, generation)
        return result

    def _schedule_remote(self, spec: PermissionSpec) -> None:
        key = evaluation_key(spec)
        if key in self._inflight:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running event loop; cannot schedule backend check for %s", key)
            return
        task = loop.create_task(self.evaluate_bulk_async([spec]))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    # ----- asynchronous path -----------------------------------------------

    async def evaluate_bulk_async(
        self,
        specs: Iterable[PermissionSpec],
        global_context: Optional[Mapping[str, Any]] = None,
    ) -> BulkEvaluation:
        """Resolve many specs against the backend with deduplication.

        Returns:
            A ``BulkEvaluation`` covering every distinct requested key.
            Backend failures show up as deny results plus ``errors``.
        """
        evaluation = BulkEvaluation()
        for spec in specs:
            spec = merge_context(spec, global_context)
            evaluation.specs.setdefault(evaluation_key(spec), spec)

        if not evaluation.specs:
            return evaluation

        if not self._is_authenticated():
            for key in evaluation.specs:
                evaluation.results[key] = deny(REASON_UNAUTHENTICATED)
            evaluation.add_errors([REASON_UNAUTHENTICATED])
            return evaluation

        to_fetch: dict[str, PermissionSpec] = {}
        for key, spec in evaluation.specs.items():
            if not is_valid_spec(spec):
                evaluation.results[key] = deny(REASON_INVALID_SPEC)
                continue
            entry, found = self._cache.get(key)
            if found:
                evaluation.results[key] = entry.to_result(EvaluationSource.CACHE)
                evaluation.cached += 1
            else:
                to_fetch[key] = spec

        if to_fetch:
            futures = self._join_or_enqueue(to_fetch)
            outcomes = await asyncio.gather(*(asyncio.shield(f) for f in futures.values()))
            for key, outcome in zip(futures, outcomes):
                evaluation.results[key] = outcome.result
                evaluation.add_errors(outcome.errors)
            evaluation.evaluated = len(to_fetch)

        logger.debug(
            "Bulk evaluation: %d keys, %d cached, %d evaluated",
            len(evaluation.specs), evaluation.cached, evaluation.evaluated,
        )
        return evaluation

    async def evaluate_remote(self, spec: PermissionSpec) -> PermissionEvaluationResult:
        """Single backend-adjudicated check, cache first.

        Joins any fetch already in flight for the same key, bulk or single,
        and registers its own request so later callers join it in turn.
        """
        if not self._is_authenticated():
            return deny(REASON_UNAUTHENTICATED)
        if not is_valid_spec(spec):
            return deny(REASON_INVALID_SPEC)

        key = evaluation_key(spec)
        entry, found = self._cache.get(key)
        if found:
            return entry.to_result(EvaluationSource.CACHE)

        pending = self._inflight.get(key)
        if pending is not None:
            outcome = await asyncio.shield(pending)
            return outcome.result

        future = asyncio.get_running_loop().create_future()
        self._inflight[key] = future
        session, generation = self._session, self._cache.generation
        outcome = _Outcome(deny(REASON_CHECK_FAILED), ("Permission check aborted",))
        self.backend_requests += 1
        try:
            remote = await asyncio.wait_for(
                self._transport.check_permission(spec), timeout=self._fetch_timeout,
            )
            outcome = _Outcome(self._accept_remote(key, remote, generation, session))
        except Exception as exc:
            message = f"{REASON_CHECK_FAILED}: {str(exc) or type(exc).__name__}"
            logger.warning(message, extra={"evaluation_key": key})
            outcome = _Outcome(deny(REASON_CHECK_FAILED), (message,))
        finally:
            self._settle(key, future, outcome)
        return outcome.result

    def _join_or_enqueue(self, specs: dict[str, PermissionSpec]) -> dict[str, asyncio.Future]:
        loop = asyncio.get_running_loop()
        futures: dict[str, asyncio.Future] = {}
        joined = 0
        for key, spec in specs.items():
            future = self._inflight.get(key)
            if future is None:
                future = loop.create_future()
                self._inflight[key] = future
                self._queued[key] = spec
            else:
                joined += 1
            futures[key] = future

        if joined:
            logger.debug("Joined %d in-flight permission checks", joined)
        if self._queued and self._flush_task is None:
            self._flush_task = loop.create_task(self._flush_after_delay())
        return futures

    async def _flush_after_delay(self) -> None:
        try:
            await asyncio.sleep(self._batch_delay)
        except asyncio.CancelledError:
            batch, self._queued = self._queued, {}
            self._flush_task = None
            outcome = _Outcome(deny(REASON_CHECK_FAILED), ("Bulk permission check cancelled",))
            for key in batch:
                self._settle(key, self._inflight[key], outcome)
            raise

        batch, self._queued = self._queued, {}
        self._flush_task = None
        if not batch:
            return
        futures = {key: self._inflight[key] for key in batch}
        session, generation = self._session, self._cache.generation
        chunks = _split_by_permission_key(batch)
        await asyncio.gather(*(
            self._fetch_chunk(chunk, futures, session, generation) for chunk in chunks
        ))

    async def _fetch_chunk(
        self,
        chunk: dict[str, PermissionSpec],
        futures: dict[str, asyncio.Future],
        session: int,
        generation: int,
    ) -> None:
        try:
            self.backend_requests += 1
            logger.debug(
                "Bulk permission request for %d specs", len(chunk),
                extra={"spec_count": len(chunk), "generation": generation},
            )
            try:
                response = await asyncio.wait_for(
                    self._transport.check_bulk_permissions(list(chunk.values())),
                    timeout=self._fetch_timeout,
                )
            except Exception as exc:
                message = f"Bulk permission check failed: {str(exc) or type(exc).__name__}"
                logger.warning("%s (%d specs failed closed)", message, len(chunk))
                for key in chunk:
                    self._settle(key, futures[key], _Outcome(deny(REASON_CHECK_FAILED), (message,)))
                return

            batch_errors = tuple(response.errors)
            for key, spec in chunk.items():
                remote = response.permissions.get(display_key(spec))
                if remote is None:
                    remote = response.permissions.get(permission_key(spec))
                if remote is None:
                    logger.warning("Backend omitted a requested permission", extra={"evaluation_key": key})
                    self._settle(key, futures[key], _Outcome(
                        deny(REASON_MISSING),
                        batch_errors + (f"{display_key(spec)}: missing from response",),
                    ))
                    continue
                result = self._accept_remote(key, remote, generation, session)
                self._settle(key, futures[key], _Outcome(result, batch_errors))
        finally:
            aborted = _Outcome(deny(REASON_CHECK_FAILED), ("Bulk permission check aborted",))
            for key in chunk:
                self._settle(key, futures[key], aborted)

    def _accept_remote(
        self,
        key: str,
        remote: PermissionEvaluationResult,
        generation: int,
        session: int,
    ) -> PermissionEvaluationResult:
        # Nothing from an ended session may be cached or returned as allowed.
        if session != self._session:
            logger.debug("Discarding decision from a previous session", extra={"evaluation_key": key})
            return deny(REASON_SESSION_ENDED)
        if not self._is_authenticated():
            return deny(REASON_UNAUTHENTICATED)

        result = remote.model_copy(update={"source": EvaluationSource.REMOTE.value})
        ttl = remote.ttl if remote.ttl else self._cache.default_ttl
        entry = DecisionCacheEntry.from_result(key, result, created_at=self._cache.now(), ttl=ttl)
        if self._cache.set_if_generation(key, entry, generation):
            self._notifier.publish(DecisionUpdate(
                key=key, allowed=result.allowed, source=result.source, reason=result.reason or "",
            ))
        return result

    def _settle(self, key: str, future: asyncio.Future, outcome: _Outcome) -> None:
        # A newer request for the same key may own the slot after reset().
        if self._inflight.get(key) is future:
            del self._inflight[key]
        if not future.done():
            future.set_result(outcome)


def _split_by_permission_key(batch: dict[str, PermissionSpec]) -> list[dict[str, PermissionSpec]]:
    """Split *batch* so no chunk holds two specs with the same backend key.

    The backend keys bulk results by ``resource.action.scope``; specs that
    differ only by context have to travel in separate requests.
    """
    chunks: list[dict[str, PermissionSpec]] = []
    seen: list[set[str]] = []
    for key, spec in batch.items():
        pkey = permission_key(spec)
        for chunk, keys in zip(chunks, seen):
            if pkey not in keys:
                chunk[key] = spec
                keys.add(pkey)
                break
        else:
            chunks.append({key: spec})
            seen.append({pkey})
    return chunks
