"""Public permission API consumed by UI code.

One ``PermissionEngine`` per session, built at the application root with
an explicit transport and clock and handed to whatever needs it. There is
no module-level instance.

    engine = build_engine(settings)
    await engine.login("user-42")
    if engine.has_permission("role", "assign", "department"):
        ...
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from collections.abc import Mapping
from typing import Any, Callable, Iterable, Optional, Union

from ..core.config import Settings, settings as default_settings
from ..core.logging_config import actor_id_var
from ..exceptions import EngineNotInitializedError, InvalidSpecError
from ..keys import display_key, evaluation_key, merge_context
from ..schemas.permission import (
    BulkPermissionResult,
    PermissionEvaluationResult,
    PermissionRecord,
    PermissionSpec,
    UserPermissionSummary,
    deny,
    parse_spec,
)
from ..transport.api_client import HttpPermissionTransport
from ..transport.base import PermissionTransport
from .decision_cache import CacheStats, DecisionCache
from .evaluator import REASON_UNAUTHENTICATED, Evaluator
from .notifications import DecisionNotifier, Subscriber
from .scope_resolver import REASON_INVALID_SPEC, changed_resources
from .summary_store import SummaryState, SummaryStore

logger = logging.getLogger(__name__)

SpecLike = Union[PermissionSpec, Mapping[str, Any]]

DEFAULT_PRELOAD_PAUSE = 0.05


def _to_spec(spec_like: SpecLike) -> Optional[PermissionSpec]:
    # Check paths never raise on bad input; the caller gets a deny.
    try:
        return parse_spec(spec_like)
    except InvalidSpecError as exc:
        logger.warning("%s (%r)", exc.message, spec_like, extra={"field": exc.details.get("field")})
        return None


def _build_spec(
    resource: str,
    action: str,
    scope: Optional[str],
    context: Optional[Mapping[str, Any]],
) -> Optional[PermissionSpec]:
    return _to_spec({"resource": resource, "action": action, "scope": scope, "context": context})


class PermissionEngine:
    """Permission facade: checks, bulk checks, refresh and invalidation.

    Checks never raise on backend trouble; they fail closed. The only
    error that escapes is ``EngineNotInitializedError`` when a check runs
    before :meth:`start` or :meth:`login` in a development build.

    Args:
        transport: Backend client.
        settings: Engine settings; the module default when omitted.
        clock: Monotonic time source in seconds (injectable for testing).
    """

    def __init__(
        self,
        transport: PermissionTransport,
        settings: Optional[Settings] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._settings = settings or default_settings
        self._transport = transport
        self._actor_id: Optional[str] = None
        self._initialized = False
        self._lock = threading.RLock()

        self._notifier = DecisionNotifier()
        self._cache = DecisionCache(
            default_ttl=self._settings.decision_ttl_seconds,
            clock=clock,
        )
        self._store = SummaryStore(
            fetch=transport.get_my_permissions,
            stale_after=self._settings.summary_stale_seconds,
            retry_attempts=self._settings.summary_retry_attempts,
            clock=clock,
            on_change=self._on_summary_change,
        )
        self._evaluator = Evaluator(
            cache=self._cache,
            store=self._store,
            transport=transport,
            notifier=self._notifier,
            is_authenticated=lambda: self._actor_id is not None,
            batch_delay=self._settings.batch_delay_seconds,
            fetch_timeout=self._settings.fetch_timeout_seconds,
        )

    # ----- session ---------------------------------------------------------

    @property
    def is_authenticated(self) -> bool:
        return self._actor_id is not None

    @property
    def actor_id(self) -> Optional[str]:
        return self._actor_id

    @property
    def summary_state(self) -> SummaryState:
        return self._store.state

    @property
    def user_permission_summary(self) -> Optional[UserPermissionSummary]:
        return self._store.snapshot()

    @property
    def last_error(self) -> Optional[str]:
        """Most recent summary fetch error, for diagnostics."""
        return self._store.last_error

    async def start(self) -> None:
        """Mark the engine ready for use and load the summary if a session exists."""
        self._initialized = True
        if self.is_authenticated:
            await self._store.load()

    async def login(self, actor_id: str) -> Optional[UserPermissionSummary]:
        """Begin a session for *actor_id* and load its permission summary.

        Switching actors drops everything cached for the previous one first.
        """
        if not actor_id:
            raise ValueError("actor_id must be a non-empty string")
        switched = False
        with self._lock:
            if self._actor_id is not None and self._actor_id != actor_id:
                self._reset_locked()
                switched = True
            self._actor_id = actor_id
            self._initialized = True
        actor_id_var.set(actor_id)
        if switched:
            self._notifier.publish_reset("actor changed")
        logger.info("Permission session started", extra={"session_actor": actor_id})
        return await self._store.load()

    def logout(self) -> None:
        """End the session. Cache and summary are cleared together."""
        with self._lock:
            previous = self._actor_id
            self._actor_id = None
            self._reset_locked()
        actor_id_var.set("")
        self._notifier.publish_reset("logout")
        logger.info("Permission session ended", extra={"session_actor": previous})

    def _reset_locked(self) -> None:
        # Caller holds self._lock. Backend answers still in flight for the
        # old session must reach neither the cache nor the next actor.
        self._evaluator.reset()
        self._cache.invalidate_all()
        self._store.clear()

    def _check_initialized(self, operation: str) -> bool:
        if self._initialized:
            return True
        if self._settings.is_development:
            raise EngineNotInitializedError(operation)
        logger.error("Permission engine used before start(): %s", operation)
        return False

    # ----- synchronous checks ----------------------------------------------

    def has_permission(
        self,
        resource: str,
        action: str,
        scope: Optional[str] = None,
        context: Optional[Mapping[str, Any]] = None,
    ) -> bool:
        """Whether the actor may perform *action* on *resource* at *scope*.

        Never blocks. ``scope`` defaults to ``own``. A ``context`` makes the
        check instance-level: the last backend answer is returned (False
        until one arrives) and a backend check is started in the background.
        """
        if not self._check_initialized("has_permission"):
            return False
        spec = _build_spec(resource, action, scope, context)
        if spec is None:
            return False
        return self._evaluator.is_allowed(spec)

    def has_any_permission(self, specs: Iterable[SpecLike]) -> bool:
        """True if at least one spec is allowed. An empty list is False."""
        if not self._check_initialized("has_any_permission"):
            return False
        return any(self._allowed(spec) for spec in specs)

    def has_all_permissions(self, specs: Iterable[SpecLike]) -> bool:
        """True if every spec is allowed. An empty list is False."""
        if not self._check_initialized("has_all_permissions"):
            return False
        specs = list(specs)
        if not specs:
            return False
        return all(self._allowed(spec) for spec in specs)

    def check_permission(
        self,
        resource: str,
        action: str,
        scope: Optional[str] = None,
        context: Optional[Mapping[str, Any]] = None,
    ) -> Optional[PermissionEvaluationResult]:
        """Detailed cached decision, or None if nothing is cached yet."""
        if not self._check_initialized("check_permission"):
            return deny(REASON_UNAUTHENTICATED)
        if not self.is_authenticated:
            return deny(REASON_UNAUTHENTICATED)
        spec = _build_spec(resource, action, scope, context)
        if spec is None:
            return deny(REASON_INVALID_SPEC)
        return self._evaluator.cached_result(spec)

    def check_multiple_permissions(self, specs: Iterable[SpecLike]) -> dict[str, bool]:
        """Synchronous map of display key to decision."""
        if not self._check_initialized("check_multiple_permissions"):
            return {}
        decisions: dict[str, bool] = {}
        for spec_like in specs:
            spec = _to_spec(spec_like)
            if spec is not None:
                decisions[display_key(spec)] = self._evaluator.is_allowed(spec)
        return decisions

    def _allowed(self, spec_like: SpecLike) -> bool:
        spec = _to_spec(spec_like)
        return spec is not None and self._evaluator.is_allowed(spec)

    # ----- asynchronous checks ---------------------------------------------

    async def check_permission_async(
        self,
        resource: str,
        action: str,
        scope: Optional[str] = None,
        context: Optional[Mapping[str, Any]] = None,
    ) -> PermissionEvaluationResult:
        """Backend-adjudicated check for one spec, served from cache when possible."""
        if not self._check_initialized("check_permission_async"):
            return deny(REASON_UNAUTHENTICATED)
        spec = _build_spec(resource, action, scope, context)
        if spec is None:
            return deny(REASON_INVALID_SPEC)
        return await self._evaluator.evaluate_remote(spec)

    async def check_bulk_permissions(
        self,
        specs: Iterable[SpecLike],
        global_context: Optional[Mapping[str, Any]] = None,
    ) -> BulkPermissionResult:
        """Check many specs in one backend round trip.

        Returns:
            Results keyed by display key (``resource.action.scope``), the
            number of cache hits and server-evaluated entries, and any
            backend errors. Never raises on backend failure.
        """
        parsed: list[PermissionSpec] = []
        errors: list[str] = []
        for spec_like in specs:
            spec = _to_spec(spec_like)
            if spec is None:
                errors.append(f"{REASON_INVALID_SPEC}: {spec_like!r}")
            else:
                parsed.append(spec)

        if not self._check_initialized("check_bulk_permissions"):
            return BulkPermissionResult(
                permissions={display_key(spec): deny(REASON_UNAUTHENTICATED) for spec in parsed},
                errors=errors + ["Permission engine not started"],
            )

        evaluation = await self._evaluator.evaluate_bulk_async(parsed, global_context)
        result = BulkPermissionResult(
            cached=evaluation.cached,
            evaluated=evaluation.evaluated,
            errors=errors + evaluation.errors,
        )
        for spec in parsed:
            key = evaluation_key(merge_context(spec, global_context))
            result.permissions[display_key(spec)] = evaluation.results[key]
        return result

    async def preload_permissions(self, specs: Iterable[SpecLike]) -> int:
        """Bulk-load decisions that are not cached yet. Returns how many were requested."""
        uncached = []
        for spec_like in specs:
            spec = _to_spec(spec_like)
            if spec is not None and self._evaluator.cached_result(spec) is None:
                uncached.append(spec)
        if not uncached:
            logger.debug("All permissions already cached, skipping preload")
            return 0
        logger.debug("Preloading %d uncached permissions", len(uncached))
        await self.check_bulk_permissions(uncached)
        return len(uncached)

    async def batch_preload_permissions(
        self,
        batches: Iterable[Iterable[SpecLike]],
        pause: float = DEFAULT_PRELOAD_PAUSE,
    ) -> int:
        """Preload several batches one after another with a short pause between them."""
        total = 0
        count = 0
        for batch in batches:
            total += await self.preload_permissions(batch)
            count += 1
            await asyncio.sleep(pause)
        logger.debug("Completed batch preloading of %d batches", count)
        return total

    # ----- cache management ------------------------------------------------

    async def refresh(self) -> Optional[UserPermissionSummary]:
        """Drop cached decisions and reload the summary from the backend."""
        self._cache.invalidate_all()
        self._notifier.publish_reset("refresh")
        if not self.is_authenticated:
            return None
        return await self._store.load(force=True)

    def invalidate(self, resource: Optional[str] = None) -> None:
        """Drop cached decisions; the summary is kept.

        Use after the actor changed roles or permissions so the next check
        recomputes instead of waiting for TTL expiry. With *resource*, only
        that resource's decisions are dropped.
        """
        if resource:
            self._cache.invalidate_prefix(resource)
        else:
            self._cache.invalidate_all()
        self._notifier.publish_reset("invalidate")

    async def clear_cache(self) -> Optional[UserPermissionSummary]:
        """Clear the backend's cache for this session, then local state, then reload."""
        if self.is_authenticated:
            try:
                await self._transport.clear_cache()
            except Exception as exc:
                logger.warning("Backend permission cache clear failed: %s", exc)
        return await self.refresh()

    # ----- read-only accessors ---------------------------------------------

    def get_user_permissions(self) -> list[PermissionRecord]:
        summary = self._store.snapshot()
        return list(summary.permissions) if summary else []

    def cache_stats(self) -> CacheStats:
        return self._cache.stats()

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register for decision updates. Returns an unsubscribe function."""
        return self._notifier.subscribe(callback)

    async def aclose(self) -> None:
        await self._transport.close()

    def _on_summary_change(
        self,
        old: Optional[UserPermissionSummary],
        new: UserPermissionSummary,
    ) -> None:
        if old is not None:
            changed = changed_resources(old, new)
            if changed is None:
                self._cache.invalidate_all()
            else:
                for resource in sorted(changed):
                    self._cache.invalidate_prefix(resource)
                if changed:
                    logger.info("Grants changed for %s", ", ".join(sorted(changed)))
        self._notifier.publish_reset("summary updated")


PermissionFacade = PermissionEngine


def build_engine(settings: Optional[Settings] = None) -> PermissionEngine:
    """Wire an engine to the HTTP backend described by *settings*."""
    settings = settings or default_settings
    settings.validate_production_config()
    return PermissionEngine(HttpPermissionTransport(settings), settings=settings)
