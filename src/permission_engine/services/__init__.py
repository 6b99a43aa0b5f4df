"""Permission evaluation services: resolver, caches, evaluator and facade."""

from .decision_cache import CacheStats, DecisionCache, DecisionCacheEntry
from .evaluator import BulkEvaluation, Evaluator
from .facade import PermissionEngine, PermissionFacade, build_engine
from .notifications import DecisionNotifier, DecisionUpdate
from .scope_resolver import SCOPE_HIERARCHY, check_scope, resolve
from .summary_store import SummaryState, SummaryStore

__all__ = [
    "BulkEvaluation",
    "CacheStats",
    "DecisionCache",
    "DecisionCacheEntry",
    "DecisionNotifier",
    "DecisionUpdate",
    "Evaluator",
    "PermissionEngine",
    "PermissionFacade",
    "SCOPE_HIERARCHY",
    "SummaryState",
    "SummaryStore",
    "build_engine",
    "check_scope",
    "resolve",
]
