"""Client-side permission evaluation with caching and backend fallback."""

from .core.config import Settings
from .core.logging_config import setup_logging
from .exceptions import (
    CircuitBreakerOpen,
    ConfigurationError,
    EngineNotInitializedError,
    InvalidSpecError,
    PermissionEngineError,
    TransportError,
)
from .schemas.permission import (
    BulkPermissionResult,
    PermissionEvaluationResult,
    PermissionRecord,
    PermissionSpec,
    Scope,
    UserPermissionSummary,
    parse_spec,
)
from .services.facade import PermissionEngine, PermissionFacade, build_engine
from .services.notifications import DecisionUpdate
from .services.summary_store import SummaryState

__version__ = "0.1.0"

__all__ = [
    "BulkPermissionResult",
    "CircuitBreakerOpen",
    "ConfigurationError",
    "DecisionUpdate",
    "EngineNotInitializedError",
    "InvalidSpecError",
    "PermissionEngine",
    "PermissionEngineError",
    "PermissionEvaluationResult",
    "PermissionFacade",
    "PermissionRecord",
    "PermissionSpec",
    "Scope",
    "Settings",
    "SummaryState",
    "TransportError",
    "UserPermissionSummary",
    "build_engine",
    "parse_spec",
    "setup_logging",
]
