"""Custom exception hierarchy for the permission engine.

Only programming errors are meant to reach UI code. Backend failures are
raised by the transport and recovered at the evaluator boundary, where
they become fail-closed decisions.
"""

from enum import Enum
from typing import Optional, Dict, Any


class ErrorCode(str, Enum):
    """Standardized error codes for diagnostics and logs."""

    # Backend errors
    TRANSPORT_ERROR = "TRANSPORT_ERROR"
    CIRCUIT_OPEN = "CIRCUIT_OPEN"

    # Usage errors
    NOT_INITIALIZED = "NOT_INITIALIZED"
    INVALID_SPEC = "INVALID_SPEC"

    # Configuration errors
    CONFIGURATION_ERROR = "CONFIGURATION_ERROR"

    # Generic errors
    INTERNAL_ERROR = "INTERNAL_ERROR"


class PermissionEngineError(Exception):
    """
    Base exception for all permission engine errors.

    Carries a human-readable message, a machine-readable error code and
    optional details for structured logging.
    """

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.INTERNAL_ERROR,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to a dictionary for structured logs."""
        return {
            "error": self.error_code.value,
            "message": self.message,
            "details": self.details
        }


class TransportError(PermissionEngineError):
    """The authorization backend could not be reached or answered with an error."""

    def __init__(
        self,
        message: str,
        status_code: int = 0,
        endpoint: Optional[str] = None,
        error_code: ErrorCode = ErrorCode.TRANSPORT_ERROR,
    ):
        details: Dict[str, Any] = {"status_code": status_code}
        if endpoint:
            details["endpoint"] = endpoint
        super().__init__(message, error_code, details=details)
        self.status_code = status_code
        self.endpoint = endpoint


class CircuitBreakerOpen(TransportError):
    """Raised when the circuit is open and backend calls are blocked."""

    def __init__(self, endpoint: str, retry_after: float):
        super().__init__(
            f"Circuit breaker OPEN for '{endpoint}'. "
            f"Retry after {retry_after:.0f}s.",
            endpoint=endpoint,
            error_code=ErrorCode.CIRCUIT_OPEN,
        )
        self.retry_after = retry_after


class EngineNotInitializedError(PermissionEngineError):
    """A permission check ran before the engine was started."""

    def __init__(self, operation: str):
        super().__init__(
            f"Permission engine used before start(): {operation}",
            ErrorCode.NOT_INITIALIZED,
            details={"operation": operation},
        )


class InvalidSpecError(PermissionEngineError):
    """A permission spec payload could not be parsed."""

    def __init__(self, message: str, field: Optional[str] = None):
        details = {"field": field} if field else {}
        super().__init__(message, ErrorCode.INVALID_SPEC, details=details)


class ConfigurationError(PermissionEngineError):
    """Raised when engine configuration is invalid for the environment."""

    def __init__(self, message: str):
        super().__init__(message, ErrorCode.CONFIGURATION_ERROR)
