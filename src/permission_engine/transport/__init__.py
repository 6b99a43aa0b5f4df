"""Backend transport: protocol, HTTP client and circuit breaker."""

from .api_client import HttpPermissionTransport
from .base import PermissionTransport
from .circuit_breaker import CircuitBreaker, CircuitState, CircuitStatus

__all__ = [
    "CircuitBreaker",
    "CircuitState",
    "CircuitStatus",
    "HttpPermissionTransport",
    "PermissionTransport",
]
