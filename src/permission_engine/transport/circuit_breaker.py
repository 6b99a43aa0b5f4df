"""Per-endpoint circuit breaking for the authorization backend.

Each backend path gets its own circuit, so a failing bulk-check endpoint
does not stop the engine from fetching the grant summary. A circuit opens
after ``failure_threshold`` consecutive failures and rejects calls for
``cooldown_seconds``. After that a single trial request is let through,
and its outcome closes or reopens the circuit. A trial that never reports
back (cancelled by the evaluator's fetch timeout, say) stops blocking
after another cooldown.
"""

import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from ..exceptions import CircuitBreakerOpen

logger = logging.getLogger(__name__)

DEFAULT_FAILURE_THRESHOLD = 3
DEFAULT_COOLDOWN_SECONDS = 60


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class _Circuit:
    state: CircuitState = CircuitState.CLOSED
    failures: int = 0
    opened_at: float = 0.0
    trial_started_at: Optional[float] = None


@dataclass(frozen=True)
class CircuitStatus:
    """Diagnostic view of one endpoint's circuit."""
    state: CircuitState
    failures: int
    retry_after: float = 0.0


class CircuitBreaker:
    """Tracks one circuit per backend path. Safe to share across threads."""

    def __init__(
        self,
        failure_threshold: int = DEFAULT_FAILURE_THRESHOLD,
        cooldown_seconds: float = DEFAULT_COOLDOWN_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._failure_threshold = failure_threshold
        self._cooldown = cooldown_seconds
        self._clock = clock
        self._circuits: dict[str, _Circuit] = {}
        self._lock = threading.Lock()

    def before_request(self, path: str) -> None:
        """Admit or reject a request to *path*.

        Raises:
            CircuitBreakerOpen: while the circuit is open, or while another
                caller holds the half-open trial.
        """
        with self._lock:
            circuit = self._circuits.get(path)
            if circuit is None or circuit.state == CircuitState.CLOSED:
                return
            now = self._clock()
            if circuit.state == CircuitState.OPEN:
                waited = now - circuit.opened_at
                if waited < self._cooldown:
                    raise CircuitBreakerOpen(path, self._cooldown - waited)
                circuit.state = CircuitState.HALF_OPEN
                circuit.trial_started_at = now
                logger.info("Circuit for %s half-open; sending trial request", path)
                return
            trial_age = now - (circuit.trial_started_at or 0.0)
            if trial_age < self._cooldown:
                raise CircuitBreakerOpen(path, self._cooldown - trial_age)
            circuit.trial_started_at = now

    def record_success(self, path: str) -> None:
        with self._lock:
            circuit = self._circuits.pop(path, None)
        if circuit is not None and circuit.state != CircuitState.CLOSED:
            logger.info("Circuit for %s closed", path)

    def record_failure(self, path: str) -> None:
        with self._lock:
            circuit = self._circuits.setdefault(path, _Circuit())
            circuit.failures += 1
            if circuit.state == CircuitState.CLOSED and circuit.failures < self._failure_threshold:
                return
            previous = circuit.state
            circuit.state = CircuitState.OPEN
            circuit.opened_at = self._clock()
            circuit.trial_started_at = None
            failures = circuit.failures
        if previous == CircuitState.HALF_OPEN:
            logger.warning("Circuit for %s reopened; trial request failed", path)
        elif previous == CircuitState.CLOSED:
            logger.warning("Circuit for %s opened after %d consecutive failures", path, failures)

    def state(self, path: str) -> CircuitState:
        with self._lock:
            circuit = self._circuits.get(path)
            return circuit.state if circuit else CircuitState.CLOSED

    def failure_count(self, path: str) -> int:
        with self._lock:
            circuit = self._circuits.get(path)
            return circuit.failures if circuit else 0

    def status(self) -> dict[str, CircuitStatus]:
        """Every path that has failed since its last success."""
        with self._lock:
            now = self._clock()
            return {
                path: CircuitStatus(
                    state=c.state,
                    failures=c.failures,
                    retry_after=max(0.0, self._cooldown - (now - c.opened_at))
                    if c.state == CircuitState.OPEN else 0.0,
                )
                for path, c in self._circuits.items()
            }

    def reset(self, path: Optional[str] = None) -> None:
        with self._lock:
            if path is None:
                self._circuits.clear()
            else:
                self._circuits.pop(path, None)
