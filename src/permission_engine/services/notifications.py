"""Decision-change notifications for UI subscribers.

The engine does not render anything. It publishes a ``DecisionUpdate``
when a backend decision lands, and a reset (``key=None``) when cached
decisions were dropped wholesale. Subscribers re-render in response.
"""

import logging
import threading
from dataclasses import dataclass
from typing import Callable, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DecisionUpdate:
    """``key=None`` means "anything may have changed, re-check everything"."""
    key: Optional[str]
    allowed: Optional[bool] = None
    source: Optional[str] = None
    reason: str = ""

    @property
    def is_reset(self) -> bool:
        return self.key is None


Subscriber = Callable[[DecisionUpdate], None]


class DecisionNotifier:
    """Fan-out of decision updates to registered callbacks.

    A failing subscriber is logged and skipped; it never affects the
    others or the code that published.
    """

    def __init__(self) -> None:
        self._subscribers: list[Subscriber] = []
        self._lock = threading.Lock()

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register *callback*. Returns a function that unsubscribes it."""
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def publish(self, update: DecisionUpdate) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(update)
            except Exception:
                logger.exception("Decision subscriber %r failed", callback)

    def publish_reset(self, reason: str) -> None:
        self.publish(DecisionUpdate(key=None, reason=reason))

    def __len__(self) -> int:
        with self._lock:
            return len(self._subscribers)
