"""
Subscription registry with stable ids and release tokens.

Callbacks are invoked synchronously in registration order. An exception in
one callback is logged and never reaches the publisher or other callbacks.
"""

import itertools
import logging
import threading
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger(__name__)


class Subscription:
    """
    Token returned by SubscriptionRegistry.subscribe.

    Releasing the token (explicitly or on leaving a ``with`` block) removes
    the callback. Releasing twice is a no-op.
    """

    def __init__(self, registry: "SubscriptionRegistry", subscription_id: int):
        self._registry = registry
        self.subscription_id = subscription_id
        self.released = False

    def release(self) -> None:
        if self.released:
            return
        self._registry.release(self.subscription_id)
        self.released = True

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()

    def __repr__(self) -> str:
        state = "released" if self.released else "active"
        return f"Subscription(id={self.subscription_id}, {self._registry.name}, {state})"


class SubscriptionRegistry:
    """Ordered callback registry keyed by monotonically increasing ids."""

    _ids = itertools.count(1)

    def __init__(self, name: str = "subscribers"):
        self.name = name
        self._callbacks: Dict[int, Callable[..., Any]] = {}
        self._lock = threading.Lock()

    def subscribe(self, callback: Callable[..., Any]) -> Subscription:
        subscription_id = next(self._ids)
        with self._lock:
            self._callbacks[subscription_id] = callback
        return Subscription(self, subscription_id)

    def release(self, subscription_id: int) -> Optional[Callable[..., Any]]:
        with self._lock:
            return self._callbacks.pop(subscription_id, None)

    def publish(self, *args: Any) -> int:
        """
        Invoke every callback with ``args``.

        Returns:
            Number of callbacks that completed without raising
        """
        delivered = 0
        # Copy so callbacks may release themselves while being notified
        with self._lock:
            callbacks = list(self._callbacks.items())
        for subscription_id, callback in callbacks:
            try:
                callback(*args)
                delivered += 1
            except Exception:
                logger.exception(
                    f"[{self.name}] subscriber {subscription_id} raised; continuing"
                )
        return delivered

    def clear(self) -> None:
        with self._lock:
            self._callbacks.clear()

    def __len__(self) -> int:
        return len(self._callbacks)
