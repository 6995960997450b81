"""
Shared registry of observations with change notification.

The registry is the one shared mutable resource of the feedback loop. Core
components depend only on its narrow contract: ``set``, ``get``,
``subscribe`` (path-scoped or global) and ``delete``.
"""

import logging
import math
import threading
import warnings
from dataclasses import replace
from typing import Callable, Dict, List, Optional, Tuple

from ..subscriptions import Subscription, SubscriptionRegistry
from .observation import (
    DEAD_SIGNAL_CONFIDENCE,
    DeadSignalWarning,
    Observation,
    PayloadKind,
    SourceClass,
)

logger = logging.getLogger(__name__)

BLOCK_PREFIX = "blocks"

RegistryCallback = Callable[[Optional[Observation], str], None]


def block_path(block: SourceClass, path: str) -> str:
    """Mirror path of ``path`` inside a source-class block."""
    return f"{BLOCK_PREFIX}.{block.value}.{path}"


class Registry:
    """
    Path-keyed observation store.

    Subscribers receive ``(observation, path)`` synchronously, path
    subscribers first and then global subscribers, each group in
    registration order. Deletion notifies path subscribers with ``None``.

    State is guarded by a lock; subscribers are notified after it is
    released, so a callback may read or write the registry.
    """

    def __init__(self):
        self._state: Dict[str, Observation] = {}
        self._path_subscribers: Dict[str, SubscriptionRegistry] = {}
        self._global_subscribers = SubscriptionRegistry("registry:*")
        self._lock = threading.RLock()
        # Set on every write/delete, cleared after a committed seal
        self.is_dirty = False

    def set(self, path: str, observation: Observation) -> Observation:
        """
        Store an observation at ``path`` and notify subscribers.

        A scalar NaN is stored as a dead signal. Dead signals are recorded
        like any other observation and flagged with DeadSignalWarning.

        Returns:
            The observation actually stored
        """
        if not isinstance(observation, Observation):
            raise TypeError(f"Registry values must be Observation, got {type(observation).__name__}")

        if (
            observation.value.kind == PayloadKind.SCALAR
            and math.isnan(observation.value.data)
            and not observation.is_dead_signal
        ):
            logger.warning(f"Null state at {path} from {observation.source}; severing signal")
            observation = replace(observation, confidence=DEAD_SIGNAL_CONFIDENCE)

        if observation.is_dead_signal:
            logger.warning(f"Dead signal recorded at {path} from {observation.source}")
            warnings.warn(
                f"Dead signal at {path} from {observation.source}",
                DeadSignalWarning,
                stacklevel=2,
            )

        with self._lock:
            self._state[path] = observation
            self.is_dirty = True
        self._notify(path, observation)
        return observation

    def get(self, path: str) -> Optional[Observation]:
        with self._lock:
            return self._state.get(path)

    def has(self, path: str) -> bool:
        with self._lock:
            return path in self._state

    def delete(self, path: str) -> bool:
        """Remove ``path``. Returns True if it existed."""
        with self._lock:
            if path not in self._state:
                return False
            del self._state[path]
            self.is_dirty = True
            subscribers = self._path_subscribers.get(path)
        if subscribers:
            subscribers.publish(None, path)
        return True

    def subscribe(self, path: str, callback: RegistryCallback) -> Subscription:
        """Subscribe to writes and deletes at a single path."""
        with self._lock:
            if path not in self._path_subscribers:
                self._path_subscribers[path] = SubscriptionRegistry(f"registry:{path}")
            subscribers = self._path_subscribers[path]
        return subscribers.subscribe(callback)

    def subscribe_all(self, callback: RegistryCallback) -> Subscription:
        """Subscribe to writes at every path."""
        return self._global_subscribers.subscribe(callback)

    def _notify(self, path: str, observation: Observation) -> None:
        with self._lock:
            subscribers = self._path_subscribers.get(path)
        if subscribers:
            subscribers.publish(observation, path)
        self._global_subscribers.publish(observation, path)

    def paths(self) -> List[str]:
        with self._lock:
            return list(self._state.keys())

    def snapshot(self) -> Dict[str, Observation]:
        """Copy of every path -> observation pair."""
        with self._lock:
            return dict(self._state)

    def get_by_source(self, source: str) -> List[Tuple[str, Observation]]:
        with self._lock:
            return [(p, o) for p, o in self._state.items() if o.source == source]

    def get_by_block(self, block: SourceClass) -> List[Tuple[str, Observation]]:
        prefix = f"{BLOCK_PREFIX}.{block.value}."
        with self._lock:
            return [(p, o) for p, o in self._state.items() if p.startswith(prefix)]

    def mark_clean(self) -> None:
        with self._lock:
            self.is_dirty = False

    def clear(self) -> None:
        """Drop all state and subscriptions."""
        with self._lock:
            self._state.clear()
            for subscribers in self._path_subscribers.values():
                subscribers.clear()
            self._path_subscribers.clear()
            self._global_subscribers.clear()
            self.is_dirty = False

    def size(self) -> int:
        with self._lock:
            return len(self._state)

    def __len__(self) -> int:
        return self.size()

    def __contains__(self, path: str) -> bool:
        return self.has(path)
