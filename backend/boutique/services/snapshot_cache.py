# Overview: Process-wide read-through cache with reference-counted subscriptions.

"""
SnapshotCache

One upstream load per key, many downstream listeners. The first subscriber of
a key triggers a load through ``loader``; later subscribers get the cached
value immediately. Writers call publish() after they commit a change so every
listener sees the new snapshot without polling. When the last listener of a
key unsubscribes the cached value is dropped.

An instance is created by the app factory and injected into the services that
publish to it (see app.extensions["checkout_feed"]).
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Hashable

logger = logging.getLogger(__name__)

Listener = Callable[[Any], None]


class SnapshotCache:
    def __init__(self, loader: Callable[[Hashable], Any] | None = None):
        self._loader = loader
        self._lock = threading.RLock()
        self._listeners: dict[Hashable, list[Listener]] = {}
        self._values: dict[Hashable, Any] = {}

    def subscribe(self, key: Hashable, listener: Listener) -> Callable[[], None]:
        """
        Register ``listener`` for ``key`` and return an unsubscribe callable.
        The listener is called right away with the current snapshot if one is known.
        """
        with self._lock:
            listeners = self._listeners.setdefault(key, [])
            first = not listeners
            listeners.append(listener)
            if first and key not in self._values and self._loader is not None:
                self._values[key] = self._loader(key)
            current = self._values.get(key)

        if current is not None:
            self._deliver(key, listener, current)

        released = False

        def _unsubscribe() -> None:
            nonlocal released
            if released:
                return
            released = True
            with self._lock:
                remaining = self._listeners.get(key, [])
                if listener in remaining:
                    remaining.remove(listener)
                if not remaining:
                    self._listeners.pop(key, None)
                    self._values.pop(key, None)

        return _unsubscribe

    def publish(self, key: Hashable, value: Any) -> int:
        """Store ``value`` for subscribed keys and notify their listeners. Returns listener count."""
        with self._lock:
            listeners = list(self._listeners.get(key, []))
            if listeners:
                self._values[key] = value
        for listener in listeners:
            self._deliver(key, listener, value)
        return len(listeners)

    def get(self, key: Hashable) -> Any:
        with self._lock:
            return self._values.get(key)

    def subscriber_count(self, key: Hashable) -> int:
        with self._lock:
            return len(self._listeners.get(key, []))

    def _deliver(self, key: Hashable, listener: Listener, value: Any) -> None:
        try:
            listener(value)
        except Exception:
            # One broken listener must not stop the others.
            logger.exception("snapshot listener for %r failed", key)
