"""Publish/subscribe fan-out of quota snapshots to passive observers.

One writer (QuotaService) publishes; any number of listeners receive. Delivery
is synchronous and best-effort: a listener that raises is dropped on the spot
and never retried, and the failure never reaches the publisher.
"""

import logging
import threading
from collections.abc import Callable

from commentslash.core.schemas import QuotaStatus

logger = logging.getLogger(__name__)

Listener = Callable[[QuotaStatus], None]


class Subscription:
    """Handle returned by subscribe(). Call it (or cancel()) to unsubscribe."""

    def __init__(self, broadcaster: "StatusBroadcaster", listener: Listener) -> None:
        self._broadcaster = broadcaster
        self.listener = listener

    @property
    def active(self) -> bool:
        return self._broadcaster.is_subscribed(self.listener)

    def cancel(self) -> None:
        self._broadcaster.unsubscribe(self.listener)

    def __call__(self) -> None:
        self.cancel()


class StatusBroadcaster:
    """Set of listeners plus a publish() that drops the ones that fail."""

    def __init__(self) -> None:
        self._listeners: set[Listener] = set()
        self._lock = threading.Lock()
        self._deliver_lock = threading.RLock()
        self._last_version = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._listeners)

    def subscribe(self, listener: Listener) -> Subscription:
        with self._lock:
            self._listeners.add(listener)
        return Subscription(self, listener)

    def unsubscribe(self, listener: Listener) -> None:
        with self._lock:
            self._listeners.discard(listener)

    def is_subscribed(self, listener: Listener) -> bool:
        with self._lock:
            return listener in self._listeners

    def publish(self, status: QuotaStatus) -> int:
        """Deliver to every listener. Returns how many were dropped.

        Versioned snapshots are delivered in version order: one that arrives
        after a newer one has gone out is discarded.
        """
        with self._deliver_lock:
            if status.version and status.version <= self._last_version:
                logger.debug("Skipping superseded snapshot v%d", status.version)
                return 0
            self._last_version = max(self._last_version, status.version)
            with self._lock:
                listeners = list(self._listeners)
            dropped = 0
            for listener in listeners:
                if not deliver(listener, status):
                    self.unsubscribe(listener)
                    dropped += 1
        if dropped:
            logger.debug("Dropped %d failed listener(s)", dropped)
        return dropped


def deliver(listener: Listener, status: QuotaStatus) -> bool:
    """Call one listener; False if it raised."""
    try:
        listener(status)
    except Exception as e:
        logger.debug("Listener %r failed: %s", listener, e)
        return False
    return True
