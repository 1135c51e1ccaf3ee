"""
In-process publish/subscribe for import progress events.

Publishing never waits on subscribers: each subscription has its own bounded
queue and an event that does not fit is dropped for that subscriber only.
"""
from __future__ import annotations

import logging
import queue
import threading
from typing import Any, Dict, List, Optional, Protocol

logger = logging.getLogger(__name__)

IMPORT_HISTORY_CHANGED = "importHistoryChanged"


class EventPublisher(Protocol):
    def publish(self, topic: str, payload: Dict[str, Any]) -> None:
        ...


class Subscription:
    """A single subscriber's view of one topic."""

    def __init__(
        self,
        broker: "ImportEventBroker",
        topic: str,
        import_id: Optional[str] = None,
        max_pending: int = 256,
    ):
        self.topic = topic
        self.import_id = import_id
        self.dropped = 0
        self._broker = broker
        self._queue: "queue.Queue[Dict[str, Any]]" = queue.Queue(maxsize=max_pending)
        self._closed = False

    def matches(self, topic: str, payload: Dict[str, Any]) -> bool:
        if topic != self.topic:
            return False
        return self.import_id is None or payload.get("_id") == self.import_id

    def offer(self, payload: Dict[str, Any]) -> bool:
        try:
            self._queue.put_nowait(payload)
        except queue.Full:
            self.dropped += 1
            return False
        return True

    def get(self, timeout: Optional[float] = None) -> Optional[Dict[str, Any]]:
        """Next payload, or None if nothing arrived within ``timeout`` seconds."""
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._broker.unsubscribe(self)

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


class ImportEventBroker:
    """Fan-out of published payloads to every matching subscription."""

    def __init__(self, max_pending: int = 256):
        self.max_pending = max_pending
        self._subscriptions: List[Subscription] = []
        self._lock = threading.Lock()

    def subscribe(
        self,
        topic: str,
        import_id: Optional[str] = None,
        max_pending: Optional[int] = None,
    ) -> Subscription:
        subscription = Subscription(
            self,
            topic,
            import_id=import_id,
            max_pending=max_pending or self.max_pending,
        )
        with self._lock:
            self._subscriptions.append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)

    def subscriber_count(self, topic: Optional[str] = None) -> int:
        with self._lock:
            return sum(1 for sub in self._subscriptions if topic is None or sub.topic == topic)

    def publish(self, topic: str, payload: Dict[str, Any]) -> None:
        with self._lock:
            targets = [sub for sub in self._subscriptions if sub.matches(topic, payload)]

        for subscription in targets:
            if not subscription.offer(payload):
                logger.warning(
                    "Dropped %s event for slow subscriber (import %s, %d dropped so far)",
                    topic,
                    payload.get("_id"),
                    subscription.dropped,
                )
