"""
Memory Hub — Notification Fanout
Best-effort change signals to whoever is listening (UI, CLI, sockets).

Delivery is synchronous and non-persistent: a subscriber that is not
connected when a signal is published never sees it and is expected to
re-fetch state when it reconnects. The subscription lock is never held
while callbacks run, so a callback may subscribe/unsubscribe freely.
"""
import itertools
import logging
import threading
from typing import Any, Callable, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)

# callback(topic, payload)
Subscriber = Callable[[str, Dict[str, Any]], None]


class Fanout:
    """Topic-tagged publish/subscribe with per-subscriber error isolation."""

    def __init__(self):
        self._subscribers: Dict[int, Tuple[Optional[str], Subscriber]] = {}
        self._ids = itertools.count(1)
        self._lock = threading.RLock()
        self._stats = {
            "published": 0,
            "delivered": 0,
            "errors": 0,
        }

    def subscribe(self, callback: Subscriber, topic: Optional[str] = None) -> int:
        """
        Register a callback. With `topic` set, only that topic is delivered;
        otherwise every topic is.

        Returns:
            Subscription id for unsubscribe().
        """
        with self._lock:
            sub_id = next(self._ids)
            self._subscribers[sub_id] = (topic, callback)
        logger.debug(f"Subscriber {sub_id} added (topic={topic or '*'})")
        return sub_id

    def unsubscribe(self, sub_id: int) -> bool:
        with self._lock:
            return self._subscribers.pop(sub_id, None) is not None

    def publish(self, topic: str, payload: Optional[Dict[str, Any]] = None) -> int:
        """
        Deliver one signal to every current subscriber.
        Returns the number of successful deliveries.
        """
        payload = payload or {}
        with self._lock:
            targets: List[Tuple[int, Subscriber]] = [
                (sub_id, cb)
                for sub_id, (wanted, cb) in self._subscribers.items()
                if wanted is None or wanted == topic
            ]
            self._stats["published"] += 1

        delivered = 0
        for sub_id, callback in targets:
            try:
                callback(topic, payload)
                delivered += 1
            except Exception as e:
                logger.error(f"Subscriber {sub_id} failed on {topic}: {e}", exc_info=True)
                with self._lock:
                    self._stats["errors"] += 1

        with self._lock:
            self._stats["delivered"] += delivered
        return delivered

    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            return {**self._stats, "subscribers": len(self._subscribers)}
