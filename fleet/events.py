"""Fan-out of fleet events to push-feed subscribers."""

import json
import logging
import queue
import threading
import time
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

EVENT_DRIVES = "drives"
EVENT_CRASH = "crash"
EVENT_RESET = "reset"


class Subscription:
    """A subscriber's bounded mailbox of event envelopes."""

    def __init__(self, max_pending: int = 100):
        self._queue: queue.Queue = queue.Queue(maxsize=max_pending)
        self.dropped = 0

    def put(self, envelope: Dict[str, Any]) -> None:
        while True:
            try:
                self._queue.put_nowait(envelope)
                return
            except queue.Full:
                try:
                    self._queue.get_nowait()
                    self.dropped += 1
                except queue.Empty:
                    pass

    def get(self, timeout: Optional[float] = None) -> Optional[Dict[str, Any]]:
        """Next envelope, or None if nothing arrived within ``timeout``."""
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None


class EventBroadcaster:
    """Publishes ``{type, data, timestamp}`` envelopes to every subscriber."""

    def __init__(self, max_pending: int = 100, clock: Callable[[], float] = time.time):
        self.max_pending = max_pending
        self._clock = clock
        self._subscribers: List[Subscription] = []
        self._lock = threading.Lock()

    def subscribe(self) -> Subscription:
        subscription = Subscription(self.max_pending)
        with self._lock:
            self._subscribers.append(subscription)
        logger.info(f"Event subscriber connected ({self.subscriber_count} total)")
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            if subscription in self._subscribers:
                self._subscribers.remove(subscription)
        logger.info(f"Event subscriber disconnected ({self.subscriber_count} total)")

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def envelope(self, event_type: str, data: Any) -> Dict[str, Any]:
        return {"type": event_type, "data": data, "timestamp": int(self._clock() * 1000)}

    def publish(self, event_type: str, data: Any) -> Dict[str, Any]:
        """Deliver an event to all current subscribers without blocking."""
        envelope = self.envelope(event_type, data)
        with self._lock:
            subscribers = list(self._subscribers)
        for subscription in subscribers:
            subscription.put(envelope)
        return envelope


def format_sse(envelope: Dict[str, Any]) -> str:
    """Render an envelope as a Server-Sent Events message."""
    return f"data: {json.dumps(envelope)}\n\n"
