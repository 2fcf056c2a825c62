"""In-process publish/subscribe channel for alert events.

Subscribers (UI, permission manager, notification dispatch) each get their
own bounded queue. Publishing never blocks the write path: when a slow
subscriber's queue is full its oldest event is dropped.
"""

import logging
import queue
import threading
from typing import Iterator, List, Optional

from carelens.models import AbuseAlert, AlertEvent, AlertEventType

logger = logging.getLogger(__name__)


class Subscription:
    """Handle returned by ``AlertBroker.subscribe``."""

    def __init__(self, broker: "AlertBroker", maxsize: int) -> None:
        self._broker = broker
        self._queue: "queue.Queue[AlertEvent]" = queue.Queue(maxsize=maxsize)
        self.closed = False

    def get(self, timeout: Optional[float] = None) -> Optional[AlertEvent]:
        """Next event, or None if none arrives within ``timeout`` seconds."""
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def drain(self) -> List[AlertEvent]:
        """All events currently queued, without waiting."""
        events = []
        while True:
            try:
                events.append(self._queue.get_nowait())
            except queue.Empty:
                return events

    def iter(self, timeout: float = 1.0) -> Iterator[AlertEvent]:
        """Yield events until the subscription is closed."""
        while not self.closed:
            event = self.get(timeout=timeout)
            if event is not None:
                yield event

    def close(self) -> None:
        self.closed = True
        self._broker.unsubscribe(self)

    def _offer(self, event: AlertEvent) -> None:
        while True:
            try:
                self._queue.put_nowait(event)
                return
            except queue.Full:
                try:
                    self._queue.get_nowait()
                    logger.warning("Alert subscriber queue full, dropped oldest event")
                except queue.Empty:
                    pass

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


class AlertBroker:
    """Fan-out of alert creation and status-change events."""

    def __init__(self, queue_size: int = 1000) -> None:
        self._queue_size = queue_size
        self._subscribers: List[Subscription] = []
        self._lock = threading.Lock()

    def subscribe(self) -> Subscription:
        subscription = Subscription(self, self._queue_size)
        with self._lock:
            self._subscribers.append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            if subscription in self._subscribers:
                self._subscribers.remove(subscription)

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def publish(self, event_type: AlertEventType, alert: AbuseAlert) -> AlertEvent:
        event = AlertEvent(event_type=event_type, alert=alert)
        with self._lock:
            subscribers = list(self._subscribers)
        for subscription in subscribers:
            subscription._offer(event)
        return event
