"""Best-effort fan-out of ride and driver updates to topic subscribers.

Delivery is at-most-once. Within one topic, publishes are sequenced by the
entity version carried in each message: a message older than the last one
delivered on its topic is dropped, so a subscriber never sees a later
commit followed by an earlier one.
"""

import logging
import queue
import threading
import time
from abc import ABC, abstractmethod
from collections import OrderedDict
from collections.abc import Iterator
from typing import Any

from metrics.prometheus_exporter import observe_latency
from ride import TERMINAL_STATUSES

from .channels import EventMessage, RideEventMessage, validate_topic

logger = logging.getLogger(__name__)

CLOSED_TOPIC_MEMORY = 1024

_TERMINAL_VALUES = frozenset(status.value for status in TERMINAL_STATUSES)


class Subscription(ABC):
    """Handle on one topic. Iterate it, or poll with ``get``."""

    def __init__(self, topic: str):
        self.topic = topic
        self._closed = threading.Event()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    @abstractmethod
    def get(self, timeout: float | None = None) -> dict[str, Any] | None:
        """Next message, or None if none arrived within timeout."""

    def close(self) -> None:
        self._closed.set()

    def __iter__(self) -> Iterator[dict[str, Any]]:
        while not self.closed:
            message = self.get(timeout=0.5)
            if message is not None:
                yield message

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class EventBroadcaster(ABC):
    backend = "base"

    def __init__(self, closed_topic_memory: int = CLOSED_TOPIC_MEMORY) -> None:
        self._lock = threading.Lock()
        self._last_version: dict[str, int] = {}
        # Finished rides keep their last version here, oldest evicted first.
        self._closed_versions: OrderedDict[str, int] = OrderedDict()
        self._closed_topic_memory = closed_topic_memory

    def publish(self, topic: str, message: EventMessage) -> bool:
        """Deliver message to the topic's subscribers.

        Returns False when the message was dropped as stale.
        """
        validate_topic(topic)
        payload = message.model_dump(mode="json")

        with self._lock:
            last = self._version_of(topic)
            if last is not None and message.version < last:
                logger.debug(
                    "Dropping stale %s on %s (version %d < %d)",
                    message.event,
                    topic,
                    message.version,
                    last,
                )
                return False
            self._record_version(topic, message)

            start_time = time.perf_counter()
            self._deliver(topic, payload)
            observe_latency(self.backend, (time.perf_counter() - start_time) * 1000)
        return True

    def _version_of(self, topic: str) -> int | None:
        last = self._last_version.get(topic)
        if last is None:
            last = self._closed_versions.get(topic)
        return last

    def _record_version(self, topic: str, message: EventMessage) -> None:
        closes = isinstance(message, RideEventMessage) and message.status in _TERMINAL_VALUES
        if not closes and topic not in self._closed_versions:
            self._last_version[topic] = message.version
            return

        self._last_version.pop(topic, None)
        self._closed_versions[topic] = message.version
        self._closed_versions.move_to_end(topic)
        while len(self._closed_versions) > self._closed_topic_memory:
            self._closed_versions.popitem(last=False)

    def last_version(self, topic: str) -> int | None:
        with self._lock:
            return self._version_of(topic)

    @property
    def tracked_topics(self) -> int:
        """Topics whose version is held until their ride finishes."""
        with self._lock:
            return len(self._last_version)

    @abstractmethod
    def _deliver(self, topic: str, payload: dict[str, Any]) -> None: ...

    @abstractmethod
    def subscribe(self, topic: str) -> Subscription: ...

    def close(self) -> None:
        """Release backend resources."""


class _QueueSubscription(Subscription):
    def __init__(self, topic: str, owner: "InMemoryBroadcaster"):
        super().__init__(topic)
        self._owner = owner
        self._queue: queue.Queue[dict[str, Any]] = queue.Queue()

    def put(self, payload: dict[str, Any]) -> None:
        self._queue.put(payload)

    def get(self, timeout: float | None = None) -> dict[str, Any] | None:
        try:
            if timeout == 0:
                return self._queue.get_nowait()
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def drain(self) -> list[dict[str, Any]]:
        """All messages currently queued, without blocking."""
        messages = []
        while True:
            message = self.get(timeout=0)
            if message is None:
                return messages
            messages.append(message)

    def close(self) -> None:
        super().close()
        self._owner._unsubscribe(self)


class InMemoryBroadcaster(EventBroadcaster):
    """In-process fan-out. Each subscription owns an unbounded queue."""

    backend = "memory"

    def __init__(self, closed_topic_memory: int = CLOSED_TOPIC_MEMORY) -> None:
        super().__init__(closed_topic_memory)
        self._subs_lock = threading.Lock()
        self._subscribers: dict[str, list[_QueueSubscription]] = {}

    def subscribe(self, topic: str) -> _QueueSubscription:
        validate_topic(topic)
        subscription = _QueueSubscription(topic, self)
        with self._subs_lock:
            self._subscribers.setdefault(topic, []).append(subscription)
        return subscription

    def subscriber_count(self, topic: str) -> int:
        with self._subs_lock:
            return len(self._subscribers.get(topic, []))

    def _deliver(self, topic: str, payload: dict[str, Any]) -> None:
        with self._subs_lock:
            targets = list(self._subscribers.get(topic, []))
        for subscription in targets:
            subscription.put(payload)

    def _unsubscribe(self, subscription: _QueueSubscription) -> None:
        with self._subs_lock:
            subs = self._subscribers.get(subscription.topic, [])
            if subscription in subs:
                subs.remove(subscription)
            if not subs:
                self._subscribers.pop(subscription.topic, None)

    def close(self) -> None:
        with self._subs_lock:
            subscriptions = [s for subs in self._subscribers.values() for s in subs]
        for subscription in subscriptions:
            subscription.close()
