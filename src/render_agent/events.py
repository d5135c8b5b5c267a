"""
In-process publish/subscribe for render events.

Render sessions publish progress, log, error and completion events on
per-session topics; the scheduler publishes job and history events on
global topics. `EventLog` is the notification sink the desktop UI polls.
"""
import itertools
import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, Iterable, List, Optional

from .models import utc_now

logger = logging.getLogger(__name__)


# Global topics published by the scheduler
TOPIC_JOB_UPDATED = "job_updated"
TOPIC_JOB_PROGRESS = "job_progress"
TOPIC_JOB_LOG = "job_log"
TOPIC_JOB_ERROR = "job_error"
TOPIC_JOB_FINISHED = "job_finished"
TOPIC_HISTORY = "history"

GLOBAL_TOPICS = (
    TOPIC_JOB_UPDATED,
    TOPIC_JOB_PROGRESS,
    TOPIC_JOB_LOG,
    TOPIC_JOB_ERROR,
    TOPIC_JOB_FINISHED,
    TOPIC_HISTORY,
)


@dataclass(frozen=True)
class Event:
    topic: str
    data: Dict[str, Any]
    timestamp: Any = field(default_factory=utc_now)


EventCallback = Callable[[Event], Any]


class Subscription:
    """Handle returned by `EventBus.subscribe`; unsubscribing twice is a no-op."""

    def __init__(self, bus: "EventBus", topic: str, callback: EventCallback):
        self.bus = bus
        self.topic = topic
        self.callback = callback
        self.active = True

    def unsubscribe(self) -> None:
        if self.active:
            self.active = False
            self.bus._remove(self)


class EventBus:
    """Topic-keyed fan-out. Callbacks run synchronously in publish order."""

    def __init__(self) -> None:
        self._subscribers: Dict[str, List[Subscription]] = {}

    def subscribe(self, topic: str, callback: EventCallback) -> Subscription:
        subscription = Subscription(self, topic, callback)
        self._subscribers.setdefault(topic, []).append(subscription)
        return subscription

    def _remove(self, subscription: Subscription) -> None:
        subscribers = self._subscribers.get(subscription.topic)
        if not subscribers:
            return
        try:
            subscribers.remove(subscription)
        except ValueError:
            pass
        if not subscribers:
            del self._subscribers[subscription.topic]

    def publish(self, topic: str, data: Optional[Dict[str, Any]] = None) -> Event:
        event = Event(topic=topic, data=dict(data or {}))
        for subscription in list(self._subscribers.get(topic, [])):
            if not subscription.active:
                continue
            try:
                subscription.callback(event)
            except Exception:
                logger.exception(f"Event subscriber for '{topic}' failed")
        return event

    def subscriber_count(self, topic: Optional[str] = None) -> int:
        if topic is not None:
            return len(self._subscribers.get(topic, []))
        return sum(len(subs) for subs in self._subscribers.values())


class SubscriptionGroup:
    """Subscriptions that share one lifetime and are released together."""

    def __init__(self, bus: EventBus):
        self.bus = bus
        self._subscriptions: List[Subscription] = []

    def subscribe(self, topic: str, callback: EventCallback) -> Subscription:
        subscription = self.bus.subscribe(topic, callback)
        self._subscriptions.append(subscription)
        return subscription

    def close(self) -> None:
        for subscription in self._subscriptions:
            subscription.unsubscribe()
        self._subscriptions.clear()

    def __len__(self) -> int:
        return sum(1 for s in self._subscriptions if s.active)


class EventLog:
    """Bounded buffer of recent events, read incrementally by sequence number."""

    def __init__(self, max_entries: int = 1000):
        self._entries: Deque[Dict[str, Any]] = deque(maxlen=max_entries)
        self._seq = itertools.count(1)
        self._group: Optional[SubscriptionGroup] = None

    def attach(self, bus: EventBus, topics: Iterable[str] = GLOBAL_TOPICS) -> None:
        self.detach()
        self._group = SubscriptionGroup(bus)
        for topic in topics:
            self._group.subscribe(topic, self.record)

    def detach(self) -> None:
        if self._group is not None:
            self._group.close()
            self._group = None

    def record(self, event: Event) -> None:
        self._entries.append({
            "seq": next(self._seq),
            "topic": event.topic,
            "timestamp": event.timestamp.isoformat(),
            "data": event.data,
        })

    def since(self, seq: int = 0, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        entries = [e for e in self._entries if e["seq"] > seq]
        if limit is not None:
            entries = entries[:limit]
        return entries

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)
