"""In-process notification bus.

Topic-based publish/subscribe used as the fire-and-forget notification
channel. A failing subscriber never affects the publisher; its failures
land in the dead letter list.
"""

from __future__ import annotations

import fnmatch
import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from .config import DeliveryStatus, EventBusConfig, SubscriberState
from .notifier import Notifier
from .schema import EventEnvelope

logger = logging.getLogger(__name__)


@dataclass
class Subscriber:
    """A subscriber to one or more topics."""

    subscriber_id: str = field(default_factory=lambda: uuid.uuid4().hex[:16])
    name: str = ""
    topic_pattern: str = "*"
    handler: Optional[Callable[[EventEnvelope], None]] = None
    state: SubscriberState = SubscriberState.ACTIVE
    tenant: Optional[str] = None
    events_received: int = 0
    events_failed: int = 0


@dataclass
class DeliveryRecord:
    """Record of a notification delivery attempt."""

    record_id: str = field(default_factory=lambda: uuid.uuid4().hex[:16])
    event_id: str = ""
    topic: str = ""
    subscriber_id: str = ""
    status: DeliveryStatus = DeliveryStatus.PENDING
    attempts: int = 0
    last_error: Optional[str] = None
    delivered_at: Optional[datetime] = None


class NotificationBus(Notifier):
    """Thread-safe in-process pub/sub with per-tenant subscriptions."""

    def __init__(self, config: Optional[EventBusConfig] = None) -> None:
        self.config = config or EventBusConfig()
        self._subscribers: dict[str, Subscriber] = {}
        self._delivery_log: list[DeliveryRecord] = []
        self._dead_letters: list[tuple[EventEnvelope, str, str]] = []  # (event, subscriber_id, error)
        self._published_count: int = 0
        self._delivered_count: int = 0
        self._lock = threading.Lock()

    def subscribe(
        self,
        name: str,
        topic_pattern: str,
        handler: Optional[Callable[[EventEnvelope], None]] = None,
        tenant: Optional[str] = None,
    ) -> Subscriber:
        """Register a subscriber for a topic pattern, optionally scoped to one tenant."""
        with self._lock:
            topic_subs = [
                s for s in self._subscribers.values()
                if s.topic_pattern == topic_pattern
            ]
            if len(topic_subs) >= self.config.max_subscribers_per_topic:
                raise ValueError(
                    f"Max subscribers ({self.config.max_subscribers_per_topic}) "
                    f"reached for pattern '{topic_pattern}'"
                )
            sub = Subscriber(
                name=name,
                topic_pattern=topic_pattern,
                handler=handler,
                tenant=tenant,
            )
            self._subscribers[sub.subscriber_id] = sub
            return sub

    def unsubscribe(self, subscriber_id: str) -> bool:
        with self._lock:
            return self._subscribers.pop(subscriber_id, None) is not None

    def publish(self, topic: str, event: EventEnvelope) -> list[DeliveryRecord]:
        """Deliver an event to every matching active subscriber."""
        with self._lock:
            self._published_count += 1
            matching = [
                s for s in self._subscribers.values()
                if s.state == SubscriberState.ACTIVE
                and (s.topic_pattern == "*" or fnmatch.fnmatch(topic, s.topic_pattern))
                and (s.tenant is None or s.tenant == event.tenant)
            ]

        return [self._deliver(topic, event, sub) for sub in matching]

    def _deliver(self, topic: str, event: EventEnvelope, subscriber: Subscriber) -> DeliveryRecord:
        record = DeliveryRecord(
            event_id=event.event_id,
            topic=topic,
            subscriber_id=subscriber.subscriber_id,
        )

        for attempt in range(1, self.config.max_retry_attempts + 1):
            record.attempts = attempt
            try:
                if subscriber.handler is not None:
                    subscriber.handler(event)
                record.status = DeliveryStatus.DELIVERED
                record.delivered_at = datetime.now(timezone.utc)
                subscriber.events_received += 1
                break
            except Exception as exc:
                record.last_error = str(exc)
                subscriber.events_failed += 1
                logger.warning(
                    "Subscriber '%s' failed on %s (attempt %d): %s",
                    subscriber.name, topic, attempt, exc,
                )

        with self._lock:
            if record.status == DeliveryStatus.DELIVERED:
                self._delivered_count += 1
            else:
                record.status = DeliveryStatus.FAILED
                if self.config.dead_letter_enabled:
                    record.status = DeliveryStatus.DEAD_LETTER
                    self._dead_letters.append(
                        (event, subscriber.subscriber_id, record.last_error or "Unknown")
                    )
                    del self._dead_letters[:-self.config.max_dead_letters]
            self._delivery_log.append(record)
            del self._delivery_log[:-self.config.max_delivery_log]
        return record

    def pause_subscriber(self, subscriber_id: str) -> bool:
        sub = self._subscribers.get(subscriber_id)
        if sub is None:
            return False
        sub.state = SubscriberState.PAUSED
        return True

    def resume_subscriber(self, subscriber_id: str) -> bool:
        sub = self._subscribers.get(subscriber_id)
        if sub is None:
            return False
        sub.state = SubscriberState.ACTIVE
        return True

    def get_dead_letters(self, limit: int = 50) -> list[dict[str, Any]]:
        """Get notifications that no subscriber handler accepted."""
        return [
            {
                "event_id": evt.event_id,
                "event_type": evt.event_type,
                "subscriber_id": sub_id,
                "error": error,
            }
            for evt, sub_id, error in self._dead_letters[-limit:]
        ]

    def get_delivery_log(self, event_id: Optional[str] = None, limit: int = 50) -> list[DeliveryRecord]:
        records = self._delivery_log
        if event_id is not None:
            records = [r for r in records if r.event_id == event_id]
        return records[-limit:]

    def get_statistics(self) -> dict[str, Any]:
        active_subs = sum(
            1 for s in self._subscribers.values()
            if s.state == SubscriberState.ACTIVE
        )
        return {
            "total_subscribers": len(self._subscribers),
            "active_subscribers": active_subs,
            "total_published": self._published_count,
            "total_delivered": self._delivered_count,
            "dead_letters": len(self._dead_letters),
        }
