"""Notifications and event streams.

Notification envelopes, the in-process notification bus and notifiers, and
the consumer-group stream brokers feeding the online stream processor.
"""

from .broker import StreamBroker, StreamMessage
from .bus import DeliveryRecord, NotificationBus, Subscriber
from .config import (
    TOPIC_FEATURE_COMPUTED,
    TOPIC_FEATURE_SET_REGISTERED,
    TOPIC_MATERIALIZATION_COMPLETED,
    DeliveryStatus,
    EventBusConfig,
    EventCategory,
    SubscriberState,
)
from .memory import InMemoryStreamBroker, PendingEntry
from .notifier import LoggingNotifier, Notifier, RedisNotifier, notify_quietly
from .redis_broker import RedisStreamBroker
from .schema import (
    EventEnvelope,
    feature_computed_event,
    feature_set_registered_event,
    materialization_completed_event,
)

__all__ = [
    # Config
    "DeliveryStatus",
    "EventBusConfig",
    "EventCategory",
    "SubscriberState",
    "TOPIC_FEATURE_COMPUTED",
    "TOPIC_FEATURE_SET_REGISTERED",
    "TOPIC_MATERIALIZATION_COMPLETED",
    # Schema
    "EventEnvelope",
    "feature_computed_event",
    "feature_set_registered_event",
    "materialization_completed_event",
    # Notifications
    "DeliveryRecord",
    "LoggingNotifier",
    "NotificationBus",
    "Notifier",
    "RedisNotifier",
    "Subscriber",
    "notify_quietly",
    # Streams
    "InMemoryStreamBroker",
    "PendingEntry",
    "RedisStreamBroker",
    "StreamBroker",
    "StreamMessage",
]
