"""Event bus and stream broker configuration."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class DeliveryStatus(str, Enum):
    """Delivery status of a notification to a subscriber."""

    PENDING = "pending"
    DELIVERED = "delivered"
    FAILED = "failed"
    DEAD_LETTER = "dead_letter"


class SubscriberState(str, Enum):
    """State of a subscriber."""

    ACTIVE = "active"
    PAUSED = "paused"


class EventCategory(str, Enum):
    """Notification categories emitted by the feature store."""

    FEATURE_SET = "feature_set"
    MATERIALIZATION = "materialization"
    FEATURE = "feature"


# Topics published by the core components
TOPIC_FEATURE_SET_REGISTERED = "feature_set.registered"
TOPIC_MATERIALIZATION_COMPLETED = "materialization.completed"
TOPIC_FEATURE_COMPUTED = "feature.computed"


@dataclass
class EventBusConfig:
    """Configuration for the in-process notification bus."""

    max_subscribers_per_topic: int = 100
    max_retry_attempts: int = 1
    dead_letter_enabled: bool = True
    max_dead_letters: int = 1000
    max_delivery_log: int = 10_000
