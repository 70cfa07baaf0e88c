"""Notification channels.

Notifications are fire-and-forget: nothing in the core depends on them
being delivered, so ``notify_quietly`` logs and drops publisher failures.
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Optional

from .schema import EventEnvelope

logger = logging.getLogger(__name__)


class Notifier(ABC):
    """Publish side of a notification channel."""

    @abstractmethod
    def publish(self, topic: str, event: EventEnvelope) -> Any:
        ...


class LoggingNotifier(Notifier):
    """Writes every notification to the log and nothing else."""

    def __init__(self, level: int = logging.INFO) -> None:
        self.level = level

    def publish(self, topic: str, event: EventEnvelope) -> None:
        logger.log(self.level, "notification %s: %s", topic, json.dumps(event.to_dict(), default=str))


class RedisNotifier(Notifier):
    """Publishes notifications on a Redis pub/sub channel."""

    def __init__(
        self,
        client: Any = None,
        channel: Optional[str] = None,
        redis_url: Optional[str] = None,
    ) -> None:
        from featurehub.settings import get_settings

        settings = get_settings()
        self._client = client
        self._redis_url = redis_url or settings.redis_url
        self.channel = channel or settings.notification_channel

    def get_client(self):
        if self._client is None:
            import redis

            self._client = redis.from_url(self._redis_url, decode_responses=True)
        return self._client

    def publish(self, topic: str, event: EventEnvelope) -> int:
        payload = {"topic": topic, **event.to_dict()}
        return self.get_client().publish(self.channel, json.dumps(payload, default=str))


def notify_quietly(notifier: Optional[Notifier], topic: str, event: EventEnvelope) -> None:
    """Publish without letting a notification failure reach the caller."""
    if notifier is None:
        return
    try:
        notifier.publish(topic, event)
    except Exception as exc:
        logger.warning("Notification %s dropped: %s", topic, exc)
