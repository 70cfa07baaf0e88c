"""Stream broker contract used by the online stream processor.

A broker exposes consumer-group reads with at-least-once delivery: a message
stays pending for its consumer until it is acknowledged, and pending messages
of a consumer that went away can be claimed by another one.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class StreamMessage:
    """One message read from a stream."""

    stream: str
    message_id: str
    fields: dict[str, Any] = field(default_factory=dict)


class StreamBroker(ABC):
    """Consumer-group stream operations."""

    @abstractmethod
    def ensure_group(self, stream: str, group: str, start_id: str = "$") -> bool:
        """Create the consumer group (and the stream). Returns False if it already existed."""

    @abstractmethod
    def read_group(
        self,
        group: str,
        consumer: str,
        streams: list[str],
        count: int,
        block_ms: int,
    ) -> list[StreamMessage]:
        """Read up to ``count`` new messages, blocking at most ``block_ms``."""

    @abstractmethod
    def ack(self, stream: str, group: str, message_id: str) -> int:
        ...

    @abstractmethod
    def add(self, stream: str, fields: dict[str, Any]) -> str:
        """Append a message and return its id."""

    @abstractmethod
    def claim_stale(
        self,
        stream: str,
        group: str,
        consumer: str,
        min_idle_ms: int,
        count: int = 100,
    ) -> list[StreamMessage]:
        """Take over pending messages idle for at least ``min_idle_ms``."""

    def close(self) -> None:
        pass
