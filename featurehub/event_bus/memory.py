"""In-memory stream broker.

Append-only per-stream logs with consumer groups, pending entry tracking and
idle claiming. Used by tests and single-process local runs.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from typing import Any, Optional

from featurehub.errors import BrokerError

from .broker import StreamBroker, StreamMessage


@dataclass
class PendingEntry:
    """A delivered but unacknowledged message."""

    message_id: str
    consumer: str
    delivered_at: float = field(default_factory=time.monotonic)
    delivery_count: int = 1


@dataclass
class _GroupState:
    last_delivered: int = 0  # index into the stream log
    pending: dict[str, PendingEntry] = field(default_factory=dict)


class InMemoryStreamBroker(StreamBroker):
    """Thread-safe stream broker backed by Python lists."""

    def __init__(self) -> None:
        self._streams: dict[str, list[tuple[str, dict[str, Any]]]] = {}
        self._groups: dict[tuple[str, str], _GroupState] = {}
        self._last_ms: int = 0
        self._seq: int = 0
        self._cond = threading.Condition()

    def _next_id(self) -> str:
        now_ms = int(time.time() * 1000)
        if now_ms <= self._last_ms:
            self._seq += 1
        else:
            self._last_ms = now_ms
            self._seq = 0
        return f"{self._last_ms}-{self._seq}"

    def ensure_group(self, stream: str, group: str, start_id: str = "$") -> bool:
        with self._cond:
            log = self._streams.setdefault(stream, [])
            if (stream, group) in self._groups:
                return False
            start = len(log) if start_id == "$" else 0
            self._groups[(stream, group)] = _GroupState(last_delivered=start)
            return True

    def add(self, stream: str, fields: dict[str, Any]) -> str:
        with self._cond:
            message_id = self._next_id()
            self._streams.setdefault(stream, []).append((message_id, dict(fields)))
            self._cond.notify_all()
            return message_id

    def _collect(self, group: str, consumer: str, streams: list[str], count: int) -> list[StreamMessage]:
        batch: list[StreamMessage] = []
        for stream in streams:
            state = self._groups.get((stream, group))
            if state is None:
                raise BrokerError(f"NOGROUP No such consumer group '{group}' for stream '{stream}'")
            log = self._streams[stream]
            while state.last_delivered < len(log) and len(batch) < count:
                message_id, fields = log[state.last_delivered]
                state.last_delivered += 1
                state.pending[message_id] = PendingEntry(message_id=message_id, consumer=consumer)
                batch.append(StreamMessage(stream=stream, message_id=message_id, fields=dict(fields)))
        return batch

    def read_group(
        self,
        group: str,
        consumer: str,
        streams: list[str],
        count: int,
        block_ms: int,
    ) -> list[StreamMessage]:
        deadline = time.monotonic() + block_ms / 1000.0
        with self._cond:
            while True:
                batch = self._collect(group, consumer, streams, count)
                remaining = deadline - time.monotonic()
                if batch or remaining <= 0:
                    return batch
                self._cond.wait(remaining)

    def ack(self, stream: str, group: str, message_id: str) -> int:
        with self._cond:
            state = self._groups.get((stream, group))
            if state is None:
                return 0
            return int(state.pending.pop(message_id, None) is not None)

    def claim_stale(
        self,
        stream: str,
        group: str,
        consumer: str,
        min_idle_ms: int,
        count: int = 100,
    ) -> list[StreamMessage]:
        now = time.monotonic()
        claimed: list[StreamMessage] = []
        with self._cond:
            state = self._groups.get((stream, group))
            if state is None:
                return claimed
            by_id = dict(self._streams.get(stream, []))
            for entry in list(state.pending.values()):
                if len(claimed) >= count:
                    break
                if (now - entry.delivered_at) * 1000 < min_idle_ms:
                    continue
                entry.consumer = consumer
                entry.delivered_at = now
                entry.delivery_count += 1
                claimed.append(
                    StreamMessage(stream=stream, message_id=entry.message_id, fields=dict(by_id[entry.message_id]))
                )
        return claimed

    # --- Inspection ---

    def messages(self, stream: str) -> list[StreamMessage]:
        """All messages ever added to a stream, oldest first."""
        with self._cond:
            return [
                StreamMessage(stream=stream, message_id=mid, fields=dict(fields))
                for mid, fields in self._streams.get(stream, [])
            ]

    def pending(self, stream: str, group: str, consumer: Optional[str] = None) -> list[PendingEntry]:
        with self._cond:
            state = self._groups.get((stream, group))
            if state is None:
                return []
            return [
                e for e in state.pending.values()
                if consumer is None or e.consumer == consumer
            ]
