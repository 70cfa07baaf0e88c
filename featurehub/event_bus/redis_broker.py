"""Redis Streams broker (XREADGROUP / XACK / XADD / XAUTOCLAIM)."""

from __future__ import annotations

import logging
from typing import Any, Optional

import redis

from featurehub.errors import BrokerError

from .broker import StreamBroker, StreamMessage

logger = logging.getLogger(__name__)


def _as_str(value: Any) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8")
    return str(value)


class RedisStreamBroker(StreamBroker):
    """Stream broker over a redis-py client."""

    def __init__(self, client: Any = None, redis_url: Optional[str] = None):
        self._client = client
        self._redis_url = redis_url

    def get_client(self):
        if self._client is None:
            from featurehub.settings import get_settings

            url = self._redis_url or get_settings().redis_url
            self._client = redis.from_url(url, decode_responses=True)
        return self._client

    def ensure_group(self, stream: str, group: str, start_id: str = "$") -> bool:
        try:
            self.get_client().xgroup_create(stream, group, id=start_id, mkstream=True)
            logger.info("Created consumer group %s on %s", group, stream)
            return True
        except redis.ResponseError as e:
            if "BUSYGROUP" in str(e):
                return False
            raise BrokerError(f"Failed to create group {group} on {stream}: {e}") from e
        except redis.RedisError as e:
            raise BrokerError(f"Failed to create group {group} on {stream}: {e}") from e

    def read_group(
        self,
        group: str,
        consumer: str,
        streams: list[str],
        count: int,
        block_ms: int,
    ) -> list[StreamMessage]:
        try:
            reply = self.get_client().xreadgroup(
                groupname=group,
                consumername=consumer,
                streams={stream: ">" for stream in streams},
                count=count,
                block=block_ms,
            )
        except redis.RedisError as e:
            raise BrokerError(f"XREADGROUP failed: {e}") from e
        if not reply:
            return []
        # RESP2 replies are [[stream, entries], ...]; RESP3 replies are {stream: [entries]}
        if isinstance(reply, dict):
            items = [(name, entries[0] if entries and isinstance(entries[0], list) else entries)
                     for name, entries in reply.items()]
        else:
            items = [(name, entries) for name, entries in reply]
        batch: list[StreamMessage] = []
        for name, entries in items:
            for message_id, fields in entries:
                batch.append(
                    StreamMessage(stream=_as_str(name), message_id=_as_str(message_id), fields=dict(fields or {}))
                )
        return batch

    def ack(self, stream: str, group: str, message_id: str) -> int:
        try:
            return int(self.get_client().xack(stream, group, message_id))
        except redis.RedisError as e:
            raise BrokerError(f"XACK failed for {message_id}: {e}") from e

    def add(self, stream: str, fields: dict[str, Any]) -> str:
        try:
            return _as_str(self.get_client().xadd(stream, fields))
        except redis.RedisError as e:
            raise BrokerError(f"XADD to {stream} failed: {e}") from e

    def claim_stale(
        self,
        stream: str,
        group: str,
        consumer: str,
        min_idle_ms: int,
        count: int = 100,
    ) -> list[StreamMessage]:
        try:
            reply = self.get_client().xautoclaim(
                stream, group, consumer, min_idle_time=min_idle_ms, start_id="0-0", count=count
            )
        except redis.RedisError as e:
            raise BrokerError(f"XAUTOCLAIM on {stream} failed: {e}") from e
        # [next_start_id, [(id, fields), ...], deleted_ids]
        entries = reply[1] if reply and len(reply) > 1 else []
        claimed = []
        for message_id, fields in entries:
            if fields is None:
                continue
            claimed.append(StreamMessage(stream=stream, message_id=_as_str(message_id), fields=dict(fields)))
        if claimed:
            logger.info("Claimed %d stale messages on %s for %s", len(claimed), stream, consumer)
        return claimed

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None
