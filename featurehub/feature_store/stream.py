"""Online stream processor.

A worker joins a consumer group on the event streams, computes feature
vectors for the online feature sets of each event's tenant and writes them
through the feature cache. Delivery is at-least-once: a message is
acknowledged only after every computation for it succeeded, or after it was
copied to the dead-letter stream.
"""

from __future__ import annotations

import json
import logging
import random
import socket
import threading
import uuid
from collections import defaultdict, deque
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any, Deque, Dict, Iterable, List, Mapping, Optional, Tuple

from featurehub.errors import BrokerError
from featurehub.event_bus import (
    TOPIC_FEATURE_COMPUTED,
    Notifier,
    StreamBroker,
    StreamMessage,
    feature_computed_event,
    notify_quietly,
)
from featurehub.logging_config import LogContext, PerformanceTimer

from .compute import FeatureComputer
from .config import DEFAULT_CACHE_TTL_SECONDS, StreamProcessorConfig
from .materialization import MaterializationCoordinator
from .online import FeatureCache
from .registry import FeatureSet

logger = logging.getLogger(__name__)


class WorkerState(str, Enum):
    IDLE = "idle"
    READING = "reading"
    PROCESSING = "processing"
    ACKING = "acking"
    STOPPED = "stopped"


@dataclass
class WorkerStats:
    batches: int = 0
    messages_processed: int = 0
    messages_skipped: int = 0
    messages_failed: int = 0
    dead_lettered: int = 0
    broker_errors: int = 0
    index_reloads: int = 0
    messages_claimed: int = 0
    last_batch_ms: float = 0.0


class ActiveFeatureSetIndex:
    """Online feature sets by tenant.

    The mapping is never mutated; ``replace`` swaps in a new snapshot.
    """

    def __init__(self) -> None:
        self._snapshot: Mapping[str, Tuple[FeatureSet, ...]] = MappingProxyType({})
        self._lock = threading.Lock()

    def replace(self, feature_sets: Iterable[FeatureSet]) -> None:
        grouped: Dict[str, List[FeatureSet]] = defaultdict(list)
        for fs in feature_sets:
            grouped[fs.tenant_id].append(fs)
        snapshot = MappingProxyType({tenant: tuple(sets) for tenant, sets in grouped.items()})
        with self._lock:
            self._snapshot = snapshot

    def snapshot(self) -> Mapping[str, Tuple[FeatureSet, ...]]:
        with self._lock:
            return self._snapshot

    def for_tenant(self, tenant: str) -> Tuple[FeatureSet, ...]:
        return self.snapshot().get(tenant, ())

    def __len__(self) -> int:
        return sum(len(sets) for sets in self.snapshot().values())


def decode_fields(fields: Mapping[Any, Any]) -> Dict[str, Any]:
    """Stream fields to an event: each value is parsed as JSON when it is JSON."""
    event: Dict[str, Any] = {}
    for key, value in fields.items():
        if isinstance(key, bytes):
            key = key.decode("utf-8")
        if isinstance(value, bytes):
            value = value.decode("utf-8")
        if isinstance(value, str):
            try:
                value = json.loads(value)
            except ValueError:
                pass
        event[key] = value
    return event


def resolve_tenant(stream: str, event: Mapping[str, Any]) -> Optional[str]:
    """Tenant from an ``events:{tenant}:...`` (or ``telemetry:events:{tenant}:...``) key, else the payload."""
    parts = stream.split(":")
    if len(parts) >= 3 and parts[0] == "events" and parts[1]:
        return parts[1]
    if len(parts) >= 4 and parts[1] == "events" and parts[2]:
        return parts[2]
    tenant = event.get("tenant") or event.get("tenant_id")
    return str(tenant) if tenant else None


class OnlineStreamProcessor:
    """One consumer-group worker computing online features."""

    def __init__(
        self,
        broker: StreamBroker,
        coordinator: MaterializationCoordinator,
        cache: FeatureCache,
        computer: Optional[FeatureComputer] = None,
        config: Optional[StreamProcessorConfig] = None,
        notifier: Optional[Notifier] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.broker = broker
        self.coordinator = coordinator
        self.cache = cache
        self.computer = computer or FeatureComputer()
        self.config = config or StreamProcessorConfig()
        self.notifier = notifier
        self.consumer_name = self.config.consumer_name or f"{socket.gethostname()}-{uuid.uuid4().hex[:8]}"
        self.index = ActiveFeatureSetIndex()
        self.stats = WorkerStats()
        self._rng = rng or random.Random()
        self._state = WorkerState.IDLE
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._claimed: Deque[StreamMessage] = deque()

    @property
    def state(self) -> WorkerState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    # --- Lifecycle ---

    def setup(self) -> None:
        """Load the index, join the consumer groups and claim stale messages."""
        self.reload_index()
        for stream in self.config.stream_keys:
            created = self.broker.ensure_group(stream, self.config.consumer_group, self.config.group_start_id)
            if created:
                logger.info("Joined new consumer group %s on %s", self.config.consumer_group, stream)
        self.claim_stale()

    def start(self, block: bool = False) -> None:
        """Set up and run the loop, in a background thread unless ``block``."""
        self._stop.clear()
        self.setup()
        logger.info(
            "Stream worker %s started on %s (%d online feature sets)",
            self.consumer_name, ", ".join(self.config.stream_keys), len(self.index),
        )
        if block:
            self._run()
            return
        self._thread = threading.Thread(target=self._run, name=f"stream-worker-{self.consumer_name}", daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        """Let the in-flight batch finish, then stop."""
        self._stop.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
            if thread.is_alive():
                logger.warning(
                    "Stream worker %s still finishing its batch after %ss", self.consumer_name, timeout
                )
                return
        self._thread = None
        self._state = WorkerState.STOPPED
        logger.info("Stream worker %s stopped", self.consumer_name)

    def _run(self) -> None:
        with LogContext(worker_id=self.consumer_name):
            while not self._stop.is_set():
                try:
                    self.process_once()
                except Exception as e:
                    self.stats.broker_errors += 1
                    logger.error("Stream worker %s error: %s", self.consumer_name, e)
                    self._state = WorkerState.IDLE
                    self._stop.wait(self.config.error_backoff_seconds)
        self._state = WorkerState.STOPPED

    # --- Index ---

    def reload_index(self) -> int:
        """Replace the active feature set index from the store. Returns its size."""
        self.index.replace(self.coordinator.list_online_feature_sets())
        self.stats.index_reloads += 1
        logger.debug("Loaded %d online feature sets", len(self.index))
        return len(self.index)

    def claim_stale(self) -> int:
        """Take over pending messages of consumers that stopped acknowledging."""
        claimed = 0
        for stream in self.config.stream_keys:
            messages = self.broker.claim_stale(
                stream, self.config.consumer_group, self.consumer_name, self.config.claim_min_idle_ms,
            )
            self._claimed.extend(messages)
            claimed += len(messages)
        self.stats.messages_claimed += claimed
        return claimed

    # --- Processing ---

    def process_once(self) -> int:
        """Run one loop iteration. Returns the number of messages handled."""
        if self._rng.random() < self.config.reload_probability:
            self.reload_index()
            self.claim_stale()

        self._state = WorkerState.READING
        batch: List[StreamMessage] = []
        while self._claimed and len(batch) < self.config.batch_size:
            batch.append(self._claimed.popleft())
        if not batch:
            batch = self.broker.read_group(
                self.config.consumer_group,
                self.consumer_name,
                self.config.stream_keys,
                self.config.batch_size,
                self.config.block_ms,
            )
        if not batch:
            return 0

        self._state = WorkerState.PROCESSING
        failed_before = self.stats.messages_failed
        with PerformanceTimer(f"stream batch of {len(batch)}") as timer:
            for message in batch:
                self._handle(message)
                self._state = WorkerState.PROCESSING
        self.stats.batches += 1
        self.stats.last_batch_ms = timer.duration_ms
        logger.info(
            "Processed batch of %d messages (%d failed)",
            len(batch), self.stats.messages_failed - failed_before,
            extra={"duration_ms": round(timer.duration_ms, 2)},
        )
        self._state = WorkerState.READING
        return len(batch)

    def _handle(self, message: StreamMessage) -> None:
        event = decode_fields(message.fields)
        tenant = resolve_tenant(message.stream, event)
        if not tenant:
            logger.warning(
                "No tenant for message %s on %s, skipping", message.message_id, message.stream,
                extra={"message_id": message.message_id, "stream": message.stream},
            )
            self._ack(message)
            self.stats.messages_skipped += 1
            return

        feature_sets = self.index.for_tenant(tenant)
        if not feature_sets:
            self._ack(message)
            self.stats.messages_skipped += 1
            return

        with LogContext(tenant=tenant):
            try:
                for feature_set in feature_sets:
                    if feature_set.spec.applies_to(event):
                        self.compute_online_features(tenant, event, feature_set, event_id=message.message_id)
            except Exception as e:
                self.stats.messages_failed += 1
                logger.error(
                    "Feature computation failed for message %s: %s", message.message_id, e,
                    extra={"message_id": message.message_id, "stream": message.stream},
                )
                if not self._dead_letter(message, e):
                    return
                self._ack(message)
                return

        self._ack(message)
        self.stats.messages_processed += 1

    def _ack(self, message: StreamMessage) -> None:
        self._state = WorkerState.ACKING
        self.broker.ack(message.stream, self.config.consumer_group, message.message_id)

    def _dead_letter(self, message: StreamMessage, error: Exception) -> bool:
        """Copy a failed message to ``{stream}:dlq``. False leaves it pending."""
        dlq = f"{message.stream}{self.config.dead_letter_suffix}"
        data = {
            (k.decode("utf-8") if isinstance(k, bytes) else k): (v.decode("utf-8") if isinstance(v, bytes) else v)
            for k, v in message.fields.items()
        }
        try:
            self.broker.add(dlq, {
                "original_id": message.message_id,
                "stream": message.stream,
                "error": str(error),
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "data": json.dumps(data, default=str),
            })
        except BrokerError as e:
            logger.error(
                "Dead-letter write to %s failed, message %s stays pending: %s", dlq, message.message_id, e,
                extra={"message_id": message.message_id},
            )
            return False
        self.stats.dead_lettered += 1
        return True

    def compute_online_features(
        self,
        tenant: str,
        event: Mapping[str, Any],
        feature_set: FeatureSet,
        event_id: Optional[str] = None,
    ) -> Optional[Dict[str, Any]]:
        """Compute and cache one feature set's vector for an event.

        Returns the vector, or None when the event names no entity.
        """
        result = self.computer.compute_vector(tenant, event, feature_set.spec.features)
        if result is None:
            return None
        entity_id, vector = result

        self.cache.write_through(
            tenant,
            feature_set.id,
            entity_id,
            vector,
            feature_version=feature_set.version,
            ttl_seconds=feature_set.cache_ttl or DEFAULT_CACHE_TTL_SECONDS,
            event_id=str(event.get("id") or event_id or uuid.uuid4()),
        )
        notify_quietly(
            self.notifier,
            TOPIC_FEATURE_COMPUTED,
            feature_computed_event(
                tenant=tenant,
                feature_set_id=feature_set.id,
                entity_id=entity_id,
                feature_count=len(vector),
            ),
        )
        return vector
