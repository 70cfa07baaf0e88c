"""Tests for the online stream processor."""

import json
import threading
import time
from types import MappingProxyType
from unittest.mock import MagicMock

import pytest

from featurehub.cache.keys import feature_vector_key
from featurehub.errors import BrokerError, ComputeError
from featurehub.event_bus import StreamBroker
from featurehub.feature_store import (
    ActiveFeatureSetIndex,
    OnlineStreamProcessor,
    StreamProcessorConfig,
    WorkerState,
    decode_fields,
    resolve_tenant,
)

STREAM = "events:acme:telemetry"
RAW_STREAM = "telemetry:raw"
GROUP = "feature-workers"

TOOL_EVENTS_SPEC = {
    "name": "tool_events",
    "source": "telemetry_events",
    "features": [
        {"name": "latency_ms", "type": "direct"},
        {"name": "tokens_per_ms", "type": "expression", "expression": "tokens / latency_ms"},
    ],
    "eventFilters": [{"type": "tool_call"}],
    "cacheTtl": 300,
}


def tool_call(**overrides):
    fields = {"type": "tool_call", "toolId": "tool-1", "latency_ms": "20", "tokens": "60"}
    fields.update(overrides)
    return fields


def wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return False


@pytest.fixture
def online_set(registry, coordinator):
    fs = registry.register("acme", TOOL_EVENTS_SPEC, owner="ml-team")
    coordinator.materialize_offline("acme", fs.id)
    coordinator.materialize_online("acme", fs.id)
    return registry.get("acme", fs.id)


@pytest.fixture
def make_processor(broker, coordinator, cache, bus):
    def _make(**overrides):
        options = dict(
            stream_keys=[STREAM, RAW_STREAM],
            consumer_group=GROUP,
            consumer_name="worker-1",
            block_ms=10,
            error_backoff_seconds=0.01,
            reload_probability=0.0,
        )
        options.update(overrides)
        rng = options.pop("rng", None)
        return OnlineStreamProcessor(
            options.pop("broker", broker), coordinator, cache,
            config=StreamProcessorConfig(**options), notifier=bus, rng=rng,
        )
    return _make


@pytest.fixture
def processor(make_processor, online_set):
    proc = make_processor()
    proc.setup()
    yield proc
    proc.stop(timeout=5)


class TestProcessing:
    def test_computes_writes_and_acks(self, processor, broker, cache, redis_mock, online_set):
        message_id = broker.add(STREAM, tool_call())

        assert processor.process_once() == 1

        entry = cache.get_entry("acme", online_set.id, "tool-1")
        assert entry.feature_vector == {"latency_ms": 20, "tokens_per_ms": 3}
        assert entry.feature_version == 1
        stored = redis_mock.hgetall(feature_vector_key("acme", online_set.id, "tool-1"))
        assert stored["event_id"] == message_id
        assert broker.pending(STREAM, GROUP) == []
        assert processor.stats.messages_processed == 1
        assert processor.stats.batches == 1

    def test_event_id_from_payload(self, processor, broker, redis_mock, online_set):
        broker.add(STREAM, tool_call(id="evt-42"))
        processor.process_once()
        stored = redis_mock.hgetall(feature_vector_key("acme", online_set.id, "tool-1"))
        assert stored["event_id"] == "evt-42"

    def test_tenant_from_payload(self, processor, broker, cache, online_set):
        broker.add(RAW_STREAM, tool_call(tenant="acme", toolId="tool-5"))
        processor.process_once()
        assert cache.get_entry("acme", online_set.id, "tool-5") is not None

    def test_no_tenant_is_acked_and_skipped(self, processor, broker):
        broker.add(RAW_STREAM, tool_call())
        processor.process_once()
        assert processor.stats.messages_skipped == 1
        assert broker.pending(RAW_STREAM, GROUP) == []

    def test_tenant_without_online_sets(self, processor, broker, cache, online_set):
        broker.add(RAW_STREAM, tool_call(tenant="globex"))
        processor.process_once()
        assert processor.stats.messages_skipped == 1
        assert cache.get_cache_stats(tenant="globex")["durable_entries"] == 0

    def test_event_filter_excludes(self, processor, broker, cache, online_set):
        broker.add(STREAM, tool_call(type="heartbeat"))
        processor.process_once()
        assert cache.get_entry("acme", online_set.id, "tool-1") is None
        assert broker.pending(STREAM, GROUP) == []

    def test_event_without_entity(self, processor, broker, cache, online_set):
        broker.add(STREAM, {"type": "tool_call", "latency_ms": "5"})
        processor.process_once()
        assert cache.get_cache_stats()["durable_entries"] == 0
        assert processor.stats.messages_processed == 1

    def test_notification(self, processor, broker, received, online_set):
        broker.add(STREAM, tool_call())
        processor.process_once()
        computed = [e for e in received if e.event_type == "feature_computed"]
        assert len(computed) == 1
        assert computed[0].data == {"feature_set_id": online_set.id, "entity_id": "tool-1", "feature_count": 2}

    def test_empty_read(self, processor):
        assert processor.process_once() == 0
        assert processor.stats.batches == 0

    def test_batch_size(self, make_processor, broker, online_set):
        proc = make_processor(batch_size=2)
        proc.setup()
        for i in range(5):
            broker.add(STREAM, tool_call(toolId=f"tool-{i}"))
        assert proc.process_once() == 2
        assert proc.process_once() == 2
        assert proc.process_once() == 1


class TestFailures:
    def test_failed_message_goes_to_dead_letter_stream(self, processor, broker):
        processor.computer = MagicMock()
        processor.computer.compute_vector.side_effect = ComputeError("boom", feature="latency_ms")
        message_id = broker.add(STREAM, tool_call())

        processor.process_once()

        dead = broker.messages(STREAM + ":dlq")
        assert len(dead) == 1
        fields = dead[0].fields
        assert fields["original_id"] == message_id
        assert fields["stream"] == STREAM
        assert fields["error"] == "boom"
        assert json.loads(fields["data"])["toolId"] == "tool-1"
        assert broker.pending(STREAM, GROUP) == []
        assert processor.stats.messages_failed == 1
        assert processor.stats.dead_lettered == 1

    def test_fast_tier_failure_is_dead_lettered(self, processor, broker, redis_mock):
        redis_mock.disconnect()
        broker.add(STREAM, tool_call())
        processor.process_once()
        assert len(broker.messages(STREAM + ":dlq")) == 1

    def test_dead_letter_failure_leaves_message_pending(self, processor, broker, monkeypatch):
        processor.computer = MagicMock()
        processor.computer.compute_vector.side_effect = ComputeError("boom")
        message_id = broker.add(STREAM, tool_call())

        def refuse(stream, fields):
            raise BrokerError("dlq unavailable")

        monkeypatch.setattr(broker, "add", refuse)
        processor.process_once()

        pending = broker.pending(STREAM, GROUP)
        assert [p.message_id for p in pending] == [message_id]
        assert processor.stats.dead_lettered == 0

    def test_non_numeric_fields_do_not_fail(self, processor, broker, cache, online_set):
        broker.add(STREAM, tool_call(toolId="tool-1"))
        broker.add(STREAM, tool_call(toolId="tool-2", latency_ms='"slow"'))

        assert processor.process_once() == 2
        assert cache.get_entry("acme", online_set.id, "tool-2").feature_vector == {"latency_ms": "slow"}
        assert processor.stats.messages_failed == 0
        assert broker.pending(STREAM, GROUP) == []


class TestRecovery:
    def test_claims_stale_messages_on_setup(self, make_processor, broker, cache, online_set):
        broker.ensure_group(STREAM, GROUP)
        broker.add(STREAM, tool_call(toolId="tool-8"))
        broker.read_group(GROUP, "crashed-worker", [STREAM], 10, 0)

        proc = make_processor(claim_min_idle_ms=0)
        proc.setup()
        assert proc.stats.messages_claimed == 1
        assert proc.process_once() == 1

        assert cache.get_entry("acme", online_set.id, "tool-8") is not None
        assert broker.pending(STREAM, GROUP) == []

    def test_fresh_pending_messages_are_not_claimed(self, make_processor, broker, online_set):
        broker.ensure_group(STREAM, GROUP)
        broker.add(STREAM, tool_call())
        broker.read_group(GROUP, "busy-worker", [STREAM], 10, 0)

        proc = make_processor(claim_min_idle_ms=60_000)
        proc.setup()
        assert proc.stats.messages_claimed == 0
        assert [p.consumer for p in broker.pending(STREAM, GROUP)] == ["busy-worker"]

    def test_index_reload(self, make_processor, registry, coordinator, broker, cache, online_set):
        rng = MagicMock()
        rng.random.return_value = 0.0
        proc = make_processor(reload_probability=0.5, rng=rng)
        proc.setup()
        assert len(proc.index) == 1

        other = registry.register("acme", {**TOOL_EVENTS_SPEC, "name": "tool_events_b"}, owner="ml-team")
        coordinator.materialize_offline("acme", other.id)
        coordinator.materialize_online("acme", other.id)

        broker.add(STREAM, tool_call())
        proc.process_once()
        assert len(proc.index) == 2
        assert cache.get_entry("acme", other.id, "tool-1") is not None

    def test_no_reload_above_probability(self, make_processor, online_set):
        rng = MagicMock()
        rng.random.return_value = 0.99
        proc = make_processor(reload_probability=0.5, rng=rng)
        proc.setup()
        proc.process_once()
        assert proc.stats.index_reloads == 1


class TestLifecycle:
    def test_threaded_run(self, make_processor, broker, cache, online_set):
        proc = make_processor()
        proc.start()
        try:
            assert proc.is_running
            broker.add(STREAM, tool_call())
            assert wait_for(lambda: proc.stats.messages_processed == 1)
        finally:
            proc.stop(timeout=5)

        assert not proc.is_running
        assert proc.state == WorkerState.STOPPED
        assert cache.get_entry("acme", online_set.id, "tool-1") is not None

    def test_broker_errors_back_off_and_continue(self, make_processor, online_set):
        failing = MagicMock(spec=StreamBroker)
        failing.ensure_group.return_value = True
        failing.claim_stale.return_value = []
        failing.read_group.side_effect = BrokerError("connection reset")

        proc = make_processor(broker=failing)
        proc.start()
        try:
            assert wait_for(lambda: proc.stats.broker_errors >= 2)
            assert proc.is_running
        finally:
            proc.stop(timeout=5)
        assert proc.state == WorkerState.STOPPED

    def test_stop_timeout_leaves_busy_worker_running(self, make_processor, online_set):
        release = threading.Event()
        reading = threading.Event()

        def slow_read(*args, **kwargs):
            reading.set()
            release.wait(5)
            return []

        slow = MagicMock(spec=StreamBroker)
        slow.ensure_group.return_value = True
        slow.claim_stale.return_value = []
        slow.read_group.side_effect = slow_read

        proc = make_processor(broker=slow)
        proc.start()
        assert reading.wait(5)
        proc.stop(timeout=0.05)
        assert proc.is_running
        assert proc.state != WorkerState.STOPPED

        release.set()
        proc.stop(timeout=5)
        assert not proc.is_running
        assert proc.state == WorkerState.STOPPED

    def test_setup_creates_groups(self, make_processor, broker, online_set):
        proc = make_processor()
        proc.setup()
        broker.add(STREAM, tool_call())
        broker.add(RAW_STREAM, tool_call(tenant="acme"))
        assert proc.process_once() == 2


class TestActiveFeatureSetIndex:
    def test_snapshot_is_read_only(self, online_set):
        index = ActiveFeatureSetIndex()
        index.replace([online_set])
        snapshot = index.snapshot()

        assert isinstance(snapshot, MappingProxyType)
        with pytest.raises(TypeError):
            snapshot["globex"] = ()

        index.replace([])
        assert snapshot["acme"] == (online_set,)
        assert index.for_tenant("acme") == ()
        assert len(index) == 0


class TestDecoding:
    def test_decode_fields(self):
        event = decode_fields({b"latency_ms": b"12.5", "status": "ok", "meta": '{"retries": 2}'})
        assert event == {"latency_ms": 12.5, "status": "ok", "meta": {"retries": 2}}

    @pytest.mark.parametrize("stream,event,expected", [
        ("events:acme:telemetry", {}, "acme"),
        ("telemetry:events:globex:tools", {}, "globex"),
        ("telemetry:raw", {"tenant": "initech"}, "initech"),
        ("telemetry:raw", {"tenant_id": "hooli"}, "hooli"),
        ("events:acme:telemetry", {"tenant": "other"}, "acme"),
        ("telemetry:raw", {}, None),
    ])
    def test_resolve_tenant(self, stream, event, expected):
        assert resolve_tenant(stream, event) == expected
