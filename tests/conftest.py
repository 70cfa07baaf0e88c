"""Pytest configuration and shared fixtures."""

import copy
import sys
from datetime import datetime, timezone
from pathlib import Path

import pytest
from sqlalchemy import Column, DateTime, Float, Integer, MetaData, String, Table

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from featurehub.cache import RedisFastTier  # noqa: E402
from featurehub.db import create_session_factory, create_sync_engine, init_schema  # noqa: E402
from featurehub.event_bus import InMemoryStreamBroker, NotificationBus  # noqa: E402
from featurehub.feature_store import (  # noqa: E402
    FeatureCache,
    FeatureRegistry,
    FeatureStoreConfig,
    MaterializationCoordinator,
)
from featurehub.testing import MockRedis  # noqa: E402

# Source tables the test feature sets read from
source_metadata = MetaData()

telemetry_events = Table(
    "telemetry_events",
    source_metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("tenant_id", String(64), nullable=False),
    Column("entity_id", String(64), nullable=False),
    Column("latency_ms", Float),
    Column("tokens", Integer),
    Column("status", String(20)),
)

telemetry_aggregates = Table(
    "telemetry_aggregates",
    source_metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("tenant_id", String(64), nullable=False),
    Column("entity_id", String(64), nullable=False),
    Column("latency_ms", Float),
    Column("timestamp", DateTime(timezone=True), nullable=False),
)

TOOL_STATS_SPEC = {
    "name": "tool_stats",
    "description": "Per-tool latency statistics",
    "source": "telemetry_events",
    "features": [
        {"name": "avg_latency", "type": "aggregation", "aggregation": "avg", "column": "latency_ms", "window": "1h"},
        {"name": "event_count", "type": "aggregation", "aggregation": "count", "column": "latency_ms", "window": "1h"},
    ],
    "cacheTtl": 600,
}


class Clock:
    """Settable clock for components that take a ``clock`` callable."""

    def __init__(self, now=None):
        self.now = now or datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, delta):
        self.now = self.now + delta


@pytest.fixture
def tool_stats_spec():
    return copy.deepcopy(TOOL_STATS_SPEC)


@pytest.fixture
def engine():
    eng = create_sync_engine("sqlite://")
    init_schema(eng)
    source_metadata.create_all(eng)
    with eng.begin() as conn:
        conn.execute(
            telemetry_events.insert(),
            [
                {"tenant_id": "acme", "entity_id": "tool-1", "latency_ms": 100.0, "tokens": 10, "status": "ok"},
                {"tenant_id": "acme", "entity_id": "tool-1", "latency_ms": 300.0, "tokens": 30, "status": "error"},
                {"tenant_id": "acme", "entity_id": "tool-2", "latency_ms": 50.0, "tokens": 5, "status": "ok"},
                {"tenant_id": "globex", "entity_id": "tool-1", "latency_ms": 999.0, "tokens": 1, "status": "ok"},
            ],
        )
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
def bus():
    return NotificationBus()


@pytest.fixture
def received(bus):
    """Every notification published on the bus, in order."""
    events = []
    bus.subscribe("test-recorder", "*", handler=lambda evt: events.append(evt))
    return events


@pytest.fixture
def config():
    return FeatureStoreConfig(view_schema=None)


@pytest.fixture
def registry(session_factory, bus, config):
    return FeatureRegistry(session_factory, notifier=bus, config=config)


@pytest.fixture
def coordinator(session_factory, registry, bus):
    return MaterializationCoordinator(session_factory, registry, notifier=bus)


@pytest.fixture
def redis_mock():
    return MockRedis()


@pytest.fixture
def fast_tier(redis_mock):
    return RedisFastTier(client=redis_mock)


@pytest.fixture
def clock():
    return Clock(datetime.now(timezone.utc))


@pytest.fixture
def cache(session_factory, registry, coordinator, fast_tier, clock):
    return FeatureCache(session_factory, registry, coordinator, fast_tier=fast_tier, clock=clock)


@pytest.fixture
def broker():
    return InMemoryStreamBroker()


@pytest.fixture
def active_tool_stats(registry, coordinator):
    """A registered and offline-materialized ``tool_stats`` feature set for tenant acme."""
    fs = registry.register("acme", TOOL_STATS_SPEC, owner="ml-team")
    coordinator.materialize_offline("acme", fs.id)
    return registry.get("acme", fs.id)
