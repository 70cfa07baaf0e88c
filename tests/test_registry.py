"""Tests for the versioned feature registry."""

import threading
from unittest.mock import MagicMock

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from featurehub.db import (
    FeatureLineageRow,
    FeatureSetRow,
    create_session_factory,
    create_sync_engine,
    init_schema,
)
from featurehub.errors import ConflictError, NotFoundError, SpecError, StoreError
from featurehub.event_bus import TOPIC_FEATURE_SET_REGISTERED, Notifier
from featurehub.feature_store import FeatureRegistry, FeatureSetStatus, FeatureStoreConfig


def _count(session_factory, model):
    with session_factory() as session:
        return session.execute(select(func.count()).select_from(model)).scalar()


class TestRegister:
    def test_first_version(self, registry, tool_stats_spec):
        fs = registry.register("acme", tool_stats_spec, owner="ml-team")
        assert fs.version == 1
        assert fs.parent_version_id is None
        assert fs.status == FeatureSetStatus.DRAFT
        assert fs.owner == "ml-team"
        assert fs.description == "Per-tool latency statistics"
        assert fs.source_tables == ["telemetry_events"]
        assert fs.spec.version == 1
        assert fs.cache_ttl == 600

    def test_versions_chain_to_parent(self, registry, tool_stats_spec):
        v1 = registry.register("acme", tool_stats_spec, owner="ml-team")
        v2 = registry.register("acme", tool_stats_spec, owner="ml-team")
        v3 = registry.register("acme", tool_stats_spec, owner="someone-else")
        assert [v1.version, v2.version, v3.version] == [1, 2, 3]
        assert v2.parent_version_id == v1.id
        assert v3.parent_version_id == v2.id
        assert v3.spec.version == 3

    def test_versions_are_per_tenant(self, registry, tool_stats_spec):
        registry.register("acme", tool_stats_spec, owner="a")
        other = registry.register("globex", tool_stats_spec, owner="b")
        assert other.version == 1

    def test_lineage_rows(self, registry):
        spec = {
            "name": "mixed",
            "source": "telemetry_events",
            "features": [
                {"name": "latency", "type": "direct", "column": "latency_ms"},
                {"name": "tool_age", "type": "direct", "source": "tools", "columns": ["created_at", "updated_at"]},
                {"name": "calls", "type": "aggregation", "aggregation": "count", "column": "id", "window": "1d"},
            ],
        }
        fs = registry.register("acme", spec, owner="ml-team")
        lineage = {l.downstream_feature: l for l in registry.get_lineage("acme", fs.id)}
        assert set(lineage) == {"latency", "tool_age", "calls"}
        assert lineage["latency"].upstream_table == "telemetry_events"
        assert lineage["latency"].upstream_columns == ["latency_ms"]
        assert lineage["latency"].transformation_type == "direct"
        assert lineage["tool_age"].upstream_table == "tools"
        assert lineage["tool_age"].upstream_columns == ["created_at", "updated_at"]
        assert lineage["calls"].transformation_type == "count"
        assert lineage["calls"].transformation_spec["window"] == "1d"
        assert registry.get_upstream_tables("acme", fs.id) == ["telemetry_events", "tools"]

    @pytest.mark.parametrize("missing", ["name", "features", "source"])
    def test_spec_error_persists_nothing(self, registry, session_factory, missing, tool_stats_spec):
        spec = dict(tool_stats_spec)
        del spec[missing]
        with pytest.raises(SpecError):
            registry.register("acme", spec, owner="ml-team")
        assert _count(session_factory, FeatureSetRow) == 0
        assert _count(session_factory, FeatureLineageRow) == 0

    def test_yaml_input(self, registry):
        fs = registry.register(
            "acme",
            "name: from_yaml\nsource: telemetry_events\nfeatures:\n  - {name: latency, type: direct}\n",
            owner="ml-team",
        )
        assert fs.name == "from_yaml"

    def test_publishes_notification(self, registry, received, tool_stats_spec):
        fs = registry.register("acme", tool_stats_spec, owner="ml-team")
        assert len(received) == 1
        assert received[0].event_type == "feature_set_registered"
        assert received[0].tenant == "acme"
        assert received[0].data["feature_set_id"] == fs.id
        assert received[0].data["version"] == 1

    def test_notification_failure_does_not_fail_register(self, session_factory, tool_stats_spec):
        notifier = MagicMock(spec=Notifier)
        notifier.publish.side_effect = ConnectionError("redis down")
        registry = FeatureRegistry(session_factory, notifier=notifier)
        fs = registry.register("acme", tool_stats_spec, owner="ml-team")
        assert fs.version == 1
        notifier.publish.assert_called_once()
        assert notifier.publish.call_args[0][0] == TOPIC_FEATURE_SET_REGISTERED

    def test_store_failure_raises_store_error(self, tool_stats_spec):
        factory = MagicMock(side_effect=OperationalError("SELECT 1", {}, Exception("connection refused")))
        registry = FeatureRegistry(factory)
        with pytest.raises(StoreError):
            registry.register("acme", tool_stats_spec, owner="ml-team")


class TestConcurrentRegister:
    def test_concurrent_registrations_get_consecutive_versions(self, tmp_path, tool_stats_spec):
        engine = create_sync_engine(f"sqlite:///{tmp_path / 'registry.db'}", connect_args={"timeout": 30})
        init_schema(engine)
        registry = FeatureRegistry(
            create_session_factory(engine),
            config=FeatureStoreConfig(register_max_attempts=50),
        )
        n = 6
        barrier = threading.Barrier(n)
        results, errors = [], []

        def worker():
            barrier.wait()
            try:
                results.append(registry.register("acme", tool_stats_spec, owner="ml-team"))
            except Exception as e:  # collected for the assertion below
                errors.append(e)

        threads = [threading.Thread(target=worker) for _ in range(n)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=60)
        engine.dispose()

        assert errors == []
        assert sorted(fs.version for fs in results) == list(range(1, n + 1))
        by_version = {fs.version: fs for fs in results}
        for version in range(2, n + 1):
            assert by_version[version].parent_version_id == by_version[version - 1].id


class TestLookup:
    def test_get(self, registry, tool_stats_spec):
        fs = registry.register("acme", tool_stats_spec, owner="ml-team")
        assert registry.get("acme", fs.id).name == "tool_stats"

    def test_get_is_tenant_scoped(self, registry, tool_stats_spec):
        fs = registry.register("acme", tool_stats_spec, owner="ml-team")
        with pytest.raises(NotFoundError):
            registry.get("globex", fs.id)

    def test_get_version_with_status(self, registry, tool_stats_spec):
        registry.register("acme", tool_stats_spec, owner="ml-team")
        assert registry.get_version("acme", "tool_stats", 1).version == 1
        with pytest.raises(NotFoundError):
            registry.get_version("acme", "tool_stats", 1, status=FeatureSetStatus.ACTIVE)
        with pytest.raises(NotFoundError):
            registry.get_version("acme", "tool_stats", 2)

    def test_get_latest(self, registry, tool_stats_spec):
        assert registry.get_latest("acme", "tool_stats") is None
        registry.register("acme", tool_stats_spec, owner="ml-team")
        registry.register("acme", tool_stats_spec, owner="ml-team")
        assert registry.get_latest("acme", "tool_stats").version == 2

    def test_list_versions(self, registry, tool_stats_spec):
        for _ in range(3):
            registry.register("acme", tool_stats_spec, owner="ml-team")
        assert [fs.version for fs in registry.list_versions("acme", "tool_stats")] == [1, 2, 3]

    def test_list_feature_sets_by_status(self, registry, tool_stats_spec):
        a = registry.register("acme", tool_stats_spec, owner="ml-team")
        registry.register("acme", {**tool_stats_spec, "name": "other"}, owner="ml-team")
        registry.deprecate("acme", a.id)
        assert len(registry.list_feature_sets("acme")) == 2
        deprecated = registry.list_feature_sets("acme", status=FeatureSetStatus.DEPRECATED)
        assert [fs.id for fs in deprecated] == [a.id]

    def test_get_dependents(self, registry, tool_stats_spec):
        joined = {**tool_stats_spec, "name": "joined", "joins": [{"table": "tools", "on": "1 = 1"}]}
        registry.register("acme", tool_stats_spec, owner="ml-team")
        registry.register("acme", joined, owner="ml-team")
        assert [fs.name for fs in registry.get_dependents("acme", "tools")] == ["joined"]
        assert len(registry.get_dependents("acme", "telemetry_events")) == 2


class TestAdministrativeUpdates:
    def test_archive_is_terminal(self, registry, tool_stats_spec):
        fs = registry.register("acme", tool_stats_spec, owner="ml-team")
        registry.archive("acme", fs.id)
        assert registry.get("acme", fs.id).status == FeatureSetStatus.ARCHIVED
        with pytest.raises(ConflictError):
            registry.set_status("acme", fs.id, FeatureSetStatus.ACTIVE)

    def test_set_status_unknown(self, registry):
        with pytest.raises(NotFoundError):
            registry.set_status("acme", "nope", FeatureSetStatus.ACTIVE)

    def test_set_status_joins_caller_transaction(self, registry, session_factory, tool_stats_spec):
        fs = registry.register("acme", tool_stats_spec, owner="ml-team")
        with session_factory() as session:
            registry.set_status("acme", fs.id, FeatureSetStatus.ACTIVE, session=session)
            session.rollback()
        assert registry.get("acme", fs.id).status == FeatureSetStatus.DRAFT

    def test_update_quality_score(self, registry, tool_stats_spec):
        fs = registry.register("acme", tool_stats_spec, owner="ml-team")
        registry.update_quality_score("acme", fs.id, 0.93)
        assert registry.get("acme", fs.id).quality_score == pytest.approx(0.93)

    def test_spec_is_immutable_across_updates(self, registry, tool_stats_spec):
        fs = registry.register("acme", tool_stats_spec, owner="ml-team")
        registry.deprecate("acme", fs.id)
        assert registry.get("acme", fs.id).spec.to_dict() == fs.spec.to_dict()
