"""Tests for offline/online materialization and view metadata."""

import pandas as pd
import pytest
from sqlalchemy import text

from featurehub.db.models import FeatureViewRow
from featurehub.errors import ConflictError, ErrorCode, NotFoundError, StoreError
from featurehub.feature_store import (
    FeatureSetStatus,
    MaterializationMode,
    MaterializationStatus,
    PostgresViewDialect,
)


# ── Offline materialization ───────────────────────────────────────────


class TestMaterializeOffline:
    def test_creates_view_and_activates(self, registry, coordinator, tool_stats_spec):
        fs = registry.register("acme", tool_stats_spec, owner="ml-team")
        result = coordinator.materialize_offline("acme", fs.id)

        assert result["view_name"] == "features_tool_stats_v1"
        assert registry.get("acme", fs.id).status == FeatureSetStatus.ACTIVE

        job = coordinator.get_materialization(result["materialization_id"])
        assert job.mode == MaterializationMode.OFFLINE
        assert job.status == MaterializationStatus.COMPLETED
        assert job.rows_processed == 2
        assert job.last_run_at is not None

        view = coordinator.get_view("acme", "features_tool_stats_v1")
        assert view.physical_name == "features_tool_stats_v1__acme"
        assert view.view_type == "view"
        assert view.row_count == 2
        assert "WHERE tenant_id = 'acme'" in view.view_sql
        assert "GROUP BY tenant_id, entity_id" in view.view_sql

    def test_view_is_queryable(self, session_factory, active_tool_stats):
        with session_factory() as session:
            rows = session.execute(
                text("SELECT * FROM features_tool_stats_v1__acme ORDER BY entity_id")
            ).mappings().all()
        assert [r["entity_id"] for r in rows] == ["tool-1", "tool-2"]
        assert rows[0]["avg_latency"] == pytest.approx(200.0)
        assert rows[0]["event_count"] == 2

    def test_second_version_gets_own_view(self, registry, coordinator, tool_stats_spec):
        registry.register("acme", tool_stats_spec, owner="ml-team")
        v2 = registry.register("acme", tool_stats_spec, owner="ml-team")
        assert coordinator.materialize_offline("acme", v2.id)["view_name"] == "features_tool_stats_v2"

    def test_second_call_conflicts(self, registry, coordinator, tool_stats_spec):
        fs = registry.register("acme", tool_stats_spec, owner="ml-team")
        coordinator.materialize_offline("acme", fs.id)
        with pytest.raises(ConflictError) as exc:
            coordinator.materialize_offline("acme", fs.id)
        assert exc.value.error_code == ErrorCode.DUPLICATE_MATERIALIZATION
        assert len(coordinator.list_materializations("acme", fs.id)) == 1

    def test_tenants_with_same_name_get_separate_views(self, registry, coordinator, tool_stats_spec):
        acme = registry.register("acme", tool_stats_spec, owner="ml-team")
        globex = registry.register("globex", {
            "name": "tool_stats",
            "source": "telemetry_events",
            "features": [
                {"name": "max_tokens", "type": "aggregation", "aggregation": "max", "column": "tokens", "window": "1h"},
            ],
        }, owner="data-team")
        assert coordinator.materialize_offline("acme", acme.id)["view_name"] == "features_tool_stats_v1"
        assert coordinator.materialize_offline("globex", globex.id)["view_name"] == "features_tool_stats_v1"

        globex_view = coordinator.get_view("globex", "features_tool_stats_v1")
        assert globex_view.physical_name == "features_tool_stats_v1__globex"
        assert "max(tokens) AS max_tokens" in globex_view.view_sql
        assert globex_view.row_count == 1

        globex_row = coordinator.read_offline_row("globex", registry.get("globex", globex.id), "tool-1")
        assert globex_row == {"tenant_id": "globex", "entity_id": "tool-1", "max_tokens": 1}
        acme_row = coordinator.read_offline_row("acme", registry.get("acme", acme.id), "tool-1")
        assert acme_row["avg_latency"] == pytest.approx(200.0)
        assert "max_tokens" not in acme_row

    def test_recorded_view_with_other_definition_conflicts(
        self, session_factory, registry, coordinator, tool_stats_spec
    ):
        fs = registry.register("acme", tool_stats_spec, owner="ml-team")
        with session_factory() as session:
            session.add(FeatureViewRow(
                tenant_id="acme",
                feature_set_id=fs.id,
                view_name="features_tool_stats_v1",
                physical_name="features_tool_stats_v1__acme",
                view_sql="SELECT tenant_id, entity_id FROM telemetry_events",
            ))
            session.commit()

        with pytest.raises(ConflictError) as exc:
            coordinator.materialize_offline("acme", fs.id)
        assert exc.value.error_code == ErrorCode.RESOURCE_CONFLICT
        assert coordinator.list_materializations("acme", fs.id) == []
        assert registry.get("acme", fs.id).status == FeatureSetStatus.DRAFT

    def test_losing_concurrent_build_conflicts_without_failure_record(
        self, registry, coordinator, tool_stats_spec, monkeypatch
    ):
        fs = registry.register("acme", tool_stats_spec, owner="ml-team")
        coordinator.materialize_offline("acme", fs.id)

        # Both callers passed the pre-check; the unique index decides
        monkeypatch.setattr(coordinator, "_live_offline_job", lambda session, feature_set_id: None)
        with pytest.raises(ConflictError) as exc:
            coordinator.materialize_offline("acme", fs.id)
        assert exc.value.error_code == ErrorCode.DUPLICATE_MATERIALIZATION

        jobs = coordinator.list_materializations("acme", fs.id)
        assert [j.status for j in jobs] == [MaterializationStatus.COMPLETED]

    def test_unknown_feature_set(self, coordinator):
        with pytest.raises(NotFoundError):
            coordinator.materialize_offline("acme", "does-not-exist")

    def test_other_tenant_cannot_materialize(self, registry, coordinator, tool_stats_spec):
        fs = registry.register("acme", tool_stats_spec, owner="ml-team")
        with pytest.raises(NotFoundError):
            coordinator.materialize_offline("globex", fs.id)

    def test_failure_records_failed_job_and_keeps_status(self, registry, coordinator, tool_stats_spec):
        tool_stats_spec["source"] = "no_such_table"
        fs = registry.register("acme", tool_stats_spec, owner="ml-team")

        with pytest.raises(StoreError):
            coordinator.materialize_offline("acme", fs.id)

        assert registry.get("acme", fs.id).status == FeatureSetStatus.DRAFT
        jobs = coordinator.list_materializations("acme", fs.id)
        assert len(jobs) == 1
        assert jobs[0].status == MaterializationStatus.FAILED
        assert "no_such_table" in jobs[0].error_message

    def test_failed_job_does_not_block_retry(self, engine, registry, coordinator, tool_stats_spec):
        tool_stats_spec["source"] = "late_events"
        fs = registry.register("acme", tool_stats_spec, owner="ml-team")
        with pytest.raises(StoreError):
            coordinator.materialize_offline("acme", fs.id)

        with engine.begin() as conn:
            conn.execute(text("DROP VIEW IF EXISTS features_tool_stats_v1__acme"))
            conn.execute(text("CREATE TABLE late_events AS SELECT * FROM telemetry_events"))

        coordinator.materialize_offline("acme", fs.id)
        statuses = sorted(j.status.value for j in coordinator.list_materializations("acme", fs.id))
        assert statuses == ["completed", "failed"]

    def test_notification(self, registry, coordinator, received, tool_stats_spec):
        fs = registry.register("acme", tool_stats_spec, owner="ml-team")
        coordinator.materialize_offline("acme", fs.id)
        completed = [e for e in received if e.event_type == "feature_materialization_completed"]
        assert len(completed) == 1
        assert completed[0].data["view_name"] == "features_tool_stats_v1"
        assert completed[0].data["mode"] == "offline"


# ── Refresh ───────────────────────────────────────────────────────────


class TestRefresh:
    def _offline_job(self, coordinator, fs):
        return coordinator.list_materializations("acme", fs.id)[0]

    def test_refresh_updates_counts(self, engine, coordinator, active_tool_stats):
        job = self._offline_job(coordinator, active_tool_stats)
        with engine.begin() as conn:
            conn.execute(text(
                "INSERT INTO telemetry_events (tenant_id, entity_id, latency_ms, tokens, status) "
                "VALUES ('acme', 'tool-3', 80, 8, 'ok')"
            ))

        refreshed = coordinator.refresh(job.id)
        assert refreshed.status == MaterializationStatus.COMPLETED
        assert refreshed.rows_processed == 3
        assert refreshed.duration_ms is not None
        view = coordinator.get_view("acme", "features_tool_stats_v1")
        assert view.row_count == 3
        assert view.last_refreshed_at is not None

    def test_refresh_failure_is_returned_not_raised(self, engine, coordinator, active_tool_stats):
        job = self._offline_job(coordinator, active_tool_stats)
        with engine.begin() as conn:
            conn.execute(text("DROP TABLE telemetry_events"))

        refreshed = coordinator.refresh(job.id)
        assert refreshed.status == MaterializationStatus.FAILED
        assert refreshed.error_message
        assert coordinator.get_materialization(job.id).status == MaterializationStatus.FAILED

    def test_refresh_unknown(self, coordinator):
        with pytest.raises(NotFoundError):
            coordinator.refresh("missing")

    def test_refresh_skips_cancelled(self, coordinator, active_tool_stats):
        job = self._offline_job(coordinator, active_tool_stats)
        coordinator.cancel(job.id)
        assert coordinator.refresh(job.id).status == MaterializationStatus.CANCELLED

    def test_refresh_all_isolates_failures(self, engine, registry, coordinator, active_tool_stats, tool_stats_spec):
        tool_stats_spec["name"] = "copy_stats"
        tool_stats_spec["source"] = "events_copy"
        with engine.begin() as conn:
            conn.execute(text("CREATE TABLE events_copy AS SELECT * FROM telemetry_events"))
        other = registry.register("acme", tool_stats_spec, owner="ml-team")
        coordinator.materialize_offline("acme", other.id)
        with engine.begin() as conn:
            conn.execute(text("DROP TABLE events_copy"))

        results = {r.feature_set_id: r.status for r in coordinator.refresh_all("acme")}
        assert results[active_tool_stats.id] == MaterializationStatus.COMPLETED
        assert results[other.id] == MaterializationStatus.FAILED


# ── Online materialization ────────────────────────────────────────────


class TestMaterializeOnline:
    def test_requires_active_feature_set(self, registry, coordinator, tool_stats_spec):
        fs = registry.register("acme", tool_stats_spec, owner="ml-team")
        with pytest.raises(ConflictError):
            coordinator.materialize_online("acme", fs.id)

    def test_online_listing(self, coordinator, active_tool_stats):
        assert coordinator.list_online_feature_sets() == []
        job = coordinator.materialize_online("acme", active_tool_stats.id)
        assert job.mode == MaterializationMode.ONLINE
        assert job.schedule == "realtime"

        online = coordinator.list_online_feature_sets()
        assert [fs.id for fs in online] == [active_tool_stats.id]

    def test_duplicate_online_conflicts(self, coordinator, active_tool_stats):
        coordinator.materialize_online("acme", active_tool_stats.id)
        with pytest.raises(ConflictError):
            coordinator.materialize_online("acme", active_tool_stats.id)

    def test_both_mode_takes_over_offline_job(self, coordinator, active_tool_stats):
        offline = coordinator.list_materializations("acme", active_tool_stats.id)[0]

        job = coordinator.materialize_online("acme", active_tool_stats.id, mode=MaterializationMode.BOTH)
        assert job.id == offline.id
        assert job.mode == MaterializationMode.BOTH
        assert job.status == MaterializationStatus.COMPLETED
        assert job.schedule == "realtime"
        assert len(coordinator.list_materializations("acme", active_tool_stats.id)) == 1
        assert [fs.id for fs in coordinator.list_online_feature_sets()] == [active_tool_stats.id]

        assert coordinator.refresh(job.id).status == MaterializationStatus.COMPLETED
        with pytest.raises(ConflictError):
            coordinator.materialize_online("acme", active_tool_stats.id)

    def test_both_mode_without_offline_job_creates_one(self, registry, coordinator, tool_stats_spec):
        fs = registry.register("acme", tool_stats_spec, owner="ml-team")
        registry.set_status("acme", fs.id, FeatureSetStatus.ACTIVE)

        job = coordinator.materialize_online("acme", fs.id, mode=MaterializationMode.BOTH)
        assert job.mode == MaterializationMode.BOTH
        assert job.status == MaterializationStatus.RUNNING

    def test_both_mode_refuses_cancelled_offline_job(self, coordinator, active_tool_stats):
        offline = coordinator.list_materializations("acme", active_tool_stats.id)[0]
        coordinator.cancel(offline.id)
        with pytest.raises(ConflictError):
            coordinator.materialize_online("acme", active_tool_stats.id, mode=MaterializationMode.BOTH)
        assert coordinator.list_online_feature_sets() == []

    def test_cancel_removes_from_online_listing(self, coordinator, active_tool_stats):
        job = coordinator.materialize_online("acme", active_tool_stats.id)
        cancelled = coordinator.cancel(job.id)
        assert cancelled.status == MaterializationStatus.CANCELLED
        assert coordinator.list_online_feature_sets() == []

    def test_offline_mode_rejected(self, coordinator, active_tool_stats):
        with pytest.raises(ValueError):
            coordinator.materialize_online("acme", active_tool_stats.id, mode=MaterializationMode.OFFLINE)


# ── Reads ─────────────────────────────────────────────────────────────


class TestOfflineReads:
    def test_training_dataset(self, coordinator, active_tool_stats):
        df = coordinator.get_training_dataset("acme", "tool_stats", 1)
        assert isinstance(df, pd.DataFrame)
        assert list(df["entity_id"]) == ["tool-1", "tool-2"]
        assert set(df["tenant_id"]) == {"acme"}

    def test_training_dataset_for_entities(self, coordinator, active_tool_stats):
        df = coordinator.get_training_dataset("acme", "tool_stats", 1, entity_ids=["tool-2"])
        assert list(df["entity_id"]) == ["tool-2"]
        assert df.iloc[0]["avg_latency"] == pytest.approx(50.0)

    def test_read_offline_row_is_tenant_scoped(self, coordinator, active_tool_stats):
        row = coordinator.read_offline_row("acme", active_tool_stats, "tool-1")
        assert row["event_count"] == 2
        assert coordinator.read_offline_row("acme", active_tool_stats, "tool-404") is None

    def test_get_view_unknown(self, coordinator):
        with pytest.raises(NotFoundError):
            coordinator.get_view("acme", "features_nothing_v1")


class TestPostgresViewDialect:
    def test_qualified_name(self):
        assert PostgresViewDialect("mlops").qualified_name("features_x_v1") == "mlops.features_x_v1"
        assert PostgresViewDialect(None).qualified_name("features_x_v1") == "features_x_v1"
        assert PostgresViewDialect().view_type == "materialized_view"
