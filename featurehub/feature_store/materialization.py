"""Offline materialization: generated views and their job records.

The coordinator owns Materialization and FeatureView records. Offline
views are PostgreSQL materialized views in the configured schema; on SQLite
(tests, local runs) they are plain views and refreshing is a no-op.

FeatureView.view_name is the tenant-facing name (``features_{name}_v{n}``);
the relation in the database is per tenant and holds only that tenant's rows.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

import pandas as pd
from sqlalchemy import bindparam, select, text
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from featurehub.db.models import FeatureSetRow, FeatureViewRow, MaterializationRow
from featurehub.errors import ConflictError, ErrorCode, NotFoundError, StoreError
from featurehub.event_bus import (
    TOPIC_MATERIALIZATION_COMPLETED,
    Notifier,
    materialization_completed_event,
    notify_quietly,
)
from featurehub.logging_config import LogContext, PerformanceTimer, log_performance

from .compiler import CompiledView, SpecCompiler
from .config import (
    OFFLINE_MODES,
    ONLINE_MODES,
    FeatureSetStatus,
    FeatureStoreConfig,
    MaterializationMode,
    MaterializationStatus,
)
from .registry import FeatureRegistry, FeatureSet

logger = logging.getLogger(__name__)


# ── View dialects ─────────────────────────────────────────────────


class OfflineViewDialect(ABC):
    """How offline views are created, refreshed and measured on one database."""

    view_type = "view"

    @abstractmethod
    def qualified_name(self, view_name: str) -> str:
        ...

    @abstractmethod
    def create(self, session: Session, view_name: str, query: str) -> None:
        ...

    def refresh(self, session: Session, view_name: str) -> None:
        pass

    def size_bytes(self, session: Session, view_name: str) -> Optional[int]:
        return None

    def row_count(self, session: Session, view_name: str) -> int:
        return int(session.execute(text(f"SELECT COUNT(*) FROM {self.qualified_name(view_name)}")).scalar() or 0)


class PostgresViewDialect(OfflineViewDialect):
    view_type = "materialized_view"

    def __init__(self, schema: Optional[str] = "mlops"):
        self.schema = schema

    def qualified_name(self, view_name: str) -> str:
        return f"{self.schema}.{view_name}" if self.schema else view_name

    def create(self, session: Session, view_name: str, query: str) -> None:
        if self.schema:
            session.execute(text(f"CREATE SCHEMA IF NOT EXISTS {self.schema}"))
        session.execute(
            text(f"CREATE MATERIALIZED VIEW IF NOT EXISTS {self.qualified_name(view_name)} AS\n{query}")
        )

    def refresh(self, session: Session, view_name: str) -> None:
        session.execute(text(f"REFRESH MATERIALIZED VIEW {self.qualified_name(view_name)}"))

    def size_bytes(self, session: Session, view_name: str) -> Optional[int]:
        value = session.execute(
            text("SELECT pg_total_relation_size(CAST(:name AS regclass))"),
            {"name": self.qualified_name(view_name)},
        ).scalar()
        return int(value) if value is not None else None


class SQLiteViewDialect(OfflineViewDialect):
    view_type = "view"

    def qualified_name(self, view_name: str) -> str:
        return view_name

    def create(self, session: Session, view_name: str, query: str) -> None:
        session.execute(text(f"CREATE VIEW IF NOT EXISTS {view_name} AS\n{query}"))


def dialect_for(session: Session, schema: Optional[str]) -> OfflineViewDialect:
    if session.get_bind().dialect.name == "sqlite":
        return SQLiteViewDialect()
    return PostgresViewDialect(schema)


# ── Records ───────────────────────────────────────────────────────


@dataclass
class Materialization:
    """A materialization job record."""

    id: str
    tenant_id: str
    feature_set_id: str
    mode: MaterializationMode
    status: MaterializationStatus
    schedule: Optional[str] = None
    last_run_at: Optional[datetime] = None
    duration_ms: Optional[int] = None
    rows_processed: Optional[int] = None
    rows_failed: Optional[int] = None
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: MaterializationRow) -> "Materialization":
        return cls(
            id=row.id,
            tenant_id=row.tenant_id,
            feature_set_id=row.feature_set_id,
            mode=MaterializationMode(row.mode),
            status=MaterializationStatus(row.status),
            schedule=row.schedule,
            last_run_at=row.last_run_at,
            duration_ms=row.duration_ms,
            rows_processed=row.rows_processed,
            rows_failed=row.rows_failed,
            error_message=row.error_message,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )


@dataclass
class FeatureView:
    """Metadata of a generated offline view."""

    tenant_id: str
    feature_set_id: str
    view_name: str
    physical_name: str
    view_type: str
    view_sql: str
    refresh_method: Optional[str] = None
    last_refreshed_at: Optional[datetime] = None
    refresh_duration_ms: Optional[int] = None
    size_bytes: Optional[int] = None
    row_count: Optional[int] = None

    @classmethod
    def from_row(cls, row: FeatureViewRow) -> "FeatureView":
        return cls(
            tenant_id=row.tenant_id,
            feature_set_id=row.feature_set_id,
            view_name=row.view_name,
            physical_name=row.physical_name,
            view_type=row.view_type,
            view_sql=row.view_sql,
            refresh_method=row.refresh_method,
            last_refreshed_at=row.last_refreshed_at,
            refresh_duration_ms=row.refresh_duration_ms,
            size_bytes=row.size_bytes,
            row_count=row.row_count,
        )


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ── Coordinator ───────────────────────────────────────────────────


class MaterializationCoordinator:
    """Creates and refreshes offline views and tracks materialization jobs."""

    def __init__(
        self,
        session_factory: sessionmaker,
        registry: FeatureRegistry,
        compiler: Optional[SpecCompiler] = None,
        notifier: Optional[Notifier] = None,
        config: Optional[FeatureStoreConfig] = None,
        dialect: Optional[OfflineViewDialect] = None,
    ) -> None:
        self._session_factory = session_factory
        self.registry = registry
        self.compiler = compiler or registry.compiler
        self.notifier = notifier
        self.config = config or registry.config
        self._dialect = dialect

    def _view_dialect(self, session: Session) -> OfflineViewDialect:
        if self._dialect is None:
            self._dialect = dialect_for(session, self.config.view_schema)
        return self._dialect

    # --- Offline ---

    def materialize_offline(self, tenant: str, feature_set_id: str) -> Dict[str, str]:
        """Build the offline view of a feature set and activate it.

        Returns ``{"view_name": ..., "materialization_id": ...}``.
        """
        feature_set = self.registry.get(tenant, feature_set_id)

        with LogContext(tenant=tenant), self._session_factory() as session:
            try:
                live = self._live_offline_job(session, feature_set_id)
                if live is not None:
                    raise ConflictError(
                        f"Feature set {feature_set_id} already has offline materialization {live.id}",
                        ErrorCode.DUPLICATE_MATERIALIZATION,
                    )

                compiled = self.compiler.compile(feature_set.spec, tenant=tenant)
                self._check_view_definition(session, tenant, compiled)

                job = MaterializationRow(
                    tenant_id=tenant,
                    feature_set_id=feature_set_id,
                    mode=MaterializationMode.OFFLINE.value,
                    status=MaterializationStatus.RUNNING.value,
                    last_run_at=_now(),
                )
                session.add(job)
                try:
                    session.flush()
                except IntegrityError as e:
                    # Lost the race against a concurrent build of the same set
                    raise ConflictError(
                        f"Feature set {feature_set_id} is already being materialized offline",
                        ErrorCode.DUPLICATE_MATERIALIZATION,
                    ) from e

                dialect = self._view_dialect(session)
                with PerformanceTimer(f"create_view {compiled.physical_name}") as timer:
                    dialect.create(session, compiled.physical_name, compiled.query)
                    row_count = dialect.row_count(session, compiled.physical_name)
                    size_bytes = dialect.size_bytes(session, compiled.physical_name)

                now = _now()
                job.status = MaterializationStatus.COMPLETED.value
                job.last_run_at = now
                job.duration_ms = int(timer.duration_ms)
                job.rows_processed = row_count
                job.rows_failed = 0

                self._upsert_view(
                    session,
                    tenant=tenant,
                    feature_set_id=feature_set_id,
                    view_name=compiled.view_name,
                    physical_name=compiled.physical_name,
                    view_type=dialect.view_type,
                    view_sql=compiled.query,
                    last_refreshed_at=now,
                    refresh_duration_ms=int(timer.duration_ms),
                    size_bytes=size_bytes,
                    row_count=row_count,
                )
                self.registry.set_status(tenant, feature_set_id, FeatureSetStatus.ACTIVE, session=session)
                session.commit()
            except ConflictError:
                session.rollback()
                raise
            except Exception as e:
                session.rollback()
                self._record_failure(tenant, feature_set_id, MaterializationMode.OFFLINE, e)
                if isinstance(e, SQLAlchemyError):
                    raise StoreError(f"Offline materialization of {feature_set_id} failed: {e}") from e
                raise

            materialization_id = job.id

        logger.info(
            "Materialized %s (%d rows) for tenant %s",
            compiled.view_name, row_count, tenant,
            extra={"feature_set_id": feature_set_id, "physical_name": compiled.physical_name},
        )
        notify_quietly(
            self.notifier,
            TOPIC_MATERIALIZATION_COMPLETED,
            materialization_completed_event(
                tenant=tenant,
                feature_set_id=feature_set_id,
                mode=MaterializationMode.OFFLINE.value,
                status=MaterializationStatus.COMPLETED.value,
                view_name=compiled.view_name,
            ),
        )
        return {"view_name": compiled.view_name, "materialization_id": materialization_id}

    @staticmethod
    def _live_offline_job(session: Session, feature_set_id: str) -> Optional[MaterializationRow]:
        """The job holding the feature set's single offline slot, if any."""
        return session.execute(
            select(MaterializationRow).where(
                MaterializationRow.feature_set_id == feature_set_id,
                MaterializationRow.mode.in_(OFFLINE_MODES),
                MaterializationRow.status != MaterializationStatus.FAILED.value,
            )
        ).scalars().first()

    @staticmethod
    def _check_view_definition(session: Session, tenant: str, compiled: CompiledView) -> None:
        """Refuse to reuse a recorded view whose query no longer matches its definition."""
        recorded = session.execute(
            select(FeatureViewRow.view_sql).where(
                FeatureViewRow.tenant_id == tenant, FeatureViewRow.view_name == compiled.view_name
            )
        ).scalar_one_or_none()
        if recorded is not None and recorded != compiled.query:
            raise ConflictError(
                f"View {compiled.view_name} of tenant {tenant} exists with a different definition",
                ErrorCode.RESOURCE_CONFLICT,
            )

    def _upsert_view(self, session: Session, tenant: str, view_name: str, **values: Any) -> None:
        row = session.execute(
            select(FeatureViewRow).where(
                FeatureViewRow.tenant_id == tenant, FeatureViewRow.view_name == view_name
            )
        ).scalar_one_or_none()
        if row is None:
            session.add(FeatureViewRow(
                tenant_id=tenant,
                view_name=view_name,
                refresh_method=self.config.refresh_method,
                **values,
            ))
            return
        for key, value in values.items():
            setattr(row, key, value)

    def _record_failure(
        self,
        tenant: str,
        feature_set_id: str,
        mode: MaterializationMode,
        error: Exception,
    ) -> None:
        """Write a failed job record. Never raises."""
        try:
            with self._session_factory() as session:
                session.add(MaterializationRow(
                    tenant_id=tenant,
                    feature_set_id=feature_set_id,
                    mode=mode.value,
                    status=MaterializationStatus.FAILED.value,
                    last_run_at=_now(),
                    error_message=str(error),
                ))
                session.commit()
        except Exception as record_error:
            logger.error(
                "Could not record failed materialization of %s: %s",
                feature_set_id, record_error,
            )
        logger.error(
            "Materialization of %s failed: %s", feature_set_id, error,
            extra={"feature_set_id": feature_set_id},
        )

    def refresh(self, materialization_id: str) -> Materialization:
        """Re-run the view refresh of an offline job.

        Refresh failures are recorded on the job and returned, not raised.
        """
        with self._session_factory() as session:
            try:
                job = session.get(MaterializationRow, materialization_id)
            except SQLAlchemyError as e:
                raise StoreError(f"Failed to load materialization {materialization_id}: {e}") from e
            if job is None:
                raise NotFoundError(
                    f"Materialization {materialization_id} not found",
                    ErrorCode.MATERIALIZATION_NOT_FOUND,
                    resource_type="materialization",
                    resource_id=materialization_id,
                )
            if job.status == MaterializationStatus.CANCELLED.value:
                logger.info("Skipping cancelled materialization %s", materialization_id)
                return Materialization.from_row(job)
            if job.mode not in OFFLINE_MODES:
                logger.debug("Materialization %s is online only, nothing to refresh", materialization_id)
                return Materialization.from_row(job)

            tenant = job.tenant_id
            with LogContext(tenant=tenant):
                try:
                    job.status = MaterializationStatus.RUNNING.value
                    session.commit()

                    spec_doc = session.execute(
                        select(FeatureSetRow.spec).where(FeatureSetRow.id == job.feature_set_id)
                    ).scalar_one()
                    compiled = self.compiler.compile(spec_doc, tenant=tenant)
                    dialect = self._view_dialect(session)
                    with PerformanceTimer(f"refresh_view {compiled.physical_name}") as timer:
                        dialect.refresh(session, compiled.physical_name)
                        row_count = dialect.row_count(session, compiled.physical_name)
                        size_bytes = dialect.size_bytes(session, compiled.physical_name)

                    now = _now()
                    job.status = MaterializationStatus.COMPLETED.value
                    job.last_run_at = now
                    job.duration_ms = int(timer.duration_ms)
                    job.rows_processed = row_count
                    job.rows_failed = 0
                    job.error_message = None
                    self._upsert_view(
                        session,
                        tenant=tenant,
                        feature_set_id=job.feature_set_id,
                        view_name=compiled.view_name,
                        physical_name=compiled.physical_name,
                        view_type=dialect.view_type,
                        view_sql=compiled.query,
                        last_refreshed_at=now,
                        refresh_duration_ms=int(timer.duration_ms),
                        size_bytes=size_bytes,
                        row_count=row_count,
                    )
                    session.commit()
                    logger.info(
                        "Refreshed %s (%d rows)", compiled.view_name, row_count,
                        extra={"feature_set_id": job.feature_set_id, "duration_ms": job.duration_ms},
                    )
                except Exception as e:
                    session.rollback()
                    logger.error("Refresh of materialization %s failed: %s", materialization_id, e)
                    try:
                        job = session.get(MaterializationRow, materialization_id)
                        job.status = MaterializationStatus.FAILED.value
                        job.last_run_at = _now()
                        job.error_message = str(e)
                        session.commit()
                    except Exception as record_error:
                        session.rollback()
                        logger.error(
                            "Could not record refresh failure of %s: %s",
                            materialization_id, record_error,
                        )
                        job.status = MaterializationStatus.FAILED.value
                        job.error_message = str(e)
            return Materialization.from_row(job)

    @log_performance()
    def refresh_all(self, tenant: Optional[str] = None) -> List[Materialization]:
        """Refresh every completed offline job. One failing job never stops the rest."""
        stmt = select(MaterializationRow.id).where(
            MaterializationRow.mode.in_(OFFLINE_MODES),
            MaterializationRow.status == MaterializationStatus.COMPLETED.value,
        )
        if tenant is not None:
            stmt = stmt.where(MaterializationRow.tenant_id == tenant)
        try:
            with self._session_factory() as session:
                ids = list(session.execute(stmt).scalars().all())
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to list materializations: {e}") from e

        results = []
        for materialization_id in ids:
            try:
                results.append(self.refresh(materialization_id))
            except Exception as e:
                logger.error("Refresh of %s aborted: %s", materialization_id, e)
        return results

    # --- Online ---

    def materialize_online(
        self,
        tenant: str,
        feature_set_id: str,
        mode: MaterializationMode = MaterializationMode.ONLINE,
    ) -> Materialization:
        """Enable stream computation for an active feature set."""
        mode = MaterializationMode(mode)
        if mode.value not in ONLINE_MODES:
            raise ValueError(f"Mode {mode.value} is not an online mode")
        feature_set = self.registry.get(tenant, feature_set_id)
        if not feature_set.is_active:
            raise ConflictError(
                f"Feature set {feature_set_id} is {feature_set.status.value}; only active sets can go online",
                ErrorCode.INVALID_STATUS_TRANSITION,
            )

        with self._session_factory() as session:
            try:
                existing = session.execute(
                    select(MaterializationRow).where(
                        MaterializationRow.feature_set_id == feature_set_id,
                        MaterializationRow.mode.in_(ONLINE_MODES),
                        MaterializationRow.status.notin_(
                            [MaterializationStatus.FAILED.value, MaterializationStatus.CANCELLED.value]
                        ),
                    )
                ).scalars().first()
                if existing is not None:
                    raise ConflictError(
                        f"Feature set {feature_set_id} is already online ({existing.id})",
                        ErrorCode.DUPLICATE_MATERIALIZATION,
                    )
                offline = self._live_offline_job(session, feature_set_id) if mode == MaterializationMode.BOTH else None
                if offline is not None:
                    # The offline job keeps its view and refresh cycle and also serves online
                    if offline.status == MaterializationStatus.CANCELLED.value:
                        raise ConflictError(
                            f"Offline materialization {offline.id} of {feature_set_id} was cancelled",
                            ErrorCode.INVALID_STATUS_TRANSITION,
                        )
                    offline.mode = MaterializationMode.BOTH.value
                    offline.schedule = "realtime"
                    job = offline
                else:
                    job = MaterializationRow(
                        tenant_id=tenant,
                        feature_set_id=feature_set_id,
                        mode=mode.value,
                        schedule="realtime",
                        status=MaterializationStatus.RUNNING.value,
                        last_run_at=_now(),
                    )
                    session.add(job)
                session.commit()
            except ConflictError:
                session.rollback()
                raise
            except SQLAlchemyError as e:
                session.rollback()
                raise StoreError(f"Failed to enable online materialization: {e}") from e
            result = Materialization.from_row(job)

        logger.info(
            "Feature set %s is online (%s) for tenant %s", feature_set.name, mode.value, tenant,
            extra={"feature_set_id": feature_set_id},
        )
        notify_quietly(
            self.notifier,
            TOPIC_MATERIALIZATION_COMPLETED,
            materialization_completed_event(
                tenant=tenant,
                feature_set_id=feature_set_id,
                mode=mode.value,
                status=result.status.value,
            ),
        )
        return result

    def cancel(self, materialization_id: str) -> Materialization:
        try:
            with self._session_factory() as session:
                job = session.get(MaterializationRow, materialization_id)
                if job is None:
                    raise NotFoundError(
                        f"Materialization {materialization_id} not found",
                        ErrorCode.MATERIALIZATION_NOT_FOUND,
                        resource_type="materialization",
                        resource_id=materialization_id,
                    )
                if job.status != MaterializationStatus.FAILED.value:
                    job.status = MaterializationStatus.CANCELLED.value
                    session.commit()
                    logger.info("Cancelled materialization %s", materialization_id)
                return Materialization.from_row(job)
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to cancel materialization {materialization_id}: {e}") from e

    def list_online_feature_sets(self) -> List[FeatureSet]:
        """Active feature sets with a live online (or both) materialization, all tenants."""
        stmt = (
            select(FeatureSetRow)
            .join(MaterializationRow, MaterializationRow.feature_set_id == FeatureSetRow.id)
            .where(
                FeatureSetRow.status == FeatureSetStatus.ACTIVE.value,
                MaterializationRow.mode.in_(ONLINE_MODES),
                MaterializationRow.status.notin_(
                    [MaterializationStatus.FAILED.value, MaterializationStatus.CANCELLED.value]
                ),
            )
            .order_by(FeatureSetRow.tenant_id, FeatureSetRow.name, FeatureSetRow.version)
        )
        try:
            with self._session_factory() as session:
                rows = session.execute(stmt).scalars().unique().all()
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to load online feature sets: {e}") from e
        return [FeatureSet.from_row(r) for r in rows]

    # --- Read-only accessors ---

    def get_materialization(self, materialization_id: str) -> Materialization:
        try:
            with self._session_factory() as session:
                job = session.get(MaterializationRow, materialization_id)
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to load materialization {materialization_id}: {e}") from e
        if job is None:
            raise NotFoundError(
                f"Materialization {materialization_id} not found",
                ErrorCode.MATERIALIZATION_NOT_FOUND,
                resource_type="materialization",
                resource_id=materialization_id,
            )
        return Materialization.from_row(job)

    def list_materializations(
        self,
        tenant: str,
        feature_set_id: Optional[str] = None,
        status: Optional[MaterializationStatus] = None,
    ) -> List[Materialization]:
        stmt = select(MaterializationRow).where(MaterializationRow.tenant_id == tenant)
        if feature_set_id is not None:
            stmt = stmt.where(MaterializationRow.feature_set_id == feature_set_id)
        if status is not None:
            stmt = stmt.where(MaterializationRow.status == MaterializationStatus(status).value)
        try:
            with self._session_factory() as session:
                rows = session.execute(stmt.order_by(MaterializationRow.created_at)).scalars().all()
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to list materializations: {e}") from e
        return [Materialization.from_row(r) for r in rows]

    def get_view(self, tenant: str, view_name: str) -> FeatureView:
        try:
            with self._session_factory() as session:
                row = session.execute(
                    select(FeatureViewRow).where(
                        FeatureViewRow.tenant_id == tenant, FeatureViewRow.view_name == view_name
                    )
                ).scalar_one_or_none()
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to load view {view_name}: {e}") from e
        if row is None:
            raise NotFoundError(
                f"View {view_name} not found for tenant {tenant}",
                resource_type="feature_view",
                resource_id=view_name,
            )
        return FeatureView.from_row(row)

    # --- Offline reads ---

    def _physical_name(self, tenant: str, feature_set: FeatureSet) -> str:
        view_name = self.compiler.view_name(feature_set.spec.with_version(feature_set.version))
        return self.compiler.physical_view_name(tenant, view_name)

    def read_offline_row(
        self, tenant: str, feature_set: FeatureSet, entity_id: str
    ) -> Optional[Dict[str, Any]]:
        """One row of the feature set's offline view for an entity, or None."""
        view_name = self._physical_name(tenant, feature_set)
        try:
            with self._session_factory() as session:
                dialect = self._view_dialect(session)
                row = session.execute(
                    text(
                        f"SELECT * FROM {dialect.qualified_name(view_name)} "
                        "WHERE tenant_id = :tenant AND entity_id = :entity_id LIMIT 1"
                    ),
                    {"tenant": tenant, "entity_id": entity_id},
                ).mappings().first()
        except SQLAlchemyError as e:
            raise StoreError(f"Offline read from {view_name} failed: {e}") from e
        return dict(row) if row is not None else None

    def get_training_dataset(
        self,
        tenant: str,
        name: str,
        version: int,
        entity_ids: Optional[Sequence[str]] = None,
    ) -> pd.DataFrame:
        """Load a feature set's offline view into a DataFrame."""
        feature_set = self.registry.get_version(tenant, name, version)
        view_name = self._physical_name(tenant, feature_set)
        params: Dict[str, Any] = {"tenant": tenant}
        try:
            with self._session_factory() as session:
                dialect = self._view_dialect(session)
                sql = f"SELECT * FROM {dialect.qualified_name(view_name)} WHERE tenant_id = :tenant"
                stmt = text(sql)
                if entity_ids is not None:
                    stmt = text(sql + " AND entity_id IN :entity_ids").bindparams(
                        bindparam("entity_ids", expanding=True)
                    )
                    params["entity_ids"] = list(entity_ids)
                df = pd.read_sql(stmt, session.connection(), params=params)
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to read training data from {view_name}: {e}") from e
        return df.sort_values("entity_id").reset_index(drop=True) if not df.empty else df
