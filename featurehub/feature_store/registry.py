"""Feature registry: versioned, append-only feature set definitions.

Each ``register`` call for a (tenant, name) creates the next version,
chained to its predecessor through ``parent_version_id``. The feature set
row and its lineage rows are written in one transaction.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from featurehub.db.models import FeatureLineageRow, FeatureSetRow
from featurehub.errors import ConflictError, ErrorCode, NotFoundError, StoreError
from featurehub.event_bus import (
    TOPIC_FEATURE_SET_REGISTERED,
    Notifier,
    feature_set_registered_event,
    notify_quietly,
)

from .compiler import SpecCompiler
from .config import FeatureSetStatus, FeatureStoreConfig
from .lineage import FeatureLineage, build_lineage, extract_source_tables
from .spec import FeatureSetSpec, SpecInput, normalize_spec

logger = logging.getLogger(__name__)


@dataclass
class FeatureSet:
    """A registered feature set version."""

    id: str = ""
    tenant_id: str = ""
    name: str = ""
    version: int = 1
    spec: FeatureSetSpec = field(default_factory=FeatureSetSpec)
    owner: str = ""
    status: FeatureSetStatus = FeatureSetStatus.DRAFT
    description: Optional[str] = None
    parent_version_id: Optional[str] = None
    source_tables: List[str] = field(default_factory=list)
    validation_rules: Dict[str, Any] = field(default_factory=dict)
    quality_score: Optional[float] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: FeatureSetRow) -> "FeatureSet":
        return cls(
            id=row.id,
            tenant_id=row.tenant_id,
            name=row.name,
            version=row.version,
            spec=normalize_spec(row.spec),
            owner=row.owner,
            status=FeatureSetStatus(row.status),
            description=row.description,
            parent_version_id=row.parent_version_id,
            source_tables=list(row.source_tables or []),
            validation_rules=dict(row.validation_rules or {}),
            quality_score=row.quality_score,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    @property
    def cache_ttl(self) -> Optional[int]:
        return self.spec.cache_ttl

    @property
    def is_active(self) -> bool:
        return self.status == FeatureSetStatus.ACTIVE


# Statuses that cannot be left once entered
_TERMINAL_STATUSES = {FeatureSetStatus.ARCHIVED}


class FeatureRegistry:
    """Registry of tenant feature sets backed by the relational store."""

    def __init__(
        self,
        session_factory: sessionmaker,
        compiler: Optional[SpecCompiler] = None,
        notifier: Optional[Notifier] = None,
        config: Optional[FeatureStoreConfig] = None,
    ) -> None:
        self._session_factory = session_factory
        self.compiler = compiler or SpecCompiler()
        self.notifier = notifier
        self.config = config or FeatureStoreConfig()

    # --- Registration ---

    def register(self, tenant: str, spec_input: SpecInput, owner: str) -> FeatureSet:
        """Register the next version of a feature set."""
        spec = self.compiler.validate(normalize_spec(spec_input))

        attempts = max(1, self.config.register_max_attempts)
        for attempt in range(1, attempts + 1):
            try:
                feature_set = self._register_once(tenant, spec, owner)
            except IntegrityError:
                # A concurrent registration took this version number
                logger.debug(
                    "Version race on %s/%s (attempt %d/%d), retrying",
                    tenant, spec.name, attempt, attempts,
                )
                continue
            except SQLAlchemyError as e:
                raise StoreError(f"Failed to register feature set '{spec.name}': {e}") from e

            logger.info(
                "Registered feature set %s v%d for tenant %s (%d features)",
                feature_set.name, feature_set.version, tenant, len(spec.features),
                extra={"feature_set_id": feature_set.id},
            )
            notify_quietly(
                self.notifier,
                TOPIC_FEATURE_SET_REGISTERED,
                feature_set_registered_event(
                    tenant=tenant,
                    feature_set_id=feature_set.id,
                    name=feature_set.name,
                    version=feature_set.version,
                    owner=owner,
                ),
            )
            return feature_set

        raise ConflictError(
            f"Could not allocate a version for '{spec.name}' after {attempts} attempts",
            ErrorCode.RESOURCE_CONFLICT,
        )

    def _register_once(self, tenant: str, spec: FeatureSetSpec, owner: str) -> FeatureSet:
        with self._session_factory() as session:
            try:
                previous = self._latest_row(session, tenant, spec.name)
                version = previous.version + 1 if previous else 1
                stamped = spec.with_version(version)

                row = FeatureSetRow(
                    id=str(uuid.uuid4()),
                    tenant_id=tenant,
                    name=spec.name,
                    version=version,
                    description=spec.description,
                    spec=stamped.to_dict(),
                    owner=owner,
                    status=FeatureSetStatus.DRAFT.value,
                    parent_version_id=previous.id if previous else None,
                    source_tables=extract_source_tables(stamped),
                    validation_rules=stamped.validation,
                )
                session.add(row)
                session.flush()
                session.add_all(lineage.to_row() for lineage in build_lineage(tenant, row.id, stamped))
                session.commit()
            except Exception:
                session.rollback()
                raise
            return FeatureSet.from_row(row)

    # --- Lookup ---

    @staticmethod
    def _latest_row(session: Session, tenant: str, name: str) -> Optional[FeatureSetRow]:
        return session.execute(
            select(FeatureSetRow)
            .where(FeatureSetRow.tenant_id == tenant, FeatureSetRow.name == name)
            .order_by(FeatureSetRow.version.desc())
            .limit(1)
        ).scalar_one_or_none()

    def _query(self, stmt) -> List[FeatureSetRow]:
        try:
            with self._session_factory() as session:
                return list(session.execute(stmt).scalars().all())
        except SQLAlchemyError as e:
            raise StoreError(f"Feature set lookup failed: {e}") from e

    def get(self, tenant: str, feature_set_id: str) -> FeatureSet:
        rows = self._query(
            select(FeatureSetRow).where(
                FeatureSetRow.tenant_id == tenant, FeatureSetRow.id == feature_set_id
            )
        )
        if not rows:
            raise NotFoundError(
                f"Feature set {feature_set_id} not found for tenant {tenant}",
                ErrorCode.FEATURE_SET_NOT_FOUND,
                resource_type="feature_set",
                resource_id=feature_set_id,
            )
        return FeatureSet.from_row(rows[0])

    def get_version(
        self,
        tenant: str,
        name: str,
        version: int,
        status: Optional[FeatureSetStatus] = None,
    ) -> FeatureSet:
        """Get one version, optionally requiring a status."""
        stmt = select(FeatureSetRow).where(
            FeatureSetRow.tenant_id == tenant,
            FeatureSetRow.name == name,
            FeatureSetRow.version == version,
        )
        if status is not None:
            stmt = stmt.where(FeatureSetRow.status == FeatureSetStatus(status).value)
        rows = self._query(stmt)
        if not rows:
            qualifier = f" with status {FeatureSetStatus(status).value}" if status is not None else ""
            raise NotFoundError(
                f"Feature set {name} v{version}{qualifier} not found for tenant {tenant}",
                ErrorCode.FEATURE_SET_NOT_FOUND,
                resource_type="feature_set",
                resource_id=f"{name}:v{version}",
            )
        return FeatureSet.from_row(rows[0])

    def get_latest(self, tenant: str, name: str) -> Optional[FeatureSet]:
        try:
            with self._session_factory() as session:
                row = self._latest_row(session, tenant, name)
        except SQLAlchemyError as e:
            raise StoreError(f"Feature set lookup failed: {e}") from e
        return FeatureSet.from_row(row) if row else None

    def list_versions(self, tenant: str, name: str) -> List[FeatureSet]:
        """All versions of a feature set, oldest first."""
        rows = self._query(
            select(FeatureSetRow)
            .where(FeatureSetRow.tenant_id == tenant, FeatureSetRow.name == name)
            .order_by(FeatureSetRow.version)
        )
        return [FeatureSet.from_row(r) for r in rows]

    def list_feature_sets(
        self, tenant: str, status: Optional[FeatureSetStatus] = None
    ) -> List[FeatureSet]:
        stmt = select(FeatureSetRow).where(FeatureSetRow.tenant_id == tenant)
        if status is not None:
            stmt = stmt.where(FeatureSetRow.status == FeatureSetStatus(status).value)
        rows = self._query(stmt.order_by(FeatureSetRow.name, FeatureSetRow.version))
        return [FeatureSet.from_row(r) for r in rows]

    # --- Lineage ---

    def get_lineage(self, tenant: str, feature_set_id: str) -> List[FeatureLineage]:
        try:
            with self._session_factory() as session:
                rows = session.execute(
                    select(FeatureLineageRow)
                    .where(
                        FeatureLineageRow.tenant_id == tenant,
                        FeatureLineageRow.feature_set_id == feature_set_id,
                    )
                ).scalars().all()
        except SQLAlchemyError as e:
            raise StoreError(f"Lineage lookup failed: {e}") from e
        return [FeatureLineage.from_row(r) for r in rows]

    def get_upstream_tables(self, tenant: str, feature_set_id: str) -> List[str]:
        return self.get(tenant, feature_set_id).source_tables

    def get_dependents(self, tenant: str, table: str) -> List[FeatureSet]:
        """Feature sets that read from a table (impact analysis)."""
        return [fs for fs in self.list_feature_sets(tenant) if table in fs.source_tables]

    # --- Administrative updates ---

    def set_status(
        self,
        tenant: str,
        feature_set_id: str,
        status: FeatureSetStatus,
        session: Optional[Session] = None,
    ) -> None:
        """Change a feature set's status.

        With ``session`` the update joins the caller's transaction and is not
        committed here.
        """
        status = FeatureSetStatus(status)
        if session is not None:
            self._apply_status(session, tenant, feature_set_id, status)
            return
        try:
            with self._session_factory() as own:
                try:
                    self._apply_status(own, tenant, feature_set_id, status)
                    own.commit()
                except Exception:
                    own.rollback()
                    raise
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to update status of {feature_set_id}: {e}") from e
        logger.info("Feature set %s is now %s", feature_set_id, status.value)

    @staticmethod
    def _apply_status(session: Session, tenant: str, feature_set_id: str, status: FeatureSetStatus) -> None:
        row = session.execute(
            select(FeatureSetRow).where(
                FeatureSetRow.tenant_id == tenant, FeatureSetRow.id == feature_set_id
            )
        ).scalar_one_or_none()
        if row is None:
            raise NotFoundError(
                f"Feature set {feature_set_id} not found for tenant {tenant}",
                ErrorCode.FEATURE_SET_NOT_FOUND,
                resource_type="feature_set",
                resource_id=feature_set_id,
            )
        current = FeatureSetStatus(row.status)
        if current == status:
            return
        if current in _TERMINAL_STATUSES:
            raise ConflictError(
                f"Feature set {feature_set_id} is {current.value} and cannot become {status.value}",
                ErrorCode.INVALID_STATUS_TRANSITION,
            )
        row.status = status.value
        row.updated_at = datetime.now(timezone.utc)

    def deprecate(self, tenant: str, feature_set_id: str) -> None:
        self.set_status(tenant, feature_set_id, FeatureSetStatus.DEPRECATED)

    def archive(self, tenant: str, feature_set_id: str) -> None:
        self.set_status(tenant, feature_set_id, FeatureSetStatus.ARCHIVED)

    def update_quality_score(self, tenant: str, feature_set_id: str, score: float) -> None:
        try:
            with self._session_factory() as session:
                row = session.execute(
                    select(FeatureSetRow).where(
                        FeatureSetRow.tenant_id == tenant, FeatureSetRow.id == feature_set_id
                    )
                ).scalar_one_or_none()
                if row is None:
                    raise NotFoundError(
                        f"Feature set {feature_set_id} not found for tenant {tenant}",
                        ErrorCode.FEATURE_SET_NOT_FOUND,
                        resource_type="feature_set",
                        resource_id=feature_set_id,
                    )
                row.quality_score = float(score)
                row.updated_at = datetime.now(timezone.utc)
                session.commit()
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to update quality score of {feature_set_id}: {e}") from e
