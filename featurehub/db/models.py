"""SQLAlchemy ORM models for the feature store.

Tables:
- feature_sets: versioned feature set definitions (append-only)
- feature_lineage: upstream column -> downstream feature mapping per definition
- feature_materializations: offline/online materialization job records
- feature_views: metadata for generated offline views
- feature_cache: durable tier of the online feature cache
"""

import uuid

from sqlalchemy import (
    JSON,
    BigInteger,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)

from featurehub.db.base import Base


def _new_id() -> str:
    return str(uuid.uuid4())


class FeatureSetRow(Base):
    """A single version of a tenant's feature set. Only status and quality_score change."""

    __tablename__ = "feature_sets"

    id = Column(String(36), primary_key=True, default=_new_id)
    tenant_id = Column(String(255), nullable=False)
    name = Column(String(255), nullable=False)
    version = Column(Integer, nullable=False, default=1)
    description = Column(Text)
    spec = Column(JSON, nullable=False)
    owner = Column(String(255), nullable=False)
    status = Column(String(20), nullable=False, default="draft")
    parent_version_id = Column(String(36), ForeignKey("feature_sets.id"))
    source_tables = Column(JSON, nullable=False, default=list)
    validation_rules = Column(JSON, nullable=False, default=dict)
    quality_score = Column(Float)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        UniqueConstraint("tenant_id", "name", "version", name="uq_feature_set_version"),
        Index("ix_feature_sets_tenant_name", "tenant_id", "name", "version"),
        Index("ix_feature_sets_status", "status"),
    )


class FeatureLineageRow(Base):
    """Upstream table/columns feeding one feature of a feature set version."""

    __tablename__ = "feature_lineage"

    id = Column(String(36), primary_key=True, default=_new_id)
    tenant_id = Column(String(255), nullable=False)
    feature_set_id = Column(String(36), ForeignKey("feature_sets.id"), nullable=False, index=True)
    upstream_table = Column(String(255), nullable=False)
    upstream_columns = Column(JSON, nullable=False, default=list)
    downstream_feature = Column(String(255), nullable=False)
    transformation_type = Column(String(100))
    transformation_spec = Column(JSON)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        Index("ix_feature_lineage_upstream", "tenant_id", "upstream_table"),
    )


class MaterializationRow(Base):
    """Materialization job record (offline view build or online stream enablement)."""

    __tablename__ = "feature_materializations"

    id = Column(String(36), primary_key=True, default=_new_id)
    tenant_id = Column(String(255), nullable=False)
    feature_set_id = Column(String(36), ForeignKey("feature_sets.id"), nullable=False)
    mode = Column(String(20), nullable=False)
    schedule = Column(String(100))
    status = Column(String(20), nullable=False, default="pending")
    last_run_at = Column(DateTime(timezone=True))
    duration_ms = Column(Integer)
    rows_processed = Column(BigInteger)
    rows_failed = Column(BigInteger)
    error_message = Column(Text)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        Index("ix_feature_mat_tenant_set", "tenant_id", "feature_set_id"),
        Index("ix_feature_mat_status", "status"),
        # At most one live offline build per feature set
        Index(
            "uq_feature_mat_offline_live",
            "feature_set_id",
            unique=True,
            sqlite_where=text("status != 'failed' AND mode IN ('offline', 'both')"),
            postgresql_where=text("status != 'failed' AND mode IN ('offline', 'both')"),
        ),
    )


class FeatureViewRow(Base):
    """Metadata for a generated offline view."""

    __tablename__ = "feature_views"

    id = Column(String(36), primary_key=True, default=_new_id)
    tenant_id = Column(String(255), nullable=False)
    feature_set_id = Column(String(36), ForeignKey("feature_sets.id"), nullable=False)
    view_name = Column(String(255), nullable=False)
    physical_name = Column(String(255), nullable=False)
    view_type = Column(String(20), nullable=False, default="materialized_view")
    view_sql = Column(Text, nullable=False)
    refresh_method = Column(String(20), default="complete")
    last_refreshed_at = Column(DateTime(timezone=True))
    refresh_duration_ms = Column(Integer)
    size_bytes = Column(BigInteger)
    row_count = Column(BigInteger)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        UniqueConstraint("tenant_id", "view_name", name="uq_feature_view_name"),
    )


class FeatureCacheRow(Base):
    """Durable tier of the online cache, one row per (tenant, feature set, entity)."""

    __tablename__ = "feature_cache"

    id = Column(String(36), primary_key=True, default=_new_id)
    tenant_id = Column(String(255), nullable=False)
    feature_set_id = Column(String(36), ForeignKey("feature_sets.id"), nullable=False)
    entity_id = Column(String(255), nullable=False)
    feature_vector = Column(JSON, nullable=False)
    computed_at = Column(DateTime(timezone=True), nullable=False)
    expires_at = Column(DateTime(timezone=True))
    feature_version = Column(Integer, nullable=False)
    hit_count = Column(Integer, nullable=False, default=0)
    last_accessed_at = Column(DateTime(timezone=True))

    __table_args__ = (
        UniqueConstraint("tenant_id", "feature_set_id", "entity_id", name="uq_feature_cache_entity"),
        Index("ix_feature_cache_tenant_entity", "tenant_id", "entity_id"),
        Index("ix_feature_cache_expires", "expires_at"),
    )
