"""Dual-tier online feature cache.

Reads go to the Redis fast tier, then the durable ``feature_cache`` table,
then the offline view. Entries past ``expires_at`` are never served.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from featurehub.cache import RedisFastTier
from featurehub.db.models import FeatureCacheRow
from featurehub.errors import BrokerError, StoreError
from featurehub.logging_config import log_performance

from .config import KEY_COLUMNS, FeatureSetStatus, FeatureStoreConfig
from .materialization import MaterializationCoordinator
from .registry import FeatureRegistry

logger = logging.getLogger(__name__)

_UPSERT_INSERTS = {
    "postgresql": pg_insert,
    "sqlite": sqlite_insert,
}


def _utc(dt: Optional[datetime]) -> Optional[datetime]:
    if dt is not None and dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def _jsonable(value: Any) -> Any:
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return value


@dataclass
class FeatureVectorResult:
    """Outcome of a feature vector read."""

    features: Dict[str, Any] = field(default_factory=dict)
    computed_at: Optional[datetime] = None
    cache_hit: bool = False
    missing: bool = False

    def to_dict(self) -> Dict[str, Any]:
        out = {
            "features": self.features,
            "computed_at": self.computed_at.isoformat() if self.computed_at else None,
            "cache_hit": self.cache_hit,
        }
        if self.missing:
            out["missing"] = True
        return out


@dataclass
class CacheEntry:
    tenant_id: str
    feature_set_id: str
    entity_id: str
    feature_vector: Dict[str, Any]
    computed_at: datetime
    expires_at: Optional[datetime]
    feature_version: int
    hit_count: int = 0
    last_accessed_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: FeatureCacheRow) -> "CacheEntry":
        return cls(
            tenant_id=row.tenant_id,
            feature_set_id=row.feature_set_id,
            entity_id=row.entity_id,
            feature_vector=dict(row.feature_vector or {}),
            computed_at=_utc(row.computed_at),
            expires_at=_utc(row.expires_at),
            feature_version=row.feature_version,
            hit_count=row.hit_count or 0,
            last_accessed_at=_utc(row.last_accessed_at),
        )


class FeatureCache:
    """Serves feature vectors for (tenant, feature set, entity)."""

    def __init__(
        self,
        session_factory: sessionmaker,
        registry: FeatureRegistry,
        coordinator: MaterializationCoordinator,
        fast_tier: Optional[RedisFastTier] = None,
        config: Optional[FeatureStoreConfig] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._session_factory = session_factory
        self.registry = registry
        self.coordinator = coordinator
        self.config = config or registry.config
        self.fast_tier = fast_tier if self.config.fast_tier_enabled else None
        self._clock = clock
        self._stats = {
            "fast_hits": 0,
            "durable_hits": 0,
            "misses": 0,
            "missing": 0,
            "fast_errors": 0,
            "durable_errors": 0,
        }
        self._stats_lock = threading.Lock()

    def _count(self, key: str) -> None:
        with self._stats_lock:
            self._stats[key] += 1

    # --- Read path ---

    def get_feature_vector(
        self, tenant: str, name: str, version: int, entity_id: str
    ) -> FeatureVectorResult:
        feature_set = self.registry.get_version(tenant, name, version, status=FeatureSetStatus.ACTIVE)
        fsid = feature_set.id

        if self.fast_tier is not None:
            try:
                cached = self.fast_tier.get_vector(tenant, fsid, entity_id)
            except BrokerError as e:
                self._count("fast_errors")
                logger.warning("Fast tier read failed, falling back to store: %s", e)
                cached = None
            if cached is not None:
                self._count("fast_hits")
                self._record_fast_hit(tenant, fsid, entity_id, self._clock())
                computed_at = datetime.fromisoformat(cached.computed_at) if cached.computed_at else None
                return FeatureVectorResult(features=cached.vector, computed_at=computed_at, cache_hit=True)

        now = self._clock()
        entry = self._touch_durable(tenant, fsid, entity_id, now)
        if entry is not None:
            self._count("durable_hits")
            remaining = int((entry.expires_at - now).total_seconds()) if entry.expires_at else None
            if remaining is None or remaining > 0:
                self._set_fast_quietly(
                    tenant, fsid, entity_id, entry.feature_vector, entry.computed_at,
                    entry.feature_version, remaining or self.config.cache_ttl_seconds,
                )
            return FeatureVectorResult(
                features=entry.feature_vector, computed_at=entry.computed_at, cache_hit=True
            )

        self._count("misses")
        row = self.coordinator.read_offline_row(tenant, feature_set, entity_id)
        if row is None:
            self._count("missing")
            return FeatureVectorResult(features={}, computed_at=None, cache_hit=False, missing=True)

        features = {k: _jsonable(v) for k, v in row.items() if k not in KEY_COLUMNS}
        ttl = feature_set.cache_ttl or self.config.cache_ttl_seconds
        self._upsert_durable(tenant, fsid, entity_id, features, now, ttl, feature_set.version)
        self._set_fast_quietly(tenant, fsid, entity_id, features, now, feature_set.version, ttl)
        return FeatureVectorResult(features=features, computed_at=now, cache_hit=False)

    def _record_fast_hit(self, tenant: str, feature_set_id: str, entity_id: str, now: datetime) -> None:
        """Count a fast tier hit on the durable entry. Failures are logged, not raised."""
        try:
            with self._session_factory() as session:
                session.execute(
                    update(FeatureCacheRow)
                    .where(
                        FeatureCacheRow.tenant_id == tenant,
                        FeatureCacheRow.feature_set_id == feature_set_id,
                        FeatureCacheRow.entity_id == entity_id,
                    )
                    .values(hit_count=FeatureCacheRow.hit_count + 1, last_accessed_at=now)
                )
                session.commit()
        except SQLAlchemyError as e:
            self._count("durable_errors")
            logger.warning("Could not record fast tier hit for %s/%s: %s", feature_set_id, entity_id, e)

    def _touch_durable(
        self, tenant: str, feature_set_id: str, entity_id: str, now: datetime
    ) -> Optional[CacheEntry]:
        """Load a live durable entry and record the access."""
        try:
            with self._session_factory() as session:
                row = session.execute(
                    select(FeatureCacheRow).where(
                        FeatureCacheRow.tenant_id == tenant,
                        FeatureCacheRow.feature_set_id == feature_set_id,
                        FeatureCacheRow.entity_id == entity_id,
                        FeatureCacheRow.expires_at > now,
                    )
                ).scalar_one_or_none()
                if row is None:
                    return None
                row.hit_count = (row.hit_count or 0) + 1
                row.last_accessed_at = now
                session.commit()
                return CacheEntry.from_row(row)
        except SQLAlchemyError as e:
            raise StoreError(f"Durable cache read failed: {e}") from e

    # --- Write path ---

    def write_through(
        self,
        tenant: str,
        feature_set_id: str,
        entity_id: str,
        vector: Dict[str, Any],
        feature_version: int,
        ttl_seconds: Optional[int] = None,
        event_id: Optional[str] = None,
    ) -> datetime:
        """Write a freshly computed vector to both tiers.

        The fast tier write must succeed; the durable mirror is best-effort.
        Without a fast tier the durable write is the required one.
        """
        now = self._clock()
        ttl = ttl_seconds or self.config.cache_ttl_seconds

        if self.fast_tier is None:
            self._upsert_durable(tenant, feature_set_id, entity_id, vector, now, ttl, feature_version)
            return now

        self.fast_tier.set_vector(
            tenant, feature_set_id, entity_id, vector,
            computed_at=now.isoformat(),
            feature_version=feature_version,
            ttl_seconds=ttl,
            event_id=event_id,
        )
        try:
            self._upsert_durable(tenant, feature_set_id, entity_id, vector, now, ttl, feature_version)
        except StoreError as e:
            self._count("durable_errors")
            logger.warning(
                "Durable mirror of %s/%s failed: %s", feature_set_id, entity_id, e,
                extra={"feature_set_id": feature_set_id},
            )
        return now

    def _set_fast_quietly(self, tenant, feature_set_id, entity_id, vector, computed_at, version, ttl) -> None:
        if self.fast_tier is None:
            return
        try:
            self.fast_tier.set_vector(
                tenant, feature_set_id, entity_id, vector,
                computed_at=computed_at.isoformat(),
                feature_version=version,
                ttl_seconds=ttl,
            )
        except BrokerError as e:
            self._count("fast_errors")
            logger.warning("Fast tier backfill failed: %s", e)

    def _upsert_durable(
        self,
        tenant: str,
        feature_set_id: str,
        entity_id: str,
        vector: Dict[str, Any],
        computed_at: datetime,
        ttl_seconds: int,
        feature_version: int,
    ) -> None:
        values = {
            "tenant_id": tenant,
            "feature_set_id": feature_set_id,
            "entity_id": entity_id,
            "feature_vector": vector,
            "computed_at": computed_at,
            "expires_at": computed_at + timedelta(seconds=ttl_seconds),
            "feature_version": feature_version,
        }
        try:
            with self._session_factory() as session:
                self._upsert(session, values)
                session.commit()
        except SQLAlchemyError as e:
            raise StoreError(f"Durable cache write failed: {e}") from e

    @staticmethod
    def _upsert(session: Session, values: Dict[str, Any]) -> None:
        """Single-row insert-or-replace keyed by (tenant, feature set, entity)."""
        insert = _UPSERT_INSERTS.get(session.get_bind().dialect.name)
        if insert is not None:
            stmt = insert(FeatureCacheRow.__table__).values(hit_count=0, **values)
            stmt = stmt.on_conflict_do_update(
                index_elements=["tenant_id", "feature_set_id", "entity_id"],
                set_={
                    "feature_vector": stmt.excluded.feature_vector,
                    "computed_at": stmt.excluded.computed_at,
                    "expires_at": stmt.excluded.expires_at,
                    "feature_version": stmt.excluded.feature_version,
                },
            )
            session.execute(stmt)
            return

        row = session.execute(
            select(FeatureCacheRow).where(
                FeatureCacheRow.tenant_id == values["tenant_id"],
                FeatureCacheRow.feature_set_id == values["feature_set_id"],
                FeatureCacheRow.entity_id == values["entity_id"],
            )
        ).scalar_one_or_none()
        if row is None:
            session.add(FeatureCacheRow(hit_count=0, **values))
        else:
            for key, value in values.items():
                setattr(row, key, value)

    # --- Maintenance ---

    def get_entry(self, tenant: str, feature_set_id: str, entity_id: str) -> Optional[CacheEntry]:
        """The live durable entry, without counting an access."""
        try:
            with self._session_factory() as session:
                row = session.execute(
                    select(FeatureCacheRow).where(
                        FeatureCacheRow.tenant_id == tenant,
                        FeatureCacheRow.feature_set_id == feature_set_id,
                        FeatureCacheRow.entity_id == entity_id,
                        FeatureCacheRow.expires_at > self._clock(),
                    )
                ).scalar_one_or_none()
        except SQLAlchemyError as e:
            raise StoreError(f"Durable cache read failed: {e}") from e
        return CacheEntry.from_row(row) if row else None

    def invalidate(self, tenant: str, feature_set_id: str, entity_id: Optional[str] = None) -> int:
        """Drop cached vectors of one entity, or of the whole feature set."""
        stmt = delete(FeatureCacheRow).where(
            FeatureCacheRow.tenant_id == tenant,
            FeatureCacheRow.feature_set_id == feature_set_id,
        )
        if entity_id is not None:
            stmt = stmt.where(FeatureCacheRow.entity_id == entity_id)
        try:
            with self._session_factory() as session:
                deleted = session.execute(stmt).rowcount or 0
                session.commit()
        except SQLAlchemyError as e:
            raise StoreError(f"Cache invalidation failed: {e}") from e

        if self.fast_tier is not None:
            try:
                self.fast_tier.delete(tenant, feature_set_id, entity_id)
            except BrokerError as e:
                self._count("fast_errors")
                logger.warning("Fast tier invalidation failed: %s", e)
        logger.info("Invalidated %d cached vectors of %s", deleted, feature_set_id)
        return deleted

    @log_performance()
    def cleanup_expired(self) -> int:
        """Delete durable entries that expired."""
        try:
            with self._session_factory() as session:
                deleted = session.execute(
                    delete(FeatureCacheRow).where(FeatureCacheRow.expires_at <= self._clock())
                ).rowcount or 0
                session.commit()
        except SQLAlchemyError as e:
            raise StoreError(f"Expired cache cleanup failed: {e}") from e
        if deleted:
            logger.info("Removed %d expired cache entries", deleted)
        return deleted

    def get_cache_stats(self, tenant: Optional[str] = None) -> Dict[str, Any]:
        with self._stats_lock:
            stats: Dict[str, Any] = dict(self._stats)
        lookups = stats["fast_hits"] + stats["durable_hits"] + stats["misses"]
        stats["hit_rate"] = (stats["fast_hits"] + stats["durable_hits"]) / lookups if lookups else 0.0
        stats["fast_hit_rate"] = stats["fast_hits"] / lookups if lookups else 0.0
        stats["durable_hit_rate"] = stats["durable_hits"] / lookups if lookups else 0.0

        stmt = select(func.count(FeatureCacheRow.id), func.coalesce(func.sum(FeatureCacheRow.hit_count), 0))
        if tenant is not None:
            stmt = stmt.where(FeatureCacheRow.tenant_id == tenant)
        try:
            with self._session_factory() as session:
                entries, total_hits = session.execute(stmt).one()
        except SQLAlchemyError as e:
            raise StoreError(f"Cache stats query failed: {e}") from e
        stats["durable_entries"] = int(entries)
        stats["durable_hit_count"] = int(total_hits)
        return stats
