"""Database package for FeatureHub."""

from featurehub.db.base import Base
from featurehub.db.engine import create_session_factory, create_sync_engine, init_schema
from featurehub.db.models import (
    FeatureCacheRow,
    FeatureLineageRow,
    FeatureSetRow,
    FeatureViewRow,
    MaterializationRow,
)

__all__ = [
    "Base",
    "create_session_factory",
    "create_sync_engine",
    "init_schema",
    "FeatureCacheRow",
    "FeatureLineageRow",
    "FeatureSetRow",
    "FeatureViewRow",
    "MaterializationRow",
]
