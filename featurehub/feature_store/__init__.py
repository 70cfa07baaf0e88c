"""Feature Store.

Versioned feature set registry with lineage, offline view materialization,
a dual-tier online cache and the stream worker that keeps it current.
"""

from featurehub.feature_store.compiler import CompiledView, SpecCompiler
from featurehub.feature_store.compute import (
    FeatureComputer,
    aggregate,
    evaluate_expression,
    parse_window,
    resolve_entity_id,
)
from featurehub.feature_store.config import (
    AggregationFn,
    FeatureSetStatus,
    FeatureStoreConfig,
    MaterializationMode,
    MaterializationStatus,
    StreamProcessorConfig,
    TransformationType,
)
from featurehub.feature_store.factory import FeatureStore, build_feature_store
from featurehub.feature_store.history import (
    HistorySource,
    InMemoryHistorySource,
    SqlHistorySource,
)
from featurehub.feature_store.lineage import FeatureLineage, build_lineage, extract_source_tables
from featurehub.feature_store.materialization import (
    FeatureView,
    Materialization,
    MaterializationCoordinator,
    OfflineViewDialect,
    PostgresViewDialect,
    SQLiteViewDialect,
)
from featurehub.feature_store.online import CacheEntry, FeatureCache, FeatureVectorResult
from featurehub.feature_store.registry import FeatureRegistry, FeatureSet
from featurehub.feature_store.spec import (
    AggregationFeature,
    DirectFeature,
    EventFilter,
    ExpressionFeature,
    FeatureDefinition,
    FeatureSetSpec,
    JoinSpec,
    normalize_spec,
)
from featurehub.feature_store.stream import (
    ActiveFeatureSetIndex,
    OnlineStreamProcessor,
    WorkerState,
    WorkerStats,
    decode_fields,
    resolve_tenant,
)

__all__ = [
    # Config
    "AggregationFn",
    "FeatureSetStatus",
    "FeatureStoreConfig",
    "MaterializationMode",
    "MaterializationStatus",
    "StreamProcessorConfig",
    "TransformationType",
    # Spec
    "AggregationFeature",
    "DirectFeature",
    "EventFilter",
    "ExpressionFeature",
    "FeatureDefinition",
    "FeatureSetSpec",
    "JoinSpec",
    "normalize_spec",
    "CompiledView",
    "SpecCompiler",
    # Registry
    "FeatureLineage",
    "FeatureRegistry",
    "FeatureSet",
    "build_lineage",
    "extract_source_tables",
    # Materialization
    "FeatureView",
    "Materialization",
    "MaterializationCoordinator",
    "OfflineViewDialect",
    "PostgresViewDialect",
    "SQLiteViewDialect",
    # Online
    "CacheEntry",
    "FeatureCache",
    "FeatureVectorResult",
    "FeatureComputer",
    "HistorySource",
    "InMemoryHistorySource",
    "SqlHistorySource",
    "aggregate",
    "evaluate_expression",
    "parse_window",
    "resolve_entity_id",
    # Wiring
    "FeatureStore",
    "build_feature_store",
    # Streaming
    "ActiveFeatureSetIndex",
    "OnlineStreamProcessor",
    "WorkerState",
    "WorkerStats",
    "decode_fields",
    "resolve_tenant",
]
