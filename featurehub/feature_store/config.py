"""Configuration for the feature store core."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional


class FeatureSetStatus(str, Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    DEPRECATED = "deprecated"
    ARCHIVED = "archived"


class MaterializationMode(str, Enum):
    OFFLINE = "offline"
    ONLINE = "online"
    BOTH = "both"


class MaterializationStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class TransformationType(str, Enum):
    DIRECT = "direct"
    AGGREGATION = "aggregation"
    EXPRESSION = "expression"


class AggregationFn(str, Enum):
    COUNT = "count"
    SUM = "sum"
    AVG = "avg"
    MAX = "max"
    MIN = "min"
    STDDEV = "stddev"


OFFLINE_MODES = (MaterializationMode.OFFLINE.value, MaterializationMode.BOTH.value)
ONLINE_MODES = (MaterializationMode.ONLINE.value, MaterializationMode.BOTH.value)

# Columns every offline view projects ahead of the features
KEY_COLUMNS = ("tenant_id", "entity_id")

# Event fields checked, in order, for the entity a message is about
ENTITY_ID_FIELDS = ("entityId", "entity_id", "toolId", "modelId")

DEFAULT_CACHE_TTL_SECONDS = 3600
DEFAULT_WINDOW_MS = 3_600_000


@dataclass
class FeatureStoreConfig:
    """Master configuration for registry, materialization and cache."""

    view_schema: Optional[str] = "mlops"
    cache_ttl_seconds: int = DEFAULT_CACHE_TTL_SECONDS
    register_max_attempts: int = 20
    fast_tier_enabled: bool = True
    refresh_method: str = "complete"

    @classmethod
    def from_settings(cls, settings=None) -> "FeatureStoreConfig":
        from featurehub.settings import get_settings

        s = settings or get_settings()
        return cls(
            view_schema=s.view_schema,
            cache_ttl_seconds=s.cache_ttl_seconds,
            register_max_attempts=s.register_max_attempts,
            fast_tier_enabled=s.fast_tier_enabled,
        )


@dataclass
class StreamProcessorConfig:
    """Configuration for one online stream worker."""

    stream_keys: List[str] = field(default_factory=lambda: ["events:default:telemetry"])
    consumer_group: str = "feature-workers"
    consumer_name: Optional[str] = None
    batch_size: int = 10
    block_ms: int = 1000
    error_backoff_seconds: float = 5.0
    reload_probability: float = 0.01
    claim_min_idle_ms: int = 60_000
    dead_letter_suffix: str = ":dlq"
    group_start_id: str = "$"

    @classmethod
    def from_settings(cls, settings=None, consumer_name: Optional[str] = None) -> "StreamProcessorConfig":
        from featurehub.settings import get_settings

        s = settings or get_settings()
        return cls(
            stream_keys=list(s.stream_keys),
            consumer_group=s.consumer_group,
            consumer_name=consumer_name,
            batch_size=s.batch_size,
            block_ms=s.block_ms,
            error_backoff_seconds=s.error_backoff_seconds,
            reload_probability=s.reload_probability,
            claim_min_idle_ms=s.claim_min_idle_ms,
            dead_letter_suffix=s.dead_letter_suffix,
            group_start_id=s.group_start_id,
        )
