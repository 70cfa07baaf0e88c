"""Feature set specification model.

A spec arrives as a mapping, a JSON or YAML document, or raw bytes, and is
normalized into a ``FeatureSetSpec``. Normalization only reshapes the input;
completeness checks belong to ``SpecCompiler.validate``.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Union

import yaml

from featurehub.errors import SpecError

from .config import AggregationFn, TransformationType

# camelCase keys accepted from existing spec documents
_ALIASES = {
    "eventFilters": "event_filters",
    "cacheTtl": "cache_ttl",
    "validationRules": "validation",
}


@dataclass(frozen=True)
class DirectFeature:
    column: str


@dataclass(frozen=True)
class AggregationFeature:
    fn: AggregationFn
    window: str
    column: str


@dataclass(frozen=True)
class ExpressionFeature:
    expression: str


FeatureVariant = Union[DirectFeature, AggregationFeature, ExpressionFeature]


@dataclass
class FeatureDefinition:
    """One derived value of a feature set."""

    name: Optional[str] = None
    type: Optional[str] = None
    column: Optional[str] = None
    columns: Optional[List[str]] = None
    aggregation: Optional[str] = None
    window: Optional[str] = None
    expression: Optional[str] = None
    source: Optional[str] = None
    transformation: Optional[str] = None
    description: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    _FIELDS = (
        "name", "type", "column", "columns", "aggregation", "window",
        "expression", "source", "transformation", "description",
    )

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "FeatureDefinition":
        if not isinstance(data, Mapping):
            raise SpecError(f"Feature definition must be a mapping, got {type(data).__name__}", field="features")
        known = {k: data[k] for k in cls._FIELDS if k in data}
        columns = known.get("columns")
        if columns is not None and not isinstance(columns, list):
            raise SpecError("Feature 'columns' must be a list", field="features.columns")
        extra = {k: v for k, v in data.items() if k not in cls._FIELDS}
        return cls(extra=extra, **known)

    def to_dict(self) -> Dict[str, Any]:
        out = {k: getattr(self, k) for k in self._FIELDS if getattr(self, k) is not None}
        out.update(self.extra)
        return out

    @property
    def upstream_columns(self) -> List[str]:
        if self.columns:
            return list(self.columns)
        return [self.column] if self.column is not None else []

    @property
    def transformation_type(self) -> str:
        return self.aggregation or self.transformation or TransformationType.DIRECT.value

    @property
    def variant(self) -> Optional[FeatureVariant]:
        """Online computation variant, or None when the feature has no online form."""
        if self.type == TransformationType.DIRECT.value:
            return DirectFeature(column=self.column or self.name)
        if self.type == TransformationType.AGGREGATION.value and self.aggregation:
            try:
                fn = AggregationFn(self.aggregation)
            except ValueError:
                return None
            return AggregationFeature(fn=fn, window=self.window or "1h", column=self.column or self.name)
        if self.type == TransformationType.EXPRESSION.value and self.expression:
            return ExpressionFeature(expression=self.expression)
        return None


@dataclass
class JoinSpec:
    table: Optional[str] = None
    on: Optional[str] = None
    type: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "JoinSpec":
        if not isinstance(data, Mapping):
            raise SpecError("Join must be a mapping", field="joins")
        return cls(table=data.get("table"), on=data.get("on") or data.get("condition"), type=data.get("type"))

    def to_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in (("table", self.table), ("on", self.on), ("type", self.type)) if v is not None}


@dataclass
class EventFilter:
    type: Optional[str] = None
    source: Optional[str] = None

    def matches(self, event: Mapping[str, Any]) -> bool:
        if self.type and event.get("type") != self.type:
            return False
        if self.source and event.get("source") != self.source:
            return False
        return True


@dataclass
class FeatureSetSpec:
    """Canonical feature set definition."""

    name: Optional[str] = None
    source: Optional[str] = None
    features: List[FeatureDefinition] = field(default_factory=list)
    description: Optional[str] = None
    joins: List[JoinSpec] = field(default_factory=list)
    filter: Optional[str] = None
    event_filters: List[EventFilter] = field(default_factory=list)
    cache_ttl: Optional[int] = None
    validation: Dict[str, Any] = field(default_factory=dict)
    version: Optional[int] = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "FeatureSetSpec":
        data = {_ALIASES.get(k, k): v for k, v in data.items()}

        features = data.get("features")
        if features is None:
            features = []
        elif not isinstance(features, list):
            raise SpecError("'features' must be an ordered sequence", field="features")

        joins = data.get("joins") or []
        filters = data.get("event_filters") or []
        if not isinstance(joins, list) or not isinstance(filters, list):
            raise SpecError("'joins' and 'event_filters' must be sequences")

        ttl = data.get("cache_ttl")
        version = data.get("version")
        try:
            ttl = int(ttl) if ttl is not None else None
            version = int(version) if version is not None else None
        except (TypeError, ValueError) as e:
            raise SpecError(f"Invalid numeric field in spec: {e}") from e

        return cls(
            name=data.get("name"),
            source=data.get("source"),
            features=[FeatureDefinition.from_dict(f) for f in features],
            description=data.get("description"),
            joins=[JoinSpec.from_dict(j) for j in joins],
            filter=data.get("filter"),
            event_filters=[EventFilter(type=f.get("type"), source=f.get("source")) for f in filters if isinstance(f, Mapping)],
            cache_ttl=ttl,
            validation=dict(data.get("validation") or {}),
            version=version,
        )

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "name": self.name,
            "source": self.source,
            "features": [f.to_dict() for f in self.features],
        }
        if self.description is not None:
            out["description"] = self.description
        if self.joins:
            out["joins"] = [j.to_dict() for j in self.joins]
        if self.filter:
            out["filter"] = self.filter
        if self.event_filters:
            out["event_filters"] = [
                {k: v for k, v in (("type", f.type), ("source", f.source)) if v}
                for f in self.event_filters
            ]
        if self.cache_ttl is not None:
            out["cache_ttl"] = self.cache_ttl
        if self.validation:
            out["validation"] = self.validation
        if self.version is not None:
            out["version"] = self.version
        return out

    def with_version(self, version: int) -> "FeatureSetSpec":
        return FeatureSetSpec(**{**self.__dict__, "version": version})

    def applies_to(self, event: Mapping[str, Any]) -> bool:
        """True when the event passes any of the event filters (or there are none)."""
        if not self.event_filters:
            return True
        return any(f.matches(event) for f in self.event_filters)


SpecInput = Union[FeatureSetSpec, Mapping[str, Any], str, bytes]


def normalize_spec(spec_input: SpecInput) -> FeatureSetSpec:
    """Parse any accepted spec input into a ``FeatureSetSpec``."""
    if isinstance(spec_input, FeatureSetSpec):
        return spec_input
    if isinstance(spec_input, bytes):
        try:
            spec_input = spec_input.decode("utf-8")
        except UnicodeDecodeError as e:
            raise SpecError(f"Spec bytes are not UTF-8: {e}") from e
    if isinstance(spec_input, str):
        text = spec_input.strip()
        try:
            if text.startswith("{"):
                parsed = json.loads(text)
            else:
                parsed = yaml.safe_load(text)
        except (json.JSONDecodeError, yaml.YAMLError) as e:
            raise SpecError(f"Spec document could not be parsed: {e}") from e
        spec_input = parsed
    if not isinstance(spec_input, Mapping):
        raise SpecError(f"Spec must be a mapping, got {type(spec_input).__name__}")
    return FeatureSetSpec.from_dict(spec_input)
