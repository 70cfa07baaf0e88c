"""Feature lineage: which upstream tables and columns feed which features."""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from featurehub.db.models import FeatureLineageRow

from .spec import FeatureSetSpec


@dataclass
class FeatureLineage:
    """Upstream table/columns feeding one feature of a feature set version."""

    tenant_id: str = ""
    feature_set_id: str = ""
    upstream_table: str = ""
    upstream_columns: List[str] = field(default_factory=list)
    downstream_feature: str = ""
    transformation_type: Optional[str] = None
    transformation_spec: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_row(cls, row: FeatureLineageRow) -> "FeatureLineage":
        return cls(
            tenant_id=row.tenant_id,
            feature_set_id=row.feature_set_id,
            upstream_table=row.upstream_table,
            upstream_columns=list(row.upstream_columns or []),
            downstream_feature=row.downstream_feature,
            transformation_type=row.transformation_type,
            transformation_spec=dict(row.transformation_spec or {}),
        )

    def to_row(self) -> FeatureLineageRow:
        return FeatureLineageRow(
            tenant_id=self.tenant_id,
            feature_set_id=self.feature_set_id,
            upstream_table=self.upstream_table,
            upstream_columns=self.upstream_columns,
            downstream_feature=self.downstream_feature,
            transformation_type=self.transformation_type,
            transformation_spec=self.transformation_spec,
        )


def extract_source_tables(spec: FeatureSetSpec) -> List[str]:
    """Deduplicated, order-preserving union of the spec, feature and join sources."""
    candidates = [spec.source]
    candidates.extend(f.source for f in spec.features)
    candidates.extend(j.table for j in spec.joins)
    return list(dict.fromkeys(t for t in candidates if t))


def build_lineage(tenant: str, feature_set_id: str, spec: FeatureSetSpec) -> List[FeatureLineage]:
    """One lineage record per feature definition."""
    return [
        FeatureLineage(
            tenant_id=tenant,
            feature_set_id=feature_set_id,
            upstream_table=feature.source or spec.source,
            upstream_columns=feature.upstream_columns,
            downstream_feature=feature.name,
            transformation_type=feature.transformation_type,
            transformation_spec=feature.to_dict(),
        )
        for feature in spec.features
    ]
