"""Compiles a feature set spec into the query behind its offline view."""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass
from typing import Optional

from featurehub.errors import ErrorCode, SpecError

from .config import KEY_COLUMNS, AggregationFn, TransformationType
from .spec import FeatureSetSpec, SpecInput, normalize_spec

IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

_AGGREGATIONS = {fn.value for fn in AggregationFn}

# PostgreSQL truncates identifiers past 63 bytes
MAX_IDENTIFIER_LENGTH = 63


@dataclass(frozen=True)
class CompiledView:
    view_name: str
    query: str
    has_aggregations: bool
    physical_name: Optional[str] = None


class SpecCompiler:
    """Deterministic spec -> (view name, SELECT statement) compiler."""

    @staticmethod
    def view_name(spec: FeatureSetSpec) -> str:
        return f"features_{spec.name}_v{spec.version or 1}"

    @staticmethod
    def physical_view_name(tenant: str, view_name: str) -> str:
        """Database relation name of a tenant's view.

        Feature set names are only unique per tenant, so every tenant gets
        its own relation. Tenants that are not plain lowercase identifiers
        carry a digest suffix to keep distinct tenants from colliding.
        """
        slug = re.sub(r"[^a-z0-9_]", "_", tenant.lower())
        digest = hashlib.sha1(tenant.encode("utf-8")).hexdigest()
        if slug != tenant:
            slug = f"{slug}_{digest[:8]}"
        name = f"{view_name}__{slug}"
        if len(name) > MAX_IDENTIFIER_LENGTH:
            name = f"{view_name[:MAX_IDENTIFIER_LENGTH - 18]}__{digest[:16]}"
        return name

    def validate(self, spec: SpecInput) -> FeatureSetSpec:
        """Check that a spec is complete enough to compile. Returns the normalized spec."""
        spec = normalize_spec(spec)

        if not spec.name:
            raise SpecError("Feature set spec is missing 'name'", ErrorCode.MISSING_REQUIRED_FIELD, field="name")
        if not isinstance(spec.name, str) or not IDENTIFIER_RE.match(spec.name):
            raise SpecError(f"Feature set name '{spec.name}' is not a valid identifier", field="name")
        if not spec.source:
            raise SpecError("Feature set spec is missing 'source'", ErrorCode.MISSING_REQUIRED_FIELD, field="source")
        if not spec.features:
            raise SpecError(
                "Feature set spec needs a non-empty 'features' sequence",
                ErrorCode.MISSING_REQUIRED_FIELD,
                field="features",
            )

        seen = set()
        for i, feature in enumerate(spec.features):
            if not feature.name or not feature.type:
                raise SpecError(
                    f"Feature #{i} must declare 'name' and 'type'",
                    ErrorCode.MISSING_REQUIRED_FIELD,
                    field=f"features[{i}]",
                )
            if feature.name in seen:
                raise SpecError(f"Duplicate feature name '{feature.name}'", field=f"features[{i}].name")
            seen.add(feature.name)

            is_aggregation = bool(feature.aggregation) or feature.type == TransformationType.AGGREGATION.value
            if is_aggregation and not feature.window:
                raise SpecError(
                    f"Aggregation feature '{feature.name}' requires a 'window'",
                    ErrorCode.MISSING_REQUIRED_FIELD,
                    field=f"features[{i}].window",
                )
            if feature.aggregation and feature.aggregation not in _AGGREGATIONS:
                raise SpecError(
                    f"Unsupported aggregation '{feature.aggregation}' for feature '{feature.name}'",
                    field=f"features[{i}].aggregation",
                )

        return spec

    def compile(self, spec: SpecInput, tenant: Optional[str] = None) -> CompiledView:
        """Build the view query. With ``tenant`` the query only covers that tenant's rows."""
        spec = self.validate(spec)

        projections = list(KEY_COLUMNS)
        has_aggregations = False
        for feature in spec.features:
            column = feature.column or feature.name
            if feature.aggregation:
                has_aggregations = True
                projections.append(f"{feature.aggregation}({column}) AS {feature.name}")
            elif feature.expression:
                projections.append(f"{feature.expression} AS {feature.name}")
            else:
                projections.append(f"{column} AS {feature.name}")

        lines = [
            "SELECT " + ", ".join(projections),
            f"FROM {spec.source}",
        ]
        for join in spec.joins:
            lines.append(f"{(join.type or 'LEFT').upper()} JOIN {join.table} ON {join.on}")
        conditions = []
        if tenant is not None:
            conditions.append("tenant_id = '{}'".format(tenant.replace("'", "''")))
        if spec.filter:
            conditions.append(f"({spec.filter})" if tenant is not None else spec.filter)
        if conditions:
            lines.append("WHERE " + " AND ".join(conditions))
        if has_aggregations:
            lines.append("GROUP BY " + ", ".join(KEY_COLUMNS))

        view_name = self.view_name(spec)
        return CompiledView(
            view_name=view_name,
            query="\n".join(lines),
            has_aggregations=has_aggregations,
            physical_name=self.physical_view_name(tenant, view_name) if tenant is not None else None,
        )
