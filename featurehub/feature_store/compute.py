"""Online feature computation.

Each feature definition maps to one of three variants (direct field,
windowed aggregation, two-operand expression). Expressions follow a closed
grammar and are never evaluated as code.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Mapping, Optional, Sequence, Tuple

import numpy as np

from featurehub.errors import ComputeError

from .config import DEFAULT_WINDOW_MS, ENTITY_ID_FIELDS, AggregationFn
from .history import HistorySource
from .spec import AggregationFeature, DirectFeature, ExpressionFeature, FeatureDefinition

logger = logging.getLogger(__name__)

_WINDOW_RE = re.compile(r"^(\d+)([smhd])$")
_UNIT_MS = {"s": 1_000, "m": 60_000, "h": 3_600_000, "d": 86_400_000}

_OPERAND = r"[A-Za-z_]\w*|-?\d+(?:\.\d+)?"
_EXPRESSION_RE = re.compile(rf"^\s*({_OPERAND})\s*([+\-*/])\s*({_OPERAND})\s*$")
_NUMBER_RE = re.compile(r"^-?\d+(?:\.\d+)?$")


def parse_window(window: Optional[str]) -> int:
    """Window string like ``30m`` to milliseconds. Anything unrecognized is one hour."""
    match = _WINDOW_RE.match((window or "").strip())
    if not match:
        return DEFAULT_WINDOW_MS
    return int(match.group(1)) * _UNIT_MS[match.group(2)]


def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return value
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return None
    return None


def aggregate(fn: AggregationFn, values: Sequence[Any]) -> Optional[float]:
    """Apply an aggregation function.

    ``count`` counts every value; the others use only numeric values.
    Empty input gives 0 for count/sum/avg and None for max/min/stddev.
    """
    fn = AggregationFn(fn)
    if fn == AggregationFn.COUNT:
        return len(values)

    numbers = [n for n in (_as_number(v) for v in values) if n is not None]
    if not numbers:
        return 0 if fn in (AggregationFn.SUM, AggregationFn.AVG) else None

    arr = np.asarray(numbers, dtype=float)
    if fn == AggregationFn.SUM:
        return float(arr.sum())
    if fn == AggregationFn.AVG:
        return float(arr.mean())
    if fn == AggregationFn.MAX:
        return float(arr.max())
    if fn == AggregationFn.MIN:
        return float(arr.min())
    return float(np.std(arr))


def evaluate_expression(expression: str, event: Mapping[str, Any]) -> Any:
    """Evaluate ``operand OP operand`` against event fields.

    Operands are field names (missing fields count as 0) or numeric literals.
    Division by zero gives 0. Any other form is looked up as a field name.
    """
    match = _EXPRESSION_RE.match(expression)
    if not match:
        return event.get(expression)

    left_token, op, right_token = match.groups()
    left = _operand(left_token, event)
    right = _operand(right_token, event)
    if left is None or right is None:
        return None

    if op == "+":
        return left + right
    if op == "-":
        return left - right
    if op == "*":
        return left * right
    return left / right if right != 0 else 0


def _operand(token: str, event: Mapping[str, Any]) -> Optional[float]:
    if _NUMBER_RE.match(token):
        return float(token) if "." in token else int(token)
    value = event.get(token)
    if value is None:
        return 0
    return _as_number(value)


def resolve_entity_id(event: Mapping[str, Any]) -> Optional[str]:
    for name in ENTITY_ID_FIELDS:
        value = event.get(name)
        if value not in (None, ""):
            return str(value)
    return None


class FeatureComputer:
    """Computes a feature vector for one event."""

    def __init__(
        self,
        history: Optional[HistorySource] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self.history = history
        self._clock = clock

    def compute_vector(
        self,
        tenant: str,
        event: Mapping[str, Any],
        features: Sequence[FeatureDefinition],
    ) -> Optional[Tuple[str, Dict[str, Any]]]:
        """Return ``(entity_id, vector)``, or None when the event names no entity."""
        entity_id = resolve_entity_id(event)
        if entity_id is None:
            return None

        vector: Dict[str, Any] = {}
        for feature in features:
            value = self.compute_feature(tenant, entity_id, event, feature)
            if value is not None:
                vector[feature.name] = value
        return entity_id, vector

    def compute_feature(
        self,
        tenant: str,
        entity_id: str,
        event: Mapping[str, Any],
        feature: FeatureDefinition,
    ) -> Any:
        variant = feature.variant
        if isinstance(variant, DirectFeature):
            return event.get(variant.column)
        if isinstance(variant, AggregationFeature):
            return self._aggregate(tenant, entity_id, feature.name, variant)
        if isinstance(variant, ExpressionFeature):
            return evaluate_expression(variant.expression, event)
        return None

    def _aggregate(self, tenant: str, entity_id: str, name: str, variant: AggregationFeature) -> Any:
        if self.history is None:
            raise ComputeError(f"No history source for aggregation feature '{name}'", feature=name)
        end = self._clock()
        start = end - timedelta(milliseconds=parse_window(variant.window))
        try:
            values = self.history.values(tenant, entity_id, variant.column, start, end)
        except Exception as e:
            raise ComputeError(f"History lookup for '{name}' failed: {e}", feature=name) from e
        return aggregate(variant.fn, values)
