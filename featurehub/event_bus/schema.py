"""Notification envelopes and built-in event factories."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from .config import EventCategory


@dataclass
class EventEnvelope:
    """Standard envelope wrapping every notification."""

    event_id: str = field(default_factory=lambda: uuid.uuid4().hex[:16])
    event_type: str = ""
    category: EventCategory = EventCategory.FEATURE
    tenant: str = ""
    source: str = ""
    timestamp: datetime = field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    data: dict[str, Any] = field(default_factory=dict)
    correlation_id: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_id": self.event_id,
            "type": self.event_type,
            "category": self.category.value,
            "tenant": self.tenant,
            "source": self.source,
            "timestamp": self.timestamp.isoformat(),
            "data": self.data,
            "correlation_id": self.correlation_id,
        }


# ── Built-in Event Factories ──────────────────────────────────────


def feature_set_registered_event(
    tenant: str,
    feature_set_id: str,
    name: str,
    version: int,
    owner: str,
    source: str = "feature_registry",
) -> EventEnvelope:
    """Create a feature_set_registered event."""
    return EventEnvelope(
        event_type="feature_set_registered",
        category=EventCategory.FEATURE_SET,
        tenant=tenant,
        source=source,
        data={
            "feature_set_id": feature_set_id,
            "name": name,
            "version": version,
            "owner": owner,
        },
    )


def materialization_completed_event(
    tenant: str,
    feature_set_id: str,
    mode: str,
    status: str,
    view_name: Optional[str] = None,
    source: str = "materialization_coordinator",
) -> EventEnvelope:
    """Create a feature_materialization_completed event."""
    return EventEnvelope(
        event_type="feature_materialization_completed",
        category=EventCategory.MATERIALIZATION,
        tenant=tenant,
        source=source,
        data={
            "feature_set_id": feature_set_id,
            "mode": mode,
            "status": status,
            "view_name": view_name,
        },
    )


def feature_computed_event(
    tenant: str,
    feature_set_id: str,
    entity_id: str,
    source: str = "online_stream_processor",
    **extra: Any,
) -> EventEnvelope:
    """Create a feature_computed event."""
    return EventEnvelope(
        event_type="feature_computed",
        category=EventCategory.FEATURE,
        tenant=tenant,
        source=source,
        data={
            "feature_set_id": feature_set_id,
            "entity_id": entity_id,
            **extra,
        },
    )
