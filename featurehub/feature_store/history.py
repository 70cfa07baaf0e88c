"""Historical value sources for windowed aggregations."""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from collections import defaultdict
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple

from sqlalchemy import DateTime, bindparam, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from featurehub.errors import StoreError

from .compiler import IDENTIFIER_RE


class HistorySource(ABC):
    """Supplies past values of one column for an entity."""

    @abstractmethod
    def values(
        self,
        tenant: str,
        entity_id: str,
        column: str,
        start: datetime,
        end: datetime,
    ) -> List[Any]:
        """Values with ``start < timestamp <= end``, newest first."""


def _identifier(name: str) -> str:
    if not isinstance(name, str) or not IDENTIFIER_RE.match(name):
        raise ValueError(f"Invalid SQL identifier: {name!r}")
    return name


class SqlHistorySource(HistorySource):
    """Reads history from a telemetry aggregates table.

    An entity matches when any of ``entity_columns`` equals its id.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        table: str = "telemetry_aggregates",
        entity_columns: Sequence[str] = ("entity_id",),
        timestamp_column: str = "timestamp",
    ) -> None:
        if not entity_columns:
            raise ValueError("At least one entity column is required")
        self._session_factory = session_factory
        self.table = ".".join(_identifier(part) for part in table.split("."))
        self.entity_columns = [_identifier(c) for c in entity_columns]
        self.timestamp_column = _identifier(timestamp_column)

    @classmethod
    def from_settings(cls, session_factory: sessionmaker, settings=None) -> "SqlHistorySource":
        from featurehub.settings import get_settings

        s = settings or get_settings()
        return cls(
            session_factory,
            table=s.history_table,
            entity_columns=s.history_entity_columns,
            timestamp_column=s.history_timestamp_column,
        )

    def values(self, tenant, entity_id, column, start, end):
        column = _identifier(column)
        entity_match = " OR ".join(f"{c} = :entity_id" for c in self.entity_columns)
        ts = self.timestamp_column
        stmt = text(
            f"SELECT {column} AS value FROM {self.table} "
            f"WHERE tenant_id = :tenant AND ({entity_match}) "
            f"AND {ts} > :start AND {ts} <= :end "
            f"ORDER BY {ts} DESC"
        ).bindparams(
            bindparam("start", type_=DateTime(timezone=True)),
            bindparam("end", type_=DateTime(timezone=True)),
        )
        try:
            with self._session_factory() as session:
                rows = session.execute(
                    stmt,
                    {"tenant": tenant, "entity_id": entity_id, "start": start, "end": end},
                ).all()
        except SQLAlchemyError as e:
            raise StoreError(f"History read from {self.table} failed: {e}") from e
        return [r.value for r in rows]


class InMemoryHistorySource(HistorySource):
    """History kept in process memory, for tests and local runs."""

    def __init__(self) -> None:
        self._points: Dict[Tuple[str, str, str], List[Tuple[datetime, Any]]] = defaultdict(list)
        self._lock = threading.Lock()

    def add(self, tenant: str, entity_id: str, column: str, value: Any, timestamp: datetime) -> None:
        with self._lock:
            self._points[(tenant, entity_id, column)].append((timestamp, value))

    def values(self, tenant, entity_id, column, start, end):
        with self._lock:
            points = list(self._points.get((tenant, entity_id, column), []))
        points.sort(key=lambda p: p[0], reverse=True)
        return [v for ts, v in points if start < ts <= end]
