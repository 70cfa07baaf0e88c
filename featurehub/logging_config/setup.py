"""Root logger setup for registry callers and stream workers.

JSON lines in production; a compact console line for local runs. Both
carry the bound tenant/worker context and the record fields listed in
LoggingConfig.record_fields.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Sequence

from featurehub.logging_config.config import (
    DEFAULT_LOGGING_CONFIG,
    RECORD_FIELDS,
    LogFormat,
    LoggingConfig,
)
from featurehub.logging_config.context import get_context_dict


def _bound_fields(record: logging.LogRecord, record_fields: Sequence[str]) -> Dict[str, Any]:
    """Context (tenant, worker_id, extras) plus whitelisted ``extra=`` attributes."""
    fields = get_context_dict()
    for key in record_fields:
        if hasattr(record, key):
            fields[key] = getattr(record, key)
    return fields


class StructuredFormatter(logging.Formatter):
    """One JSON object per record."""

    def __init__(
        self,
        service_name: str = "featurehub",
        include_caller: bool = True,
        record_fields: Sequence[str] = RECORD_FIELDS,
    ):
        super().__init__()
        self.service_name = service_name
        self.include_caller = include_caller
        self.record_fields = tuple(record_fields)

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": self.service_name,
        }
        if self.include_caller:
            entry["caller"] = f"{record.module}.{record.funcName}:{record.lineno}"
        entry.update(_bound_fields(record, self.record_fields))

        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = {
                "type": record.exc_info[0].__name__,
                "message": str(record.exc_info[1]),
                "traceback": self.formatException(record.exc_info),
            }
        return json.dumps(entry, default=str)


class ConsoleFormatter(logging.Formatter):
    """``12:00:00.123 INFO     featurehub.x: message [tenant=acme]``"""

    def __init__(self, record_fields: Sequence[str] = RECORD_FIELDS):
        super().__init__()
        self.record_fields = tuple(record_fields)

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.fromtimestamp(record.created, timezone.utc).strftime("%H:%M:%S.%f")[:-3]
        line = f"{timestamp} {record.levelname:8s} {record.name}: {record.getMessage()}"
        fields = _bound_fields(record, self.record_fields)
        if fields:
            line += " [" + " ".join(f"{k}={v}" for k, v in fields.items()) + "]"
        if record.exc_info and record.exc_info[0] is not None:
            line += "\n" + self.formatException(record.exc_info)
        return line


def configure_logging(config: Optional[LoggingConfig] = None, settings=None) -> None:
    """Install a single stdout handler on the root logger.

    Without ``config`` the level and format come from ``settings``
    (FEATUREHUB_LOG_LEVEL, FEATUREHUB_LOG_FORMAT).
    """
    if config is None:
        config = LoggingConfig.from_settings(settings) if settings is not None else _config_from_environment()

    if config.format == LogFormat.JSON:
        formatter: logging.Formatter = StructuredFormatter(
            service_name=config.service_name,
            include_caller=config.include_caller,
            record_fields=config.record_fields,
        )
    else:
        formatter = ConsoleFormatter(record_fields=config.record_fields)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(getattr(logging, config.level.value))

    for name in config.quiet_loggers:
        logging.getLogger(name).setLevel(logging.WARNING)


def _config_from_environment() -> LoggingConfig:
    from featurehub.settings import Settings

    try:
        return LoggingConfig.from_settings(Settings())
    except ValueError:
        logging.getLogger(__name__).warning("Invalid log level or format in settings, using defaults")
        return DEFAULT_LOGGING_CONFIG
