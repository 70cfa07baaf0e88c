"""Logging configuration for the feature store processes.

Level and format come from the FEATUREHUB_LOG_LEVEL / FEATUREHUB_LOG_FORMAT
settings; the rest are fixed per process.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Tuple


class LogLevel(str, Enum):
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class LogFormat(str, Enum):
    JSON = "json"
    CONSOLE = "console"


# Attributes passed via ``extra=`` that are lifted into structured entries
RECORD_FIELDS: Tuple[str, ...] = (
    "duration_ms",
    "feature_set_id",
    "physical_name",
    "message_id",
    "stream",
    "extra_data",
)

# Libraries whose INFO output drowns the worker's own logs
QUIET_LOGGERS: Tuple[str, ...] = ("sqlalchemy.engine", "redis", "urllib3")


@dataclass(frozen=True)
class LoggingConfig:
    level: LogLevel = LogLevel.INFO
    format: LogFormat = LogFormat.JSON
    include_caller: bool = True
    slow_threshold_ms: float = 1000.0
    service_name: str = "featurehub"
    record_fields: Tuple[str, ...] = RECORD_FIELDS
    quiet_loggers: Tuple[str, ...] = QUIET_LOGGERS

    @classmethod
    def from_settings(cls, settings=None) -> "LoggingConfig":
        """Level and format from Settings; unknown values raise ValueError."""
        from featurehub.settings import get_settings

        s = settings or get_settings()
        return cls(
            level=LogLevel(s.log_level.upper()),
            format=LogFormat(s.log_format.lower()),
        )


DEFAULT_LOGGING_CONFIG = LoggingConfig()
