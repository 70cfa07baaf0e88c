"""Structured Logging.

Provides structured JSON logging, tenant/worker context propagation,
and performance timing for FeatureHub.
"""

from featurehub.logging_config.config import LogFormat, LoggingConfig, LogLevel
from featurehub.logging_config.context import LogContext, get_context_dict
from featurehub.logging_config.performance import PerformanceTimer, log_performance
from featurehub.logging_config.setup import configure_logging

__all__ = [
    "LogFormat",
    "LogLevel",
    "LoggingConfig",
    "LogContext",
    "PerformanceTimer",
    "configure_logging",
    "get_context_dict",
    "log_performance",
]
