"""Error Configuration.

Defines error codes and severity levels shared by every FeatureHub
component, plus which failures are worth retrying.
"""

from enum import Enum
from typing import Dict, FrozenSet


class ErrorCode(Enum):
    """Standardized error codes for feature store failures."""

    # Definition errors
    INVALID_SPEC = "INVALID_SPEC"
    MISSING_REQUIRED_FIELD = "MISSING_REQUIRED_FIELD"

    # Lookup errors
    FEATURE_SET_NOT_FOUND = "FEATURE_SET_NOT_FOUND"
    MATERIALIZATION_NOT_FOUND = "MATERIALIZATION_NOT_FOUND"
    RESOURCE_NOT_FOUND = "RESOURCE_NOT_FOUND"

    # Conflict errors
    DUPLICATE_MATERIALIZATION = "DUPLICATE_MATERIALIZATION"
    INVALID_STATUS_TRANSITION = "INVALID_STATUS_TRANSITION"
    RESOURCE_CONFLICT = "RESOURCE_CONFLICT"

    # Infrastructure errors
    DATABASE_ERROR = "DATABASE_ERROR"
    BROKER_ERROR = "BROKER_ERROR"
    CACHE_ERROR = "CACHE_ERROR"

    # Stream computation errors
    COMPUTE_ERROR = "COMPUTE_ERROR"

    INTERNAL_ERROR = "INTERNAL_ERROR"


class ErrorSeverity(Enum):
    """Severity levels for error logging."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


# Transient infrastructure failures; everything else is final.
RETRYABLE_CODES: FrozenSet[ErrorCode] = frozenset({
    ErrorCode.DATABASE_ERROR,
    ErrorCode.BROKER_ERROR,
    ErrorCode.CACHE_ERROR,
})

ERROR_SEVERITY_MAP: Dict[ErrorCode, ErrorSeverity] = {
    ErrorCode.INVALID_SPEC: ErrorSeverity.LOW,
    ErrorCode.MISSING_REQUIRED_FIELD: ErrorSeverity.LOW,
    ErrorCode.FEATURE_SET_NOT_FOUND: ErrorSeverity.LOW,
    ErrorCode.MATERIALIZATION_NOT_FOUND: ErrorSeverity.LOW,
    ErrorCode.RESOURCE_NOT_FOUND: ErrorSeverity.LOW,
    ErrorCode.DUPLICATE_MATERIALIZATION: ErrorSeverity.MEDIUM,
    ErrorCode.INVALID_STATUS_TRANSITION: ErrorSeverity.MEDIUM,
    ErrorCode.RESOURCE_CONFLICT: ErrorSeverity.MEDIUM,
    ErrorCode.DATABASE_ERROR: ErrorSeverity.CRITICAL,
    ErrorCode.BROKER_ERROR: ErrorSeverity.HIGH,
    ErrorCode.CACHE_ERROR: ErrorSeverity.HIGH,
    ErrorCode.COMPUTE_ERROR: ErrorSeverity.MEDIUM,
    ErrorCode.INTERNAL_ERROR: ErrorSeverity.CRITICAL,
}
