"""Error taxonomy for the feature store.

SpecError and ConflictError are user-facing and never retried,
StoreError and BrokerError are transient infrastructure failures,
ComputeError is isolated to a single stream message.
"""

from featurehub.errors.config import (
    ERROR_SEVERITY_MAP,
    RETRYABLE_CODES,
    ErrorCode,
    ErrorSeverity,
)
from featurehub.errors.exceptions import (
    BrokerError,
    ComputeError,
    ConflictError,
    FeatureStoreError,
    NotFoundError,
    SpecError,
    StoreError,
)

__all__ = [
    # Config
    "ERROR_SEVERITY_MAP",
    "RETRYABLE_CODES",
    "ErrorCode",
    "ErrorSeverity",
    # Exceptions
    "BrokerError",
    "ComputeError",
    "ConflictError",
    "FeatureStoreError",
    "NotFoundError",
    "SpecError",
    "StoreError",
]
