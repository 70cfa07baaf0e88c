"""Custom Exception Hierarchy.

Typed exceptions raised by the registry, materialization coordinator,
feature cache and stream processor.
"""

from typing import Any, Dict, List, Optional

from featurehub.errors.config import ERROR_SEVERITY_MAP, RETRYABLE_CODES, ErrorCode, ErrorSeverity


class FeatureStoreError(Exception):
    """Base exception for all FeatureHub errors.

    All custom exceptions inherit from this, allowing callers to catch
    the entire hierarchy with a single handler.
    """

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.INTERNAL_ERROR,
        details: Optional[List[Dict[str, Any]]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.details = details or []

    @property
    def retryable(self) -> bool:
        return self.error_code in RETRYABLE_CODES

    @property
    def severity(self) -> ErrorSeverity:
        return ERROR_SEVERITY_MAP.get(self.error_code, ErrorSeverity.HIGH)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error_code": self.error_code.value,
            "message": self.message,
            "details": self.details,
        }


class SpecError(FeatureStoreError):
    """Raised when a feature set definition is malformed or incomplete."""

    def __init__(
        self,
        message: str = "Invalid feature spec",
        error_code: ErrorCode = ErrorCode.INVALID_SPEC,
        field: Optional[str] = None,
    ):
        details = [{"field": field, "issue": message}] if field else []
        super().__init__(message, error_code, details)
        self.field = field


class NotFoundError(FeatureStoreError):
    """Raised when a feature set, version or job does not exist."""

    def __init__(
        self,
        message: str = "Resource not found",
        error_code: ErrorCode = ErrorCode.RESOURCE_NOT_FOUND,
        resource_type: Optional[str] = None,
        resource_id: Optional[str] = None,
    ):
        details = []
        if resource_type or resource_id:
            details = [{"resource_type": resource_type, "resource_id": resource_id}]
        super().__init__(message, error_code, details)


class ConflictError(FeatureStoreError):
    """Raised when an action conflicts with existing state."""

    def __init__(
        self,
        message: str = "Resource conflict",
        error_code: ErrorCode = ErrorCode.RESOURCE_CONFLICT,
    ):
        super().__init__(message, error_code)


class StoreError(FeatureStoreError):
    """Raised when the relational store fails."""

    def __init__(
        self,
        message: str = "Relational store failure",
        error_code: ErrorCode = ErrorCode.DATABASE_ERROR,
    ):
        super().__init__(message, error_code)


class BrokerError(FeatureStoreError):
    """Raised when the event stream broker or cache server fails."""

    def __init__(
        self,
        message: str = "Event broker failure",
        error_code: ErrorCode = ErrorCode.BROKER_ERROR,
    ):
        super().__init__(message, error_code)


class ComputeError(FeatureStoreError):
    """Raised when online feature computation fails for one message."""

    def __init__(
        self,
        message: str = "Feature computation failed",
        feature: Optional[str] = None,
    ):
        details = [{"feature": feature}] if feature else []
        super().__init__(message, ErrorCode.COMPUTE_ERROR, details)
        self.feature = feature
