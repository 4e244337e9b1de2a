"""
Error taxonomy shared by the orchestration core.

DeploymentError carries a machine-readable code and an HTTP-style status that
the route layer maps to a response. ProviderApiError wraps failures of the
Railway API. ValidationError is a single field-level violation.
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(str, Enum):
    TEMPLATE_NOT_FOUND = "TEMPLATE_NOT_FOUND"
    TEMPLATE_ACCESS_DENIED = "TEMPLATE_ACCESS_DENIED"
    VALIDATION_FAILED = "VALIDATION_FAILED"
    MISSING_CONFIG = "MISSING_CONFIG"
    DEPLOYMENT_NOT_FOUND = "DEPLOYMENT_NOT_FOUND"
    DEPLOYMENT_NAME_TAKEN = "DEPLOYMENT_NAME_TAKEN"
    NAME_CONFLICT = "NAME_CONFLICT"
    INVALID_STATUS_TRANSITION = "INVALID_STATUS_TRANSITION"
    RETRY_EXHAUSTED = "RETRY_EXHAUSTED"
    CIRCUIT_BREAKER_OPEN = "CIRCUIT_BREAKER_OPEN"
    DEPLOYMENT_TIMEOUT = "DEPLOYMENT_TIMEOUT"
    DEPLOY_FAILED = "DEPLOY_FAILED"
    DEPLOY_REMOVED = "DEPLOY_REMOVED"
    PROVIDER_ERROR = "PROVIDER_ERROR"
    MONITOR_FAILED = "MONITOR_FAILED"
    MONITOR_TIMEOUT = "MONITOR_TIMEOUT"
    HEALTH_CHECK_FAILED = "HEALTH_CHECK_FAILED"
    TRIAL_LINK_FAILED = "TRIAL_LINK_FAILED"
    CREATE_FAILED = "CREATE_FAILED"
    GET_FAILED = "GET_FAILED"
    UPDATE_FAILED = "UPDATE_FAILED"
    DELETE_FAILED = "DELETE_FAILED"
    LIST_FAILED = "LIST_FAILED"
    LOG_ADD_FAILED = "LOG_ADD_FAILED"
    UNEXPECTED_ERROR = "UNEXPECTED_ERROR"


class DeploymentError(Exception):
    def __init__(
        self,
        message: str,
        code: str = ErrorCode.UNEXPECTED_ERROR,
        status_code: int = 500,
        details: Optional[Any] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code.value if isinstance(code, ErrorCode) else code
        self.status_code = status_code
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        return {"detail": self.message, "code": self.code, "details": self.details}


class DeploymentTimeoutError(DeploymentError):
    """Deployment did not reach a terminal status before the wait deadline."""

    def __init__(self, message: str, details: Optional[Any] = None):
        super().__init__(message, ErrorCode.DEPLOYMENT_TIMEOUT, 504, details)


class ProviderApiError(Exception):
    def __init__(self, message: str, status_code: int, response: Optional[Any] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.response = response


class ValidationError(Exception):
    def __init__(self, message: str, field: str, value: Optional[Any] = None):
        super().__init__(message)
        self.message = message
        self.field = field
        self.value = value
