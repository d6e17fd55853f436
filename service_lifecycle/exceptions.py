"""Custom exception classes for the Service Lifecycle Agent."""

from typing import Optional, Dict, Any
from enum import Enum


class ErrorCode(str, Enum):
    """Error codes for different types of failures."""

    # General errors
    INTERNAL_ERROR = "INTERNAL_ERROR"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    CONFIGURATION_ERROR = "CONFIGURATION_ERROR"

    # Storage errors
    STORAGE_OPERATION_FAILED = "STORAGE_OPERATION_FAILED"

    # Service instance errors
    INSTANCE_NOT_FOUND = "INSTANCE_NOT_FOUND"
    OPERATION_IN_PROGRESS = "OPERATION_IN_PROGRESS"

    # Service broker errors
    BROKER_TRANSIENT_ERROR = "BROKER_TRANSIENT_ERROR"
    BROKER_REQUEST_REJECTED = "BROKER_REQUEST_REJECTED"
    BROKER_RESPONSE_MALFORMED = "BROKER_RESPONSE_MALFORMED"
    ORPHAN_MITIGATION_EXHAUSTED = "ORPHAN_MITIGATION_EXHAUSTED"

    # Audit errors
    EVENT_VALIDATION_ERROR = "EVENT_VALIDATION_ERROR"


class LifecycleError(Exception):
    """Base exception class for the Service Lifecycle Agent."""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.INTERNAL_ERROR,
        details: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None
    ):
        """Initialize the exception.

        Args:
            message: Human-readable error message
            error_code: Specific error code for the failure
            details: Additional context about the error
            cause: The underlying exception that caused this error
        """
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        self.cause = cause

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for API responses."""
        result = {
            'error': self.error_code.value,
            'message': self.message,
            'details': self.details
        }

        if self.cause:
            result['cause'] = str(self.cause)

        return result

    def __str__(self) -> str:
        """String representation of the exception."""
        base_str = f"{self.error_code.value}: {self.message}"

        if self.details:
            details_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            base_str += f" ({details_str})"

        if self.cause:
            base_str += f" [caused by: {self.cause}]"

        return base_str


class ValidationError(LifecycleError):
    """Exception for caller input that is malformed or not allowed."""

    def __init__(self, message: str, field: Optional[str] = None, value: Optional[Any] = None,
                 error_code: ErrorCode = ErrorCode.VALIDATION_ERROR):
        details = {}
        if field:
            details['field'] = field
        if value is not None:
            details['value'] = str(value)

        super().__init__(
            message=message,
            error_code=error_code,
            details=details
        )


class OperationInProgressError(ValidationError):
    """Exception for a lifecycle action requested while another is in flight."""

    def __init__(self, instance_guid: str):
        super().__init__(
            message=f"An operation for service instance '{instance_guid}' is in progress.",
            field='instance_guid',
            value=instance_guid,
            error_code=ErrorCode.OPERATION_IN_PROGRESS
        )


class ConfigurationError(LifecycleError):
    """Exception for configuration-related errors."""

    def __init__(self, message: str, config_key: Optional[str] = None):
        details = {}
        if config_key:
            details['config_key'] = config_key

        super().__init__(
            message=message,
            error_code=ErrorCode.CONFIGURATION_ERROR,
            details=details
        )


class StorageError(LifecycleError):
    """Exception for storage-related errors."""

    def __init__(self, message: str, operation: Optional[str] = None, cause: Optional[Exception] = None):
        details = {}
        if operation:
            details['operation'] = operation

        super().__init__(
            message=message,
            error_code=ErrorCode.STORAGE_OPERATION_FAILED,
            details=details,
            cause=cause
        )


class InstanceNotFoundError(LifecycleError):
    """Exception for when a service instance is not found."""

    def __init__(self, instance_guid: str):
        super().__init__(
            message=f"Service instance '{instance_guid}' not found",
            error_code=ErrorCode.INSTANCE_NOT_FOUND,
            details={'instance_guid': instance_guid}
        )


class BrokerError(LifecycleError):
    """Base exception for service broker failures."""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode,
        status_code: Optional[int] = None,
        broker_url: Optional[str] = None,
        cause: Optional[Exception] = None
    ):
        details = {}
        if status_code is not None:
            details['status_code'] = status_code
        if broker_url:
            details['broker_url'] = broker_url

        super().__init__(
            message=message,
            error_code=error_code,
            details=details,
            cause=cause
        )
        self.status_code = status_code


class BrokerTransientError(BrokerError):
    """Network failure, timeout or 5xx from the broker. Safe to retry."""

    def __init__(self, message: str, status_code: Optional[int] = None,
                 broker_url: Optional[str] = None, cause: Optional[Exception] = None):
        super().__init__(message, ErrorCode.BROKER_TRANSIENT_ERROR, status_code, broker_url, cause)


class BrokerFatalError(BrokerError):
    """Broker rejected the request. Not retried."""

    def __init__(self, message: str, status_code: Optional[int] = None,
                 broker_url: Optional[str] = None, cause: Optional[Exception] = None,
                 error_code: ErrorCode = ErrorCode.BROKER_REQUEST_REJECTED):
        super().__init__(message, error_code, status_code, broker_url, cause)


class BrokerMalformedResponseError(BrokerFatalError):
    """Broker answered 2xx with a body that does not match the protocol schema."""

    def __init__(self, message: str, status_code: Optional[int] = None,
                 broker_url: Optional[str] = None, cause: Optional[Exception] = None):
        super().__init__(
            message, status_code, broker_url, cause,
            error_code=ErrorCode.BROKER_RESPONSE_MALFORMED
        )


class OrphanMitigationExhausted(LifecycleError):
    """Cleanup deprovision could not be completed; needs an operator."""

    def __init__(self, instance_guid: str, attempts: int, broker_url: Optional[str] = None,
                 cause: Optional[Exception] = None):
        details: Dict[str, Any] = {'instance_guid': instance_guid, 'attempts': attempts}
        if broker_url:
            details['broker_url'] = broker_url

        super().__init__(
            message=f"Orphan mitigation for service instance '{instance_guid}' gave up after {attempts} attempt(s)",
            error_code=ErrorCode.ORPHAN_MITIGATION_EXHAUSTED,
            details=details,
            cause=cause
        )
        self.instance_guid = instance_guid
        self.attempts = attempts


class EventValidationError(LifecycleError):
    """Exception for audit events that cannot be attributed or are incomplete."""

    def __init__(self, message: str):
        super().__init__(
            message=message,
            error_code=ErrorCode.EVENT_VALIDATION_ERROR
        )
