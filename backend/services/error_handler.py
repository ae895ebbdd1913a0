"""
Unified Error Handler Service
Provides the console's error taxonomy (precondition, validation, conflict,
lifecycle, transport, partial failure) with consistent logging and user feedback.
"""

import traceback
import uuid
from datetime import datetime
from typing import Dict, Any, Optional, Union
from enum import Enum
import structlog
from dataclasses import dataclass
from pathlib import Path
import json

logger = structlog.get_logger(__name__)


class ErrorSeverity(Enum):
    """Error severity levels for classification and handling."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ErrorCategory(Enum):
    """Error categories for better organization and handling."""
    VALIDATION = "validation"
    PRECONDITION = "precondition"
    CONFLICT = "conflict"
    LIFECYCLE = "lifecycle"
    TRANSPORT = "transport"
    PARTIAL_FAILURE = "partial_failure"
    SYSTEM = "system"
    UNKNOWN = "unknown"


class ConsoleError(Exception):
    """Base class for errors raised by the roster console."""

    error_code = "UNKNOWN_ERROR"

    def __init__(self, message: str, error_code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if error_code:
            self.error_code = error_code


class PreconditionError(ConsoleError):
    """An action was attempted without a required identifier or state."""
    error_code = "MISSING_IDENTIFIER"


class MissingCredentialError(PreconditionError):
    """No bearer credential is available for the backend API."""
    error_code = "MISSING_CREDENTIAL"

    def __init__(self, message: str = "A valid bearer credential is required."):
        super().__init__(message)


class InputValidationError(ConsoleError):
    """User input failed validation; nothing was sent to the backend."""
    error_code = "INVALID_INPUT"


class OperationEndedError(ConsoleError):
    """The evacuation operation has ended and no longer accepts writes."""
    error_code = "OPERATION_ALREADY_ENDED"

    def __init__(self, message: str = "Evacuation operation already ended."):
        super().__init__(message)


class TransportError(ConsoleError):
    """The backend API rejected a request or could not be reached."""
    error_code = "BACKEND_REQUEST_FAILED"

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        error_code: Optional[str] = None,
        payload: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message, error_code)
        self.status_code = status_code
        self.payload = payload or {}

    @property
    def retryable(self) -> bool:
        return self.status_code is None or self.status_code >= 500 or self.status_code == 409


@dataclass
class ErrorContext:
    """Context information for error handling."""

    error_id: str
    timestamp: str
    service_name: str
    operation_name: str
    center_event_id: Optional[int] = None
    additional_data: Optional[Dict[str, Any]] = None


@dataclass
class StandardError:
    """Standardized error structure for consistent handling."""

    error_id: str
    error_code: str
    message: str
    user_message: str
    severity: ErrorSeverity
    category: ErrorCategory
    context: ErrorContext
    technical_details: Optional[str] = None
    suggested_actions: Optional[list] = None
    retryable: bool = False

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for API responses."""
        return {
            "error_id": self.error_id,
            "error_code": self.error_code,
            "message": self.message,
            "user_message": self.user_message,
            "severity": self.severity.value,
            "category": self.category.value,
            "timestamp": self.context.timestamp,
            "suggested_actions": self.suggested_actions or [],
            "retryable": self.retryable
        }

    def to_user_dict(self) -> Dict[str, Any]:
        """Convert to user-friendly dictionary (no technical details)."""
        return {
            "error_id": self.error_id,
            "error_code": self.error_code,
            "message": self.user_message,
            "severity": self.severity.value,
            "suggested_actions": self.suggested_actions or [],
            "retryable": self.retryable
        }


class ErrorHandler:
    """
    Unified error handler for consistent error management across the console.
    Provides logging, user feedback, and error tracking capabilities.
    """

    def __init__(self, service_name: str, log_dir: Optional[str] = None):
        """
        Initialize error handler for a specific service.

        Args:
            service_name: Name of the service using this error handler
            log_dir: Directory for error logs (optional, no file logging when omitted)
        """
        self.service_name = service_name
        self.log_dir = Path(log_dir) if log_dir else None
        if self.log_dir:
            self.log_dir.mkdir(parents=True, exist_ok=True)

        # Error tracking
        self.error_history = []
        self.error_counts = {}

        # Error code mappings. A None user_message means the raw message is
        # already user-facing and is surfaced verbatim.
        self.error_codes = {
            # Precondition errors
            "MISSING_CREDENTIAL": {
                "category": ErrorCategory.PRECONDITION,
                "severity": ErrorSeverity.MEDIUM,
                "user_message": "You are not signed in. Please sign in again and retry.",
                "suggested_actions": ["Sign in again"]
            },
            "MISSING_IDENTIFIER": {
                "category": ErrorCategory.PRECONDITION,
                "severity": ErrorSeverity.MEDIUM,
                "user_message": None,
                "suggested_actions": ["Reload the evacuation center page"]
            },
            "END_NOT_REQUESTED": {
                "category": ErrorCategory.PRECONDITION,
                "severity": ErrorSeverity.LOW,
                "user_message": "Open the end-operation dialog before confirming.",
                "suggested_actions": ["Request to end the operation first"]
            },

            # Validation errors
            "INVALID_INPUT": {
                "category": ErrorCategory.VALIDATION,
                "severity": ErrorSeverity.LOW,
                "user_message": None,
                "suggested_actions": ["Check the highlighted fields"]
            },
            "DATE_OUT_OF_BOUNDS": {
                "category": ErrorCategory.VALIDATION,
                "severity": ErrorSeverity.LOW,
                "user_message": None,
                "suggested_actions": ["Choose a date within the allowed range"]
            },

            # Lifecycle errors
            "OPERATION_ALREADY_ENDED": {
                "category": ErrorCategory.LIFECYCLE,
                "severity": ErrorSeverity.LOW,
                "user_message": "This evacuation operation has already ended.",
                "suggested_actions": ["View the records in read-only mode"]
            },

            # Transport errors
            "BACKEND_REQUEST_FAILED": {
                "category": ErrorCategory.TRANSPORT,
                "severity": ErrorSeverity.HIGH,
                "user_message": None,
                "suggested_actions": ["Retry the operation"]
            },
            "CONNECTION_FAILED": {
                "category": ErrorCategory.TRANSPORT,
                "severity": ErrorSeverity.HIGH,
                "user_message": "Unable to reach the evacuation service. Please try again.",
                "suggested_actions": ["Check network connection", "Retry the operation"]
            },

            # Multi-step failures
            "PARTIAL_END_FAILURE": {
                "category": ErrorCategory.PARTIAL_FAILURE,
                "severity": ErrorSeverity.CRITICAL,
                "user_message": "Evacuees were decamped but the operation could not be ended. The view was refreshed; please retry ending the operation.",
                "suggested_actions": ["Review the refreshed roster", "Retry ending the operation"],
                "retryable": True
            },

            # Generic errors
            "UNKNOWN_ERROR": {
                "category": ErrorCategory.UNKNOWN,
                "severity": ErrorSeverity.HIGH,
                "user_message": "An unexpected error occurred. Please try again or contact support.",
                "suggested_actions": ["Try again", "Contact support with error ID"]
            }
        }

        logger.debug("Error handler initialized", service=service_name)

    def handle_error(
        self,
        error: Union[Exception, str],
        error_code: Optional[str] = None,
        operation_name: str = "unknown_operation",
        center_event_id: Optional[int] = None,
        additional_data: Optional[Dict[str, Any]] = None,
        custom_user_message: Optional[str] = None
    ) -> StandardError:
        """
        Handle an error with consistent logging and user feedback.

        Args:
            error: Exception or error message
            error_code: Predefined error code for classification
            operation_name: Name of the operation that failed
            center_event_id: Evacuation-center event the operation targeted
            additional_data: Additional context data
            custom_user_message: Custom user-friendly message

        Returns:
            StandardError object with all error details
        """
        error_id = str(uuid.uuid4())

        context = ErrorContext(
            error_id=error_id,
            timestamp=datetime.now().isoformat(),
            service_name=self.service_name,
            operation_name=operation_name,
            center_event_id=center_event_id,
            additional_data=additional_data
        )

        retryable = False
        if isinstance(error, Exception):
            error_message = str(error)
            technical_details = "".join(
                traceback.format_exception(type(error), error, error.__traceback__)
            )
            if error_code is None:
                error_code = self._infer_error_code(error)
            if isinstance(error, TransportError):
                retryable = error.retryable
        else:
            error_message = str(error)
            technical_details = None
            error_code = error_code or "UNKNOWN_ERROR"

        error_config = self.error_codes.get(error_code, self.error_codes["UNKNOWN_ERROR"])
        retryable = retryable or error_config.get("retryable", False)

        standard_error = StandardError(
            error_id=error_id,
            error_code=error_code,
            message=error_message,
            user_message=custom_user_message or error_config["user_message"] or error_message,
            severity=error_config["severity"],
            category=error_config["category"],
            context=context,
            technical_details=technical_details,
            suggested_actions=error_config.get("suggested_actions"),
            retryable=retryable
        )

        self._log_error(standard_error)
        self._track_error(standard_error)
        self.error_history.append(standard_error)

        return standard_error

    def _infer_error_code(self, error: Exception) -> str:
        """Infer error code from exception type."""
        if isinstance(error, ConsoleError):
            return error.error_code

        type_mappings = {
            "ValueError": "INVALID_INPUT",
            "KeyError": "INVALID_INPUT",
            "TimeoutError": "CONNECTION_FAILED",
            "ConnectionError": "CONNECTION_FAILED",
        }

        return type_mappings.get(type(error).__name__, "UNKNOWN_ERROR")

    def _log_error(self, error: StandardError):
        """Log error with appropriate level based on severity."""
        log_data = {
            "error_id": error.error_id,
            "error_code": error.error_code,
            "message": error.message,
            "severity": error.severity.value,
            "category": error.category.value,
            "service": self.service_name,
            "operation": error.context.operation_name,
            "center_event_id": error.context.center_event_id
        }

        if error.severity == ErrorSeverity.CRITICAL:
            logger.critical("Critical error occurred", **log_data, technical_details=error.technical_details)
        elif error.severity == ErrorSeverity.HIGH:
            logger.error("High severity error occurred", **log_data, technical_details=error.technical_details)
        elif error.severity == ErrorSeverity.MEDIUM:
            logger.warning("Medium severity error occurred", **log_data)
        else:
            logger.info("Low severity error occurred", **log_data)

        if self.log_dir and error.severity in [ErrorSeverity.CRITICAL, ErrorSeverity.HIGH]:
            self._write_error_log(error)

    def _write_error_log(self, error: StandardError):
        """Append a detailed error entry to the daily JSON-lines file."""
        try:
            log_file = self.log_dir / f"errors_{datetime.now().strftime('%Y%m%d')}.json"

            error_log_entry = {
                "timestamp": error.context.timestamp,
                "error_id": error.error_id,
                "service": self.service_name,
                "error_code": error.error_code,
                "message": error.message,
                "severity": error.severity.value,
                "category": error.category.value,
                "operation": error.context.operation_name,
                "center_event_id": error.context.center_event_id,
                "technical_details": error.technical_details,
                "additional_data": error.context.additional_data
            }

            with open(log_file, 'a') as f:
                f.write(json.dumps(error_log_entry, default=str) + '\n')

        except OSError as e:
            logger.warning("Failed to write error log", error=str(e))

    def _track_error(self, error: StandardError):
        """Track error statistics for monitoring."""
        error_key = f"{error.category.value}:{error.error_code}"

        if error_key not in self.error_counts:
            self.error_counts[error_key] = {
                "count": 0,
                "first_occurrence": error.context.timestamp,
                "last_occurrence": error.context.timestamp,
                "severity": error.severity.value
            }

        self.error_counts[error_key]["count"] += 1
        self.error_counts[error_key]["last_occurrence"] = error.context.timestamp

    def get_error_statistics(self) -> Dict[str, Any]:
        """Get error statistics for monitoring and analysis."""
        total_errors = len(self.error_history)

        if total_errors == 0:
            return {"message": "No errors recorded"}

        severity_counts = {}
        category_counts = {}

        for error in self.error_history:
            severity = error.severity.value
            category = error.category.value

            severity_counts[severity] = severity_counts.get(severity, 0) + 1
            category_counts[category] = category_counts.get(category, 0) + 1

        return {
            "summary": {
                "total_errors": total_errors,
                "service": self.service_name
            },
            "by_severity": severity_counts,
            "by_category": category_counts,
            "error_counts": self.error_counts,
            "recent_errors": [
                {
                    "error_id": error.error_id,
                    "error_code": error.error_code,
                    "severity": error.severity.value,
                    "category": error.category.value,
                    "timestamp": error.context.timestamp,
                    "operation": error.context.operation_name
                }
                for error in self.error_history[-10:]
            ]
        }

    def create_api_response(self, error: StandardError, include_technical: bool = False) -> Dict[str, Any]:
        """
        Create API response from standardized error.

        Args:
            error: StandardError object
            include_technical: Whether to include technical details

        Returns:
            API response dictionary
        """
        response = error.to_dict() if include_technical else error.to_user_dict()

        response["service"] = self.service_name
        response["operation"] = error.context.operation_name

        return response


# Global error handlers for different services
_error_handlers = {}


def get_error_handler(service_name: str) -> ErrorHandler:
    """Get or create error handler for a service."""
    if service_name not in _error_handlers:
        _error_handlers[service_name] = ErrorHandler(service_name)
    return _error_handlers[service_name]


def http_status_for(error: StandardError) -> int:
    """Map a standardized error onto the HTTP status served to view components."""
    if error.error_code == "MISSING_CREDENTIAL":
        return 401
    category_status = {
        ErrorCategory.PRECONDITION: 400,
        ErrorCategory.VALIDATION: 422,
        ErrorCategory.CONFLICT: 409,
        ErrorCategory.LIFECYCLE: 409,
        ErrorCategory.TRANSPORT: 502,
        ErrorCategory.PARTIAL_FAILURE: 502,
    }
    return category_status.get(error.category, 500)
