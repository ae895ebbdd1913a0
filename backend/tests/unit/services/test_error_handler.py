"""
Unit tests for ErrorHandler service.
Tests the error taxonomy, logging, and user feedback.
"""

import json
import shutil
import tempfile
from pathlib import Path

import pytest

from services.error_handler import (
    ConsoleError, ErrorCategory, ErrorContext, ErrorHandler, ErrorSeverity, InputValidationError,
    MissingCredentialError, OperationEndedError, PreconditionError,
    StandardError, TransportError, get_error_handler, http_status_for
)


class TestErrorCategory:
    """Test ErrorCategory enum."""

    def test_category_values(self):
        """Test category enum values."""
        assert ErrorCategory.VALIDATION.value == "validation"
        assert ErrorCategory.PRECONDITION.value == "precondition"
        assert ErrorCategory.LIFECYCLE.value == "lifecycle"
        assert ErrorCategory.TRANSPORT.value == "transport"
        assert ErrorCategory.PARTIAL_FAILURE.value == "partial_failure"


class TestConsoleErrors:
    """Test the exception hierarchy."""

    def test_missing_credential_is_a_precondition(self):
        error = MissingCredentialError()
        assert isinstance(error, PreconditionError)
        assert error.error_code == "MISSING_CREDENTIAL"

    def test_error_code_override(self):
        error = InputValidationError("Bad date", "DATE_OUT_OF_BOUNDS")
        assert error.error_code == "DATE_OUT_OF_BOUNDS"
        assert error.message == "Bad date"

    @pytest.mark.parametrize("status_code,retryable", [
        (None, True),
        (400, False),
        (404, False),
        (409, True),
        (500, True),
        (503, True),
    ])
    def test_transport_retryable(self, status_code, retryable):
        assert TransportError("failed", status_code=status_code).retryable is retryable


class TestErrorHandler:
    """Test ErrorHandler class."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()
        self.error_handler = ErrorHandler("test_service", log_dir=self.temp_dir)

    def teardown_method(self):
        """Clean up test environment."""
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_initialization(self):
        """Test error handler initialization."""
        assert self.error_handler.service_name == "test_service"
        assert self.error_handler.log_dir == Path(self.temp_dir)
        assert "PARTIAL_END_FAILURE" in self.error_handler.error_codes

    def test_console_error_code_is_used(self):
        error = self.error_handler.handle_error(OperationEndedError(), operation_name="register_evacuee",
                                                center_event_id=7)

        assert isinstance(error, StandardError)
        assert error.error_code == "OPERATION_ALREADY_ENDED"
        assert error.category == ErrorCategory.LIFECYCLE
        assert error.context.center_event_id == 7
        assert error.user_message == "This evacuation operation has already ended."

    def test_backend_message_is_surfaced_verbatim(self):
        error = self.error_handler.handle_error(TransportError("Cannot end: 2 still not decamped.", status_code=409))

        assert error.user_message == "Cannot end: 2 still not decamped."
        assert error.retryable

    def test_partial_failure_is_critical_and_retryable(self):
        error = self.error_handler.handle_error("end failed", error_code="PARTIAL_END_FAILURE")

        assert error.severity == ErrorSeverity.CRITICAL
        assert error.retryable

    def test_standard_exception_inference(self):
        assert self.error_handler.handle_error(ValueError("x")).error_code == "INVALID_INPUT"
        assert self.error_handler.handle_error(ConnectionError("x")).error_code == "CONNECTION_FAILED"
        assert self.error_handler.handle_error(RuntimeError("x")).error_code == "UNKNOWN_ERROR"

    def test_string_error_and_custom_message(self):
        error = self.error_handler.handle_error("boom", custom_user_message="Try later")

        assert error.error_code == "UNKNOWN_ERROR"
        assert error.user_message == "Try later"
        assert error.technical_details is None

    def test_high_severity_errors_are_written_to_log_file(self):
        self.error_handler.handle_error(TransportError("down", error_code="CONNECTION_FAILED"),
                                        operation_name="refresh", center_event_id=7)

        log_files = list(Path(self.temp_dir).glob("errors_*.json"))
        assert len(log_files) == 1
        entry = json.loads(log_files[0].read_text().splitlines()[0])
        assert entry["error_code"] == "CONNECTION_FAILED"
        assert entry["center_event_id"] == 7

    def test_low_severity_errors_are_not_written(self):
        self.error_handler.handle_error(InputValidationError("bad"))
        assert list(Path(self.temp_dir).glob("errors_*.json")) == []

    def test_error_statistics(self):
        assert self.error_handler.get_error_statistics() == {"message": "No errors recorded"}

        self.error_handler.handle_error(InputValidationError("bad"))
        self.error_handler.handle_error(InputValidationError("worse"))
        self.error_handler.handle_error(OperationEndedError())

        stats = self.error_handler.get_error_statistics()
        assert stats["summary"]["total_errors"] == 3
        assert stats["by_category"] == {"validation": 2, "lifecycle": 1}
        assert stats["error_counts"]["validation:INVALID_INPUT"]["count"] == 2

    def test_create_api_response(self):
        error = self.error_handler.handle_error(MissingCredentialError(), operation_name="open_view")

        response = self.error_handler.create_api_response(error)
        assert response["error_code"] == "MISSING_CREDENTIAL"
        assert response["operation"] == "open_view"
        assert "category" not in response

        technical = self.error_handler.create_api_response(error, include_technical=True)
        assert technical["category"] == "precondition"


class TestHttpStatus:
    """Test mapping of errors to HTTP statuses."""

    @pytest.mark.parametrize("error,status", [
        (MissingCredentialError(), 401),
        (PreconditionError("no id"), 400),
        (InputValidationError("bad"), 422),
        (OperationEndedError(), 409),
        (TransportError("down", status_code=503), 502),
        (ConsoleError("half", "PARTIAL_END_FAILURE"), 502),
        (RuntimeError("boom"), 500),
    ])
    def test_status_mapping(self, error, status):
        handler = ErrorHandler("status_test")
        assert http_status_for(handler.handle_error(error)) == status


def test_get_error_handler_is_cached():
    assert get_error_handler("roster") is get_error_handler("roster")
    assert get_error_handler("roster") is not get_error_handler("other")


def test_error_context_defaults():
    context = ErrorContext(error_id="e1", timestamp="2024-01-01T00:00:00", service_name="s", operation_name="o")
    assert context.center_event_id is None
    assert context.additional_data is None
