"""Property-based tests for error logging and the pipeline error taxonomy.

For any pipeline failure, the error handler should keep a complete record with
enough context and a recovery suggestion to troubleshoot it, and the retry
policy should only ever retry alignment and transport failures.
"""

import json
import os
import tempfile

import pytest
from hypothesis import given, strategies as st, settings

from src.models.core import InvalidTransitionError
from src.services.error_handler import (
    AlignmentError,
    ConfigurationError,
    ErrorHandler,
    ErrorSeverity,
    RetryExhaustedError,
    SegmentTimeoutError,
    StallError,
    TaskNotFoundError,
    TransportError,
    is_retryable,
)


PIPELINE_ERRORS = [
    lambda: AlignmentError(4, 3, segment_index=1),
    lambda: TransportError("HTTP 503"),
    lambda: SegmentTimeoutError("timed out after 120s"),
    lambda: RetryExhaustedError(2, 3, "HTTP 503"),
    lambda: StallError("no heartbeat for 400s"),
    lambda: ConfigurationError("GEMINI_API_KEY is not set"),
    lambda: TaskNotFoundError("task-9"),
]


class TestErrorLoggingProperties:
    """Property-based tests for error logging completeness."""

    def setup_method(self):
        """Set up test fixtures."""
        self.temp_log_file = tempfile.NamedTemporaryFile(suffix='.log', delete=False)
        self.temp_log_file.close()
        self.error_handler = ErrorHandler(log_file=self.temp_log_file.name)

    def teardown_method(self):
        """Clean up test fixtures."""
        for handler in list(self.error_handler.logger.handlers):
            handler.close()
        if os.path.exists(self.temp_log_file.name):
            os.unlink(self.temp_log_file.name)

    @given(
        make_error=st.sampled_from(PIPELINE_ERRORS),
        severity=st.sampled_from(list(ErrorSeverity)),
    )
    @settings(max_examples=100, deadline=None)
    def test_pipeline_errors_get_records_with_suggestions_property(self, make_error, severity):
        """Property: every pipeline error is recorded with a default recovery suggestion."""
        error = make_error()
        initial_count = len(self.error_handler.error_log)

        record = self.error_handler.log_error(error, severity=severity)

        assert len(self.error_handler.error_log) == initial_count + 1
        assert record.error_type == type(error).__name__
        assert record.message == str(error)
        assert record.severity == severity
        assert record.recovery_suggestion, \
            f"{record.error_type} should have a default recovery suggestion"

    @given(
        context_data=st.dictionaries(
            keys=st.sampled_from(['task_id', 'segment_index', 'stage', 'attempt']),
            values=st.one_of(st.text(max_size=20), st.integers(min_value=0, max_value=100)),
            min_size=1,
        ),
        recovery_suggestion=st.text(min_size=1, max_size=100),
    )
    @settings(max_examples=100, deadline=None)
    def test_error_context_preservation_property(self, context_data, recovery_suggestion):
        """Property: explicit context and recovery suggestions are kept as given."""
        record = self.error_handler.log_error(
            TransportError("rate limited"),
            context=context_data,
            recovery_suggestion=recovery_suggestion,
        )

        assert record.context == context_data
        assert record.recovery_suggestion == recovery_suggestion

    @given(num_errors=st.integers(min_value=1, max_value=30))
    @settings(max_examples=50, deadline=None)
    def test_error_summary_accuracy_property(self, num_errors):
        """Property: the summary counts every logged error and keeps the last ten."""
        self.error_handler.clear_error_log()
        for i in range(num_errors):
            severity = ErrorSeverity.WARNING if i % 2 else ErrorSeverity.ERROR
            self.error_handler.log_error(TransportError(f"failure {i}"), severity=severity)

        summary = self.error_handler.get_error_summary()

        assert summary['total_errors'] == num_errors
        assert sum(summary['by_severity'].values()) == num_errors
        assert summary['by_type'] == {'TransportError': num_errors}
        assert len(summary['recent_errors']) == min(10, num_errors)
        assert summary['recent_errors'][-1]['message'] == f"failure {num_errors - 1}"

    def test_recovery_suggestions_are_unique_per_type(self):
        self.error_handler.clear_error_log()
        for _ in range(3):
            self.error_handler.log_error(StallError("silent"))
        self.error_handler.log_error(TransportError("503"))

        assert len(self.error_handler.get_recovery_suggestions('StallError')) == 1
        assert len(self.error_handler.get_recovery_suggestions()) == 2

    def test_export_error_log(self):
        self.error_handler.log_error(AlignmentError(4, 2), context={'segment_index': 0})
        export_path = self.temp_log_file.name + '.json'

        try:
            self.error_handler.export_error_log(export_path)
            with open(export_path, encoding='utf-8') as f:
                data = json.load(f)
        finally:
            if os.path.exists(export_path):
                os.unlink(export_path)

        assert data['total_errors'] == len(self.error_handler.error_log)
        assert data['errors'][-1]['type'] == 'AlignmentError'
        assert data['errors'][-1]['context'] == {'segment_index': 0}


class TestFallbackHandling:
    """Tests for primary/fallback execution."""

    def setup_method(self):
        self.error_handler = ErrorHandler()

    def test_fallback_used_on_failure(self):
        self.error_handler.register_fallback_handler('KeywordExtraction', lambda *args: [])

        def failing(title):
            raise TransportError("quota")

        assert self.error_handler.handle_with_fallback(failing, 'KeywordExtraction', "title") == []
        assert self.error_handler.error_log[-1].severity == ErrorSeverity.WARNING

    def test_primary_result_returned_when_it_succeeds(self):
        assert self.error_handler.handle_with_fallback(lambda x: x * 2, 'Anything', 4) == 8

    def test_missing_fallback_reraises(self):
        def failing():
            raise TransportError("quota")

        with pytest.raises(TransportError):
            self.error_handler.handle_with_fallback(failing, 'Unregistered')


class TestRetryPolicy:
    """Which failures the segment translator retries."""

    @pytest.mark.parametrize("error", [
        AlignmentError(4, 3),
        TransportError("503"),
        SegmentTimeoutError("slow"),
        ValueError("malformed JSON"),
    ])
    def test_retryable(self, error):
        assert is_retryable(error)

    @pytest.mark.parametrize("error", [
        ConfigurationError("no key"),
        InvalidTransitionError("cancelled"),
        RetryExhaustedError(0, 3),
        StallError("silent"),
        TaskNotFoundError("gone"),
    ])
    def test_not_retryable(self, error):
        assert not is_retryable(error)

    def test_alignment_error_message_names_counts(self):
        error = AlignmentError(4, 3, segment_index=2)
        assert str(error) == "Alignment mismatch in segment 2: expected 4 entries, got 3"
        assert error.output == []
