"""Centralized error handling and logging service.

This module defines the pipeline's error taxonomy and provides logging,
error records and fallback execution used across the services.
"""

import json
import logging
import traceback
import sys
from typing import Optional, List, Dict, Any, Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path

from ..models.core import InvalidTransitionError


LOGGER_NAME = 'subtitle_translator'


class TranslationPipelineError(Exception):
    """Base class for errors raised by the translation pipeline."""


class AlignmentError(TranslationPipelineError):
    """LLM output entry count does not match the input entry count."""

    def __init__(
        self,
        expected: int,
        actual: int,
        segment_index: Optional[int] = None,
        output: Optional[list] = None
    ):
        self.expected = expected
        self.actual = actual
        self.segment_index = segment_index
        self.output = output or []
        where = f" in segment {segment_index}" if segment_index is not None else ""
        super().__init__(f"Alignment mismatch{where}: expected {expected} entries, got {actual}")


class TransportError(TranslationPipelineError):
    """Network, rate-limit or provider failure while calling the LLM."""


class SegmentTimeoutError(TransportError):
    """A single translation attempt exceeded its time budget."""


class RetryExhaustedError(TranslationPipelineError):
    """A segment used up its retry budget."""

    def __init__(self, segment_index: int, attempts: int, last_error: Optional[str] = None):
        self.segment_index = segment_index
        self.attempts = attempts
        self.last_error = last_error
        message = f"Segment {segment_index} failed after {attempts} attempts"
        if last_error:
            message += f": {last_error}"
        super().__init__(message)


class StallError(TranslationPipelineError):
    """A task stopped sending heartbeats for longer than the stall threshold."""


class ConfigurationError(TranslationPipelineError):
    """Missing credentials or invalid settings; never retried."""


class TaskNotFoundError(TranslationPipelineError):
    """The requested task does not exist in the store."""


# Re-exported so callers can catch every pipeline failure from one module.
__all__ = [
    'AlignmentError',
    'ConfigurationError',
    'ErrorHandler',
    'ErrorRecord',
    'ErrorSeverity',
    'InvalidTransitionError',
    'RetryExhaustedError',
    'SegmentTimeoutError',
    'StallError',
    'TaskNotFoundError',
    'TranslationPipelineError',
    'TransportError',
    'is_retryable',
]


def is_retryable(error: BaseException) -> bool:
    """Alignment and transport failures are retried; everything else escalates."""
    if isinstance(error, (
        ConfigurationError, InvalidTransitionError, RetryExhaustedError, StallError, TaskNotFoundError,
    )):
        return False
    return True


class ErrorSeverity(Enum):
    """Error severity levels."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


@dataclass
class ErrorRecord:
    """Record of an error occurrence."""
    timestamp: datetime
    severity: ErrorSeverity
    error_type: str
    message: str
    traceback: Optional[str] = None
    context: Dict[str, Any] = field(default_factory=dict)
    recovery_suggestion: Optional[str] = None


class ErrorHandler:
    """Centralized error handler with logging and recovery mechanisms."""

    def __init__(self, log_file: Optional[str] = None, log_level: int = logging.INFO):
        """Initialize the error handler.

        Args:
            log_file: Optional path to log file. If None, logs to console only.
            log_level: Logging level (default: INFO)
        """
        self.error_log: List[ErrorRecord] = []
        self.logger = self._setup_logger(log_file, log_level)
        self._fallback_handlers: Dict[str, Callable] = {}

    def _setup_logger(self, log_file: Optional[str], log_level: int) -> logging.Logger:
        """Set up the logging system.

        Args:
            log_file: Optional path to log file
            log_level: Logging level

        Returns:
            Configured logger instance
        """
        logger = logging.getLogger(LOGGER_NAME)
        logger.setLevel(log_level)

        # Clear existing handlers
        logger.handlers.clear()

        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(log_level)
        console_formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )
        console_handler.setFormatter(console_formatter)
        logger.addHandler(console_handler)

        if log_file:
            log_path = Path(log_file)
            log_path.parent.mkdir(parents=True, exist_ok=True)

            file_handler = logging.FileHandler(log_file)
            file_handler.setLevel(log_level)
            file_formatter = logging.Formatter(
                '%(asctime)s - %(name)s - %(levelname)s - %(filename)s:%(lineno)d - %(message)s',
                datefmt='%Y-%m-%d %H:%M:%S'
            )
            file_handler.setFormatter(file_formatter)
            logger.addHandler(file_handler)

        return logger

    def log_error(
        self,
        error: Exception,
        severity: ErrorSeverity = ErrorSeverity.ERROR,
        context: Optional[Dict[str, Any]] = None,
        recovery_suggestion: Optional[str] = None
    ) -> ErrorRecord:
        """Log an error with full context and recovery suggestions.

        Args:
            error: The exception that occurred
            severity: Error severity level
            context: Additional context information
            recovery_suggestion: Suggestion for recovering from the error. When
                omitted, the common suggestion for the error type is used.

        Returns:
            ErrorRecord object
        """
        error_type = type(error).__name__
        if recovery_suggestion is None:
            recovery_suggestion = self.get_common_error_suggestions().get(error_type)

        record = ErrorRecord(
            timestamp=datetime.now(),
            severity=severity,
            error_type=error_type,
            message=str(error),
            traceback=traceback.format_exc() if sys.exc_info()[0] is not None else None,
            context=context or {},
            recovery_suggestion=recovery_suggestion
        )

        self.error_log.append(record)

        log_message = f"{record.error_type}: {record.message}"
        if context:
            log_message += f" | Context: {context}"
        if recovery_suggestion:
            log_message += f" | Suggestion: {recovery_suggestion}"

        if severity == ErrorSeverity.CRITICAL:
            self.logger.critical(log_message)
        elif severity == ErrorSeverity.ERROR:
            self.logger.error(log_message)
        elif severity == ErrorSeverity.WARNING:
            self.logger.warning(log_message)
        elif severity == ErrorSeverity.INFO:
            self.logger.info(log_message)
        else:
            self.logger.debug(log_message)

        if record.traceback and severity in [ErrorSeverity.ERROR, ErrorSeverity.CRITICAL]:
            self.logger.debug(f"Traceback:\n{record.traceback}")

        return record

    def log_info(self, message: str, context: Optional[Dict[str, Any]] = None) -> None:
        """Log an informational message.

        Args:
            message: The message to log
            context: Additional context information
        """
        log_message = message
        if context:
            log_message += f" | Context: {context}"
        self.logger.info(log_message)

    def log_warning(self, message: str, context: Optional[Dict[str, Any]] = None) -> None:
        """Log a warning message.

        Args:
            message: The message to log
            context: Additional context information
        """
        log_message = message
        if context:
            log_message += f" | Context: {context}"
        self.logger.warning(log_message)

    def register_fallback_handler(self, error_type: str, handler: Callable) -> None:
        """Register a fallback handler for a specific error type.

        Args:
            error_type: The type of error to handle (e.g., 'KeywordExtraction')
            handler: Callable that handles the error and returns a fallback result
        """
        self._fallback_handlers[error_type] = handler
        self.logger.debug(f"Registered fallback handler for {error_type}")

    def handle_with_fallback(
        self,
        primary_func: Callable,
        error_type: str,
        *args,
        **kwargs
    ) -> Any:
        """Execute a function with automatic fallback on error.

        Args:
            primary_func: The primary function to execute
            error_type: The type of error to handle
            *args: Arguments to pass to the function
            **kwargs: Keyword arguments to pass to the function

        Returns:
            Result from primary function or fallback handler

        Raises:
            Exception: If both primary and fallback fail, or no fallback is registered
        """
        try:
            return primary_func(*args, **kwargs)
        except Exception as e:
            self.log_error(
                e,
                severity=ErrorSeverity.WARNING,
                context={'function': getattr(primary_func, '__name__', repr(primary_func)),
                         'error_type': error_type},
                recovery_suggestion=f"Attempting fallback for {error_type}"
            )

            if error_type in self._fallback_handlers:
                try:
                    self.logger.info(f"Executing fallback handler for {error_type}")
                    return self._fallback_handlers[error_type](*args, **kwargs)
                except Exception as fallback_error:
                    self.log_error(
                        fallback_error,
                        severity=ErrorSeverity.ERROR,
                        context={'function': 'fallback_handler', 'error_type': error_type},
                        recovery_suggestion="Both primary and fallback methods failed"
                    )
                    raise
            else:
                self.logger.error(f"No fallback handler registered for {error_type}")
                raise

    def get_error_summary(self) -> Dict[str, Any]:
        """Get a summary of all logged errors.

        Returns:
            Dictionary with error statistics and recent errors
        """
        if not self.error_log:
            return {
                'total_errors': 0,
                'by_severity': {},
                'by_type': {},
                'recent_errors': []
            }

        by_severity: Dict[str, int] = {}
        by_type: Dict[str, int] = {}
        for record in self.error_log:
            by_severity[record.severity.value] = by_severity.get(record.severity.value, 0) + 1
            by_type[record.error_type] = by_type.get(record.error_type, 0) + 1

        recent_errors = [
            {
                'timestamp': record.timestamp.isoformat(),
                'severity': record.severity.value,
                'type': record.error_type,
                'message': record.message,
                'suggestion': record.recovery_suggestion
            }
            for record in self.error_log[-10:]
        ]

        return {
            'total_errors': len(self.error_log),
            'by_severity': by_severity,
            'by_type': by_type,
            'recent_errors': recent_errors
        }

    def get_recovery_suggestions(self, error_type: Optional[str] = None) -> List[str]:
        """Get de-duplicated recovery suggestions, optionally for one error type."""
        seen = set()
        unique_suggestions = []
        for record in self.error_log:
            if error_type is not None and record.error_type != error_type:
                continue
            suggestion = record.recovery_suggestion
            if suggestion and suggestion not in seen:
                seen.add(suggestion)
                unique_suggestions.append(suggestion)
        return unique_suggestions

    def clear_error_log(self) -> None:
        """Clear the error log."""
        self.error_log.clear()
        self.logger.info("Error log cleared")

    def export_error_log(self, output_file: str) -> None:
        """Export error log to a JSON file.

        Args:
            output_file: Path to output file
        """
        log_data = {
            'export_time': datetime.now().isoformat(),
            'total_errors': len(self.error_log),
            'errors': [
                {
                    'timestamp': record.timestamp.isoformat(),
                    'severity': record.severity.value,
                    'type': record.error_type,
                    'message': record.message,
                    'traceback': record.traceback,
                    'context': record.context,
                    'recovery_suggestion': record.recovery_suggestion
                }
                for record in self.error_log
            ]
        }

        output_path = Path(output_file)
        output_path.parent.mkdir(parents=True, exist_ok=True)

        with open(output_file, 'w', encoding='utf-8') as f:
            json.dump(log_data, f, indent=2, ensure_ascii=False, default=str)

        self.logger.info(f"Error log exported to {output_file}")

    def get_common_error_suggestions(self) -> Dict[str, str]:
        """Get common error types and their recovery suggestions.

        Returns:
            Dictionary mapping error types to recovery suggestions
        """
        return {
            'AlignmentError': 'The model returned a different number of lines; the segment will be retried',
            'TransportError': 'Check network connectivity and provider rate limits',
            'SegmentTimeoutError': 'Increase segment_timeout_seconds or reduce the segment size',
            'RetryExhaustedError': 'Restart the task or enable partial results to keep degraded output',
            'StallError': 'The worker stopped responding; restart or continue the task',
            'ConfigurationError': 'Check GEMINI_API_KEY and pipeline settings',
            'InvalidTransitionError': 'The requested action is not allowed in the current task state',
            'TaskNotFoundError': 'Verify the task id; the task may have been deleted',
            'TimeoutError': 'Increase timeout duration or check network speed',
        }
