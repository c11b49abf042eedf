"""
Error taxonomy for the analytics subsystem.

Every error raised inside capture, sync and retention derives from
AnalyticsError so the schedulers can log it with full metadata and keep
running. None of these errors are ever shown to students.
"""

import traceback
from datetime import datetime
from typing import Dict, Any, Optional


class ErrorSeverity:
    """Severity levels for analytics errors."""
    LOW = "low"           # Expected condition, nothing to do
    MEDIUM = "medium"     # Event or batch affected, subsystem continues
    HIGH = "high"         # Needs operator attention
    CRITICAL = "critical" # Subsystem cannot make progress


class ErrorCategory:
    """Error categories for better classification."""
    COMPLIANCE = "compliance"
    NETWORK = "network"
    SERVER_REJECTION = "server_rejection"
    STORAGE = "storage"
    UNKNOWN = "unknown"


class AnalyticsError(Exception):
    """Base exception for analytics errors with enhanced metadata."""

    def __init__(
        self,
        message: str,
        category: str = ErrorCategory.UNKNOWN,
        severity: str = ErrorSeverity.MEDIUM,
        details: Optional[Dict[str, Any]] = None,
        retryable: bool = False,
        original_exception: Optional[Exception] = None
    ):
        super().__init__(message)
        self.message = message
        self.category = category
        self.severity = severity
        self.details = details or {}
        self.retryable = retryable
        self.original_exception = original_exception
        self.timestamp = datetime.utcnow()

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for logging/storage."""
        return {
            'message': self.message,
            'category': self.category,
            'severity': self.severity,
            'details': self.details,
            'retryable': self.retryable,
            'timestamp': self.timestamp.isoformat(),
            'traceback': ''.join(traceback.format_exception(self.original_exception))
            if self.original_exception else None
        }


class ComplianceViolation(AnalyticsError):
    """
    Raised when a record carries PII and must not be stored.

    Only the field name and the pattern class are kept; the offending value
    is never attached so it cannot leak into logs.
    """

    def __init__(self, field: str, pattern: str, **kwargs):
        self.field = field
        self.pattern = pattern
        details = kwargs.pop('details', {})
        details.update({'field': field, 'pattern': pattern})
        super().__init__(
            f"Compliance violation in field '{field}' ({pattern})",
            category=ErrorCategory.COMPLIANCE,
            severity=ErrorSeverity.HIGH,
            retryable=False,
            details=details,
            **kwargs
        )


class TransientSyncFailure(AnalyticsError):
    """Network, timeout or 5xx failure. Retried with backoff."""

    def __init__(self, message: str, status_code: Optional[int] = None, **kwargs):
        self.status_code = status_code
        details = kwargs.pop('details', {})
        details['status_code'] = status_code
        super().__init__(
            message,
            category=ErrorCategory.NETWORK,
            severity=ErrorSeverity.MEDIUM,
            retryable=True,
            details=details,
            **kwargs
        )


class PermanentSyncFailure(AnalyticsError):
    """4xx or schema rejection of a whole batch. Not retried automatically."""

    def __init__(self, message: str, status_code: Optional[int] = None, **kwargs):
        self.status_code = status_code
        details = kwargs.pop('details', {})
        details['status_code'] = status_code
        super().__init__(
            message,
            category=ErrorCategory.SERVER_REJECTION,
            severity=ErrorSeverity.HIGH,
            retryable=False,
            details=details,
            **kwargs
        )


class StoreIOError(AnalyticsError):
    """Local persistence failure."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.STORAGE,
            severity=ErrorSeverity.CRITICAL,
            retryable=False,
            **kwargs
        )
