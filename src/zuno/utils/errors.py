"""
Error handling framework for Zuno.

This module provides:
- Hierarchical exception classes with stable error codes
- Error context preservation
- Structured error payloads for HTTP responses and logs
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


class ErrorSeverity(Enum):
    """Error severity levels."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class ErrorCategory(Enum):
    """Error categories for classification."""
    NETWORK = "network"
    VALIDATION = "validation"
    CONFIGURATION = "configuration"
    USER_INPUT = "user_input"
    TRANSPORT = "transport"
    INTERNAL = "internal"
    UNKNOWN = "unknown"


@dataclass
class ErrorContext:
    """Context information for an error."""
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    component: Optional[str] = None
    operation: Optional[str] = None
    store_key: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


class ZunoError(Exception):
    """Base exception for all Zuno errors."""

    code: str = "ZUNO_ERROR"
    default_message: str = "An error occurred in Zuno"
    severity: ErrorSeverity = ErrorSeverity.ERROR
    category: ErrorCategory = ErrorCategory.UNKNOWN
    is_retryable: bool = False

    def __init__(
        self,
        message: Optional[str] = None,
        context: Optional[ErrorContext] = None,
        cause: Optional[Exception] = None,
        **kwargs
    ):
        self.message = message or self.default_message
        self.context = context or ErrorContext()
        self.cause = cause
        self.kwargs = kwargs
        super().__init__(self.message)

    def get_suggestions(self) -> List[str]:
        """Get error resolution suggestions."""
        return []

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "error": {
                "code": self.code,
                "message": self.message,
                "severity": self.severity.value,
                "category": self.category.value,
                "is_retryable": self.is_retryable,
                "suggestions": self.get_suggestions(),
                "context": {
                    "timestamp": self.context.timestamp.isoformat(),
                    "component": self.context.component,
                    "operation": self.context.operation,
                    "store_key": self.context.store_key,
                    "metadata": self.context.metadata,
                }
            }
        }


class ConfigurationError(ZunoError):
    """Configuration errors."""
    code = "CONFIG_ERROR"
    default_message = "Configuration error"
    category = ErrorCategory.CONFIGURATION

    def get_suggestions(self) -> List[str]:
        return [
            "Check your configuration file syntax",
            "Check ZUNO_* environment variables for typos",
        ]


class ValidationError(ZunoError):
    """Input validation errors."""
    code = "VALIDATION_ERROR"
    default_message = "Validation error"
    category = ErrorCategory.VALIDATION
    severity = ErrorSeverity.WARNING

    def __init__(self, field: str, value: Any, constraint: str, **kwargs):
        self.field = field
        self.value = value
        self.constraint = constraint
        message = f"Validation failed for field '{field}': {constraint}"
        super().__init__(message, **kwargs)

    def get_suggestions(self) -> List[str]:
        return [f"Ensure '{self.field}' meets the constraint: {self.constraint}"]


class InvalidPayloadError(ZunoError):
    """A request body that is not a valid state event."""
    code = "INVALID_JSON"
    default_message = "Request body is not valid JSON"
    category = ErrorCategory.USER_INPUT
    severity = ErrorSeverity.WARNING


class PayloadTooLargeError(ZunoError):
    """A request body over the configured size cap."""
    code = "PAYLOAD_TOO_LARGE"
    default_message = "Request body exceeds the size limit"
    category = ErrorCategory.USER_INPUT
    severity = ErrorSeverity.WARNING

    def __init__(self, size: int, limit: int, **kwargs):
        self.size = size
        self.limit = limit
        super().__init__(f"Request body of {size} bytes exceeds limit of {limit} bytes", **kwargs)


class NetworkError(ZunoError):
    """Network-related errors."""
    code = "NETWORK_ERROR"
    default_message = "Network error occurred"
    category = ErrorCategory.NETWORK
    is_retryable = True


class ConnectionError(NetworkError):
    """Connection errors."""
    code = "CONNECTION_ERROR"
    default_message = "Failed to establish connection"

    def get_suggestions(self) -> List[str]:
        return [
            "Check your network connection",
            "Verify the sync server is reachable",
        ]


class TimeoutError(NetworkError):
    """Timeout errors."""
    code = "TIMEOUT_ERROR"
    default_message = "Operation timed out"


class TransportError(ZunoError):
    """Misuse of a transport or an unreadable response."""
    code = "TRANSPORT_ERROR"
    default_message = "Transport error"
    category = ErrorCategory.TRANSPORT


__all__ = [
    'ZunoError',
    'ErrorContext',
    'ErrorSeverity',
    'ErrorCategory',
    'ConfigurationError',
    'ValidationError',
    'InvalidPayloadError',
    'PayloadTooLargeError',
    'NetworkError',
    'ConnectionError',
    'TimeoutError',
    'TransportError',
]
