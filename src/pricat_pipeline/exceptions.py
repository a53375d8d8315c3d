# src/pricat_pipeline/exceptions.py

"""
Shared custom exceptions for the pricat ingestion pipeline.

Centralizing exception definitions in a separate module prevents circular
import errors between the modules that raise them and the consumer runtime
that classifies them.

Exception Hierarchy:
- PipelineError (base)
  - RetryableError (redelivery may succeed)
    - EventStoreUnavailableError
    - FanOutInProgressError
    - QueueUnavailableError
      - QueuePublishError
    - SinkUnavailableError
  - NonRetryableError (redelivery cannot help)
    - ValidationError
      - NormalizationError
      - MessageValidationError
    - EventStoreWriteError
    - SinkDocumentError
    - ConfigurationError
"""

from typing import Any, Dict, Optional


class PipelineError(Exception):
    """Base exception for all pipeline errors."""

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        correlation_id: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.__class__.__name__
        self.context = dict(context) if context else {}
        self.correlation_id = correlation_id

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for structured logging."""
        return {
            "error_type": self.__class__.__name__,
            "error_code": self.error_code,
            "message": self.message,
            "context": self.context,
            "correlation_id": self.correlation_id,
            "retryable": isinstance(self, RetryableError),
        }


class RetryableError(PipelineError):
    """Base class for errors that can be retried."""

    pass


class NonRetryableError(PipelineError):
    """Base class for errors that should not be retried."""

    pass


# === Malformed input ===


class ValidationError(NonRetryableError):
    """Base class for malformed-input errors."""

    pass


class NormalizationError(ValidationError):
    """Raised when a raw storage notification cannot be parsed."""

    def __init__(self, message: str, **kwargs):
        if "error_code" not in kwargs:
            kwargs["error_code"] = "NORMALIZATION_FAILED"
        super().__init__(message, **kwargs)


class MessageValidationError(ValidationError):
    """Raised when a price-item message violates its envelope contract."""

    def __init__(self, message: str, **kwargs):
        if "error_code" not in kwargs:
            kwargs["error_code"] = "INVALID_PRICE_ITEM_MESSAGE"
        super().__init__(message, **kwargs)


# === Durable event store ===


class EventStoreUnavailableError(RetryableError):
    """Raised when the event store is throttled, unreachable or timed out."""

    def __init__(self, operation: str, **kwargs):
        message = f"Event store unavailable during: {operation}"
        context = dict(kwargs.pop("context", None) or {})
        context["operation"] = operation
        super().__init__(
            message, error_code="EVENT_STORE_UNAVAILABLE", context=context, **kwargs
        )


class EventStoreWriteError(NonRetryableError):
    """Raised when the event store rejects a request as invalid."""

    def __init__(self, operation: str, reason: str, **kwargs):
        message = f"Event store rejected {operation}: {reason}"
        context = dict(kwargs.pop("context", None) or {})
        context.update({"operation": operation, "reason": reason})
        super().__init__(
            message, error_code="EVENT_STORE_WRITE_REJECTED", context=context, **kwargs
        )


class FanOutInProgressError(RetryableError):
    """Raised when another delivery holds a live claim on a pending fan-out."""

    def __init__(self, dedup_key: str, **kwargs):
        context = dict(kwargs.pop("context", None) or {})
        context["dedup_key"] = dedup_key
        super().__init__(
            "Fan-out is claimed by another delivery",
            error_code="FAN_OUT_IN_PROGRESS",
            context=context,
            **kwargs,
        )


# === Broker ===


class QueueUnavailableError(RetryableError):
    """Raised when a queue operation fails for a transient reason."""

    def __init__(self, operation: str, queue_url: str, **kwargs):
        message = f"Queue operation failed: {operation} on {queue_url}"
        context = dict(kwargs.pop("context", None) or {})
        context.update({"operation": operation, "queue_url": queue_url})
        kwargs.setdefault("error_code", "QUEUE_UNAVAILABLE")
        super().__init__(message, context=context, **kwargs)


class QueuePublishError(QueueUnavailableError):
    """Raised when a message could not be enqueued."""

    def __init__(self, queue_url: str, **kwargs):
        kwargs.setdefault("error_code", "QUEUE_PUBLISH_FAILED")
        super().__init__("SendMessage", queue_url, **kwargs)


# === Search index ===


class SinkUnavailableError(RetryableError):
    """Raised when the search index cannot be reached or is overloaded."""

    def __init__(self, operation: str, **kwargs):
        message = f"Search index unavailable during: {operation}"
        context = dict(kwargs.pop("context", None) or {})
        context["operation"] = operation
        super().__init__(
            message, error_code="SINK_UNAVAILABLE", context=context, **kwargs
        )


class SinkDocumentError(NonRetryableError):
    """Raised when the search index rejects documents or requests as malformed."""

    def __init__(self, operation: str, reason: str, **kwargs):
        message = f"Search index rejected {operation}: {reason}"
        context = dict(kwargs.pop("context", None) or {})
        context.update({"operation": operation, "reason": reason})
        super().__init__(
            message, error_code="SINK_DOCUMENT_REJECTED", context=context, **kwargs
        )


# === Configuration ===


class ConfigurationError(NonRetryableError):
    """Raised when there's an error in the application configuration."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, error_code="CONFIGURATION_ERROR", **kwargs)


# === Utility Functions ===


def is_retryable_error(error: Exception) -> bool:
    """Check if an error is retryable."""
    return isinstance(error, RetryableError)


def get_error_context(error: Exception) -> Dict[str, Any]:
    """Extract error context for logging."""
    if isinstance(error, PipelineError):
        return error.to_dict()
    return {
        "error_type": error.__class__.__name__,
        "message": str(error),
        # Unknown errors are redelivered until the attempt cap is reached.
        "retryable": True,
    }
