"""Custom exceptions for the topic metadata pipeline.

Exception Hierarchy:
    TopicMetadataError (base)
    ├── ApiError
    │   ├── TransientApiError
    │   │   └── RateLimitError (with retry_after)
    │   ├── MalformedResponseError
    │   └── FatalApiError
    ├── EmbeddingError
    ├── StoreError (with kind: StoreErrorKind)
    ├── ValidationError
    ├── ConfigurationError
    │   └── MissingConfigError
    └── RunAbortedError (with report)
"""

from enum import Enum
from typing import Optional


class TopicMetadataError(Exception):
    """Base exception for all topic metadata pipeline errors."""

    def __init__(self, message: str, details: Optional[dict] = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


# =============================================================================
# External API Errors
# =============================================================================

class ApiError(TopicMetadataError):
    """Base class for embedding/completion API errors."""

    def __init__(self, message: str, provider: Optional[str] = None, **kwargs):
        self.provider = provider
        details = kwargs.pop('details', {})
        if provider:
            details['provider'] = provider
        super().__init__(message, details=details)


class TransientApiError(ApiError):
    """Raised for timeouts, connection drops and 5xx responses.

    These are always safe to retry with backoff.
    """
    pass


class RateLimitError(TransientApiError):
    """Raised when the provider rate-limits the request.

    Attributes:
        retry_after: Suggested wait time in seconds before retrying
    """

    def __init__(self, provider: Optional[str] = None,
                 retry_after: Optional[float] = None,
                 message: Optional[str] = None):
        self.retry_after = retry_after
        msg = message or "Provider is rate-limiting requests"
        if retry_after:
            msg += f" (retry after {retry_after}s)"
        super().__init__(msg, provider=provider, details={'retry_after': retry_after})


class MalformedResponseError(ApiError):
    """Raised when a response cannot be parsed into the expected shape."""

    def __init__(self, message: str, provider: Optional[str] = None,
                 raw: Optional[str] = None):
        self.raw = raw
        details = {}
        if raw is not None:
            details['raw'] = str(raw)[:200]
        super().__init__(message, provider=provider, details=details)


class FatalApiError(ApiError):
    """Raised when the provider rejects the credentials, permissions or model.

    Neither retrying nor a fallback summary can help, so this stops the run
    before anything from the current window is written.
    """

    def __init__(self, message: str, provider: Optional[str] = None,
                 status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message, provider=provider, details={'status_code': status_code})


class EmbeddingError(TopicMetadataError):
    """Raised when a sub-batch of embeddings cannot be generated.

    Embeddings cannot be synthesized, so this aborts the current window.
    """

    def __init__(self, message: str, topic_ids: Optional[list] = None):
        self.topic_ids = topic_ids or []
        details = {}
        if self.topic_ids:
            details['first_topic_id'] = self.topic_ids[0]
            details['batch_size'] = len(self.topic_ids)
        super().__init__(message, details=details)


# =============================================================================
# Store Errors
# =============================================================================

class StoreErrorKind(str, Enum):
    """Closed set of destination store failure categories."""
    TIMEOUT = "timeout"                        # statement/request timeout
    CONNECTION = "connection"                  # transport failure, reset, DNS
    RATE_LIMITED = "rate_limited"              # HTTP 429
    PAYLOAD_TOO_LARGE = "payload_too_large"    # HTTP 413
    UNAVAILABLE = "unavailable"                # HTTP 5xx, pooler exhausted, db locked
    CONSTRAINT = "constraint"                  # unique/check/not-null violation
    INVALID = "invalid"                        # malformed row, unknown column
    PERMISSION = "permission"                  # auth/RLS rejection
    UNKNOWN = "unknown"


RETRYABLE_STORE_ERRORS = frozenset({
    StoreErrorKind.TIMEOUT,
    StoreErrorKind.CONNECTION,
    StoreErrorKind.RATE_LIMITED,
    StoreErrorKind.PAYLOAD_TOO_LARGE,
    StoreErrorKind.UNAVAILABLE,
})


class StoreError(TopicMetadataError):
    """Raised by a destination store for any failed read or write."""

    def __init__(self, operation: str, kind: StoreErrorKind = StoreErrorKind.UNKNOWN,
                 reason: Optional[str] = None):
        self.operation = operation
        self.kind = kind
        self.reason = reason
        message = f"Store {operation} failed ({kind.value})"
        if reason:
            message += f": {reason}"
        super().__init__(message, details={'operation': operation, 'kind': kind.value})

    @property
    def retryable(self) -> bool:
        """Whether backoff-and-retry can be expected to help."""
        return self.kind in RETRYABLE_STORE_ERRORS


class RetryableStoreError(StoreError):
    """StoreError subclass used as the retry filter for writes.

    Stores raise this (rather than plain StoreError) for kinds in
    RETRYABLE_STORE_ERRORS; see ``store_error``.
    """
    pass


def store_error(operation: str, kind: StoreErrorKind,
                reason: Optional[str] = None) -> StoreError:
    """Build the right StoreError subclass for a classified failure."""
    if kind in RETRYABLE_STORE_ERRORS:
        return RetryableStoreError(operation, kind=kind, reason=reason)
    return StoreError(operation, kind=kind, reason=reason)


# =============================================================================
# Validation Errors
# =============================================================================

class ValidationError(TopicMetadataError):
    """Raised when data validation fails."""

    def __init__(self, message: str, field: Optional[str] = None,
                 value: Optional[str] = None):
        self.field = field
        self.value = value
        details = {}
        if field:
            details['field'] = field
        if value is not None:
            details['value'] = str(value)[:100]  # Truncate long values
        super().__init__(message, details=details)


# =============================================================================
# Configuration Errors
# =============================================================================

class ConfigurationError(TopicMetadataError):
    """Raised when there's a configuration problem."""

    def __init__(self, message: str, config_key: Optional[str] = None):
        self.config_key = config_key
        super().__init__(message, details={'config_key': config_key})


class MissingConfigError(ConfigurationError):
    """Raised when a required configuration value is missing."""

    def __init__(self, config_key: str):
        super().__init__(
            f"Missing required configuration: '{config_key}'",
            config_key=config_key
        )


# =============================================================================
# Run Errors
# =============================================================================

class RunAbortedError(TopicMetadataError):
    """Raised when a run stops before completing every window.

    Attributes:
        report: The RunReport accumulated up to the failure
    """

    def __init__(self, message: str, report=None):
        self.report = report
        super().__init__(message)
