"""
txguard - resilient asynchronous operation execution

Retry with backoff, circuit breaking, confirmation waiting and lifecycle
tracking for fallible remote operations such as transaction submission.
"""

# Error model and cancellation
from .runtime.errors import *
from .runtime.cancellation import CancellationToken

# Error recovery
from .recovery import (
    ErrorClassifier, Classification,
    RetryPolicy, RetryExecutor, RetryOutcome, with_retry, retry_all,
    CircuitBreaker, CircuitBreakerConfig, CircuitBreakerRegistry, CircuitState
)

# Lifecycle tracking
from .tx import (
    OperationRegistry, RegistryConfig, OperationRecord, OperationStatus, ErrorInfo,
    OperationEvent, EventChannel,
    ConfirmationWaiter, ConfirmationOptions, ConfirmationResult, StatusReport, LookupState
)

# Monitoring
from .monitoring import MetricsRegistry

__version__ = "0.1.0"
__all__ = [
    # Error model
    "ErrorCategory",
    "OperationError",
    "OperationRejected",
    "OperationReverted",
    "OperationReplaced",
    "ConfirmationTimeout",
    "OperationCancelled",
    "CircuitOpenError",
    "RetryExhaustedError",
    "CancellationToken",

    # Error recovery
    "ErrorClassifier",
    "Classification",
    "RetryPolicy",
    "RetryExecutor",
    "RetryOutcome",
    "with_retry",
    "retry_all",
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitBreakerRegistry",
    "CircuitState",

    # Lifecycle tracking
    "OperationRegistry",
    "RegistryConfig",
    "OperationRecord",
    "OperationStatus",
    "ErrorInfo",
    "OperationEvent",
    "EventChannel",
    "ConfirmationWaiter",
    "ConfirmationOptions",
    "ConfirmationResult",
    "StatusReport",
    "LookupState",

    # Monitoring
    "MetricsRegistry",
]
