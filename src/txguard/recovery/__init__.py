"""
Error recovery components for txguard.

Provides error classification, retry policies and circuit breakers for
robust operation in unstable network conditions.
"""

from .classifier import Classification, ErrorClassifier
from .retry import (
    RetryPolicy, RetryExecutor, RetryOutcome, DEFAULT_POLICY,
    base_delay_for, compute_delay, with_retry, retry_all
)
from .circuit_breaker import (
    CircuitBreaker, CircuitBreakerConfig, CircuitBreakerRegistry,
    CircuitBreakerState, CircuitState
)

__all__ = [
    "Classification",
    "ErrorClassifier",
    "RetryPolicy",
    "RetryExecutor",
    "RetryOutcome",
    "DEFAULT_POLICY",
    "base_delay_for",
    "compute_delay",
    "with_retry",
    "retry_all",
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitBreakerRegistry",
    "CircuitBreakerState",
    "CircuitState",
]
