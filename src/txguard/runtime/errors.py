"""
txguard Error Model

This module provides the error taxonomy shared by the retry executor,
the confirmation waiter and the operation registry. Raw exceptions are
classified once (see ``txguard.recovery.classifier``) and from then on
travel as ``OperationError`` instances carrying an explicit category.
"""

from __future__ import annotations
from typing import Optional, Dict, Any, Union
from enum import Enum


class ErrorCategory(str, Enum):
    """Failure categories an operation can end up in."""

    USER_REJECTED = "user_rejected"
    INSUFFICIENT_RESOURCE = "insufficient_resource"
    VALIDATION_FAILURE = "validation_failure"
    NETWORK_TRANSIENT = "network_transient"
    SERVER_TRANSIENT = "server_transient"
    REVERTED = "reverted"
    REPLACED = "replaced"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"
    UNKNOWN = "unknown"

    @property
    def is_transient(self) -> bool:
        """Whether failures of this category may succeed on retry."""
        return self in TRANSIENT_CATEGORIES


TRANSIENT_CATEGORIES = frozenset({
    ErrorCategory.NETWORK_TRANSIENT,
    ErrorCategory.SERVER_TRANSIENT,
})

PERMANENT_CATEGORIES = frozenset({
    ErrorCategory.USER_REJECTED,
    ErrorCategory.INSUFFICIENT_RESOURCE,
    ErrorCategory.VALIDATION_FAILURE,
    ErrorCategory.REVERTED,
})

# Messages suitable for direct display to an end user
USER_MESSAGES: Dict[ErrorCategory, str] = {
    ErrorCategory.USER_REJECTED: "Transaction was rejected",
    ErrorCategory.INSUFFICIENT_RESOURCE: "Insufficient funds for gas",
    ErrorCategory.VALIDATION_FAILURE: "Transaction will fail",
    ErrorCategory.NETWORK_TRANSIENT: "Network error, please try again",
    ErrorCategory.SERVER_TRANSIENT: "Service temporarily unavailable",
    ErrorCategory.REVERTED: "Contract execution failed",
    ErrorCategory.REPLACED: "Transaction was replaced",
    ErrorCategory.TIMED_OUT: "Transaction confirmation timed out",
    ErrorCategory.CANCELLED: "Transaction was cancelled",
    ErrorCategory.UNKNOWN: "Transaction failed",
}


class OperationError(Exception):
    """
    Base class for all classified operation errors.

    Carries the failure category decided at classification time, so no
    later component needs to inspect the raw error shape again.
    """

    default_category = ErrorCategory.UNKNOWN

    def __init__(self, message: str, category: Optional[ErrorCategory] = None,
                 code: Optional[Union[int, str]] = None,
                 details: Optional[Dict[str, Any]] = None,
                 cause: Optional[BaseException] = None,
                 retryable: Optional[bool] = None):
        """
        Initialize an operation error.

        Args:
            message: Error message
            category: Failure category (defaults to the class category)
            code: Provider specific error code, if any
            details: Additional error details
            cause: Underlying exception that caused this error
            retryable: Override for the category's retry decision
        """
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.code = code
        self.details = details or {}
        self.cause = cause
        self.retryable = self.category.is_transient if retryable is None else retryable

    @property
    def user_message(self) -> str:
        """Human readable message for display."""
        return USER_MESSAGES[self.category]

    def __str__(self) -> str:
        parts = [f"[{self.category.name}] {self.message}"]
        if self.code is not None:
            parts.append(f"Code: {self.code}")
        if self.details:
            parts.append(f"Details: {self.details}")
        if self.cause:
            parts.append(f"Caused by: {self.cause}")
        return " | ".join(parts)

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary representation."""
        result: Dict[str, Any] = {
            "category": self.category.value,
            "message": self.message,
            "user_message": self.user_message,
            "retryable": self.retryable,
        }
        if self.code is not None:
            result["code"] = self.code
        if self.details:
            result["details"] = self.details
        if self.cause:
            result["cause"] = str(self.cause)
        return result


class OperationRejected(OperationError):
    """The user declined the operation."""

    default_category = ErrorCategory.USER_REJECTED


class OperationReverted(OperationError):
    """The external system reported a deterministic failure."""

    default_category = ErrorCategory.REVERTED

    def __init__(self, message: str = "Transaction reverted", **kwargs):
        super().__init__(message, **kwargs)


class OperationReplaced(OperationError):
    """The submitted operation was superseded without a trackable replacement."""

    default_category = ErrorCategory.REPLACED

    def __init__(self, external_ref: Any, **kwargs):
        self.external_ref = external_ref
        super().__init__(f"Operation {external_ref} was replaced", **kwargs)


class ConfirmationTimeout(OperationError):
    """Settlement did not happen before the deadline."""

    default_category = ErrorCategory.TIMED_OUT

    def __init__(self, timeout: float, external_ref: Any = None, **kwargs):
        self.timeout = timeout
        self.external_ref = external_ref
        target = f"Operation {external_ref}" if external_ref is not None else "Operation"
        super().__init__(f"{target} not settled within {timeout:.3f}s", **kwargs)


class OperationCancelled(OperationError):
    """The caller abandoned the operation through its cancellation token."""

    default_category = ErrorCategory.CANCELLED

    def __init__(self, message: str = "Operation cancelled", **kwargs):
        super().__init__(message, **kwargs)


class CircuitOpenError(OperationError):
    """Circuit is open, rejecting requests."""

    default_category = ErrorCategory.SERVER_TRANSIENT

    def __init__(self, circuit_name: str, failure_count: int):
        self.circuit_name = circuit_name
        self.failure_count = failure_count
        super().__init__(
            f"Circuit '{circuit_name}' is open after {failure_count} failures",
            retryable=False,
        )


class RetryExhaustedError(OperationError):
    """Every permitted attempt failed."""

    def __init__(self, attempts: int, elapsed: float, last_error: OperationError):
        self.attempts = attempts
        self.elapsed = elapsed
        self.last_error = last_error
        super().__init__(
            f"Operation failed after {attempts} attempts ({elapsed:.3f}s): {last_error.message}",
            category=last_error.category,
            code=last_error.code,
            details={"attempts": attempts, "elapsed": elapsed},
            cause=last_error.cause or last_error,
            retryable=False,
        )


__all__ = [
    "ErrorCategory",
    "TRANSIENT_CATEGORIES",
    "PERMANENT_CATEGORIES",
    "USER_MESSAGES",
    "OperationError",
    "OperationRejected",
    "OperationReverted",
    "OperationReplaced",
    "ConfirmationTimeout",
    "OperationCancelled",
    "CircuitOpenError",
    "RetryExhaustedError",
]
