"""Runtime helpers for txguard: error taxonomy and cancellation"""

from .errors import (
    ErrorCategory,
    OperationError,
    OperationRejected,
    OperationReverted,
    OperationReplaced,
    ConfirmationTimeout,
    OperationCancelled,
    CircuitOpenError,
    RetryExhaustedError,
)
from .cancellation import CancellationToken, sleep

__all__ = [
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
    "sleep",
]
