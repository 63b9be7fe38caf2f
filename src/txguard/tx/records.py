"""
Operation lifecycle records.

Records are immutable pydantic models. The registry swaps in a new
record on every change, so any record handed to a caller is a stable
snapshot.
"""

from __future__ import annotations

import time
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from ..runtime.errors import ErrorCategory, OperationError, USER_MESSAGES


class OperationStatus(str, Enum):
    """Lifecycle status of an operation."""
    PENDING = "pending"
    SUBMITTED = "submitted"
    CONFIRMING = "confirming"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    REJECTED = "rejected"
    REPLACED = "replaced"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES: FrozenSet[OperationStatus] = frozenset({
    OperationStatus.CONFIRMED,
    OperationStatus.FAILED,
    OperationStatus.REJECTED,
    OperationStatus.REPLACED,
    OperationStatus.TIMED_OUT,
    OperationStatus.CANCELLED,
})

IN_FLIGHT_STATUSES: FrozenSet[OperationStatus] = frozenset({
    OperationStatus.PENDING,
    OperationStatus.SUBMITTED,
    OperationStatus.CONFIRMING,
})

# Self-transitions are allowed for non-terminal states (attempt counters,
# replacement tracking)
ALLOWED_TRANSITIONS: Dict[OperationStatus, FrozenSet[OperationStatus]] = {
    OperationStatus.PENDING: frozenset({
        OperationStatus.PENDING,
        OperationStatus.SUBMITTED,
        OperationStatus.REJECTED,
        OperationStatus.FAILED,
        OperationStatus.TIMED_OUT,
        OperationStatus.CANCELLED,
    }),
    OperationStatus.SUBMITTED: frozenset({
        OperationStatus.CONFIRMING,
        OperationStatus.CONFIRMED,
        OperationStatus.FAILED,
        OperationStatus.TIMED_OUT,
        OperationStatus.CANCELLED,
    }),
    OperationStatus.CONFIRMING: frozenset({
        OperationStatus.CONFIRMING,
        OperationStatus.CONFIRMED,
        OperationStatus.FAILED,
        OperationStatus.REPLACED,
        OperationStatus.TIMED_OUT,
        OperationStatus.CANCELLED,
    }),
}


def can_transition(current: OperationStatus, new: OperationStatus) -> bool:
    """Whether the state machine permits ``current -> new``."""
    return new in ALLOWED_TRANSITIONS.get(current, frozenset())


class ErrorInfo(BaseModel):
    """
    Classified error attached to a record.

    ``exception`` keeps the raw error for diagnostics and is left out of
    serialised output.
    """
    category: ErrorCategory
    message: str = Field(description="Message suitable for direct display")
    detail: str = Field(default="", description="Underlying error text")
    retryable: bool = False
    code: Optional[Union[int, str]] = None
    exception: Optional[Any] = Field(default=None, exclude=True, repr=False)

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    @classmethod
    def from_error(cls, error: OperationError) -> "ErrorInfo":
        return cls(
            category=error.category,
            message=USER_MESSAGES[error.category],
            detail=error.message,
            retryable=error.retryable,
            code=error.code,
            exception=error.cause or error,
        )


class OperationRecord(BaseModel):
    """
    Lifecycle record of one submitted operation.

    ``settled_at`` is set exactly when the status is terminal;
    ``external_ref`` is set once the submit step succeeded.
    """
    id: str
    description: str = "Operation"
    status: OperationStatus = OperationStatus.PENDING
    operation_class: Optional[str] = None
    external_ref: Optional[Any] = None
    replacement_ref: Optional[Any] = None
    attempts: int = Field(default=0, ge=0)
    created_at: float = Field(default_factory=time.time)
    submitted_at: Optional[float] = None
    settled_at: Optional[float] = None
    last_error: Optional[ErrorInfo] = None
    result: Optional[Any] = None

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def is_in_flight(self) -> bool:
        return self.status in IN_FLIGHT_STATUSES

    @property
    def duration(self) -> Optional[float]:
        """Seconds from creation to settlement, if settled."""
        if self.settled_at is None:
            return None
        return self.settled_at - self.created_at

    def to_dict(self) -> Dict[str, Any]:
        """JSON-friendly view for displays and logs."""
        return self.model_dump(mode="json")


__all__ = [
    "OperationStatus",
    "TERMINAL_STATUSES",
    "IN_FLIGHT_STATUSES",
    "ALLOWED_TRANSITIONS",
    "can_transition",
    "ErrorInfo",
    "OperationRecord",
]
