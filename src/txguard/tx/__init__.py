"""
Operation lifecycle tracking for txguard.

Provides lifecycle records, the event channel, confirmation waiting and
the operation registry that ties them together.
"""

from .records import (
    OperationStatus, OperationRecord, ErrorInfo,
    TERMINAL_STATUSES, IN_FLIGHT_STATUSES, can_transition
)
from .events import OperationEvent, EventChannel, ALL_EVENTS
from .confirmation import (
    LookupState, StatusReport, StatusLookup,
    ConfirmationOptions, ConfirmationResult, ConfirmationWaiter
)
from .registry import OperationRegistry, RegistryConfig

__all__ = [
    "OperationStatus",
    "OperationRecord",
    "ErrorInfo",
    "TERMINAL_STATUSES",
    "IN_FLIGHT_STATUSES",
    "can_transition",
    "OperationEvent",
    "EventChannel",
    "ALL_EVENTS",
    "LookupState",
    "StatusReport",
    "StatusLookup",
    "ConfirmationOptions",
    "ConfirmationResult",
    "ConfirmationWaiter",
    "OperationRegistry",
    "RegistryConfig",
]
