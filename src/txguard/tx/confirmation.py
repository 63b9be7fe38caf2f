"""
Confirmation waiting for submitted operations.

After an operation has been submitted, the external system is polled
through an injected status lookup until the operation settles, is
superseded, or the confirmation timeout elapses.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from pydantic import BaseModel, Field

from ..runtime.cancellation import CancellationToken, sleep
from ..runtime.errors import (
    ConfirmationTimeout, OperationCancelled, OperationReplaced, OperationReverted
)


logger = logging.getLogger(__name__)


class LookupState(str, Enum):
    """States reported by the external status source."""
    PENDING = "pending"
    CONFIRMED = "confirmed"
    REVERTED = "reverted"
    REPLACED = "replaced"


@dataclass(frozen=True)
class StatusReport:
    """One answer from ``lookup_status(external_ref)``."""
    state: LookupState
    result: Any = None
    replacement_ref: Any = None
    reason: Optional[str] = None

    @classmethod
    def pending(cls) -> "StatusReport":
        return cls(LookupState.PENDING)

    @classmethod
    def confirmed(cls, result: Any = None) -> "StatusReport":
        return cls(LookupState.CONFIRMED, result=result)

    @classmethod
    def reverted(cls, reason: Optional[str] = None) -> "StatusReport":
        return cls(LookupState.REVERTED, reason=reason)

    @classmethod
    def replaced(cls, replacement_ref: Any = None) -> "StatusReport":
        return cls(LookupState.REPLACED, replacement_ref=replacement_ref)


StatusLookup = Callable[[Any], Awaitable[StatusReport]]


class ConfirmationOptions(BaseModel):
    """
    Options for confirmation waiting.

    Both values are in seconds.
    """
    poll_interval: float = Field(default=2.0, gt=0, description="Delay between status lookups")
    timeout: float = Field(default=120.0, gt=0, description="Maximum wait measured from submission")

    model_config = {"frozen": True}


@dataclass(frozen=True)
class ConfirmationResult:
    """Outcome of a successful wait."""
    result: Any
    external_ref: Any
    replaced_from: Any = None
    polls: int = 0


class ConfirmationWaiter:
    """
    Polls a status lookup until a terminal state or the timeout.

    Lookup errors while polling are logged and polling continues; only
    the timeout, a cancellation, a revert or an untracked replacement
    end the wait early.
    """

    def __init__(
        self,
        lookup: StatusLookup,
        options: Optional[ConfirmationOptions] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize confirmation waiter.

        Args:
            lookup: Async callable returning a ``StatusReport`` for a reference
            options: Poll interval and timeout
            clock: Monotonic clock in seconds
        """
        self.lookup = lookup
        self.options = options or ConfirmationOptions()
        self._clock = clock

    async def wait(
        self,
        external_ref: Any,
        *,
        submitted_at: Optional[float] = None,
        cancel_token: Optional[CancellationToken] = None,
        on_replaced: Optional[Callable[[Any, Any], None]] = None,
    ) -> ConfirmationResult:
        """
        Wait for ``external_ref`` to settle.

        Args:
            external_ref: Reference returned by the submit step
            submitted_at: Clock reading at submission (defaults to now)
            cancel_token: Token that abandons the wait
            on_replaced: Called with ``(old_ref, new_ref)`` when a
                replacement is tracked

        Returns:
            ConfirmationResult carrying the lookup's result payload

        Raises:
            OperationReverted: The lookup reported a revert
            OperationReplaced: Superseded without a replacement reference
            ConfirmationTimeout: Not settled within ``options.timeout``
            OperationCancelled: The token was cancelled
        """
        start = self._clock() if submitted_at is None else submitted_at
        deadline = start + self.options.timeout
        current_ref = external_ref
        original_ref = None
        polls = 0

        while True:
            if cancel_token is not None:
                cancel_token.raise_if_cancelled()

            remaining = deadline - self._clock()
            if remaining <= 0:
                raise ConfirmationTimeout(self.options.timeout, current_ref)

            polls += 1
            report = await self._lookup(current_ref, remaining)

            if report is not None:
                if report.state is LookupState.CONFIRMED:
                    logger.info(f"Operation {current_ref} confirmed after {polls} polls")
                    return ConfirmationResult(report.result, current_ref, original_ref, polls)

                if report.state is LookupState.REVERTED:
                    raise OperationReverted(
                        report.reason or f"Operation {current_ref} reverted",
                        details={"external_ref": current_ref},
                    )

                if report.state is LookupState.REPLACED:
                    if report.replacement_ref is None:
                        raise OperationReplaced(current_ref)
                    logger.info(f"Operation {current_ref} replaced by {report.replacement_ref}")
                    if on_replaced is not None:
                        on_replaced(current_ref, report.replacement_ref)
                    if original_ref is None:
                        original_ref = current_ref
                    current_ref = report.replacement_ref
                    continue

            remaining = deadline - self._clock()
            if remaining <= 0:
                raise ConfirmationTimeout(self.options.timeout, current_ref)
            await sleep(min(self.options.poll_interval, remaining), cancel_token)

    async def _lookup(self, ref: Any, remaining: float) -> Optional[StatusReport]:
        try:
            return await asyncio.wait_for(self.lookup(ref), timeout=remaining)
        except asyncio.CancelledError:
            raise
        except OperationCancelled:
            raise
        except asyncio.TimeoutError:
            logger.debug(f"Status lookup for {ref} did not answer before the deadline")
        except Exception as e:
            logger.warning(f"Status lookup for {ref} failed, continuing to poll: {e}")
        return None


__all__ = [
    "LookupState",
    "StatusReport",
    "StatusLookup",
    "ConfirmationOptions",
    "ConfirmationResult",
    "ConfirmationWaiter",
]
