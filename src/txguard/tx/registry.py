"""
Operation registry: lifecycle tracking for submitted operations.

The registry creates a record per operation, drives the submit step
through the retry executor and the confirmation step through the
confirmation waiter, and publishes every status change on its event
channel.

Lifecycle::

    pending -> submitted -> confirming -> confirmed
                                       -> failed | replaced | timed_out | cancelled
    pending -> rejected | failed | timed_out | cancelled
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Union
from uuid import uuid4

from pydantic import BaseModel, Field

from ..monitoring.metrics import MetricsRegistry
from ..recovery.circuit_breaker import CircuitBreakerRegistry
from ..recovery.classifier import ErrorClassifier
from ..recovery.retry import DEFAULT_POLICY, RetryExecutor, RetryPolicy
from ..runtime.cancellation import CancellationToken
from ..runtime.errors import (
    ConfirmationTimeout, ErrorCategory, OperationCancelled, OperationError
)
from .confirmation import ConfirmationOptions, ConfirmationWaiter, StatusLookup
from .events import EventChannel, Handler, OperationEvent
from .records import ErrorInfo, OperationRecord, OperationStatus, can_transition


logger = logging.getLogger(__name__)

SubmitOperation = Callable[[], Awaitable[Any]]

FAILURE_STATUSES: Dict[ErrorCategory, OperationStatus] = {
    ErrorCategory.USER_REJECTED: OperationStatus.REJECTED,
    ErrorCategory.REPLACED: OperationStatus.REPLACED,
    ErrorCategory.TIMED_OUT: OperationStatus.TIMED_OUT,
    ErrorCategory.CANCELLED: OperationStatus.CANCELLED,
}


class RegistryConfig(BaseModel):
    """
    Configuration for an operation registry.

    Durations are in seconds.
    """
    confirmation: ConfirmationOptions = Field(
        default_factory=ConfirmationOptions,
        description="Poll interval and timeout for confirmation waiting"
    )
    default_deadline: Optional[float] = Field(
        default=None, gt=0,
        description="Deadline applied to submits that do not pass one"
    )
    history_limit: Optional[int] = Field(
        default=None, ge=1,
        description="Records kept after each settlement (None keeps everything)"
    )
    explorer_url_template: Optional[str] = Field(
        default=None,
        description="Format string with a {ref} placeholder, e.g. https://scan.example/tx/{ref}"
    )

    model_config = {"frozen": True}


class OperationRegistry:
    """
    Owns the lifecycle records of submitted operations.

    Each operation runs in its own asyncio task; unrelated operations
    never wait on each other. The record map is guarded by a lock so
    that ``get``/``list``/``cleanup`` may also be called from other
    threads. Records are immutable snapshots.
    """

    def __init__(
        self,
        lookup: Optional[StatusLookup] = None,
        config: Optional[RegistryConfig] = None,
        *,
        default_policy: Optional[RetryPolicy] = None,
        classifier: Optional[ErrorClassifier] = None,
        executor: Optional[RetryExecutor] = None,
        breakers: Optional[CircuitBreakerRegistry] = None,
        metrics: Optional[MetricsRegistry] = None,
        events: Optional[EventChannel] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize operation registry.

        Args:
            lookup: Default status lookup used for confirmation waiting
            config: Registry configuration
            default_policy: Retry policy for submits that do not pass one
            classifier: Error classifier shared with the executor
            executor: Retry executor for the submit step
            breakers: Circuit breakers per operation class
            metrics: Optional metrics registry
            events: Event channel (a private one by default)
            clock: Monotonic clock used for confirmation deadlines
        """
        self.lookup = lookup
        self.config = config or RegistryConfig()
        self.default_policy = default_policy or DEFAULT_POLICY
        self.classifier = classifier or ErrorClassifier()
        self.metrics = metrics
        self.executor = executor or RetryExecutor(self.classifier, metrics=metrics)
        self.breakers = breakers or CircuitBreakerRegistry()
        self.events = events or EventChannel()
        self._clock = clock

        self._records: Dict[str, OperationRecord] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        self._tokens: Dict[str, CancellationToken] = {}
        self._links: Dict[str, List[Tuple[CancellationToken, Callable[[], None]]]] = {}
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def subscribe(self, event: Union[OperationEvent, str], handler: Handler) -> Callable[[], None]:
        """Register an event handler; returns an unsubscribe callable."""
        return self.events.subscribe(event, handler)

    def submit(
        self,
        operation: SubmitOperation,
        policy: Optional[RetryPolicy] = None,
        description: str = "Operation",
        *,
        lookup: Optional[StatusLookup] = None,
        deadline: Optional[float] = None,
        operation_class: Optional[str] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> str:
        """
        Start tracking and executing an operation.

        Returns as soon as the record exists; the submit and confirmation
        steps run in a background task on the running event loop.

        Args:
            operation: Zero-argument coroutine function performing the submit
                step and returning the external reference
            policy: Retry policy for the submit step
            description: Display label
            lookup: Status lookup overriding the registry default; when no
                lookup is available the submit result settles the operation
            deadline: Seconds until the record is force-settled as timed out
            operation_class: Name of the circuit breaker to consult
            cancel_token: Token the caller may cancel to abandon the operation

        Returns:
            Operation id

        Raises:
            RuntimeError: If called outside a running event loop
        """
        if not callable(operation):
            raise TypeError("operation must be a zero-argument coroutine function")
        loop = asyncio.get_running_loop()

        policy = policy or self.default_policy
        token = CancellationToken()
        links = []
        for external in (cancel_token, policy.cancel_token):
            if external is not None:
                link = lambda ext=external: token.cancel(ext.reason or "Operation cancelled")
                external.add_callback(link)
                links.append((external, link))
        policy = policy.with_options(cancel_token=token)

        record = OperationRecord(
            id=f"op_{uuid4().hex}",
            description=description,
            operation_class=operation_class,
        )
        with self._lock:
            self._records[record.id] = record
            self._tokens[record.id] = token
            self._links[record.id] = links

        self._metric_created()
        logger.debug(f"Created operation {record.id} ({description})")
        self.events.publish(OperationEvent.CREATED, record)

        op_id = record.id
        token.add_callback(
            lambda: self._settle_failure(op_id, OperationCancelled(token.reason or "Operation cancelled"))
        )

        breaker = self.breakers.get_circuit(operation_class) if operation_class else None
        lifecycle = self._lifecycle(op_id, operation, policy, lookup or self.lookup, breaker, token)
        if deadline is None:
            deadline = self.config.default_deadline
        task = loop.create_task(self._supervise(op_id, lifecycle, deadline, token))
        with self._lock:
            self._tasks[op_id] = task
        task.add_done_callback(lambda t: self._task_done(op_id, t))
        return op_id

    async def submit_and_wait(self, operation: SubmitOperation, policy: Optional[RetryPolicy] = None,
                              description: str = "Operation", **kwargs) -> OperationRecord:
        """Submit an operation and wait for its record to settle."""
        op_id = self.submit(operation, policy, description, **kwargs)
        return await self.wait(op_id)

    async def wait(self, op_id: str) -> OperationRecord:
        """
        Wait until the operation's background task has finished.

        Cancelling the waiting caller does not cancel the operation.

        Raises:
            KeyError: Unknown id
        """
        with self._lock:
            task = self._tasks.get(op_id)
            record = self._records.get(op_id)
        if record is None and task is None:
            raise KeyError(op_id)
        if task is not None:
            await asyncio.wait({asyncio.shield(task)})
            # The settled snapshot survives history cleanup of the record
            if not task.cancelled() and task.exception() is None and task.result() is not None:
                return task.result()
        with self._lock:
            record = self._records.get(op_id, record)
        return record

    def get(self, op_id: str) -> Optional[OperationRecord]:
        """Current snapshot of a record, or None."""
        with self._lock:
            return self._records.get(op_id)

    def list(self, status: Optional[Union[OperationStatus, str]] = None,
             since: Optional[float] = None) -> List[OperationRecord]:
        """
        Records, newest first.

        Args:
            status: Only records with this status
            since: Only records created at or after this epoch timestamp
        """
        wanted = OperationStatus(status) if status is not None else None
        with self._lock:
            records = list(self._records.values())

        if wanted is not None:
            records = [r for r in records if r.status is wanted]
        if since is not None:
            records = [r for r in records if r.created_at >= since]
        # Insertion order breaks created_at ties: later submits come first
        return sorted(reversed(records), key=lambda r: r.created_at, reverse=True)

    def in_flight(self) -> List[OperationRecord]:
        """Records that have not settled yet, newest first."""
        return [r for r in self.list() if r.is_in_flight]

    def cleanup(self, keep: int = 50) -> int:
        """
        Keep only the ``keep`` most recent records.

        Records whose lifecycle task is still running are never removed,
        even when they fall outside the kept window.

        Returns:
            Number of records removed
        """
        if keep < 0:
            raise ValueError("keep must be >= 0")
        with self._lock:
            stale = [
                r for r in self.list()[keep:]
                if r.is_terminal and r.id not in self._tasks
            ]
            for record in stale:
                self._records.pop(record.id, None)
        if stale:
            logger.debug(f"Removed {len(stale)} old operation records")
        return len(stale)

    def cancel(self, op_id: str, reason: str = "Operation cancelled") -> bool:
        """
        Abandon an in-flight operation.

        The record settles as cancelled immediately; the running attempt
        stops at its next suspension point.

        Returns:
            True if the operation was still in flight
        """
        with self._lock:
            token = self._tokens.get(op_id)
            record = self._records.get(op_id)
        if token is None or record is None or record.is_terminal:
            return False
        token.cancel(reason)
        return True

    def explorer_url(self, op_id: str) -> Optional[str]:
        """Explorer link for the operation's external reference."""
        template = self.config.explorer_url_template
        record = self.get(op_id)
        if not template or record is None or record.external_ref is None:
            return None
        ref = record.replacement_ref if record.replacement_ref is not None else record.external_ref
        return template.format(ref=ref)

    async def close(self) -> None:
        """Cancel every in-flight operation and wait for its task to end."""
        with self._lock:
            tokens = list(self._tokens.values())
            tasks = list(self._tasks.values())
        for token in tokens:
            token.cancel("Registry closed")
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def _supervise(self, op_id: str, lifecycle: Awaitable[None],
                         deadline: Optional[float], token: CancellationToken) -> Optional[OperationRecord]:
        loop = asyncio.get_running_loop()
        task = asyncio.ensure_future(lifecycle)
        # Cancelling the token also interrupts an attempt stuck outside a suspension point
        token.add_callback(lambda: loop.call_soon_threadsafe(task.cancel))

        try:
            done, _ = await asyncio.wait({task}, timeout=deadline)
        except asyncio.CancelledError:
            task.cancel()
            raise

        if task in done:
            if not task.cancelled():
                task.result()
            return self.get(op_id)

        logger.warning(f"Operation {op_id} exceeded its {deadline:.3f}s deadline")
        self._settle_failure(op_id, ConfirmationTimeout(deadline))
        # Detached: transitions from the abandoned attempt are dropped from now on
        task.add_done_callback(self._drain)
        token.cancel("Deadline exceeded")
        return self.get(op_id)

    async def _lifecycle(self, op_id: str, operation: SubmitOperation, policy: RetryPolicy,
                         lookup: Optional[StatusLookup], breaker, token: CancellationToken) -> None:
        async def attempt():
            self._transition(op_id, OperationStatus.PENDING, OperationEvent.UPDATED, count_attempt=True)
            try:
                return await operation()
            except Exception as e:
                if not isinstance(e, OperationCancelled):
                    self._note_error(op_id, e)
                raise

        try:
            try:
                external_ref = await self.executor.run(attempt, policy, breaker=breaker)
            except OperationError as e:
                self._settle_failure(op_id, e)
                return

            submitted = self._transition(
                op_id, OperationStatus.SUBMITTED, OperationEvent.SUBMITTED,
                external_ref=external_ref, submitted_at=time.time(), last_error=None,
            )
            if submitted is None:
                return
            submitted_clock = self._clock()

            if lookup is None:
                self._transition(op_id, OperationStatus.CONFIRMED, OperationEvent.CONFIRMED,
                                 result=external_ref)
                return

            self._transition(op_id, OperationStatus.CONFIRMING, OperationEvent.UPDATED)
            waiter = ConfirmationWaiter(lookup, self.config.confirmation, clock=self._clock)
            try:
                confirmation = await waiter.wait(
                    external_ref,
                    submitted_at=submitted_clock,
                    cancel_token=token,
                    on_replaced=lambda old, new: self._transition(
                        op_id, OperationStatus.CONFIRMING, OperationEvent.UPDATED, replacement_ref=new
                    ),
                )
            except OperationError as e:
                self._settle_failure(op_id, e)
                return

            self._transition(op_id, OperationStatus.CONFIRMED, OperationEvent.CONFIRMED,
                             result=confirmation.result)

        except asyncio.CancelledError:
            self._settle_failure(op_id, OperationCancelled("Operation task cancelled"))
            raise
        except Exception as e:
            logger.exception(f"Unexpected error in lifecycle of {op_id}")
            self._settle_failure(op_id, self.classifier.to_error(e))

    # ------------------------------------------------------------------
    # Record mutation
    # ------------------------------------------------------------------

    def _transition(self, op_id: str, status: OperationStatus, event: OperationEvent,
                    count_attempt: bool = False, **changes: Any) -> Optional[OperationRecord]:
        """
        Apply a status change and publish it.

        Returns None when the change was dropped: unknown id, record
        already settled, or a transition the state machine forbids.
        """
        with self._lock:
            current = self._records.get(op_id)
            if current is None:
                logger.debug(f"Dropping {status.value} for untracked operation {op_id}")
                return None
            if current.is_terminal:
                logger.debug(f"Dropping {status.value} for settled operation {op_id} ({current.status.value})")
                return None
            if not can_transition(current.status, status):
                logger.warning(
                    f"Ignoring invalid transition {current.status.value} -> {status.value} for {op_id}"
                )
                return None

            if count_attempt:
                changes["attempts"] = current.attempts + 1
            if status.is_terminal:
                changes["settled_at"] = time.time()
            updated = current.model_copy(update={"status": status, **changes})
            self._records[op_id] = updated

        if updated.is_terminal:
            self._on_settled(updated)
        self.events.publish(event, updated)
        return updated

    def _note_error(self, op_id: str, error: Exception) -> None:
        info = ErrorInfo.from_error(self.classifier.to_error(error))
        with self._lock:
            current = self._records.get(op_id)
            if current is None or current.is_terminal:
                return
            self._records[op_id] = current.model_copy(update={"last_error": info})

    def _settle_failure(self, op_id: str, error: OperationError) -> Optional[OperationRecord]:
        status = FAILURE_STATUSES.get(error.category, OperationStatus.FAILED)
        return self._transition(op_id, status, OperationEvent.FAILED,
                                last_error=ErrorInfo.from_error(error))

    def _on_settled(self, record: OperationRecord) -> None:
        if record.status is OperationStatus.CONFIRMED:
            logger.info(f"Operation {record.id} ({record.description}) confirmed")
        else:
            detail = record.last_error.detail if record.last_error else ""
            logger.info(f"Operation {record.id} ({record.description}) {record.status.value}: {detail}")

        if self.metrics is not None:
            self.metrics.counter("operations_settled_total").increment(labels={"status": record.status.value})
            self.metrics.gauge("operations_in_flight").decrement()
            if record.duration is not None:
                self.metrics.histogram("operation_settle_seconds").observe(record.duration)

        if self.config.history_limit is not None:
            self.cleanup(self.config.history_limit)

    def _metric_created(self) -> None:
        if self.metrics is not None:
            self.metrics.counter("operations_created_total").increment()
            self.metrics.gauge("operations_in_flight").increment()

    def _task_done(self, op_id: str, task: asyncio.Task) -> None:
        with self._lock:
            self._tasks.pop(op_id, None)
            self._tokens.pop(op_id, None)
            links = self._links.pop(op_id, [])
        for external, link in links:
            external.remove_callback(link)
        # Records skipped by cleanup while their task was running
        if self.config.history_limit is not None:
            self.cleanup(self.config.history_limit)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Lifecycle task for {op_id} failed: {error!r}")

    @staticmethod
    def _drain(task: asyncio.Future) -> None:
        if not task.cancelled() and task.exception() is not None:
            logger.debug(f"Detached attempt ended with {task.exception()!r}")


__all__ = [
    "RegistryConfig",
    "OperationRegistry",
    "SubmitOperation",
    "FAILURE_STATUSES",
]
