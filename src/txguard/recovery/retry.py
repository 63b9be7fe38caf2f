"""
Retry policies for robust error handling.

Provides a bounded retry executor with exponential backoff, jitter,
classification-driven retry decisions and cooperative cancellation.
"""

import asyncio
import functools
import logging
import random
import time
from dataclasses import dataclass, field, replace
from typing import Any, Awaitable, Callable, List, Optional, Sequence, TYPE_CHECKING

from ..runtime.cancellation import CancellationToken, sleep
from ..runtime.errors import OperationCancelled, OperationError, RetryExhaustedError
from .classifier import ErrorClassifier

if TYPE_CHECKING:
    from ..monitoring.metrics import MetricsRegistry
    from .circuit_breaker import CircuitBreaker


logger = logging.getLogger(__name__)

Operation = Callable[[], Awaitable[Any]]


@dataclass(frozen=True)
class RetryPolicy:
    """
    Immutable retry configuration.

    ``max_attempts`` counts retries: an operation is invoked at most
    ``max_attempts + 1`` times.
    """
    max_attempts: int = 3
    base_delay: float = 1.0             # Seconds before the first retry
    max_delay: float = 30.0             # Cap applied before jitter
    exponential_base: float = 2.0
    jitter_factor: float = 0.2          # Fraction of the delay (0.0-1.0)
    should_retry: Optional[Callable[[Exception], bool]] = field(default=None, compare=False)
    on_retry: Optional[Callable[[Exception, int, float], None]] = field(default=None, compare=False)
    cancel_token: Optional[CancellationToken] = field(default=None, compare=False)

    def __post_init__(self):
        if self.max_attempts < 0:
            raise ValueError("max_attempts must be >= 0")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must be >= 0")
        if self.max_delay < self.base_delay:
            raise ValueError("max_delay must be >= base_delay")
        if self.exponential_base < 1:
            raise ValueError("exponential_base must be >= 1")
        if not 0.0 <= self.jitter_factor <= 1.0:
            raise ValueError("jitter_factor must be between 0.0 and 1.0")

    @property
    def total_attempts(self) -> int:
        """Upper bound on operation invocations."""
        return self.max_attempts + 1

    def with_options(self, **changes) -> "RetryPolicy":
        """Return a copy with ``changes`` applied."""
        return replace(self, **changes)


DEFAULT_POLICY = RetryPolicy()


def base_delay_for(attempt: int, policy: RetryPolicy) -> float:
    """
    Backoff delay before jitter.

    Args:
        attempt: Attempt number (0-based) that just failed

    Returns:
        Delay in seconds, never above ``policy.max_delay``
    """
    try:
        delay = policy.base_delay * (policy.exponential_base ** attempt)
    except OverflowError:
        return policy.max_delay
    return min(delay, policy.max_delay)


def compute_delay(attempt: int, policy: RetryPolicy,
                  rng: Optional[random.Random] = None) -> float:
    """
    Backoff delay with jitter applied.

    The capped delay is perturbed by ``delay * jitter_factor * U(-1, 1)``,
    rounded to milliseconds and floored at zero.
    """
    delay = base_delay_for(attempt, policy)
    uniform = (rng or random).uniform(-1.0, 1.0)
    jittered = delay + delay * policy.jitter_factor * uniform
    return max(0.0, round(jittered, 3))


class RetryExecutor:
    """
    Executes a fallible asynchronous operation under a ``RetryPolicy``.

    The executor holds no per-call state; the same instance may run many
    operations concurrently.
    """

    def __init__(
        self,
        classifier: Optional[ErrorClassifier] = None,
        metrics: Optional["MetricsRegistry"] = None,
        rng: Optional[random.Random] = None,
    ):
        """
        Initialize retry executor.

        Args:
            classifier: Error classifier used for retry decisions
            metrics: Optional metrics registry for attempt counters
            rng: Random source for jitter (seeded in tests)
        """
        self.classifier = classifier or ErrorClassifier()
        self.metrics = metrics
        self.rng = rng or random.Random()

    async def run(
        self,
        operation: Operation,
        policy: Optional[RetryPolicy] = None,
        *,
        breaker: Optional["CircuitBreaker"] = None,
    ) -> Any:
        """
        Run ``operation`` until it succeeds or the policy gives up.

        Args:
            operation: Zero-argument coroutine function
            policy: Retry policy (defaults to ``DEFAULT_POLICY``)
            breaker: Circuit breaker consulted before each attempt

        Returns:
            The operation result

        Raises:
            OperationCancelled: If the policy token is cancelled
            CircuitOpenError: If the breaker rejects an attempt
            OperationError: Classified error of a non-retryable failure
            RetryExhaustedError: If every permitted attempt failed
        """
        policy = policy or DEFAULT_POLICY
        token = policy.cancel_token
        start_time = time.monotonic()
        attempt = 0

        while attempt <= policy.max_attempts:
            if token is not None and token.cancelled:
                raise OperationCancelled(token.reason or "Operation cancelled")

            if breaker is not None and not breaker.allow():
                raise breaker.open_error()

            self._count("retry_attempts_total")
            try:
                result = await operation()
            except asyncio.CancelledError:
                if breaker is not None:
                    breaker.release_trial()
                raise
            except Exception as e:
                if isinstance(e, OperationCancelled):
                    if breaker is not None:
                        breaker.release_trial()
                    raise
                error = self.classifier.to_error(e)
                if breaker is not None:
                    if error.retryable:
                        breaker.record_failure()
                    else:
                        breaker.release_trial()

                if attempt >= policy.max_attempts:
                    elapsed = time.monotonic() - start_time
                    self._count("retry_exhausted_total")
                    logger.warning(
                        f"Operation failed after {attempt + 1} attempts ({elapsed:.2f}s): {e}"
                    )
                    raise RetryExhaustedError(attempt + 1, elapsed, error) from e

                if not self._should_retry(e, error, policy):
                    raise error from e

                delay = compute_delay(attempt, policy, self.rng)
                self._count("retry_retries_total")
                logger.warning(
                    f"Attempt {attempt + 1} failed: {e}. Retrying in {delay:.2f}s..."
                )
                if policy.on_retry is not None:
                    try:
                        policy.on_retry(e, attempt + 1, delay)
                    except Exception:
                        logger.exception("on_retry callback failed")

                await sleep(delay, token)
                attempt += 1
                continue

            if breaker is not None:
                breaker.record_success()
            if attempt > 0:
                logger.info(f"Operation succeeded on attempt {attempt + 1}")
            return result

        # Unreachable: the loop either returns or raises on the last attempt
        raise AssertionError("retry loop exited without outcome")

    def _should_retry(self, raw: Exception, error: OperationError, policy: RetryPolicy) -> bool:
        if policy.should_retry is not None:
            return bool(policy.should_retry(raw))
        return error.retryable

    def _count(self, name: str) -> None:
        if self.metrics is not None:
            self.metrics.counter(name).increment()


@dataclass
class RetryOutcome:
    """Settled result of one operation in ``retry_all``."""
    ok: bool
    value: Any = None
    error: Optional[OperationError] = None


def with_retry(policy: Optional[RetryPolicy] = None,
               executor: Optional[RetryExecutor] = None):
    """
    Decorator for adding retry behavior to coroutine functions.

    Args:
        policy: Retry policy applied to every call
        executor: Executor to run with (a fresh one by default)

    Returns:
        Decorator function
    """
    runner = executor or RetryExecutor()

    def decorator(func):
        if not asyncio.iscoroutinefunction(func):
            raise TypeError(f"{func.__qualname__} must be a coroutine function")

        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            return await runner.run(lambda: func(*args, **kwargs), policy)

        return wrapper

    return decorator


async def retry_all(
    operations: Sequence[Operation],
    policy: Optional[RetryPolicy] = None,
    *,
    concurrency: int = 3,
    executor: Optional[RetryExecutor] = None,
) -> List[RetryOutcome]:
    """
    Run several operations with retry, at most ``concurrency`` at a time.

    Failures do not abort the batch; each operation settles into its own
    ``RetryOutcome``, returned in input order.
    """
    if concurrency < 1:
        raise ValueError("concurrency must be >= 1")

    runner = executor or RetryExecutor()
    semaphore = asyncio.Semaphore(concurrency)

    async def run_one(operation: Operation) -> RetryOutcome:
        async with semaphore:
            try:
                return RetryOutcome(ok=True, value=await runner.run(operation, policy))
            except OperationError as e:
                return RetryOutcome(ok=False, error=e)

    return list(await asyncio.gather(*(run_one(op) for op in operations)))


__all__ = [
    "RetryPolicy",
    "DEFAULT_POLICY",
    "RetryExecutor",
    "RetryOutcome",
    "base_delay_for",
    "compute_delay",
    "with_retry",
    "retry_all",
]
