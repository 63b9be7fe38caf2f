"""
Tests for the retry executor and backoff computation.

Covers attempt bounds, backoff growth and capping, jitter range,
classification-driven retry decisions, cancellation and the batch helpers.
"""

import asyncio
import random
import time
import pytest
from unittest.mock import AsyncMock, Mock

from txguard.monitoring.metrics import MetricsRegistry
from txguard.recovery.circuit_breaker import CircuitBreaker, CircuitBreakerConfig, CircuitState
from txguard.recovery.retry import (
    RetryPolicy, RetryExecutor, base_delay_for, compute_delay, retry_all, with_retry
)
from txguard.runtime.cancellation import CancellationToken
from txguard.runtime.errors import (
    CircuitOpenError, ErrorCategory, OperationCancelled, OperationError, RetryExhaustedError
)


def fast_policy(**kwargs) -> RetryPolicy:
    options = dict(base_delay=0.001, max_delay=0.01, jitter_factor=0.0)
    options.update(kwargs)
    return RetryPolicy(**options)


@pytest.mark.recovery
@pytest.mark.unit
class TestRetryPolicy:
    """Policy defaults and validation."""

    def test_defaults(self):
        policy = RetryPolicy()
        assert policy.max_attempts == 3
        assert policy.base_delay == 1.0
        assert policy.max_delay == 30.0
        assert policy.exponential_base == 2.0
        assert policy.jitter_factor == 0.2
        assert policy.total_attempts == 4

    @pytest.mark.parametrize("kwargs", [
        {"max_attempts": -1},
        {"base_delay": -0.1},
        {"base_delay": 5.0, "max_delay": 1.0},
        {"exponential_base": 0.5},
        {"jitter_factor": 1.5},
    ])
    def test_invalid_values(self, kwargs):
        with pytest.raises(ValueError):
            RetryPolicy(**kwargs)

    def test_policy_is_immutable(self):
        policy = RetryPolicy()
        with pytest.raises(Exception):
            policy.max_attempts = 10

    def test_with_options_copies(self):
        policy = RetryPolicy()
        changed = policy.with_options(max_attempts=7)
        assert changed.max_attempts == 7
        assert policy.max_attempts == 3


@pytest.mark.recovery
@pytest.mark.unit
class TestBackoff:
    """Backoff delay computation."""

    def test_exponential_growth(self):
        policy = RetryPolicy(base_delay=1.0, exponential_base=2.0, max_delay=30.0)
        assert [base_delay_for(a, policy) for a in range(5)] == [1.0, 2.0, 4.0, 8.0, 16.0]

    def test_non_decreasing_and_capped(self):
        policy = RetryPolicy(base_delay=0.5, exponential_base=3.0, max_delay=10.0)
        delays = [base_delay_for(a, policy) for a in range(50)]
        assert all(b >= a for a, b in zip(delays, delays[1:]))
        assert max(delays) == 10.0

    def test_huge_attempt_does_not_overflow(self):
        policy = RetryPolicy(base_delay=1.0, exponential_base=10.0, max_delay=30.0)
        assert base_delay_for(10_000, policy) == 30.0

    def test_jitter_range(self):
        policy = RetryPolicy(base_delay=1.0, jitter_factor=0.2)
        rng = random.Random(42)
        delays = [compute_delay(0, policy, rng) for _ in range(200)]
        assert all(0.8 <= d <= 1.2 for d in delays)
        assert len(set(delays)) > 10

    def test_jitter_disabled(self):
        policy = RetryPolicy(base_delay=0.25, jitter_factor=0.0)
        assert compute_delay(2, policy) == 1.0

    def test_delay_rounded_to_milliseconds(self):
        policy = RetryPolicy(base_delay=0.1, jitter_factor=0.5)
        delay = compute_delay(0, policy, random.Random(7))
        assert delay == round(delay, 3)
        assert delay >= 0.0


@pytest.mark.recovery
class TestRetryExecutor:
    """Execution semantics."""

    @pytest.mark.asyncio
    async def test_success_first_attempt(self):
        operation = AsyncMock(return_value="receipt")
        result = await RetryExecutor().run(operation, fast_policy())
        assert result == "receipt"
        assert operation.await_count == 1

    @pytest.mark.asyncio
    async def test_scenario_transient_failures_then_success(self):
        """Two network failures, success on the third call, delays ~0.1s and ~0.2s."""
        calls = 0
        delays = []

        async def flaky():
            nonlocal calls
            calls += 1
            if calls < 3:
                raise ConnectionError("connection reset")
            return "ok"

        policy = RetryPolicy(
            max_attempts=2, base_delay=0.1, exponential_base=2.0,
            on_retry=lambda error, attempt, delay: delays.append((attempt, delay)),
        )
        result = await RetryExecutor().run(flaky, policy)

        assert result == "ok"
        assert calls == 3
        assert [attempt for attempt, _ in delays] == [1, 2]
        assert 0.08 <= delays[0][1] <= 0.12
        assert 0.16 <= delays[1][1] <= 0.24

    @pytest.mark.asyncio
    @pytest.mark.parametrize("max_attempts", [0, 1, 3])
    async def test_attempts_bounded(self, max_attempts):
        operation = AsyncMock(side_effect=ConnectionError("down"))

        with pytest.raises(RetryExhaustedError) as exc_info:
            await RetryExecutor().run(operation, fast_policy(max_attempts=max_attempts))

        assert operation.await_count == max_attempts + 1
        assert exc_info.value.attempts == max_attempts + 1
        assert exc_info.value.category is ErrorCategory.NETWORK_TRANSIENT
        assert isinstance(exc_info.value.last_error, OperationError)
        assert exc_info.value.elapsed >= 0

    @pytest.mark.asyncio
    async def test_non_retryable_raises_after_one_attempt(self, provider_error):
        operation = AsyncMock(side_effect=provider_error("User rejected", code=4001))

        with pytest.raises(OperationError) as exc_info:
            await RetryExecutor().run(operation, fast_policy(max_attempts=5))

        assert operation.await_count == 1
        assert exc_info.value.category is ErrorCategory.USER_REJECTED
        assert not isinstance(exc_info.value, RetryExhaustedError)

    @pytest.mark.asyncio
    async def test_unknown_error_not_retried(self):
        operation = AsyncMock(side_effect=ValueError("bad input"))

        with pytest.raises(OperationError) as exc_info:
            await RetryExecutor().run(operation, fast_policy(max_attempts=5))

        assert operation.await_count == 1
        assert exc_info.value.category is ErrorCategory.UNKNOWN
        assert isinstance(exc_info.value.cause, ValueError)

    @pytest.mark.asyncio
    async def test_custom_predicate_overrides_classifier(self):
        operation = AsyncMock(side_effect=[ValueError("flaky"), ValueError("flaky"), "done"])
        policy = fast_policy(should_retry=lambda error: isinstance(error, ValueError))

        assert await RetryExecutor().run(operation, policy) == "done"
        assert operation.await_count == 3

    @pytest.mark.asyncio
    async def test_custom_predicate_can_refuse(self):
        operation = AsyncMock(side_effect=ConnectionError("down"))
        policy = fast_policy(should_retry=lambda error: False)

        with pytest.raises(OperationError):
            await RetryExecutor().run(operation, policy)
        assert operation.await_count == 1

    @pytest.mark.asyncio
    async def test_on_retry_failure_does_not_abort(self):
        operation = AsyncMock(side_effect=[ConnectionError("down"), "ok"])
        on_retry = Mock(side_effect=RuntimeError("observer broke"))

        assert await RetryExecutor().run(operation, fast_policy(on_retry=on_retry)) == "ok"
        on_retry.assert_called_once()

    @pytest.mark.asyncio
    async def test_cancelled_before_first_attempt(self):
        token = CancellationToken()
        token.cancel("user navigated away")
        operation = AsyncMock(return_value="never")

        with pytest.raises(OperationCancelled):
            await RetryExecutor().run(operation, fast_policy(cancel_token=token))
        operation.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_cancel_interrupts_backoff(self):
        token = CancellationToken()
        operation = AsyncMock(side_effect=ConnectionError("down"))
        policy = RetryPolicy(max_attempts=3, base_delay=10.0, max_delay=10.0,
                             jitter_factor=0.0, cancel_token=token)

        async def cancel_soon():
            await asyncio.sleep(0.05)
            token.cancel()

        started = time.monotonic()
        canceller = asyncio.ensure_future(cancel_soon())
        with pytest.raises(OperationCancelled):
            await RetryExecutor().run(operation, policy)
        await canceller

        assert time.monotonic() - started < 2.0
        assert operation.await_count == 1

    @pytest.mark.asyncio
    async def test_metrics_counters(self):
        metrics = MetricsRegistry()
        operation = AsyncMock(side_effect=[ConnectionError("down"), ConnectionError("down"), "ok"])

        await RetryExecutor(metrics=metrics).run(operation, fast_policy())

        assert metrics.counter("retry_attempts_total").get_value() == 3
        assert metrics.counter("retry_retries_total").get_value() == 2
        assert metrics.counter("retry_exhausted_total").get_value() == 0


@pytest.mark.recovery
class TestExecutorWithBreaker:
    """Circuit breaker consultation per attempt."""

    @pytest.mark.asyncio
    async def test_open_breaker_blocks_attempt(self, fake_clock):
        breaker = CircuitBreaker("rpc", CircuitBreakerConfig(failure_threshold=1), clock=fake_clock)
        breaker.record_failure()
        operation = AsyncMock(return_value="never")

        with pytest.raises(CircuitOpenError):
            await RetryExecutor().run(operation, fast_policy(), breaker=breaker)
        operation.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_transient_failures_trip_breaker(self, fake_clock):
        breaker = CircuitBreaker("rpc", CircuitBreakerConfig(failure_threshold=2), clock=fake_clock)
        operation = AsyncMock(side_effect=ConnectionError("down"))

        with pytest.raises(CircuitOpenError):
            await RetryExecutor().run(operation, fast_policy(max_attempts=5), breaker=breaker)

        assert operation.await_count == 2
        assert breaker.get_state().failure_count == 2

    @pytest.mark.asyncio
    async def test_permanent_failure_leaves_breaker_alone(self, breaker, provider_error):
        operation = AsyncMock(side_effect=provider_error("no", code=4001))

        with pytest.raises(OperationError):
            await RetryExecutor().run(operation, fast_policy(), breaker=breaker)
        assert breaker.get_state().failure_count == 0

    @pytest.mark.asyncio
    async def test_success_resets_breaker(self, breaker):
        operation = AsyncMock(side_effect=[ConnectionError("down"), "ok"])

        assert await RetryExecutor().run(operation, fast_policy(), breaker=breaker) == "ok"
        assert breaker.get_state().failure_count == 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("failure", [
        ValueError("bad input"),
        OperationError("User rejected the request", ErrorCategory.USER_REJECTED, code=4001),
        OperationCancelled("stop"),
    ])
    async def test_half_open_trial_released_without_outcome(self, fake_clock, failure):
        """A trial that ends without a health signal must not block later callers."""
        config = CircuitBreakerConfig(failure_threshold=1, reset_timeout=5.0, single_trial=True)
        breaker = CircuitBreaker("rpc", config, clock=fake_clock)
        breaker.record_failure()
        fake_clock.advance(5.0)

        with pytest.raises(OperationError):
            await RetryExecutor().run(AsyncMock(side_effect=failure), fast_policy(), breaker=breaker)

        assert breaker.state is CircuitState.HALF_OPEN
        assert breaker.allow() is True

    @pytest.mark.asyncio
    async def test_half_open_trial_released_on_task_cancel(self, fake_clock):
        config = CircuitBreakerConfig(failure_threshold=1, reset_timeout=5.0, single_trial=True)
        breaker = CircuitBreaker("rpc", config, clock=fake_clock)
        breaker.record_failure()
        fake_clock.advance(5.0)

        async def stuck():
            await asyncio.sleep(10)

        task = asyncio.ensure_future(RetryExecutor().run(stuck, fast_policy(), breaker=breaker))
        await asyncio.sleep(0.01)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert breaker.allow() is True


@pytest.mark.recovery
class TestRetryHelpers:
    """Decorator and batch helpers."""

    @pytest.mark.asyncio
    async def test_with_retry_decorator(self):
        calls = []

        @with_retry(fast_policy())
        async def fetch(value):
            calls.append(value)
            if len(calls) < 2:
                raise TimeoutError("slow node")
            return value * 2

        assert await fetch(21) == 42
        assert calls == [21, 21]
        assert fetch.__name__ == "fetch"

    def test_with_retry_rejects_sync_functions(self):
        with pytest.raises(TypeError):
            @with_retry()
            def not_async():
                return None

    @pytest.mark.asyncio
    async def test_retry_all_settles_each_operation(self):
        ok = AsyncMock(return_value=1)
        flaky = AsyncMock(side_effect=[ConnectionError("down"), 2])
        broken = AsyncMock(side_effect=ValueError("bad"))

        outcomes = await retry_all([ok, flaky, broken], fast_policy(), concurrency=2)

        assert [o.ok for o in outcomes] == [True, True, False]
        assert outcomes[0].value == 1
        assert outcomes[1].value == 2
        assert outcomes[2].error.category is ErrorCategory.UNKNOWN

    @pytest.mark.asyncio
    async def test_retry_all_respects_concurrency(self):
        running = 0
        peak = 0

        async def job():
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await asyncio.sleep(0.01)
            running -= 1
            return True

        outcomes = await retry_all([job] * 8, fast_policy(), concurrency=3)

        assert all(o.ok for o in outcomes)
        assert peak <= 3

    @pytest.mark.asyncio
    async def test_retry_all_invalid_concurrency(self):
        with pytest.raises(ValueError):
            await retry_all([], concurrency=0)
