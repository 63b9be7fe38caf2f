"""
Shared fixtures for the txguard test suite:
- deterministic clocks for the circuit breaker
- provider-style error factory for classification tests
- scripted status lookups for confirmation waiting
"""
import asyncio
import pytest

from txguard.recovery.circuit_breaker import CircuitBreaker, CircuitBreakerConfig
from txguard.recovery.classifier import ErrorClassifier
from txguard.tx.confirmation import StatusReport
from txguard.tx.registry import OperationRegistry


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class ProviderError(Exception):
    """Error shaped like the ones wallet/RPC providers raise."""

    def __init__(self, message="provider error", code=None, status=None, response=None, reason=None):
        super().__init__(message)
        if code is not None:
            self.code = code
        if status is not None:
            self.status = status
        if response is not None:
            self.response = response
        if reason is not None:
            self.reason = reason


class ScriptedLookup:
    """
    Status lookup replaying a script of reports.

    Entries may be ``StatusReport`` instances or exceptions to raise;
    once the script is exhausted the last entry repeats.
    """

    def __init__(self, *script, delay: float = 0.0):
        self.script = list(script) or [StatusReport.pending()]
        self.delay = delay
        self.calls = []

    async def __call__(self, ref):
        self.calls.append(ref)
        if self.delay:
            await asyncio.sleep(self.delay)
        index = min(len(self.calls) - 1, len(self.script) - 1)
        entry = self.script[index]
        if isinstance(entry, BaseException):
            raise entry
        return entry


@pytest.fixture
def fake_clock():
    """Provide a manually advanced clock."""
    return FakeClock()


@pytest.fixture
def provider_error():
    """Factory for provider-style errors."""
    return ProviderError


@pytest.fixture
def scripted_lookup():
    """Factory for scripted status lookups."""
    return ScriptedLookup


@pytest.fixture
def classifier():
    return ErrorClassifier()


@pytest.fixture
def breaker(fake_clock):
    """Circuit breaker with threshold 3 and a 30s reset timeout on a fake clock."""
    config = CircuitBreakerConfig(failure_threshold=3, reset_timeout=30.0)
    return CircuitBreaker("rpc", config, clock=fake_clock)


@pytest.fixture
def event_log():
    """Collects (event, status) pairs from a registry subscription."""
    return []


@pytest.fixture
def registry(event_log):
    """Registry recording every event it publishes into ``event_log``."""
    reg = OperationRegistry()
    reg.subscribe("*", lambda event, record: event_log.append((event.value, record.status.value, record.id)))
    return reg
