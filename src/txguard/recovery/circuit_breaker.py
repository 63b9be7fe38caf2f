"""
Circuit breaker pattern for fault tolerance.

Tracks consecutive failures of a named operation class and short-circuits
new attempts while the circuit is open. The Open -> HalfOpen transition is
evaluated lazily when ``allow()`` is called, never by a timer.
"""

import asyncio
import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from ..runtime.errors import CircuitOpenError


logger = logging.getLogger(__name__)


class CircuitState(Enum):
    """Circuit breaker states."""
    CLOSED = "closed"        # Normal operation
    OPEN = "open"            # Failing, rejecting requests
    HALF_OPEN = "half_open"  # Testing recovery


@dataclass
class CircuitBreakerConfig:
    """Configuration for circuit breaker."""
    failure_threshold: int = 5      # Consecutive failures before opening
    reset_timeout: float = 60.0     # Seconds after the last failure before a trial
    single_trial: bool = False      # Admit only one caller while half-open

    def __post_init__(self):
        if self.failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        if self.reset_timeout < 0:
            raise ValueError("reset_timeout must be >= 0")


@dataclass(frozen=True)
class CircuitBreakerState:
    """Point-in-time view of a circuit breaker."""
    name: str
    state: CircuitState
    failure_count: int
    last_failure_at: Optional[float]
    threshold: int
    reset_timeout: float


class CircuitBreaker:
    """
    Circuit breaker for a named operation class.

    - Closed: every call is allowed; ``failure_threshold`` consecutive
      failures open the circuit.
    - Open: calls are rejected until ``reset_timeout`` has elapsed since
      the last failure, then the next ``allow()`` moves to HalfOpen.
    - HalfOpen: a success closes the circuit, a failure reopens it.

    With ``single_trial`` disabled, concurrent callers arriving while the
    circuit is half-open may all pass; enabling it admits exactly one
    trial until that trial reports back.
    """

    def __init__(self, name: str = "default", config: Optional[CircuitBreakerConfig] = None,
                 clock: Callable[[], float] = time.monotonic):
        """
        Initialize circuit breaker.

        Args:
            name: Circuit breaker name for identification
            config: Circuit breaker configuration
            clock: Monotonic clock in seconds (injectable for tests)
        """
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._last_failure_at: Optional[float] = None
        self._trial_in_flight = False
        self._lock = threading.Lock()

        logger.debug(f"Initialized circuit breaker '{name}' with config: {self.config}")

    @property
    def state(self) -> CircuitState:
        """Stored state, without evaluating the reset timeout."""
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failure_count

    def allow(self) -> bool:
        """
        Check whether a call may proceed.

        Returns False only while the circuit resolves to Open. An open
        circuit past its reset timeout flips to HalfOpen and admits the
        caller.
        """
        with self._lock:
            if self._state is CircuitState.CLOSED:
                return True

            if self._state is CircuitState.OPEN:
                if self._clock() - (self._last_failure_at or 0.0) < self.config.reset_timeout:
                    return False
                self._transition(CircuitState.HALF_OPEN)
                self._trial_in_flight = True
                return True

            # Half-open
            if self.config.single_trial and self._trial_in_flight:
                return False
            self._trial_in_flight = True
            return True

    def record_success(self) -> None:
        """Any success clears the failure streak and closes the circuit."""
        with self._lock:
            self._failure_count = 0
            self._trial_in_flight = False
            if self._state is not CircuitState.CLOSED:
                self._transition(CircuitState.CLOSED)

    def record_failure(self) -> None:
        """Record a failed call and open the circuit when warranted."""
        with self._lock:
            self._failure_count += 1
            self._last_failure_at = self._clock()
            self._trial_in_flight = False

            if self._state is CircuitState.HALF_OPEN:
                self._transition(CircuitState.OPEN)
            elif self._state is CircuitState.CLOSED and self._failure_count >= self.config.failure_threshold:
                self._transition(CircuitState.OPEN)
            else:
                logger.debug(
                    f"Circuit '{self.name}': Recorded failure {self._failure_count}, "
                    f"state={self._state.value}"
                )

    def release_trial(self) -> None:
        """
        End an admitted call without recording an outcome.

        Used when the call was cancelled or failed for a reason that says
        nothing about service health; a half-open circuit then admits the
        next trial.
        """
        with self._lock:
            self._trial_in_flight = False

    def get_state(self) -> CircuitBreakerState:
        """Snapshot of the breaker's state."""
        with self._lock:
            return CircuitBreakerState(
                name=self.name,
                state=self._state,
                failure_count=self._failure_count,
                last_failure_at=self._last_failure_at,
                threshold=self.config.failure_threshold,
                reset_timeout=self.config.reset_timeout,
            )

    def reset(self) -> None:
        """Reset circuit breaker to initial state."""
        with self._lock:
            self._state = CircuitState.CLOSED
            self._failure_count = 0
            self._last_failure_at = None
            self._trial_in_flight = False
        logger.info(f"Circuit '{self.name}' reset to closed state")

    def open_error(self) -> CircuitOpenError:
        return CircuitOpenError(self.name, self._failure_count)

    async def call(self, func: Callable, *args, **kwargs) -> Any:
        """
        Execute function through circuit breaker.

        Every exception raised by ``func`` counts as a failure.

        Raises:
            CircuitOpenError: If circuit is open
            Exception: Any exception from the wrapped function
        """
        if not self.allow():
            raise self.open_error()

        try:
            if asyncio.iscoroutinefunction(func):
                result = await func(*args, **kwargs)
            else:
                result = func(*args, **kwargs)
        except Exception:
            self.record_failure()
            raise
        except asyncio.CancelledError:
            self.release_trial()
            raise

        self.record_success()
        return result

    def _transition(self, new_state: CircuitState) -> None:
        old_state = self._state
        self._state = new_state
        if new_state is CircuitState.OPEN:
            logger.warning(
                f"Circuit '{self.name}' opened: {old_state.value} -> {new_state.value} "
                f"(failures: {self._failure_count})"
            )
        else:
            logger.info(f"Circuit '{self.name}': {old_state.value} -> {new_state.value}")


class CircuitBreakerRegistry:
    """
    Holds one circuit breaker per named operation class.

    Registries are plain instances; create one per application (or test)
    and pass it where it is needed.
    """

    def __init__(self, default_config: Optional[CircuitBreakerConfig] = None,
                 clock: Callable[[], float] = time.monotonic):
        """Initialize circuit breaker registry."""
        self.default_config = default_config or CircuitBreakerConfig()
        self._clock = clock
        self._circuits: Dict[str, CircuitBreaker] = {}
        self._lock = threading.Lock()

    def get_circuit(self, name: str, config: Optional[CircuitBreakerConfig] = None) -> CircuitBreaker:
        """
        Get or create circuit breaker.

        Args:
            name: Operation class name
            config: Configuration used only when the breaker is created

        Returns:
            Circuit breaker instance
        """
        with self._lock:
            circuit = self._circuits.get(name)
            if circuit is None:
                circuit = CircuitBreaker(name, config or self.default_config, clock=self._clock)
                self._circuits[name] = circuit
                logger.info(f"Created new circuit breaker: {name}")
            return circuit

    def remove_circuit(self, name: str) -> bool:
        with self._lock:
            return self._circuits.pop(name, None) is not None

    def list_circuits(self) -> List[str]:
        with self._lock:
            return list(self._circuits)

    def get_open_circuits(self) -> List[str]:
        """Names of circuits currently stored as open."""
        with self._lock:
            circuits = list(self._circuits.values())
        return [c.name for c in circuits if c.state is CircuitState.OPEN]

    def reset_all(self) -> None:
        with self._lock:
            circuits = list(self._circuits.values())
        for circuit in circuits:
            circuit.reset()


__all__ = [
    "CircuitState",
    "CircuitBreakerConfig",
    "CircuitBreakerState",
    "CircuitBreaker",
    "CircuitBreakerRegistry",
]
