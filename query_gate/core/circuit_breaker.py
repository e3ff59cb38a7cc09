"""Circuit Breaker Pattern - Protect Against Upstream Provider Failures.

Implements the circuit breaker pattern in front of the model provider:
1. CLOSED: Normal operation, requests flow through
2. OPEN: Provider is failing, requests are rejected without a call
3. HALF_OPEN: Cooldown elapsed, a single probe at a time tests recovery

State only changes through ``record_success`` / ``record_failure`` (and the
lazy OPEN -> HALF_OPEN move once the cooldown has elapsed). None of the
transitions await, so they are atomic on the event loop.
"""

import logging
import time
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

from .errors import CircuitOpenError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitState(Enum):
    """States of the circuit breaker."""

    CLOSED = "closed"  # Normal operation
    OPEN = "open"  # Failing, reject requests
    HALF_OPEN = "half-open"  # Testing recovery


@dataclass
class CircuitSnapshot:
    """Point-in-time copy of a breaker's state."""

    state: CircuitState = CircuitState.CLOSED
    failure_count: int = 0
    last_failure_time: float = 0.0
    success_count: int = 0  # Only meaningful while HALF_OPEN
    next_attempt_time: float = 0.0


@dataclass(frozen=True)
class CircuitBreakerConfig:
    """Configuration for a circuit breaker."""

    failure_threshold: int = 5  # Failures within the window to open
    success_threshold: int = 2  # Consecutive successes to close from half-open
    cooldown: float = 60.0  # Seconds before trying half-open
    failure_window: float = 60.0  # Seconds a failure keeps counting

    @classmethod
    def from_settings(cls, settings) -> "CircuitBreakerConfig":
        return cls(
            failure_threshold=settings.failure_threshold,
            success_threshold=settings.success_threshold,
            cooldown=settings.cooldown_seconds,
            failure_window=settings.failure_window_seconds,
        )


class CircuitBreaker:
    """Circuit breaker for a single upstream provider.

    Protects against cascading failures by:
    1. Counting failures that arrive within the failure window
    2. Opening the circuit once the threshold is reached
    3. Letting one probe through after the cooldown
    4. Closing after enough consecutive probe successes
    """

    def __init__(
        self,
        name: str,
        config: Optional[CircuitBreakerConfig] = None,
    ):
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self._state = CircuitSnapshot()
        self._probe_in_flight = False
        self.rejected_requests = 0

    def _now(self) -> float:
        return time.time()

    @property
    def state(self) -> CircuitState:
        self._maybe_half_open()
        return self._state.state

    def _maybe_half_open(self) -> None:
        """Lazily move OPEN -> HALF_OPEN once the cooldown has elapsed."""
        if (
            self._state.state == CircuitState.OPEN
            and self._now() >= self._state.next_attempt_time
        ):
            self._transition_to(CircuitState.HALF_OPEN)

    def is_open(self) -> bool:
        """True while calls must be rejected without contacting the provider."""
        self._maybe_half_open()
        return self._state.state == CircuitState.OPEN

    def allow_request(self) -> bool:
        """Check whether a call may go upstream, claiming the probe if half-open."""
        if self.is_open():
            self.rejected_requests += 1
            return False

        if self._state.state == CircuitState.HALF_OPEN:
            if self._probe_in_flight:
                self.rejected_requests += 1
                return False
            self._probe_in_flight = True
        return True

    def record_success(self) -> None:
        """Record a successful upstream call."""
        self._probe_in_flight = False

        if self._state.state == CircuitState.HALF_OPEN:
            self._state.success_count += 1
            if self._state.success_count >= self.config.success_threshold:
                self._transition_to(CircuitState.CLOSED)
        elif self._state.state == CircuitState.CLOSED:
            # Forgive one earlier failure
            self._state.failure_count = max(0, self._state.failure_count - 1)

    def record_failure(self, error: Optional[str] = None) -> None:
        """Record a failed upstream call."""
        now = self._now()
        self._probe_in_flight = False

        if error:
            logger.warning(f"Circuit {self.name} failure: {error}")

        if now - self._state.last_failure_time > self.config.failure_window:
            self._state.failure_count = 0

        self._state.failure_count += 1
        self._state.last_failure_time = now

        if self._state.state == CircuitState.HALF_OPEN:
            logger.warning(f"Circuit {self.name}: Reopening after half-open failure")
            self._transition_to(CircuitState.OPEN)
        elif (
            self._state.state == CircuitState.CLOSED
            and self._state.failure_count >= self.config.failure_threshold
        ):
            logger.warning(
                f"Circuit {self.name}: Opening after {self._state.failure_count} "
                f"failures within {self.config.failure_window:.0f}s"
            )
            self._transition_to(CircuitState.OPEN)

    def _transition_to(self, new_state: CircuitState) -> None:
        """Transition to a new state."""
        old_state = self._state.state
        self._state.state = new_state

        if new_state == CircuitState.OPEN:
            self._state.next_attempt_time = self._now() + self.config.cooldown
        elif new_state == CircuitState.HALF_OPEN:
            self._state.success_count = 0
            self._probe_in_flight = False
        elif new_state == CircuitState.CLOSED:
            self._state.failure_count = 0
            self._state.success_count = 0

        logger.info(f"Circuit {self.name}: {old_state.value} -> {new_state.value}")

    def snapshot(self) -> CircuitSnapshot:
        """Copy of the current state; mutating it has no effect on the breaker."""
        self._maybe_half_open()
        return replace(self._state)

    def reset(self) -> None:
        """Reset the circuit breaker to initial state."""
        self._state = CircuitSnapshot()
        self._probe_in_flight = False
        self.rejected_requests = 0
        logger.info(f"Circuit {self.name}: Reset to CLOSED")

    def get_status(self) -> Dict[str, Any]:
        """Get current status of the circuit breaker."""
        snap = self.snapshot()
        return {
            "name": self.name,
            "state": snap.state.value,
            "failure_count": snap.failure_count,
            "success_count": snap.success_count,
            "rejected_requests": self.rejected_requests,
            "seconds_until_retry": (
                max(0.0, snap.next_attempt_time - self._now())
                if snap.state == CircuitState.OPEN
                else 0.0
            ),
        }

    async def call(self, func: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        """Execute an async function with circuit breaker protection.

        Raises:
            CircuitOpenError: If the circuit rejects the call
            Original exception: If the function fails
        """
        if not self.allow_request():
            raise CircuitOpenError(
                f"Circuit breaker {self.name} is OPEN - service unavailable"
            )

        try:
            result = await func(*args, **kwargs)
        except Exception as e:
            self.record_failure(str(e))
            raise
        self.record_success()
        return result


class CircuitBreakerRegistry:
    """One circuit breaker per upstream provider.

    Breakers are created on first use and shared by every caller that names
    the same provider.
    """

    def __init__(self, default_config: Optional[CircuitBreakerConfig] = None):
        self._breakers: Dict[str, CircuitBreaker] = {}
        self._default_config = default_config or CircuitBreakerConfig()

    def get(self, name: str) -> CircuitBreaker:
        """Get or create the circuit breaker for a provider."""
        breaker = self._breakers.get(name)
        if breaker is None:
            breaker = CircuitBreaker(name=name, config=self._default_config)
            self._breakers[name] = breaker
        return breaker

    def get_all_status(self) -> Dict[str, Dict[str, Any]]:
        """Get status of all circuit breakers."""
        return {name: breaker.get_status() for name, breaker in self._breakers.items()}

    def reset_all(self) -> None:
        """Reset all circuit breakers to CLOSED state."""
        for breaker in self._breakers.values():
            breaker.reset()
