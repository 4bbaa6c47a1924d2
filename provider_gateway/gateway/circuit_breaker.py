"""Per-provider circuit breaker.

  - CLOSED: normal operation, requests pass through
  - OPEN: too many consecutive failures, requests are rejected immediately
  - HALF_OPEN: testing recovery with a limited number of concurrent probes

CLOSED -> OPEN after ``failure_threshold`` consecutive failures.
OPEN -> HALF_OPEN once ``timeout_ms`` has elapsed (checked lazily).
HALF_OPEN -> CLOSED after ``success_threshold`` consecutive successes.
HALF_OPEN -> OPEN on any failure.

None of the methods await, so each call is atomic on the event loop and
the breaker is its own single writer.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable

from provider_gateway.gateway.config import CircuitBreakerConfig

logger = logging.getLogger(__name__)


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "closed"  # Normal operation
    OPEN = "open"  # Rejecting requests
    HALF_OPEN = "half_open"  # Testing recovery


TransitionCallback = Callable[[str, CircuitState, CircuitState], None]


@dataclass(frozen=True)
class CircuitSnapshot:
    """Immutable view of one provider's circuit."""

    provider: str
    state: CircuitState
    consecutive_failures: int
    consecutive_successes: int
    last_transition_at: float
    half_open_probes_in_flight: int
    half_open_limit: int
    total_failures: int
    total_successes: int
    trips: int

    @property
    def available(self) -> bool:
        """CLOSED, or HALF_OPEN with a free probe slot."""
        if self.state == CircuitState.CLOSED:
            return True
        if self.state == CircuitState.HALF_OPEN:
            return self.half_open_probes_in_flight < self.half_open_limit
        return False

    def to_dict(self) -> dict:
        return {
            "provider": self.provider,
            "state": self.state.value,
            "consecutive_failures": self.consecutive_failures,
            "consecutive_successes": self.consecutive_successes,
            "half_open_probes_in_flight": self.half_open_probes_in_flight,
            "total_failures": self.total_failures,
            "total_successes": self.total_successes,
            "trips": self.trips,
        }


class CircuitBreaker:
    """Circuit breaker for a single provider.

    Usage:
        cb = CircuitBreaker("openai", config)

        if not cb.allow_request():
            # Circuit is open (or no probe slot), try another provider
            ...

        # After the provider call:
        cb.record_success()  # or cb.record_failure()
    """

    def __init__(
        self,
        provider: str,
        config: CircuitBreakerConfig | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        on_transition: TransitionCallback | None = None,
        enabled: bool = True,
    ):
        self.provider = provider
        self.config = config or CircuitBreakerConfig()
        self.enabled = enabled
        self._clock = clock
        self._on_transition = on_transition

        self._state = CircuitState.CLOSED
        self._consecutive_failures = 0
        self._consecutive_successes = 0
        self._last_transition_at = clock()
        self._probes_in_flight = 0
        self._total_failures = 0
        self._total_successes = 0
        self._trips = 0

    # -- Internals ----------------------------------------------------------

    def _transition(self, new_state: CircuitState) -> None:
        old_state = self._state
        if old_state == new_state:
            return
        self._state = new_state
        self._last_transition_at = self._clock()
        self._consecutive_successes = 0
        self._probes_in_flight = 0
        if new_state == CircuitState.OPEN:
            self._trips += 1
            logger.warning(
                "Circuit for %s OPENED after %d consecutive failures",
                self.provider,
                self._consecutive_failures,
            )
        elif new_state == CircuitState.HALF_OPEN:
            logger.info("Circuit for %s transitioning to HALF_OPEN", self.provider)
        else:
            self._consecutive_failures = 0
            logger.info("Circuit for %s CLOSED (recovered)", self.provider)

        if self._on_transition is not None:
            self._on_transition(self.provider, old_state, new_state)

    def _maybe_half_open(self) -> None:
        if self._state != CircuitState.OPEN:
            return
        if (self._clock() - self._last_transition_at) * 1000 >= self.config.timeout_ms:
            self._transition(CircuitState.HALF_OPEN)

    def _release_probe(self) -> None:
        if self._state == CircuitState.HALF_OPEN and self._probes_in_flight > 0:
            self._probes_in_flight -= 1

    # -- Read path ----------------------------------------------------------

    @property
    def state(self) -> CircuitState:
        self._maybe_half_open()
        return self._state

    def allow_request(self) -> bool:
        """Permission check. In HALF_OPEN a granted request holds a probe slot
        until its outcome is reported (or ``release()`` is called)."""
        if not self.enabled:
            return True
        self._maybe_half_open()

        if self._state == CircuitState.CLOSED:
            return True
        if self._state == CircuitState.HALF_OPEN:
            if self._probes_in_flight < self.config.half_open_requests:
                self._probes_in_flight += 1
                return True
            return False
        return False

    def snapshot(self) -> CircuitSnapshot:
        self._maybe_half_open()
        return CircuitSnapshot(
            provider=self.provider,
            state=self._state if self.enabled else CircuitState.CLOSED,
            consecutive_failures=self._consecutive_failures,
            consecutive_successes=self._consecutive_successes,
            last_transition_at=self._last_transition_at,
            half_open_probes_in_flight=self._probes_in_flight,
            half_open_limit=self.config.half_open_requests,
            total_failures=self._total_failures,
            total_successes=self._total_successes,
            trips=self._trips,
        )

    # -- Write path ---------------------------------------------------------

    def record_success(self) -> None:
        """Record a successful call; closes the circuit after enough probes succeed."""
        self._total_successes += 1
        if not self.enabled:
            return

        if self._state == CircuitState.HALF_OPEN:
            self._release_probe()
            self._consecutive_successes += 1
            if self._consecutive_successes >= self.config.success_threshold:
                self._transition(CircuitState.CLOSED)
        elif self._state == CircuitState.CLOSED:
            self._consecutive_failures = 0
            self._consecutive_successes += 1
        # A late success while OPEN (call started before the trip) changes nothing

    def record_failure(self) -> None:
        """Record a failed call; may open the circuit."""
        self._total_failures += 1
        if not self.enabled:
            return

        self._consecutive_failures += 1
        self._consecutive_successes = 0
        if self._state == CircuitState.HALF_OPEN:
            self._release_probe()
            self._transition(CircuitState.OPEN)
        elif self._state == CircuitState.CLOSED:
            if self._consecutive_failures >= self.config.failure_threshold:
                self._transition(CircuitState.OPEN)

    def release(self) -> None:
        """Give back a probe slot without reporting an outcome."""
        if self.enabled:
            self._release_probe()

    def reset(self) -> None:
        """Manually reset the circuit to CLOSED."""
        self._transition(CircuitState.CLOSED)
        self._consecutive_failures = 0
        self._consecutive_successes = 0
        self._probes_in_flight = 0
        logger.info("Circuit for %s manually RESET", self.provider)
