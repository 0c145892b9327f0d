"""
Per-provider circuit breaker.

The registry is an explicit object handed to the gateway, so its state is
visible and testable, and the clock can be swapped in tests.

    CLOSED     → calls allowed; each failure increments consecutive_failures
    OPEN       → after `failure_threshold` consecutive failures, the provider is
                 skipped until `cooldown_seconds` have passed
    HALF-OPEN  → after the cooldown a single trial call is let through and
                 every other caller keeps skipping the provider. Success
                 closes the circuit, failure re-opens it immediately. A trial
                 that never reports back expires after another cooldown.
"""

import logging
import time
from dataclasses import asdict, dataclass
from typing import Callable, Optional

logger = logging.getLogger(__name__)


@dataclass
class ProviderHealth:
    consecutive_failures: int = 0
    open_until: float = 0.0
    # Clock time the half-open trial call was handed out; None when none is in flight
    trial_started: Optional[float] = None
    total_calls: int = 0
    total_failures: int = 0
    last_error: Optional[str] = None


class HealthRegistry:
    def __init__(
        self,
        failure_threshold: int = 3,
        cooldown_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.failure_threshold = failure_threshold
        self.cooldown_seconds = cooldown_seconds
        self._clock = clock
        self._states: dict[str, ProviderHealth] = {}

    def state(self, provider: str) -> ProviderHealth:
        return self._states.setdefault(provider, ProviderHealth())

    def _half_open(self, state: ProviderHealth) -> bool:
        return state.consecutive_failures >= self.failure_threshold

    def _trial_in_flight(self, state: ProviderHealth, now: float) -> bool:
        return state.trial_started is not None and now < state.trial_started + self.cooldown_seconds

    def is_open(self, provider: str) -> bool:
        return self._clock() < self.state(provider).open_until

    def is_available(self, provider: str) -> bool:
        """Whether a call would be let through right now. Does not claim the trial."""
        state = self.state(provider)
        now = self._clock()
        if now < state.open_until:
            return False
        return not (self._half_open(state) and self._trial_in_flight(state, now))

    def try_acquire(self, provider: str) -> bool:
        """
        Claim the right to call provider. Always granted while the circuit is
        closed; in half-open only the first caller gets the trial.
        """
        if not self.is_available(provider):
            return False
        state = self.state(provider)
        if self._half_open(state):
            state.trial_started = self._clock()
            logger.info(f"Circuit for {provider} half-open: letting one trial call through")
        return True

    def record_success(self, provider: str) -> None:
        state = self.state(provider)
        if self._half_open(state):
            logger.info(f"Circuit for {provider} closed after successful call")
        state.total_calls += 1
        state.consecutive_failures = 0
        state.open_until = 0.0
        state.trial_started = None

    def record_failure(self, provider: str, error: str) -> None:
        state = self.state(provider)
        state.total_calls += 1
        state.total_failures += 1
        state.consecutive_failures += 1
        state.last_error = error
        state.trial_started = None
        if self._half_open(state):
            state.open_until = self._clock() + self.cooldown_seconds
            logger.warning(
                f"Circuit for {provider} opened for {self.cooldown_seconds:.0f}s "
                f"after {state.consecutive_failures} consecutive failures"
            )

    def snapshot(self) -> dict[str, dict]:
        return {
            name: {**asdict(state), "available": self.is_available(name)}
            for name, state in self._states.items()
        }
