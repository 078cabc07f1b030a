"""Per-source circuit breaker driven by an injectable clock.

States:
- CLOSED: calls pass through.
- OPEN: calls are short-circuited until the cooldown elapses.
- HALF_OPEN: one trial call is allowed.

Transitions:
- CLOSED -> OPEN: after ``failure_threshold`` consecutive failures. The
  cooldown is the base cooldown, or the longer rate-limit cooldown when
  the failure that tripped the breaker was a rate limit.
- OPEN -> HALF_OPEN: once the cooldown has elapsed.
- HALF_OPEN -> CLOSED: the trial succeeds. Cooldown resets to base.
- HALF_OPEN -> OPEN: the trial fails. Cooldown doubles, up to the ceiling.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from bithedge_oracle.core.clock import Clock, SystemClock
from bithedge_oracle.core.models import CircuitState

logger = logging.getLogger(__name__)


@dataclass
class CircuitBreaker:
    source_id: str
    failure_threshold: int = 3
    cooldown_seconds: float = 60.0
    max_cooldown_seconds: float = 960.0
    rate_limit_cooldown_seconds: float = 300.0
    clock: Clock = field(default_factory=SystemClock)
    _state: CircuitState = field(default=CircuitState.CLOSED, init=False, repr=False)
    _consecutive_failures: int = field(default=0, init=False, repr=False)
    _current_cooldown: float = field(default=0.0, init=False, repr=False)
    _opened_at: datetime | None = field(default=None, init=False, repr=False)
    _trial_in_flight: bool = field(default=False, init=False, repr=False)

    def __post_init__(self) -> None:
        self._current_cooldown = self.cooldown_seconds

    @property
    def state(self) -> CircuitState:
        if self._state == CircuitState.OPEN and self._cooldown_elapsed():
            self._state = CircuitState.HALF_OPEN
            self._trial_in_flight = False
            logger.info("Circuit HALF_OPEN for %s", self.source_id)
        return self._state

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    @property
    def current_cooldown(self) -> float:
        return self._current_cooldown

    @property
    def opened_at(self) -> datetime | None:
        return self._opened_at

    def allow_request(self) -> bool:
        """Whether a call may go out now. Claims the trial slot when half-open."""
        state = self.state
        if state == CircuitState.CLOSED:
            return True
        if state == CircuitState.HALF_OPEN and not self._trial_in_flight:
            self._trial_in_flight = True
            return True
        return False

    def record_success(self) -> None:
        if self._state != CircuitState.CLOSED:
            logger.info("Circuit CLOSED for %s", self.source_id)
        self._state = CircuitState.CLOSED
        self._consecutive_failures = 0
        self._current_cooldown = self.cooldown_seconds
        self._opened_at = None
        self._trial_in_flight = False

    def record_failure(self, rate_limited: bool = False) -> None:
        self._consecutive_failures += 1
        state = self.state
        if state == CircuitState.HALF_OPEN:
            cooldown = min(self._current_cooldown * 2, self.max_cooldown_seconds)
            if rate_limited:
                cooldown = max(cooldown, self.rate_limit_cooldown_seconds)
            self._open(cooldown)
        elif state == CircuitState.CLOSED and self._consecutive_failures >= self.failure_threshold:
            cooldown = self.rate_limit_cooldown_seconds if rate_limited else self.cooldown_seconds
            self._open(cooldown)

    def abandon_trial(self) -> None:
        """Give back a claimed half-open trial slot without an outcome."""
        self._trial_in_flight = False

    def restore(
        self,
        state: CircuitState,
        consecutive_failures: int,
        cooldown_seconds: float | None,
        opened_at: datetime | None,
    ) -> None:
        """Reload persisted state after a restart."""
        self._consecutive_failures = consecutive_failures
        self._current_cooldown = cooldown_seconds or self.cooldown_seconds
        if state == CircuitState.CLOSED or opened_at is None:
            self._state = CircuitState.CLOSED
            self._opened_at = None
        else:
            # An interrupted half-open trial is treated as still open
            self._state = CircuitState.OPEN
            self._opened_at = opened_at
        self._trial_in_flight = False

    def _open(self, cooldown: float) -> None:
        self._state = CircuitState.OPEN
        self._current_cooldown = cooldown
        self._opened_at = self.clock.now()
        self._trial_in_flight = False
        logger.warning(
            "Circuit OPEN for %s after %d consecutive failures (cooldown %.0fs)",
            self.source_id, self._consecutive_failures, cooldown,
        )

    def _cooldown_elapsed(self) -> bool:
        if self._opened_at is None:
            return True
        return self.clock.now() - self._opened_at >= timedelta(seconds=self._current_cooldown)
