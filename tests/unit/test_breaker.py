"""Tests for bithedge_oracle.resilience.breaker."""

from __future__ import annotations

import pytest

from bithedge_oracle.core.models import CircuitState
from bithedge_oracle.resilience.breaker import CircuitBreaker


@pytest.fixture
def breaker(clock) -> CircuitBreaker:
    return CircuitBreaker(
        source_id="kraken",
        failure_threshold=3,
        cooldown_seconds=60,
        max_cooldown_seconds=240,
        rate_limit_cooldown_seconds=300,
        clock=clock,
    )


def _trip(breaker: CircuitBreaker, rate_limited: bool = False) -> None:
    for _ in range(breaker.failure_threshold):
        breaker.record_failure(rate_limited=rate_limited)


class TestClosed:
    def test_starts_closed(self, breaker):
        assert breaker.state == CircuitState.CLOSED
        assert breaker.allow_request()

    def test_opens_at_threshold(self, breaker):
        breaker.record_failure()
        breaker.record_failure()
        assert breaker.state == CircuitState.CLOSED
        breaker.record_failure()
        assert breaker.state == CircuitState.OPEN
        assert breaker.consecutive_failures == 3
        assert not breaker.allow_request()

    def test_success_resets_count(self, breaker):
        breaker.record_failure()
        breaker.record_failure()
        breaker.record_success()
        breaker.record_failure()
        assert breaker.state == CircuitState.CLOSED
        assert breaker.consecutive_failures == 1


class TestOpenAndHalfOpen:
    def test_half_open_after_cooldown(self, breaker, clock):
        _trip(breaker)
        clock.advance(59)
        assert breaker.state == CircuitState.OPEN
        clock.advance(1)
        assert breaker.state == CircuitState.HALF_OPEN

    def test_single_trial_call(self, breaker, clock):
        _trip(breaker)
        clock.advance(60)
        assert breaker.allow_request()
        assert not breaker.allow_request()

    def test_trial_success_closes(self, breaker, clock):
        _trip(breaker)
        clock.advance(60)
        breaker.allow_request()
        breaker.record_success()
        assert breaker.state == CircuitState.CLOSED
        assert breaker.current_cooldown == 60
        assert breaker.opened_at is None

    def test_trial_failure_doubles_cooldown(self, breaker, clock):
        _trip(breaker)
        clock.advance(60)
        breaker.allow_request()
        breaker.record_failure()
        assert breaker.state == CircuitState.OPEN
        assert breaker.current_cooldown == 120

        clock.advance(120)
        breaker.allow_request()
        breaker.record_failure()
        assert breaker.current_cooldown == 240

    def test_cooldown_capped(self, breaker, clock):
        _trip(breaker)
        for _ in range(5):
            clock.advance(breaker.current_cooldown)
            breaker.allow_request()
            breaker.record_failure()
        assert breaker.current_cooldown == 240

    def test_abandoned_trial_frees_slot(self, breaker, clock):
        _trip(breaker)
        clock.advance(60)
        assert breaker.allow_request()
        breaker.abandon_trial()
        assert breaker.state == CircuitState.HALF_OPEN
        assert breaker.allow_request()


class TestRateLimit:
    def test_rate_limit_uses_longer_cooldown(self, breaker, clock):
        _trip(breaker, rate_limited=True)
        assert breaker.current_cooldown == 300
        clock.advance(120)
        assert breaker.state == CircuitState.OPEN

    def test_rate_limit_counts_toward_threshold(self, breaker):
        for _ in range(breaker.failure_threshold - 1):
            breaker.record_failure(rate_limited=True)
        assert breaker.state == CircuitState.CLOSED
        breaker.record_failure(rate_limited=True)
        assert breaker.state == CircuitState.OPEN

    def test_rate_limited_trial_keeps_floor(self, breaker, clock):
        _trip(breaker)
        clock.advance(60)
        breaker.allow_request()
        breaker.record_failure(rate_limited=True)
        assert breaker.current_cooldown == 300


class TestRestore:
    def test_restore_open(self, breaker, clock):
        opened = clock.now()
        breaker.restore(CircuitState.OPEN, 4, 120.0, opened)
        assert breaker.state == CircuitState.OPEN
        assert breaker.consecutive_failures == 4
        clock.advance(120)
        assert breaker.state == CircuitState.HALF_OPEN

    def test_restore_half_open_becomes_open(self, breaker, clock):
        breaker.restore(CircuitState.HALF_OPEN, 3, 60.0, clock.now())
        assert breaker.state == CircuitState.OPEN

    def test_restore_closed(self, breaker):
        breaker.restore(CircuitState.CLOSED, 1, None, None)
        assert breaker.state == CircuitState.CLOSED
        assert breaker.current_cooldown == 60
