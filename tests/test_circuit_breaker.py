"""Tests for circuit breaker state transitions."""

import pytest

from homeplan.errors import CircuitOpenError
from homeplan.resilience.circuit_breaker import CircuitBreaker, CircuitState

from .conftest import FakeClock


@pytest.fixture
def breaker(clock: FakeClock) -> CircuitBreaker:
    return CircuitBreaker(failure_threshold=3, reset_timeout_seconds=60, clock=clock)


def _trip(breaker: CircuitBreaker, times: int) -> None:
    for _ in range(times):
        breaker.before_call()
        breaker.record_failure()


class TestCircuitBreaker:
    def test_starts_closed(self, breaker: CircuitBreaker) -> None:
        assert breaker.state is CircuitState.CLOSED
        assert not breaker.is_open
        breaker.before_call()

    def test_opens_at_threshold(self, breaker: CircuitBreaker) -> None:
        _trip(breaker, 2)
        assert breaker.state is CircuitState.CLOSED
        _trip(breaker, 1)
        assert breaker.state is CircuitState.OPEN
        assert breaker.is_open

    def test_success_resets_failure_count(self, breaker: CircuitBreaker) -> None:
        _trip(breaker, 2)
        breaker.record_success()
        assert breaker.failure_count == 0
        _trip(breaker, 2)
        assert breaker.state is CircuitState.CLOSED

    def test_open_rejects_until_reset_window(self, breaker: CircuitBreaker, clock: FakeClock) -> None:
        _trip(breaker, 3)
        clock.advance(30)
        with pytest.raises(CircuitOpenError) as exc_info:
            breaker.before_call()
        assert exc_info.value.retry_in_seconds == pytest.approx(30)

    def test_half_open_admits_single_probe(self, breaker: CircuitBreaker, clock: FakeClock) -> None:
        _trip(breaker, 3)
        clock.advance(61)
        breaker.before_call()
        assert breaker.state is CircuitState.HALF_OPEN
        assert breaker.is_open
        with pytest.raises(CircuitOpenError):
            breaker.before_call()

    def test_probe_success_closes(self, breaker: CircuitBreaker, clock: FakeClock) -> None:
        _trip(breaker, 3)
        clock.advance(61)
        probe = breaker.before_call()
        assert probe
        breaker.record_success(probe)
        assert breaker.state is CircuitState.CLOSED
        assert breaker.failure_count == 0

    def test_probe_failure_reopens_with_fresh_window(self, breaker: CircuitBreaker, clock: FakeClock) -> None:
        _trip(breaker, 3)
        clock.advance(61)
        probe = breaker.before_call()
        breaker.record_failure(probe)
        assert breaker.state is CircuitState.OPEN
        clock.advance(59)
        with pytest.raises(CircuitOpenError):
            breaker.before_call()
        clock.advance(2)
        breaker.before_call()
        assert breaker.state is CircuitState.HALF_OPEN

    def test_released_probe_can_be_retaken(self, breaker: CircuitBreaker, clock: FakeClock) -> None:
        _trip(breaker, 3)
        clock.advance(61)
        probe = breaker.before_call()
        breaker.release_probe(probe)
        assert breaker.before_call()
        assert breaker.state is CircuitState.HALF_OPEN

    def test_closed_admission_is_not_a_probe(self, breaker: CircuitBreaker) -> None:
        assert breaker.before_call() is False

    def test_late_success_does_not_close_open_breaker(self, breaker: CircuitBreaker) -> None:
        admitted = [breaker.before_call() for _ in range(4)]
        for probe in admitted[:3]:
            breaker.record_failure(probe)
        assert breaker.state is CircuitState.OPEN
        breaker.record_success(admitted[3])
        assert breaker.state is CircuitState.OPEN
        assert breaker.is_open
        assert breaker.failure_count == 0

    def test_late_failure_does_not_reopen_half_open(self, breaker: CircuitBreaker, clock: FakeClock) -> None:
        early = breaker.before_call()
        _trip(breaker, 3)
        clock.advance(61)
        probe = breaker.before_call()
        breaker.record_failure(early)
        assert breaker.state is CircuitState.HALF_OPEN
        breaker.record_success(probe)
        assert breaker.state is CircuitState.CLOSED

    def test_only_probe_owner_frees_the_slot(self, breaker: CircuitBreaker, clock: FakeClock) -> None:
        early = breaker.before_call()
        _trip(breaker, 3)
        clock.advance(61)
        probe = breaker.before_call()
        breaker.release_probe(early)
        with pytest.raises(CircuitOpenError):
            breaker.before_call()
        breaker.record_success(early)
        with pytest.raises(CircuitOpenError):
            breaker.before_call()
        assert breaker.state is CircuitState.HALF_OPEN
        breaker.release_probe(probe)
        assert breaker.before_call()

    def test_snapshot(self, breaker: CircuitBreaker, clock: FakeClock) -> None:
        _trip(breaker, 3)
        snap = breaker.snapshot()
        assert snap["state"] == "OPEN"
        assert snap["failure_count"] == 3
        assert snap["next_attempt_at"] == pytest.approx(clock() + 60)
