"""Tests for the retry controller: backoff formula, retry policy, breaker gating, timeouts."""

from __future__ import annotations

import asyncio
import random

import pytest

from homeplan.config import RetryConfig
from homeplan.errors import CircuitOpenError, ClassifiedError, ErrorKind, RequestTimeoutError
from homeplan.resilience.circuit_breaker import CircuitBreaker, CircuitState
from homeplan.resilience.retry import RetryController, call_with_timeout

from .conftest import FakeClock, RecordingSleep


def _config(**overrides: object) -> RetryConfig:
    values: dict[str, object] = {
        "max_retries": 3,
        "base_delay": 1.0,
        "max_delay": 10.0,
        "backoff_multiplier": 2.0,
        "max_jitter": 0.0,
        "adaptive_backoff": True,
        "circuit_breaker_threshold": 5,
        "circuit_breaker_reset_seconds": 60.0,
    }
    values.update(overrides)
    return RetryConfig(**values)


def _controller(clock: FakeClock, sleep: RecordingSleep, **overrides: object) -> RetryController:
    config = _config(**overrides)
    breaker = CircuitBreaker(config.circuit_breaker_threshold, config.circuit_breaker_reset_seconds, clock=clock)
    return RetryController(config, breaker, sleep=sleep, rng=random.Random(7))


class _Flaky:
    """Fails with the given errors in order, then returns "ok"."""

    def __init__(self, *errors: BaseException) -> None:
        self.errors = list(errors)
        self.calls = 0

    async def __call__(self) -> str:
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return "ok"


class TestComputeDelay:
    def test_exponential_growth_capped(self, clock: FakeClock, sleep: RecordingSleep) -> None:
        ctl = _controller(clock, sleep, adaptive_backoff=False)
        err = ClassifiedError("x", ErrorKind.SERVER, True)
        delays = [ctl.compute_delay(n, err, jitter=False) for n in range(5)]
        assert delays == [1.0, 2.0, 4.0, 8.0, 10.0]

    def test_adaptive_base_by_kind(self, clock: FakeClock, sleep: RecordingSleep) -> None:
        ctl = _controller(clock, sleep)
        assert ctl.base_delay_for(ClassifiedError("n", ErrorKind.NETWORK, True)) == 2.0
        assert ctl.base_delay_for(ClassifiedError("t", ErrorKind.TIMEOUT, True)) == 1.5
        assert ctl.base_delay_for(ClassifiedError("s", ErrorKind.SERVER, True)) == 1.0
        rate = ClassifiedError("r", ErrorKind.RATE_LIMIT, True, retry_after_seconds=30.0)
        assert ctl.base_delay_for(rate) == 30.0

    def test_rate_limit_delay_respects_max(self, clock: FakeClock, sleep: RecordingSleep) -> None:
        ctl = _controller(clock, sleep)
        rate = ClassifiedError("r", ErrorKind.RATE_LIMIT, True, retry_after_seconds=30.0)
        assert ctl.compute_delay(0, rate, jitter=False) == 10.0

    def test_jitter_bounded(self, clock: FakeClock, sleep: RecordingSleep) -> None:
        ctl = _controller(clock, sleep, max_jitter=1.0, adaptive_backoff=False)
        err = ClassifiedError("x", ErrorKind.SERVER, True)
        for _ in range(20):
            assert 1.0 <= ctl.compute_delay(0, err) <= 2.0


class TestExecute:
    @pytest.mark.asyncio
    async def test_retries_transient_then_succeeds(self, clock: FakeClock, sleep: RecordingSleep) -> None:
        ctl = _controller(clock, sleep)
        op = _Flaky(ConnectionError("refused"), RuntimeError("503 service unavailable"))
        assert await ctl.execute(op) == "ok"
        assert op.calls == 3
        # network base 2.0 at attempt 0, unknown base 1.0 * 2 at attempt 1
        assert sleep.delays == [2.0, 2.0]

    @pytest.mark.asyncio
    async def test_permanent_error_not_retried(self, clock: FakeClock, sleep: RecordingSleep) -> None:
        ctl = _controller(clock, sleep)
        auth = ClassifiedError("denied", ErrorKind.AUTH, False)
        op = _Flaky(auth)
        with pytest.raises(ClassifiedError) as exc_info:
            await ctl.execute(op)
        assert exc_info.value is auth
        assert op.calls == 1
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_exhausts_attempts(self, clock: FakeClock, sleep: RecordingSleep) -> None:
        ctl = _controller(clock, sleep, max_retries=2)
        op = _Flaky(*[ConnectionError("refused") for _ in range(5)])
        with pytest.raises(ClassifiedError) as exc_info:
            await ctl.execute(op)
        assert exc_info.value.kind is ErrorKind.NETWORK
        assert op.calls == 3
        assert len(sleep.delays) == 2

    @pytest.mark.asyncio
    async def test_stops_when_breaker_opens(self, clock: FakeClock, sleep: RecordingSleep) -> None:
        ctl = _controller(clock, sleep, max_retries=10, circuit_breaker_threshold=2)
        op = _Flaky(*[ConnectionError("refused") for _ in range(10)])
        with pytest.raises(ClassifiedError):
            await ctl.execute(op)
        assert op.calls == 2

    @pytest.mark.asyncio
    async def test_open_breaker_fails_fast(self, clock: FakeClock, sleep: RecordingSleep) -> None:
        config = _config()
        breaker = CircuitBreaker(1, 60, clock=clock)
        breaker.before_call()
        breaker.record_failure()
        assert breaker.state is CircuitState.OPEN
        ctl = RetryController(config, breaker, sleep=sleep)
        op = _Flaky()
        with pytest.raises(CircuitOpenError):
            await ctl.execute(op)
        assert op.calls == 0

    @pytest.mark.asyncio
    async def test_success_records_on_breaker(self, clock: FakeClock, sleep: RecordingSleep) -> None:
        config = _config()
        breaker = CircuitBreaker(5, 60, clock=clock)
        ctl = RetryController(config, breaker, sleep=sleep)
        await ctl.execute(_Flaky(ConnectionError("refused")))
        assert breaker.failure_count == 0
        assert breaker.state is CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_cancelled_early_call_keeps_probe_held(self, clock: FakeClock, sleep: RecordingSleep) -> None:
        config = _config(max_retries=0)
        breaker = CircuitBreaker(1, 60, clock=clock)
        ctl = RetryController(config, breaker, sleep=sleep)
        gate = asyncio.Event()

        async def blocked() -> str:
            await gate.wait()
            return "ok"

        early = asyncio.create_task(ctl.execute(blocked))
        await asyncio.sleep(0)
        with pytest.raises(ClassifiedError):
            await ctl.execute(_Flaky(ConnectionError("refused")))
        assert breaker.state is CircuitState.OPEN

        clock.advance(61)
        probe = asyncio.create_task(ctl.execute(blocked))
        await asyncio.sleep(0)
        assert breaker.state is CircuitState.HALF_OPEN

        early.cancel()
        with pytest.raises(asyncio.CancelledError):
            await early
        with pytest.raises(CircuitOpenError):
            await ctl.execute(_Flaky())

        gate.set()
        assert await probe == "ok"
        assert breaker.state is CircuitState.CLOSED


class TestCallWithTimeout:
    @pytest.mark.asyncio
    async def test_times_out(self) -> None:
        async def slow() -> str:
            await asyncio.sleep(1)
            return "late"

        with pytest.raises(RequestTimeoutError):
            await call_with_timeout(slow, 0.01)

    @pytest.mark.asyncio
    async def test_no_timeout_when_disabled(self) -> None:
        async def quick() -> str:
            return "done"

        assert await call_with_timeout(quick, None) == "done"
