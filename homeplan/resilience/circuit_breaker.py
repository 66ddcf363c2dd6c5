"""
Circuit breaker for upstream calls.

CLOSED     normal operation; consecutive failures are counted
OPEN       calls fail fast with CircuitOpenError until the reset window elapses
HALF_OPEN  exactly one probe call is admitted; success closes the circuit,
           failure re-opens it with a fresh reset window

Permitted transitions: CLOSED→OPEN, OPEN→HALF_OPEN, HALF_OPEN→CLOSED,
HALF_OPEN→OPEN. State lives on one client instance and is only mutated from
synchronous code, so no lock is needed under a single event loop.

before_call() returns True to the caller that holds the half-open probe. Only
that caller's outcome moves the breaker out of HALF_OPEN, and only that caller
may release the probe slot. Calls admitted earlier, while CLOSED, just adjust
the failure count when they finish.
"""

from __future__ import annotations

import time
from enum import Enum
from typing import Any, Callable, Optional

import structlog

from homeplan.errors import CircuitOpenError
from homeplan.observability import metrics as obs_metrics

logger = structlog.get_logger()


class CircuitState(str, Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


class CircuitBreaker:
    def __init__(
        self,
        failure_threshold: int = 5,
        reset_timeout_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._threshold = max(1, failure_threshold)
        self._reset_timeout = reset_timeout_seconds
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._last_failure_at: Optional[float] = None
        self._next_attempt_at = 0.0
        self._probe_in_flight = False

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failure_count

    @property
    def is_open(self) -> bool:
        """True while calls would be rejected without reaching the upstream."""
        if self._state is CircuitState.OPEN:
            return self._clock() < self._next_attempt_at
        return self._state is CircuitState.HALF_OPEN and self._probe_in_flight

    def _transition(self, new_state: CircuitState) -> None:
        old = self._state
        self._state = new_state
        obs_metrics.set_circuit_state(new_state.value)
        logger.info(
            "circuit_breaker_transition",
            from_state=old.value,
            to_state=new_state.value,
            failure_count=self._failure_count,
        )

    def before_call(self) -> bool:
        """Admit or reject a call. Raises CircuitOpenError when rejected.

        Returns True when the admitted call is the half-open probe; pass that
        flag back to record_success, record_failure or release_probe.
        """
        now = self._clock()
        if self._state is CircuitState.OPEN:
            if now < self._next_attempt_at:
                raise CircuitOpenError(retry_in_seconds=self._next_attempt_at - now)
            self._transition(CircuitState.HALF_OPEN)
        if self._state is CircuitState.HALF_OPEN:
            if self._probe_in_flight:
                raise CircuitOpenError(retry_in_seconds=0.0)
            self._probe_in_flight = True
            return True
        return False

    def record_success(self, probe: bool = False) -> None:
        self._failure_count = 0
        if not probe:
            return
        self._probe_in_flight = False
        if self._state is CircuitState.HALF_OPEN:
            self._transition(CircuitState.CLOSED)

    def record_failure(self, probe: bool = False) -> None:
        now = self._clock()
        self._failure_count += 1
        self._last_failure_at = now
        if probe:
            self._probe_in_flight = False
            if self._state is CircuitState.HALF_OPEN:
                self._next_attempt_at = now + self._reset_timeout
                self._transition(CircuitState.OPEN)
        elif self._state is CircuitState.CLOSED and self._failure_count >= self._threshold:
            self._next_attempt_at = now + self._reset_timeout
            logger.error("circuit_breaker_opened", failures=self._failure_count, reset_seconds=self._reset_timeout)
            self._transition(CircuitState.OPEN)

    def release_probe(self, probe: bool = False) -> None:
        """Give back a half-open probe slot whose call was cancelled without an outcome."""
        if probe:
            self._probe_in_flight = False

    def snapshot(self) -> dict[str, Any]:
        return {
            "state": self._state.value,
            "failure_count": self._failure_count,
            "last_failure_at": self._last_failure_at,
            "next_attempt_at": self._next_attempt_at if self._state is CircuitState.OPEN else None,
        }
