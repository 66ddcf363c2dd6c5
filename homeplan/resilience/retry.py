"""
Retry controller: classified errors, adaptive jittered backoff, breaker gating.

Each attempt is gated by the circuit breaker. A failed attempt is classified,
recorded on the breaker, and retried only while the error is retryable and
the breaker has not opened. The delay before attempt n+1 is

    min(max_delay, base_for(kind) * backoff_multiplier ** n) + uniform(0, max_jitter)

where base_for scales the base delay by error kind when adaptive backoff is on.
"""

from __future__ import annotations

import asyncio
import random
from collections.abc import Awaitable
from typing import Callable, Optional, TypeVar

import structlog
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt

from homeplan.config import RetryConfig
from homeplan.errors import (
    DEFAULT_RETRY_AFTER_SECONDS,
    ClassifiedError,
    ErrorKind,
    RequestTimeoutError,
    classify_error,
)
from homeplan.observability import metrics as obs_metrics
from homeplan.resilience.circuit_breaker import CircuitBreaker

logger = structlog.get_logger()
T = TypeVar("T")

SleepFn = Callable[[float], Awaitable[None]]


async def call_with_timeout(operation: Callable[[], Awaitable[T]], timeout_seconds: Optional[float]) -> T:
    """Await operation(), converting a deadline overrun into RequestTimeoutError."""
    if not timeout_seconds or timeout_seconds <= 0:
        return await operation()
    try:
        return await asyncio.wait_for(operation(), timeout=timeout_seconds)
    except asyncio.TimeoutError as exc:
        raise RequestTimeoutError(timeout_seconds) from exc


class RetryController:
    def __init__(
        self,
        config: RetryConfig,
        breaker: CircuitBreaker,
        sleep: SleepFn = asyncio.sleep,
        rng: Optional[random.Random] = None,
    ) -> None:
        self._config = config
        self._breaker = breaker
        self._sleep = sleep
        self._rng = rng or random.Random()

    @property
    def max_attempts(self) -> int:
        return self._config.max_retries + 1

    def base_delay_for(self, error: ClassifiedError) -> float:
        base = self._config.base_delay
        if not self._config.adaptive_backoff:
            return base
        if error.kind is ErrorKind.RATE_LIMIT:
            return error.retry_after_seconds or DEFAULT_RETRY_AFTER_SECONDS
        if error.kind is ErrorKind.NETWORK:
            return base * 2
        if error.kind is ErrorKind.TIMEOUT:
            return base * 1.5
        return base

    def compute_delay(self, attempt: int, error: ClassifiedError, jitter: bool = True) -> float:
        """Delay in seconds after the zero-based attempt that failed with error."""
        exponential = self.base_delay_for(error) * self._config.backoff_multiplier ** attempt
        delay = min(self._config.max_delay, exponential)
        if jitter and self._config.max_jitter > 0:
            delay += self._rng.uniform(0, self._config.max_jitter)
        return delay

    def _should_retry(self, exc: BaseException) -> bool:
        return isinstance(exc, ClassifiedError) and exc.retryable and not self._breaker.is_open

    def _wait(self, retry_state: RetryCallState) -> float:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        if not isinstance(exc, ClassifiedError):
            return self._config.base_delay
        return self.compute_delay(retry_state.attempt_number - 1, exc)

    def _log_retry(self, retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        kind = exc.kind.value if isinstance(exc, ClassifiedError) else "unknown"
        delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
        obs_metrics.record_retry(kind)
        logger.warning(
            "llm_retry",
            attempt=retry_state.attempt_number,
            max_attempts=self.max_attempts,
            error_kind=kind,
            delay_seconds=round(delay, 3),
        )

    async def _attempt(self, operation: Callable[[], Awaitable[T]], attempt_number: int) -> T:
        probe = self._breaker.before_call()
        try:
            result = await operation()
        except asyncio.CancelledError:
            self._breaker.release_probe(probe)
            raise
        except Exception as exc:
            classified = classify_error(exc)
            self._breaker.record_failure(probe)
            obs_metrics.record_llm_error(classified.kind.value)
            logger.warning(
                "llm_attempt_failed",
                attempt=attempt_number,
                max_attempts=self.max_attempts,
                **classified.log_fields(),
            )
            if classified is exc:
                raise
            raise classified from exc
        self._breaker.record_success(probe)
        if attempt_number > 1:
            logger.info("llm_retry_succeeded", attempts=attempt_number)
        return result

    async def execute(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Run operation with retries. Raises the last ClassifiedError on terminal failure."""
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=self._wait,
            retry=retry_if_exception(self._should_retry),
            sleep=self._sleep,
            before_sleep=self._log_retry,
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                result = await self._attempt(operation, attempt.retry_state.attempt_number)
        return result
