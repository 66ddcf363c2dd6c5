"""
Streaming consumption of upstream output.

StreamingConsumer.stream() is a single-pass async generator over text
fragments:
  - breaker open before the stream starts: the fallback text is the only fragment
  - failure before any fragment: one fallback fragment, no exception
  - failure after at least one fragment: a localized interruption notice,
    then StreamInterruptedError carrying the partial text

Each fragment wait is bounded by the per-call timeout, and the upstream
iterator is closed promptly when the consumer stops early (break, aclose(),
task cancellation). The stream holds one concurrency slot while it runs.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import aclosing
from typing import Any, Callable, Optional

import structlog

from homeplan.errors import (
    CircuitOpenError,
    ClassifiedError,
    RequestTimeoutError,
    StreamInterruptedError,
    classify_error,
)
from homeplan.models import Language
from homeplan.observability import metrics as obs_metrics
from homeplan.resilience.circuit_breaker import CircuitBreaker
from homeplan.resilience.concurrency import ConcurrencyLimiter

logger = structlog.get_logger()

INTERRUPTION_NOTICE: dict[Language, str] = {
    Language.EN: "\n\n---\n*The response was interrupted. The content above may be incomplete.*\n",
    Language.ES: "\n\n---\n*La respuesta se interrumpió. El contenido anterior puede estar incompleto.*\n",
}


def message_text(message: Any) -> str:
    """Text of a LangChain message or chunk; list content keeps only text parts."""
    content = getattr(message, "content", message)
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for part in content:
            if isinstance(part, str):
                parts.append(part)
            elif isinstance(part, dict) and isinstance(part.get("text"), str):
                parts.append(part["text"])
        return "".join(parts)
    return "" if content is None else str(content)


def message_tokens(message: Any) -> Optional[int]:
    """Total tokens from usage metadata, or None when the provider did not report usage."""
    usage = getattr(message, "usage_metadata", None)
    if not usage:
        return None
    total = usage.get("total_tokens") if isinstance(usage, dict) else getattr(usage, "total_tokens", None)
    return int(total) if total else None


def estimate_tokens(text: str) -> int:
    """Rough chars → tokens estimate when usage metadata is missing."""
    return max(1, len(text) // 4) if text else 0


class StreamingConsumer:
    def __init__(
        self,
        breaker: CircuitBreaker,
        limiter: ConcurrencyLimiter,
        fragment_timeout_seconds: Optional[float] = None,
        on_tokens: Optional[Callable[[int], None]] = None,
    ) -> None:
        self._breaker = breaker
        self._limiter = limiter
        self._timeout = fragment_timeout_seconds
        self._on_tokens = on_tokens

    async def _next_fragment(self, upstream: AsyncIterator[Any]) -> Any:
        if not self._timeout or self._timeout <= 0:
            return await anext(upstream)
        try:
            return await asyncio.wait_for(anext(upstream), timeout=self._timeout)
        except asyncio.TimeoutError as exc:
            raise RequestTimeoutError(self._timeout) from exc

    async def stream(
        self,
        open_stream: Callable[[], AsyncIterator[Any]],
        fallback_text: str,
        language: Language = Language.EN,
        label: str = "stream",
    ) -> AsyncIterator[str]:
        """Yield text fragments from the upstream stream opened by open_stream()."""
        try:
            probe = self._breaker.before_call()
        except CircuitOpenError as exc:
            logger.warning("stream_circuit_open", label=label, retry_in_seconds=round(exc.retry_in_seconds, 1))
            obs_metrics.record_fallback("stream", "circuit_open")
            yield fallback_text
            return

        produced: list[str] = []
        reported_tokens = 0
        failure: Optional[ClassifiedError] = None
        completed = False
        try:
            async with self._limiter.acquire():
                async with aclosing(open_stream()) as upstream:
                    while True:
                        try:
                            chunk = await self._next_fragment(upstream)
                        except StopAsyncIteration:
                            break
                        reported_tokens += message_tokens(chunk) or 0
                        text = message_text(chunk)
                        if text:
                            produced.append(text)
                            yield text
            completed = True
        except Exception as exc:
            failure = classify_error(exc)
            if failure is not exc:
                failure.__cause__ = exc
        finally:
            if not completed and failure is None:
                # Abandoned by the consumer (break, aclose, cancellation): no outcome to record
                self._breaker.release_probe(probe)
                logger.debug("stream_abandoned", label=label, fragments=len(produced))

        partial = "".join(produced)
        tokens = reported_tokens or estimate_tokens(partial)
        if self._on_tokens and tokens:
            self._on_tokens(tokens)

        if failure is None:
            self._breaker.record_success(probe)
            logger.info("stream_completed", label=label, fragments=len(produced), tokens=tokens)
            return

        self._breaker.record_failure(probe)
        obs_metrics.record_llm_error(failure.kind.value)
        logger.warning("stream_failed", label=label, fragments=len(produced), **failure.log_fields())
        if not produced:
            obs_metrics.record_fallback("stream", failure.kind.value)
            yield fallback_text
            return

        yield INTERRUPTION_NOTICE[language]
        raise StreamInterruptedError(failure, partial) from failure
