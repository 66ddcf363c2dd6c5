"""Tests for streaming consumption: fallback, interruption, abandonment, fragment timeouts."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import aclosing

import pytest
from langchain_core.messages import AIMessageChunk

from homeplan.errors import ErrorKind, StreamInterruptedError
from homeplan.models import Language
from homeplan.resilience.circuit_breaker import CircuitBreaker, CircuitState
from homeplan.resilience.concurrency import ConcurrencyLimiter
from homeplan.streaming import INTERRUPTION_NOTICE, StreamingConsumer, estimate_tokens, message_text, message_tokens

from .conftest import FakeChatModel, FakeClock

FALLBACK = "## Fallback analysis"


def _consumer(clock: FakeClock, timeout: float = 5.0, threshold: int = 5) -> tuple[StreamingConsumer, CircuitBreaker, list[int]]:
    breaker = CircuitBreaker(failure_threshold=threshold, reset_timeout_seconds=60, clock=clock)
    recorded: list[int] = []
    consumer = StreamingConsumer(breaker, ConcurrencyLimiter(2), fragment_timeout_seconds=timeout, on_tokens=recorded.append)
    return consumer, breaker, recorded


async def _collect(stream: AsyncIterator[str]) -> list[str]:
    out: list[str] = []
    async with aclosing(stream) as s:
        async for fragment in s:
            out.append(fragment)
    return out


def _opener(model: FakeChatModel):
    return lambda: model.astream([AIMessageChunk(content="prompt")])


class TestMessageHelpers:
    def test_text_from_string_and_parts(self) -> None:
        assert message_text(AIMessageChunk(content="hi")) == "hi"
        assert message_text(AIMessageChunk(content=[{"type": "text", "text": "a"}, "b"])) == "ab"

    def test_tokens_from_usage(self) -> None:
        chunk = AIMessageChunk(
            content="x", usage_metadata={"input_tokens": 3, "output_tokens": 4, "total_tokens": 7}
        )
        assert message_tokens(chunk) == 7
        assert message_tokens(AIMessageChunk(content="x")) is None

    def test_estimate(self) -> None:
        assert estimate_tokens("") == 0
        assert estimate_tokens("abcdefgh") == 2


class TestStreamingConsumer:
    @pytest.mark.asyncio
    async def test_yields_fragments_in_order(self, clock: FakeClock) -> None:
        consumer, breaker, recorded = _consumer(clock)
        model = FakeChatModel(stream_script=["Hello ", "", "world"])
        fragments = await _collect(consumer.stream(_opener(model), FALLBACK))
        assert fragments == ["Hello ", "world"]
        assert breaker.state is CircuitState.CLOSED
        assert recorded == [estimate_tokens("Hello world")]
        assert model.stream_closed

    @pytest.mark.asyncio
    async def test_failure_before_content_yields_fallback(self, clock: FakeClock) -> None:
        consumer, breaker, _ = _consumer(clock)
        model = FakeChatModel(stream_script=[ConnectionError("refused")])
        fragments = await _collect(consumer.stream(_opener(model), FALLBACK))
        assert fragments == [FALLBACK]
        assert breaker.failure_count == 1

    @pytest.mark.asyncio
    async def test_failure_after_content_raises_with_partial(self, clock: FakeClock) -> None:
        consumer, _, _ = _consumer(clock)
        model = FakeChatModel(stream_script=["Part one. ", RuntimeError("503 upstream reset")])
        fragments: list[str] = []
        with pytest.raises(StreamInterruptedError) as exc_info:
            async with aclosing(consumer.stream(_opener(model), FALLBACK, Language.ES)) as stream:
                async for fragment in stream:
                    fragments.append(fragment)
        assert fragments == ["Part one. ", INTERRUPTION_NOTICE[Language.ES]]
        assert exc_info.value.partial_text == "Part one. "
        assert exc_info.value.kind is ErrorKind.UNKNOWN

    @pytest.mark.asyncio
    async def test_open_breaker_skips_upstream(self, clock: FakeClock) -> None:
        consumer, breaker, _ = _consumer(clock, threshold=1)
        breaker.before_call()
        breaker.record_failure()
        model = FakeChatModel(stream_script=["never"])
        fragments = await _collect(consumer.stream(_opener(model), FALLBACK))
        assert fragments == [FALLBACK]
        assert model.stream_calls == 0

    @pytest.mark.asyncio
    async def test_early_break_closes_upstream(self, clock: FakeClock) -> None:
        consumer, breaker, _ = _consumer(clock)
        model = FakeChatModel(stream_script=["a", "b", "c", "d"])
        async with aclosing(consumer.stream(_opener(model), FALLBACK)) as stream:
            async for fragment in stream:
                assert fragment == "a"
                break
        assert model.stream_closed
        assert breaker.failure_count == 0

    @pytest.mark.asyncio
    async def test_fragment_timeout_counts_as_failure(self, clock: FakeClock) -> None:
        consumer, breaker, _ = _consumer(clock, timeout=0.01)
        model = FakeChatModel(stream_script=["slow"], delay=1.0)
        fragments = await _collect(consumer.stream(_opener(model), FALLBACK))
        assert fragments == [FALLBACK]
        assert breaker.failure_count == 1

    @pytest.mark.asyncio
    async def test_cancellation_releases_probe(self, clock: FakeClock) -> None:
        consumer, breaker, _ = _consumer(clock, threshold=1)
        breaker.before_call()
        breaker.record_failure()
        clock.advance(61)
        model = FakeChatModel(stream_script=["a", "b"], delay=0.5)

        async def consume() -> list[str]:
            return await _collect(consumer.stream(_opener(model), FALLBACK))

        task = asyncio.create_task(consume())
        await asyncio.sleep(0.05)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert breaker.state is CircuitState.HALF_OPEN
        assert not breaker.is_open
