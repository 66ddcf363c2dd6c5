"""Shared pytest fixtures for plan client tests."""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator
from datetime import datetime, timezone
from typing import Any, Optional, Union

import pytest
from langchain_core.messages import AIMessage, AIMessageChunk

from homeplan.config import GeminiConfig, ObservabilityConfig, PerformanceConfig, PromptConfig, RetryConfig, Settings
from homeplan.fallback import synthesize_fallback_plan
from homeplan.models import Language, PlanInput

FIXED_NOW = datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc)

Scripted = Union[str, BaseException]


class FakeClock:
    """Monotonic clock the test advances by hand."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingSleep:
    """Backoff sleep that returns immediately and remembers each delay."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


class FakeChatModel:
    """
    Stand-in for a LangChain chat model.

    responses: consumed one per ainvoke call; an exception instance is raised.
    stream_script: fragments for astream; an exception instance is raised at that point.
    """

    def __init__(
        self,
        responses: Optional[list[Scripted]] = None,
        stream_script: Optional[list[Scripted]] = None,
        tokens: Optional[int] = None,
        delay: float = 0.0,
    ) -> None:
        self.responses = list(responses or [])
        self.stream_script = list(stream_script or [])
        self.tokens = tokens
        self.delay = delay
        self.calls = 0
        self.stream_calls = 0
        self.prompts: list[str] = []
        self.bindings: list[dict[str, Any]] = []
        self.stream_closed = False
        self.in_flight = 0
        self.peak_in_flight = 0

    def bind(self, **kwargs: Any) -> FakeChatModel:
        self.bindings.append(kwargs)
        return self

    async def ainvoke(self, messages: list[Any]) -> AIMessage:
        self.calls += 1
        self.prompts.append(messages[-1].content)
        self.in_flight += 1
        self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            item = self.responses.pop(0) if self.responses else ""
        finally:
            self.in_flight -= 1
        if isinstance(item, BaseException):
            raise item
        usage = None
        if self.tokens:
            usage = {"input_tokens": self.tokens // 2, "output_tokens": self.tokens - self.tokens // 2, "total_tokens": self.tokens}
        return AIMessage(content=item, usage_metadata=usage)

    async def astream(self, messages: list[Any]) -> AsyncIterator[AIMessageChunk]:
        self.stream_calls += 1
        self.prompts.append(messages[-1].content)
        try:
            for item in self.stream_script:
                if self.delay:
                    await asyncio.sleep(self.delay)
                if isinstance(item, BaseException):
                    raise item
                yield AIMessageChunk(content=item)
        finally:
            self.stream_closed = True


def make_settings(**overrides: Any) -> Settings:
    """Fast, deterministic settings: tiny delays, no jitter, metrics off."""
    sections = {
        "gemini": GeminiConfig(api_key="test-key", use_structured_output=True),
        "retry": RetryConfig(
            max_retries=2,
            base_delay=0.01,
            max_delay=0.1,
            backoff_multiplier=2.0,
            max_jitter=0.0,
            circuit_breaker_threshold=5,
            circuit_breaker_reset_seconds=60.0,
        ),
        "performance": PerformanceConfig(
            enable_caching=True,
            cache_expiration_seconds=300.0,
            request_timeout_seconds=5.0,
            max_concurrent_requests=10,
        ),
        "prompt": PromptConfig(),
        "observability": ObservabilityConfig(metrics_enabled=False),
    }
    sections.update(overrides)
    return Settings(**sections)


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def plan_input_data() -> dict[str, Any]:
    """Camel-case request payload as a front end would send it."""
    return {
        "userProfile": {
            "incomeDebt": {
                "annualIncome": 72000,
                "monthlyDebts": 600,
                "downPaymentAmount": 20000,
                "creditScore": "good",
            },
            "employment": {
                "employmentStatus": "employed",
                "employerName": "Acme Software",
                "jobTitle": "Engineer",
                "yearsAtJob": 3,
            },
            "location": {
                "preferredState": "TX",
                "preferredCity": "Austin",
                "maxBudget": 350000,
                "firstTimeBuyer": True,
            },
            "contact": {"firstName": "Sam", "email": "sam@example.com"},
        },
        "preferences": {"language": "en"},
    }


@pytest.fixture
def plan_input(plan_input_data: dict[str, Any]) -> PlanInput:
    return PlanInput.model_validate(plan_input_data)


@pytest.fixture
def plan_input_es(plan_input: PlanInput) -> PlanInput:
    return plan_input.with_language(Language.ES)


@pytest.fixture
def valid_plan_json(plan_input: PlanInput) -> str:
    """A schema-valid plan as the upstream would return it."""
    data = synthesize_fallback_plan(plan_input, now=FIXED_NOW).model_dump(by_alias=True, mode="json")
    data.update({"id": "plan-upstream-1", "version": "1.0", "confidence": 0.85})
    return json.dumps(data)
