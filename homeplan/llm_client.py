"""
Resilient Gemini client for personalized home buying plans.

PlanningClient is the caller-facing API. Every upstream call goes through
the same resilience stack:

    cache → circuit breaker → retry/backoff → concurrency slot → timeout → Gemini

Design decisions:
  - generate_plan never surfaces an upstream failure; any terminal failure
    (classified or not) yields the deterministic fallback plan. Only invalid
    caller input raises.
  - Retry only retryable kinds (network, timeout, rate limit, 5xx, unknown)
  - The concurrency slot and the timeout apply per attempt, so backoff sleeps
    hold no slot
  - Streams are not retried; a failed stream degrades to fallback text or an
    interruption notice
  - Models are created lazily on first use so the key at request time is current
"""

from __future__ import annotations

import asyncio
import dataclasses
import random
import time
from collections.abc import AsyncIterator, Iterable
from contextlib import aclosing
from datetime import datetime, timezone
from typing import Any, Callable, Optional, Union

import structlog
from langchain_core.language_models import BaseChatModel
from langchain_core.messages import HumanMessage
from langchain_google_genai import ChatGoogleGenerativeAI, HarmBlockThreshold, HarmCategory
from pydantic import ValidationError

from homeplan.config import Settings, get_settings
from homeplan.errors import (
    ClassifiedError,
    ConfigurationError,
    ErrorKind,
    InputValidationError,
    StreamInterruptedError,
    classify_error,
)
from homeplan.fallback import synthesize_fallback_narrative, synthesize_fallback_plan
from homeplan.models import (
    ContentType,
    GenerationOptions,
    PersonalizedPlan,
    PlanInput,
    PromptTemplate,
    SectionPromptSpec,
    TokenUsageStats,
)
from homeplan.observability import metrics as obs_metrics
from homeplan.prompts.builder import PromptBuilder
from homeplan.prompts.engine import TemplateRegistry
from homeplan.resilience.cache import CacheStats, ResponseCache, fingerprint
from homeplan.resilience.circuit_breaker import CircuitBreaker
from homeplan.resilience.concurrency import ConcurrencyLimiter
from homeplan.resilience.retry import RetryController, SleepFn, call_with_timeout
from homeplan.response import finalize, plan_response_schema
from homeplan.streaming import StreamingConsumer, estimate_tokens, message_text, message_tokens

logger = structlog.get_logger()

PlanInputLike = Union[PlanInput, dict[str, Any]]

SAFETY_SETTINGS = {
    HarmCategory.HARM_CATEGORY_HARASSMENT: HarmBlockThreshold.BLOCK_MEDIUM_AND_ABOVE,
    HarmCategory.HARM_CATEGORY_HATE_SPEECH: HarmBlockThreshold.BLOCK_MEDIUM_AND_ABOVE,
    HarmCategory.HARM_CATEGORY_SEXUALLY_EXPLICIT: HarmBlockThreshold.BLOCK_MEDIUM_AND_ABOVE,
    HarmCategory.HARM_CATEGORY_DANGEROUS_CONTENT: HarmBlockThreshold.BLOCK_MEDIUM_AND_ABOVE,
}
GOOGLE_SEARCH_TOOL = {"google_search": {}}


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class PlanningClient:
    """
    Generates personalized plans and narrative analysis with Gemini.

    - State (cache, breaker, limiter, token stats, templates) is per instance.
    - A chat model may be injected; otherwise ChatGoogleGenerativeAI is built lazily.
    - clock drives cache expiry and the breaker; sleep and rng drive backoff.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        chat_model: Optional[BaseChatModel] = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], datetime] = _utc_now,
        sleep: SleepFn = asyncio.sleep,
        rng: Optional[random.Random] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._injected_model = chat_model
        self._models: dict[tuple[str, int], BaseChatModel] = {}
        self._wall_clock = wall_clock

        retry_cfg = self._settings.retry
        perf = self._settings.performance
        self._breaker = CircuitBreaker(
            failure_threshold=retry_cfg.circuit_breaker_threshold,
            reset_timeout_seconds=retry_cfg.circuit_breaker_reset_seconds,
            clock=clock,
        )
        self._retry = RetryController(retry_cfg, self._breaker, sleep=sleep, rng=rng)
        self._limiter = ConcurrencyLimiter(perf.max_concurrent_requests)
        self._cache = ResponseCache(
            expiration_seconds=perf.cache_expiration_seconds,
            enabled=perf.enable_caching,
            clock=clock,
        )
        self._token_stats = TokenUsageStats()
        self._streaming = StreamingConsumer(
            self._breaker,
            self._limiter,
            fragment_timeout_seconds=perf.request_timeout_seconds,
            on_tokens=self._record_tokens,
        )

        self._templates = TemplateRegistry(fallback_template_id=self._settings.prompt.fallback_template)
        extra_templates = self._settings.prompt_templates.get("templates") or []
        loaded = self._templates.register_many(extra_templates)
        self._prompts = PromptBuilder(self._templates, enable_templating=self._settings.prompt.enable_templating)

        api_key = self._settings.gemini.api_key
        logger.info(
            "planning_client_initialized",
            model=self._settings.gemini.model,
            injected_model=chat_model is not None,
            key_suffix=f"...{api_key[-4:]}" if api_key else None,
            max_retries=retry_cfg.max_retries,
            breaker_threshold=retry_cfg.circuit_breaker_threshold,
            max_concurrent=perf.max_concurrent_requests,
            caching=perf.enable_caching,
            extra_templates=loaded,
        )

    # ── Model plumbing ──

    def _model_for(self, model_name: Optional[str], max_output_tokens: Optional[int]) -> BaseChatModel:
        """Injected model, or a cached ChatGoogleGenerativeAI for (model, max tokens)."""
        if self._injected_model is not None:
            return self._injected_model
        g = self._settings.gemini
        if not g.api_key:
            raise ClassifiedError(
                "GEMINI_API_KEY is not configured", ErrorKind.AUTH, False, code="MISSING_API_KEY"
            )
        name = model_name or g.model
        tokens = max_output_tokens or g.max_output_tokens
        key = (name, tokens)
        if key not in self._models:
            kwargs: dict[str, Any] = {
                "model": name,
                "google_api_key": g.api_key,
                "temperature": g.temperature,
                "top_p": g.top_p,
                "top_k": g.top_k,
                "max_output_tokens": tokens,
                # Retries are owned by RetryController
                "max_retries": 0,
                "safety_settings": SAFETY_SETTINGS,
            }
            if g.thinking_budget is not None:
                kwargs["thinking_budget"] = g.thinking_budget
            self._models[key] = ChatGoogleGenerativeAI(**kwargs)
            logger.debug("chat_model_created", model=name, max_output_tokens=tokens)
        return self._models[key]

    def _bound_model(
        self,
        *,
        structured: bool,
        use_grounding: bool,
        model_name: Optional[str] = None,
        max_output_tokens: Optional[int] = None,
    ) -> Any:
        model = self._model_for(model_name, max_output_tokens)
        bindings: dict[str, Any] = {}
        if structured and self._settings.gemini.use_structured_output:
            bindings["response_mime_type"] = "application/json"
            bindings["response_schema"] = plan_response_schema()
        if use_grounding:
            bindings["tools"] = [GOOGLE_SEARCH_TOOL]
        return model.bind(**bindings) if bindings else model

    def _model_label(self, model_name: Optional[str]) -> str:
        return model_name or self._settings.gemini.model

    def _record_tokens(self, tokens: int) -> None:
        if self._settings.performance.enable_token_monitoring and tokens > 0:
            self._token_stats.record(tokens)

    async def _invoke(self, model: Any, prompt: str, label: str, operation: str) -> tuple[str, int]:
        """One upstream call. Raises on transport errors and empty output."""
        async with obs_metrics.track_llm_call(model=label, operation=operation):
            response = await model.ainvoke([HumanMessage(content=prompt)])
        text = message_text(response)
        if not text.strip():
            raise ClassifiedError("Empty response from Gemini API", ErrorKind.UNKNOWN, True, code="EMPTY_RESPONSE")
        tokens = message_tokens(response) or estimate_tokens(prompt + text)
        self._record_tokens(tokens)
        obs_metrics.record_llm_tokens(model=label, operation=operation, tokens=tokens)
        return text, tokens

    async def _call_with_resilience(self, model: Any, prompt: str, label: str, operation: str) -> tuple[str, int]:
        timeout = self._settings.performance.request_timeout_seconds

        def invoke() -> Any:
            return self._invoke(model, prompt, label, operation)

        async def attempt() -> tuple[str, int]:
            async with self._limiter.acquire():
                return await call_with_timeout(invoke, timeout)

        return await self._retry.execute(attempt)

    # ── Input ──

    def _validate_input(self, plan_input: PlanInputLike, options: GenerationOptions) -> PlanInput:
        if isinstance(plan_input, PlanInput):
            validated = plan_input
        else:
            try:
                validated = PlanInput.model_validate(plan_input)
            except ValidationError as exc:
                details = [f"{'.'.join(str(p) for p in e['loc'])}: {e['msg']}" for e in exc.errors()]
                logger.warning("plan_input_invalid", error_count=len(details))
                raise InputValidationError("Invalid plan input", details) from exc
        if options.language is not None and options.language != validated.language:
            validated = validated.with_language(options.language)
        return validated

    # ── Plans ──

    async def generate_plan(
        self,
        plan_input: PlanInputLike,
        options: Optional[GenerationOptions] = None,
    ) -> PersonalizedPlan:
        """
        Generate a validated personalized plan.

        Raises:
            InputValidationError: the input does not satisfy the PlanInput schema.
        Any upstream failure yields the fallback plan instead of raising.
        """
        options = options or GenerationOptions()
        self._cache.sweep()
        validated = self._validate_input(plan_input, options)
        key = fingerprint(validated, options.use_grounding)

        cached = self._cache.get(key)
        if cached is not None:
            logger.info("plan_cache_hit", fingerprint=key)
            obs_metrics.record_cache("hit")
            return finalize(cached, validated, clock=self._wall_clock)
        obs_metrics.record_cache("miss")

        prompt = self._prompts.build(validated, ContentType.STRUCTURED, options.use_grounding)
        label = self._model_label(options.model_override)
        started = time.perf_counter()
        try:
            model = self._bound_model(
                structured=True,
                use_grounding=options.use_grounding,
                model_name=options.model_override,
                max_output_tokens=options.max_output_tokens,
            )
            raw, tokens = await self._call_with_resilience(model, prompt, label, "plan")
        except Exception as exc:
            classified = classify_error(exc)
            logger.warning("plan_generation_fallback", fingerprint=key, **classified.log_fields())
            obs_metrics.record_fallback("plan", classified.kind.value)
            return synthesize_fallback_plan(validated, now=self._wall_clock())

        logger.info(
            "plan_generated",
            fingerprint=key,
            model=label,
            grounding=options.use_grounding,
            chars=len(raw),
            tokens=tokens,
            duration_seconds=round(time.perf_counter() - started, 3),
        )
        self._cache.put(key, raw, approx_token_count=tokens)
        obs_metrics.record_cache("store")
        return finalize(raw, validated, clock=self._wall_clock)

    async def generate_narrative(
        self,
        plan_input: PlanInputLike,
        options: Optional[GenerationOptions] = None,
    ) -> str:
        """Non-streaming markdown analysis; the fallback narrative on any upstream failure."""
        options = options or GenerationOptions()
        validated = self._validate_input(plan_input, options)
        prompt = self._prompts.build(validated, ContentType.NARRATIVE, options.use_grounding)
        label = self._model_label(options.model_override)
        try:
            model = self._bound_model(
                structured=False,
                use_grounding=options.use_grounding,
                model_name=options.model_override,
                max_output_tokens=options.max_output_tokens,
            )
            text, _ = await self._call_with_resilience(model, prompt, label, "narrative")
        except Exception as exc:
            classified = classify_error(exc)
            logger.warning("narrative_generation_fallback", **classified.log_fields())
            obs_metrics.record_fallback("narrative", classified.kind.value)
            return synthesize_fallback_narrative(validated)
        return text

    # ── Streaming ──

    async def stream_report_section(
        self,
        plan_input: PlanInputLike,
        section: Optional[SectionPromptSpec] = None,
        options: Optional[GenerationOptions] = None,
    ) -> AsyncIterator[str]:
        """
        Stream one narrative section as text fragments.

        Raises:
            InputValidationError: on first iteration, for invalid input.
            StreamInterruptedError: the stream failed after yielding content;
                the interruption notice is yielded before the error.
        """
        options = options or GenerationOptions()
        section = section or SectionPromptSpec()
        validated = self._validate_input(plan_input, options)
        fallback_text = synthesize_fallback_narrative(validated)

        if section.prompt:
            # Custom prompts skip templating and grounding
            use_grounding = False
            prompt = section.prompt
        else:
            use_grounding = options.use_grounding if section.use_grounding is None else section.use_grounding
            prompt = self._prompts.build(validated, ContentType.NARRATIVE, use_grounding, section)

        try:
            model = self._bound_model(
                structured=False,
                use_grounding=use_grounding,
                model_name=section.model_override or options.model_override,
                max_output_tokens=section.max_output_tokens or options.max_output_tokens,
            )
        except Exception as exc:
            classified = classify_error(exc)
            logger.warning("stream_model_unavailable", section=section.section_id, **classified.log_fields())
            obs_metrics.record_fallback("stream", classified.kind.value)
            yield fallback_text
            return

        def open_stream() -> AsyncIterator[Any]:
            return model.astream([HumanMessage(content=prompt)])

        fragments = self._streaming.stream(open_stream, fallback_text, validated.language, label=section.section_id)
        async with aclosing(fragments) as stream:
            async for fragment in stream:
                yield fragment

    async def generate_report_sections(
        self,
        plan_input: PlanInputLike,
        sections: Iterable[SectionPromptSpec],
        *,
        parallel: bool = True,
        options: Optional[GenerationOptions] = None,
    ) -> dict[str, str]:
        """Consume several section streams; section_id → full text (partial text plus notice if interrupted)."""
        options = options or GenerationOptions()
        validated = self._validate_input(plan_input, options)
        specs = list(sections)

        async def collect(spec: SectionPromptSpec) -> tuple[str, str]:
            parts: list[str] = []
            try:
                async with aclosing(self.stream_report_section(validated, spec, options)) as stream:
                    async for fragment in stream:
                        parts.append(fragment)
            except StreamInterruptedError as exc:
                logger.warning(
                    "report_section_interrupted",
                    section=spec.section_id,
                    partial_chars=len(exc.partial_text),
                    error_kind=exc.kind.value,
                )
            return spec.section_id, "".join(parts)

        if parallel:
            results = await asyncio.gather(*(collect(spec) for spec in specs))
        else:
            results = [await collect(spec) for spec in specs]
        logger.info("report_sections_generated", sections=len(results), parallel=parallel)
        return dict(results)

    # ── Templates ──

    def register_template(self, template: PromptTemplate) -> None:
        """Raises TemplateError when the body references undeclared variables."""
        self._templates.register(template)
        logger.info("custom_template_registered", template_id=template.id, name=template.name)

    def get_template(self, template_id: str) -> Optional[PromptTemplate]:
        return self._templates.get(template_id)

    def list_templates(self) -> list[PromptTemplate]:
        return self._templates.list()

    # ── Introspection ──

    def token_usage_stats(self) -> TokenUsageStats:
        return dataclasses.replace(self._token_stats)

    @property
    def circuit_state(self) -> dict[str, Any]:
        return self._breaker.snapshot()

    @property
    def cache_stats(self) -> CacheStats:
        return self._cache.stats

    @property
    def concurrency_limiter(self) -> ConcurrencyLimiter:
        return self._limiter


def create_planning_client(settings: Optional[Settings] = None, **kwargs: Any) -> PlanningClient:
    """Build a client from settings; raises ConfigurationError when no API key is configured."""
    settings = settings or get_settings()
    if not settings.gemini.api_key:
        raise ConfigurationError("GEMINI_API_KEY environment variable is required")
    return PlanningClient(settings, **kwargs)
