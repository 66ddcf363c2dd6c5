"""
Prometheus metrics for the plan generation client.

All metrics are no-op when observability.metrics_enabled is False.
Exposes track_llm_call, record_llm_error, record_llm_tokens, record_cache,
set_circuit_state, record_fallback, record_retry, start_server.
"""

from __future__ import annotations

import contextlib
import threading
import time
from typing import Any

import structlog
from prometheus_client import (
    Counter,
    Gauge,
    Histogram,
    start_http_server as prometheus_start_http_server,
)

logger = structlog.get_logger()

_CIRCUIT_STATE_VALUES = {"CLOSED": 0, "HALF_OPEN": 1, "OPEN": 2}


def _enabled() -> bool:
    from homeplan.config import get_settings

    return bool(get_settings().observability.metrics_enabled)


# Lazy registry: only create metrics when enabled and first used
_metrics_created = False


def _ensure_metrics() -> bool:
    global _metrics_created
    if _metrics_created or not _enabled():
        return _metrics_created
    _create_metrics()
    _metrics_created = True
    return True


def _create_metrics() -> None:
    """Create all Prometheus metrics (called once when enabled)."""
    _llm_duration = Histogram(
        "homeplan_llm_call_duration_seconds",
        "Upstream call latency",
        ["model", "operation"],
        buckets=[0.5, 1, 2, 5, 10, 30, 60],
    )
    _llm_tokens = Counter(
        "homeplan_llm_tokens_total",
        "Tokens consumed",
        ["model", "operation"],
    )
    _llm_errors = Counter(
        "homeplan_llm_errors_total",
        "Failed upstream attempts by error kind",
        ["error_kind"],
    )
    _retries = Counter(
        "homeplan_llm_retries_total",
        "Retries scheduled by error kind",
        ["error_kind"],
    )
    _cache = Counter(
        "homeplan_cache_lookups_total",
        "Response cache lookups",
        ["result"],
    )
    _circuit_state = Gauge(
        "homeplan_circuit_breaker_state",
        "Circuit breaker state (0=closed, 1=half-open, 2=open)",
        [],
    )
    _fallbacks = Counter(
        "homeplan_fallback_total",
        "Fallback content served instead of upstream output",
        ["content", "reason"],
    )

    _registry = {
        "llm_duration": _llm_duration,
        "llm_tokens": _llm_tokens,
        "llm_errors": _llm_errors,
        "retries": _retries,
        "cache": _cache,
        "circuit_state": _circuit_state,
        "fallbacks": _fallbacks,
    }
    setattr(_MetricsCollector, "_registry", _registry)


class _MetricsCollector:
    """Collector that delegates to Prometheus when enabled, no-op otherwise."""

    _registry: dict[str, Any] = {}

    def _get(self, name: str) -> Any:
        _ensure_metrics()
        return self._registry.get(name)

    # --- Upstream calls ---
    @contextlib.asynccontextmanager
    async def track_llm_call(self, model: str = "", operation: str = ""):
        m = self._get("llm_duration")
        start = time.perf_counter()
        try:
            yield
        finally:
            if m:
                m.labels(model=model or "unknown", operation=operation or "unknown").observe(
                    time.perf_counter() - start
                )

    def record_llm_error(self, error_kind: str) -> None:
        c = self._get("llm_errors")
        if c:
            c.labels(error_kind=error_kind or "unknown").inc()

    def record_llm_tokens(self, model: str = "", operation: str = "", tokens: int = 0) -> None:
        t = self._get("llm_tokens")
        if t and tokens > 0:
            t.labels(model=model or "unknown", operation=operation or "unknown").inc(tokens)

    def record_retry(self, error_kind: str) -> None:
        c = self._get("retries")
        if c:
            c.labels(error_kind=error_kind or "unknown").inc()

    # --- Cache / breaker / fallback ---
    def record_cache(self, result: str) -> None:
        """result: hit, miss or store."""
        c = self._get("cache")
        if c:
            c.labels(result=result).inc()

    def set_circuit_state(self, state: str) -> None:
        g = self._get("circuit_state")
        if g:
            g.set(_CIRCUIT_STATE_VALUES.get(state, 0))

    def record_fallback(self, content: str, reason: str = "") -> None:
        c = self._get("fallbacks")
        if c:
            c.labels(content=content or "plan", reason=(reason or "unknown")[:32]).inc()

    def start_server(self, port: int = 8000) -> None:
        if not _enabled():
            return
        _ensure_metrics()

        def run() -> None:
            try:
                prometheus_start_http_server(port, addr="0.0.0.0")
            except OSError as exc:
                logger.warning("metrics_server_failed", port=port, error=str(exc))

        t = threading.Thread(target=run, daemon=True)
        t.start()


metrics = _MetricsCollector()
