"""
Home buying plan client: command-line entry point.

Usage:
    python -m homeplan.main plan --income 72000 --debts 600 --down 20000 --city Austin --state TX --budget 350000
    python -m homeplan.main plan --input profile.json --es --no-grounding
    python -m homeplan.main stream --input profile.json --section affordability "Affordability"
    python -m homeplan.main check
"""

from __future__ import annotations

# Load .env before any other imports so the SDK never sees a stale key
import homeplan.config  # noqa: F401, E402

import argparse
import asyncio
import json
import logging
import sys
import time
from contextlib import aclosing
from pathlib import Path
from typing import Any

import structlog
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.theme import Theme

from homeplan.config import get_settings
from homeplan.errors import ConfigurationError, InputValidationError, StreamInterruptedError
from homeplan.llm_client import PlanningClient, create_planning_client
from homeplan.models import GenerationOptions, Language, PersonalizedPlan, SectionPromptSpec
from homeplan.observability import metrics as obs_metrics

_CUSTOM_THEME = Theme({
    "log.info":    "dim white",
    "log.warning": "bold #f59e0b",
    "log.error":   "bold #dc2626",
    "log.debug":   "dim #64748b",
    "primary":     "#0ea5e9",
    "fallback":    "bold yellow",
})

console = Console(theme=_CUSTOM_THEME, highlight=False, stderr=True)
out = Console(highlight=False)


class _RichStructlogRenderer:
    """Structlog processor that renders log lines via Rich on stderr."""

    _SKIP_KEYS = frozenset({"event", "level", "_record"})

    def __call__(self, logger_: object, method: str, event_dict: dict) -> str:  # noqa: ARG002
        event = event_dict.get("event", "")
        level = event_dict.get("level", method).lower()

        if event == "circuit_breaker_transition":
            console.print(
                f"  [bold #f59e0b]circuit breaker[/bold #f59e0b] "
                f"{event_dict.get('from_state')} → [bold]{event_dict.get('to_state')}[/bold]"
            )
            raise structlog.DropEvent()

        kv_parts = []
        for k, v in event_dict.items():
            if k in self._SKIP_KEYS or v is None:
                continue
            vs = str(v)
            if len(vs) > 120:
                vs = vs[:117] + "…"
            kv_parts.append(f"[#64748b]{k}[/#64748b]=[#94a3b8]{vs}[/#94a3b8]")
        kv_str = "  ".join(kv_parts)

        if level == "warning":
            prefix, style = "⚠", "log.warning"
        elif level in ("error", "critical"):
            prefix, style = "✗", "log.error"
        elif level == "debug":
            prefix, style = "·", "log.debug"
        else:
            prefix, style = "▪", "primary"
        console.print(f"  [{style}]{prefix} {event}[/{style}]  {kv_str}")
        raise structlog.DropEvent()


def configure_logging(level: str = "INFO") -> None:
    structlog.configure(
        processors=[
            structlog.stdlib.add_log_level,
            _RichStructlogRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(logging.getLevelName(level.upper())),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
    )


logger = structlog.get_logger()


# ── Input ────────────────────────────────────────────────────────────────────


def _input_from_args(args: argparse.Namespace) -> dict[str, Any]:
    if args.input:
        data = json.loads(Path(args.input).read_text(encoding="utf-8"))
    else:
        data = {
            "userProfile": {
                "incomeDebt": {
                    "annualIncome": args.income,
                    "monthlyDebts": args.debts,
                    "downPaymentAmount": args.down,
                    "creditScore": args.credit,
                },
                "employment": {"employmentStatus": args.employment},
                "location": {
                    "preferredCity": args.city,
                    "preferredState": args.state,
                    "maxBudget": args.budget,
                    "firstTimeBuyer": args.first_time,
                },
            },
        }
    if args.es:
        data.setdefault("preferences", {})["language"] = Language.ES.value
    return data


def _options_from_args(args: argparse.Namespace) -> GenerationOptions:
    return GenerationOptions(use_grounding=not args.no_grounding, model_override=args.model)


def _build_client() -> PlanningClient:
    try:
        return create_planning_client()
    except ConfigurationError as exc:
        console.print(f"[log.warning]{exc}; continuing with fallback output only[/log.warning]")
        return PlanningClient()


# ── Commands ─────────────────────────────────────────────────────────────────


def _display_plan_summary(plan: PersonalizedPlan, elapsed: float) -> None:
    est = plan.affordability_estimate
    table = Table(title="Plan Summary", border_style="#0ea5e9", title_style="bold #0ea5e9")
    table.add_column("Metric", style="bold #94a3b8")
    table.add_column("Value", justify="right", style="#e2e8f0")
    table.add_row("Duration", f"{elapsed:.1f}s")
    table.add_row("Source", "[fallback]fallback[/fallback]" if plan.is_fallback else "gemini")
    table.add_row("Max Home Price", f"${est.max_home_price:,.0f}")
    table.add_row("Recommended Price", f"${est.recommended_price:,.0f}")
    table.add_row("Monthly Payment", f"${est.budget_breakdown.monthly_payment:,.0f}")
    table.add_row("Risk Level", est.risk_assessment.risk_level.value)
    table.add_row("Programs", ", ".join(p.program_type.value for p in plan.program_recommendations))
    table.add_row("Confidence", f"{plan.confidence:.2f}")
    console.print(table)


async def run_plan(args: argparse.Namespace) -> int:
    client = _build_client()
    start = time.perf_counter()
    try:
        plan = await client.generate_plan(_input_from_args(args), _options_from_args(args))
    except InputValidationError as exc:
        console.print(Panel("\n".join(exc.details) or exc.message, title="Invalid input", border_style="#dc2626"))
        return 2
    out.print_json(plan.model_dump_json(by_alias=True))
    _display_plan_summary(plan, time.perf_counter() - start)
    return 0


async def run_stream(args: argparse.Namespace) -> int:
    client = _build_client()
    section = SectionPromptSpec(section_id=args.section, title=args.title or "", instructions=args.instructions or "")
    try:
        async with aclosing(client.stream_report_section(_input_from_args(args), section, _options_from_args(args))) as stream:
            async for fragment in stream:
                out.print(fragment, end="", markup=False, soft_wrap=True)
    except InputValidationError as exc:
        console.print(Panel("\n".join(exc.details) or exc.message, title="Invalid input", border_style="#dc2626"))
        return 2
    except StreamInterruptedError as exc:
        logger.error("stream_interrupted", partial_chars=len(exc.partial_text), error_kind=exc.kind.value)
        return 1
    out.print()
    stats = client.token_usage_stats()
    logger.info("token_usage", total=stats.total_tokens_used, requests=stats.request_count)
    return 0


_CHECK_INPUT = {
    "userProfile": {
        "incomeDebt": {"annualIncome": 72000, "monthlyDebts": 600, "downPaymentAmount": 20000, "creditScore": "good"},
        "employment": {"employmentStatus": "employed"},
        "location": {"preferredCity": "Austin", "preferredState": "TX", "maxBudget": 350000},
    },
}


async def run_check() -> int:
    """Verify connectivity: a real plan means the upstream answered."""
    settings = get_settings()
    table = Table(title="Configuration", border_style="#64748b")
    table.add_column("Setting", style="bold")
    table.add_column("Value", justify="right")
    table.add_row("Model", settings.gemini.model)
    table.add_row("API key", "set" if settings.gemini.api_key else "[log.error]missing[/log.error]")
    table.add_row("Max retries", str(settings.retry.max_retries))
    table.add_row("Timeout", f"{settings.performance.request_timeout_seconds:g}s")
    table.add_row("Caching", str(settings.performance.enable_caching))
    console.print(table)

    client = _build_client()
    plan = await client.generate_plan(_CHECK_INPUT, GenerationOptions(use_grounding=False))
    if plan.is_fallback:
        console.print(Panel(f"Fallback plan produced. Circuit: {client.circuit_state['state']}", border_style="#f59e0b"))
        return 1
    console.print(Panel(f"Gemini answered with plan {plan.id}", border_style="#0ea5e9"))
    return 0


def _add_input_arguments(p: argparse.ArgumentParser) -> None:
    p.add_argument("--input", help="JSON file with a PlanInput (camelCase keys)")
    p.add_argument("--income", type=float, default=72000, help="Annual income")
    p.add_argument("--debts", type=float, default=600, help="Monthly debts")
    p.add_argument("--down", type=float, default=20000, help="Down payment amount")
    p.add_argument("--credit", default="good", help="Credit score band")
    p.add_argument("--employment", default="employed", help="Employment status")
    p.add_argument("--city", default="Austin")
    p.add_argument("--state", default="TX")
    p.add_argument("--budget", type=float, default=350000, help="Max budget")
    p.add_argument("--first-time", action="store_true", help="First-time buyer")
    p.add_argument("--es", action="store_true", help="Spanish output")
    p.add_argument("--no-grounding", action="store_true", help="Disable Google Search grounding")
    p.add_argument("--model", default=None, help="Model override")


def main() -> None:
    settings = get_settings()
    configure_logging(settings.observability.log_level)
    obs_metrics.start_server(settings.observability.metrics_port)

    parser = argparse.ArgumentParser(description="Home buying plan generator")
    sub = parser.add_subparsers(dest="command")

    plan = sub.add_parser("plan", help="Generate a personalized plan (JSON)")
    _add_input_arguments(plan)

    stream = sub.add_parser("stream", help="Stream a narrative report section")
    _add_input_arguments(stream)
    stream.add_argument("--section", default="analysis", help="Section id")
    stream.add_argument("--title", help="Section title")
    stream.add_argument("--instructions", help="Extra section instructions")

    sub.add_parser("check", help="Check configuration and connectivity")

    args = parser.parse_args()
    if args.command == "plan":
        sys.exit(asyncio.run(run_plan(args)))
    elif args.command == "stream":
        sys.exit(asyncio.run(run_stream(args)))
    elif args.command == "check":
        sys.exit(asyncio.run(run_check()))
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
