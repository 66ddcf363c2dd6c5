"""
Response validation: raw upstream text → schema-valid PersonalizedPlan.

Parsing is strict first. If that fails, one cleanup pass strips markdown
fences and prose around the outermost JSON object, removes trailing commas,
and finally hands the text to json-repair; then parsing is tried once more.
Anything that still does not parse or validate becomes the fallback plan, so
finalize() never raises.
"""

from __future__ import annotations

import json
import re
from datetime import datetime, timezone
from typing import Any, Callable, Optional

import structlog
from json_repair import repair_json
from pydantic import ValidationError

from homeplan.fallback import synthesize_fallback_plan
from homeplan.models import PersonalizedPlan, PlanInput
from homeplan.observability import metrics as obs_metrics
from homeplan.resilience.cache import fingerprint

logger = structlog.get_logger()

DEFAULT_PLAN_VERSION = "1.0"

_FENCE_OPEN_RE = re.compile(r"^\s*```(?:json)?\s*\n?", re.IGNORECASE)
_TRAILING_COMMA_RE = re.compile(r",\s*([}\]])")


def _strip_json_fences(raw: str) -> str:
    """Remove markdown code fences and any prose before the first fence."""
    cleaned = raw.strip()
    fence_at = cleaned.find("```")
    if fence_at > 0:
        cleaned = cleaned[fence_at:]
    cleaned = _FENCE_OPEN_RE.sub("", cleaned)
    if "```" in cleaned:
        cleaned = cleaned.split("```")[0]
    return cleaned.strip()


def _outermost_object(text: str) -> str:
    """Slice from the first '{' to the last '}'; prose around the object is dropped."""
    start = text.find("{")
    end = text.rfind("}")
    if start < 0 or end <= start:
        return text
    return text[start : end + 1]


def _sanitize_json(text: str) -> str:
    """Fix trailing commas, the most common LLM JSON error."""
    return _TRAILING_COMMA_RE.sub(r"\1", text)


def parse_json_object(raw: str) -> Optional[dict[str, Any]]:
    """Strict parse, then one cleanup pass and reparse. None if no object can be recovered."""
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        data = None
    if isinstance(data, dict):
        return data

    cleaned = _sanitize_json(_outermost_object(_strip_json_fences(raw or "")))
    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError:
        data = repair_json(cleaned, return_objects=True)
        if isinstance(data, dict) and data:
            logger.info("json_repaired", original_length=len(raw or ""), keys=len(data))
    return data if isinstance(data, dict) and data else None


def _backfill_metadata(data: dict[str, Any], plan_input: PlanInput, now: datetime) -> dict[str, Any]:
    timestamp = now.isoformat().replace("+00:00", "Z")
    filled = dict(data)
    filled.setdefault("id", f"plan-{fingerprint(plan_input, use_grounding=False)}")
    filled.setdefault("userId", plan_input.user_id)
    filled.setdefault("generatedAt", timestamp)
    filled.setdefault("lastUpdated", timestamp)
    filled.setdefault("version", DEFAULT_PLAN_VERSION)
    filled.setdefault("language", plan_input.language.value)
    return filled


def finalize(
    raw: str,
    plan_input: PlanInput,
    *,
    clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
) -> PersonalizedPlan:
    """Turn raw upstream text into a validated plan, or the fallback plan."""
    now = clock()
    data = parse_json_object(raw)
    if data is None:
        logger.warning("plan_parse_failed", preview=(raw or "")[:200])
        obs_metrics.record_fallback("plan", "unparseable")
        return synthesize_fallback_plan(plan_input, now=now)

    try:
        plan = PersonalizedPlan.model_validate(_backfill_metadata(data, plan_input, now))
    except ValidationError as exc:
        logger.warning(
            "plan_validation_failed",
            error_count=exc.error_count(),
            errors=[f"{'.'.join(str(p) for p in e['loc'])}: {e['msg']}" for e in exc.errors()[:10]],
        )
        obs_metrics.record_fallback("plan", "schema_invalid")
        return synthesize_fallback_plan(plan_input, now=now)

    logger.info("plan_validated", plan_id=plan.id, programs=len(plan.program_recommendations))
    return plan


def _strip_titles(schema: Any) -> Any:
    # A string "title" is schema metadata; a dict "title" is a property named title
    if isinstance(schema, dict):
        return {k: _strip_titles(v) for k, v in schema.items() if not (k == "title" and isinstance(v, str))}
    if isinstance(schema, list):
        return [_strip_titles(v) for v in schema]
    return schema


def _inline_refs(schema: Any, defs: dict[str, Any]) -> Any:
    if isinstance(schema, dict):
        ref = schema.get("$ref")
        if isinstance(ref, str):
            return _inline_refs(defs[ref.rsplit("/", 1)[-1]], defs)
        return {k: _inline_refs(v, defs) for k, v in schema.items()}
    if isinstance(schema, list):
        return [_inline_refs(v, defs) for v in schema]
    return schema


_UNSUPPORTED_SCHEMA_KEYS = frozenset({"default", "maxItems", "minItems", "minLength", "exclusiveMinimum"})


def _simplify(schema: Any) -> Any:
    if isinstance(schema, dict):
        # Optional[X] renders as anyOf [X, null]; keep X
        if "anyOf" in schema:
            options = [o for o in schema["anyOf"] if o.get("type") != "null"]
            merged = {**(options[0] if options else {}), **{k: v for k, v in schema.items() if k != "anyOf"}}
            return _simplify(merged)
        return {k: _simplify(v) for k, v in schema.items() if k not in _UNSUPPORTED_SCHEMA_KEYS}
    if isinstance(schema, list):
        return [_simplify(v) for v in schema]
    return schema


def plan_response_schema() -> dict[str, Any]:
    """Simplified, reference-free JSON schema of PersonalizedPlan for structured output."""
    schema = PersonalizedPlan.model_json_schema(by_alias=True)
    defs = schema.pop("$defs", {})
    inlined = _inline_refs(schema, defs)
    return _simplify(_strip_titles(inlined))
