"""Tests for locally synthesized fallback plans and narratives."""

import pytest

from homeplan.fallback import (
    FALLBACK_CONFIDENCE,
    FALLBACK_VERSION,
    compute_affordability,
    synthesize_fallback_narrative,
    synthesize_fallback_plan,
)
from homeplan.models import DEFAULT_PLAN_CONFIDENCE, Language, PlanInput, ProgramType, RiskLevel

from .conftest import FIXED_NOW


class TestAffordability:
    def test_28_36_rule(self, plan_input: PlanInput) -> None:
        a = compute_affordability(plan_input)
        assert a.monthly_income == pytest.approx(6000)
        assert a.max_monthly_payment == pytest.approx(1080)
        assert a.max_home_price == pytest.approx(1080 * 12 * 4)
        assert a.recommended_price == pytest.approx(a.max_home_price * 0.8)
        assert a.risk_level == "low"

    def test_capped_by_budget(self, plan_input_data: dict) -> None:
        plan_input_data["userProfile"]["incomeDebt"]["annualIncome"] = 600000
        plan_input_data["userProfile"]["location"]["maxBudget"] = 400000
        a = compute_affordability(PlanInput.model_validate(plan_input_data))
        assert a.max_home_price == 400000

    def test_high_debt_is_high_risk(self, plan_input_data: dict) -> None:
        plan_input_data["userProfile"]["incomeDebt"]["monthlyDebts"] = 2400
        a = compute_affordability(PlanInput.model_validate(plan_input_data))
        assert a.risk_level == "high"
        assert a.max_monthly_payment == 0

    def test_zero_income(self, plan_input_data: dict) -> None:
        plan_input_data["userProfile"]["incomeDebt"]["annualIncome"] = 0
        a = compute_affordability(PlanInput.model_validate(plan_input_data))
        assert a.max_home_price == 0
        assert a.risk_level == "high"


class TestFallbackPlan:
    def test_marked_as_fallback(self, plan_input: PlanInput) -> None:
        plan = synthesize_fallback_plan(plan_input, now=FIXED_NOW)
        assert plan.is_fallback
        assert plan.version == FALLBACK_VERSION
        assert plan.confidence == FALLBACK_CONFIDENCE < DEFAULT_PLAN_CONFIDENCE
        assert plan.id.startswith("fallback-plan-")

    def test_numbers(self, plan_input: PlanInput) -> None:
        est = synthesize_fallback_plan(plan_input, now=FIXED_NOW).affordability_estimate
        assert est.budget_breakdown.monthly_payment == 1080
        assert est.max_home_price == 51840
        assert est.budget_breakdown.down_payment == 20000
        assert est.risk_assessment.risk_level is RiskLevel.LOW

    def test_first_time_program(self, plan_input: PlanInput) -> None:
        plan = synthesize_fallback_plan(plan_input, now=FIXED_NOW)
        assert plan.program_recommendations[0].program_type is ProgramType.FIRST_TIME_BUYER

    def test_deterministic(self, plan_input: PlanInput) -> None:
        a = synthesize_fallback_plan(plan_input, now=FIXED_NOW)
        b = synthesize_fallback_plan(plan_input, now=FIXED_NOW)
        assert a == b

    def test_spanish(self, plan_input_es: PlanInput) -> None:
        plan = synthesize_fallback_plan(plan_input_es, now=FIXED_NOW)
        assert plan.language is Language.ES
        assert plan.action_plan.phases[0].name == "Preparación"

    def test_action_plan_shape(self, plan_input: PlanInput) -> None:
        action_plan = synthesize_fallback_plan(plan_input, now=FIXED_NOW).action_plan
        assert action_plan.total_steps == 1
        assert action_plan.critical_path == ["prep-1"]
        assert action_plan.phases[0].steps[0].due_date == "2025-01-22T12:00:00Z"


class TestFallbackNarrative:
    def test_english(self, plan_input: PlanInput) -> None:
        text = synthesize_fallback_narrative(plan_input)
        assert text.startswith("## Your Personalized Home Buying Analysis")
        assert "$72,000" in text
        assert "10.0%" in text

    def test_spanish(self, plan_input_es: PlanInput) -> None:
        text = synthesize_fallback_narrative(plan_input_es)
        assert text.startswith("## Tu Análisis Personalizado")
