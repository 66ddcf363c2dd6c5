"""
Unit tests for core data models.

Covers wire-format parsing (camelCase aliases), request helpers, plan
constraints and the prompt/option descriptors.
"""

import pytest
from pydantic import ValidationError

from homeplan.models import (
    GenerationOptions,
    Language,
    PersonalizedPlan,
    PlanInput,
    PromptTemplate,
    PromptVariables,
    TokenUsageStats,
)


class TestPlanInput:
    def test_parses_camel_case(self, plan_input: PlanInput) -> None:
        assert plan_input.user_profile.income_debt.annual_income == 72000
        assert plan_input.user_profile.location.first_time_buyer is True
        assert plan_input.language is Language.EN

    def test_accepts_field_names(self, plan_input: PlanInput) -> None:
        dumped = plan_input.model_dump()
        assert PlanInput.model_validate(dumped) == plan_input

    def test_defaults(self, plan_input_data: dict) -> None:
        del plan_input_data["preferences"]
        del plan_input_data["userProfile"]["contact"]
        parsed = PlanInput.model_validate(plan_input_data)
        assert parsed.language is Language.EN
        assert parsed.user_id == "anonymous"
        assert parsed.preferences.buyer_specialization.is_itin_taxpayer is False

    def test_specialization_aliases(self, plan_input_data: dict) -> None:
        plan_input_data["preferences"]["buyerSpecialization"] = {"isITINTaxpayer": True, "isUSDAEligible": True}
        spec = PlanInput.model_validate(plan_input_data).preferences.buyer_specialization
        assert spec.is_itin_taxpayer and spec.is_usda_eligible

    def test_rejects_negative_income(self, plan_input_data: dict) -> None:
        plan_input_data["userProfile"]["incomeDebt"]["annualIncome"] = -1
        with pytest.raises(ValidationError):
            PlanInput.model_validate(plan_input_data)

    def test_rejects_unknown_language(self, plan_input_data: dict) -> None:
        plan_input_data["preferences"]["language"] = "fr"
        with pytest.raises(ValidationError):
            PlanInput.model_validate(plan_input_data)

    def test_with_language_copies(self, plan_input: PlanInput) -> None:
        es = plan_input.with_language(Language.ES)
        assert es.language is Language.ES
        assert plan_input.language is Language.EN
        assert es.user_profile == plan_input.user_profile

    def test_frozen(self, plan_input: PlanInput) -> None:
        with pytest.raises(ValidationError):
            plan_input.preferences = plan_input.preferences  # type: ignore[misc]


class TestPersonalizedPlan:
    def test_round_trips_wire_format(self, valid_plan_json: str) -> None:
        plan = PersonalizedPlan.model_validate_json(valid_plan_json)
        assert plan.model_dump(by_alias=True)["affordabilityEstimate"]["maxHomePrice"] == 51840
        assert not plan.is_fallback

    def test_confidence_bounds(self, valid_plan_json: str) -> None:
        plan = PersonalizedPlan.model_validate_json(valid_plan_json)
        data = plan.model_dump(by_alias=True)
        data["confidence"] = 1.5
        with pytest.raises(ValidationError):
            PersonalizedPlan.model_validate(data)


class TestDescriptors:
    def test_prompt_template_variables_are_frozen_set(self) -> None:
        template = PromptTemplate(id="t", body="{{a}}", variables=["a", "a"])
        assert template.variables == frozenset({"a"})

    def test_prompt_variables_mapping(self) -> None:
        mapping = PromptVariables(use_grounding=True, extra={"zip": "78701"}).as_mapping()
        assert mapping["use_grounding"] is True
        assert mapping["language"] == "en"
        assert mapping["zip"] == "78701"
        assert "extra" not in mapping

    def test_generation_options_defaults(self) -> None:
        options = GenerationOptions()
        assert options.use_grounding is True
        assert options.language is None
        with pytest.raises(ValidationError):
            GenerationOptions(max_output_tokens=0)

    def test_token_usage_stats(self) -> None:
        stats = TokenUsageStats()
        stats.record(100)
        stats.record(300)
        assert stats.total_tokens_used == 400
        assert stats.request_count == 2
        assert stats.average_tokens_per_request == 200
        assert stats.last_request_tokens == 300
