"""
Core data models for plan generation.

These Pydantic models define the request descriptor the caller submits, the
validated plan the client returns, and the prompt-template descriptors used to
build upstream requests.

Design principles:
  - Field names are snake_case in Python and camelCase on the wire, so the same
    models parse front-end payloads and upstream JSON output
  - Requests and plans are frozen once constructed
  - A PersonalizedPlan is only ever constructed through validation, so holding
    one means holding a schema-valid result
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

FALLBACK_VERSION_SUFFIX = "-fallback"
DEFAULT_PLAN_CONFIDENCE = 0.8


class _WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)


# ═══════════════════════════════════════════════════════════
# Enums
# ═══════════════════════════════════════════════════════════


class Language(str, Enum):
    """Supported output languages."""

    EN = "en"
    ES = "es"


class ContentType(str, Enum):
    """Prompt template families."""

    STRUCTURED = "structured"
    NARRATIVE = "narrative"


class RiskLevel(str, Enum):
    LOW = "low"
    MODERATE = "moderate"
    HIGH = "high"


class Timeframe(str, Enum):
    IMMEDIATE = "immediate"
    THREE_MONTHS = "3-months"
    SIX_MONTHS = "6-months"
    TWELVE_MONTHS = "12-months"
    TWO_YEARS = "2-years"
    FIVE_YEARS = "5-years"


class ProgramType(str, Enum):
    """Mortgage program types a recommendation may name."""

    FHA = "fha"
    VA = "va"
    USDA = "usda"
    CONVENTIONAL = "conventional"
    JUMBO = "jumbo"
    FIRST_TIME_BUYER = "first-time-buyer"
    DOWN_PAYMENT_ASSISTANCE = "down-payment-assistance"


class Priority(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class StepPriority(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class StepCategory(str, Enum):
    PREPARATION = "preparation"
    APPLICATION = "application"
    DOCUMENTATION = "documentation"
    FINANCIAL = "financial"
    SEARCH = "search"
    CLOSING = "closing"


# ═══════════════════════════════════════════════════════════
# Request descriptor
# ═══════════════════════════════════════════════════════════


class IncomeDebt(_WireModel):
    annual_income: float = Field(ge=0)
    monthly_debts: float = Field(ge=0)
    down_payment_amount: float = Field(ge=0)
    credit_score: str
    additional_income: Optional[float] = Field(default=None, ge=0)
    assets: Optional[float] = Field(default=None, ge=0)


class Employment(_WireModel):
    employment_status: str
    employer_name: str = ""
    job_title: str = ""
    years_at_job: float = Field(default=0, ge=0)
    employer_phone: str = ""
    work_address: str = ""


class LocationPreference(_WireModel):
    preferred_state: str
    preferred_city: str
    preferred_zip_code: str = ""
    max_budget: float = Field(ge=0)
    min_bedrooms: int = Field(default=1, ge=1)
    min_bathrooms: float = Field(default=1, ge=1)
    home_type: str = "house"
    timeframe: str = "12-months"
    first_time_buyer: bool = False


class ContactInfo(_WireModel):
    first_name: str = ""
    last_name: str = ""
    email: str = ""
    phone: str = ""


class UserProfile(_WireModel):
    income_debt: IncomeDebt
    employment: Employment
    location: LocationPreference
    # Optional: privacy-safe inputs carry no contact block
    contact: Optional[ContactInfo] = None
    location_priorities: list[str] = Field(default_factory=list)
    buyer_types: list[str] = Field(default_factory=list)


class BuyerSpecialization(_WireModel):
    is_itin_taxpayer: bool = Field(default=False, alias="isITINTaxpayer")
    is_military_veteran: bool = False
    is_usda_eligible: bool = Field(default=False, alias="isUSDAEligible")
    is_first_time_buyer: bool = False
    is_investor: bool = False
    needs_accessibility_features: bool = False


class Preferences(_WireModel):
    language: Language = Language.EN
    risk_tolerance: Optional[RiskLevel] = None
    focus_areas: list[str] = Field(default_factory=list)
    exclude_programs: list[ProgramType] = Field(default_factory=list)
    buyer_specialization: BuyerSpecialization = Field(default_factory=BuyerSpecialization)


class PlanInput(_WireModel):
    """Immutable request descriptor: financial profile plus preferences."""

    user_profile: UserProfile
    preferences: Preferences = Field(default_factory=Preferences)

    @property
    def language(self) -> Language:
        return self.preferences.language

    @property
    def user_id(self) -> str:
        contact = self.user_profile.contact
        return contact.email if contact and contact.email else "anonymous"

    def with_language(self, language: Language) -> PlanInput:
        """Return a copy whose preferences use the given language."""
        prefs = self.preferences.model_copy(update={"language": language})
        return self.model_copy(update={"preferences": prefs})


# ═══════════════════════════════════════════════════════════
# Personalized plan (validated output)
# ═══════════════════════════════════════════════════════════


class BudgetBreakdown(_WireModel):
    down_payment: float = Field(ge=0)
    monthly_payment: float = Field(ge=0)
    closing_costs: float = Field(ge=0)
    emergency_fund: float = Field(ge=0)
    total_required: float = Field(ge=0)


class RiskAssessment(_WireModel):
    risk_level: RiskLevel
    factors: list[str] = Field(min_length=1)
    recommendation: str = Field(min_length=10)


class AffordabilityEstimate(_WireModel):
    max_home_price: float = Field(ge=0)
    recommended_price: float = Field(ge=0)
    budget_breakdown: BudgetBreakdown
    risk_assessment: RiskAssessment
    timeframe: Timeframe
    assumptions: list[str] = Field(min_length=1)
    confidence: float = Field(ge=0, le=1)


class CostBenefit(_WireModel):
    upfront_costs: float = Field(ge=0)
    monthly_savings: float
    long_term_value: float
    break_even_months: float = Field(ge=0)
    net_benefit: float


class ProgramRecommendation(_WireModel):
    program_type: ProgramType
    name: str = Field(min_length=1)
    description: str = Field(min_length=10)
    eligibility_score: float = Field(ge=0, le=1)
    requirements: list[str] = Field(min_length=1)
    benefits: list[str] = Field(min_length=1)
    cost_benefit: CostBenefit
    application_steps: list[str] = Field(min_length=1)
    estimated_timeline: str = Field(min_length=1)
    priority: Priority


class SuccessCriterion(_WireModel):
    metric: str = Field(min_length=1)
    target: str = Field(min_length=1)
    timeframe: str = Field(min_length=1)
    measurable: bool


class ActionStep(_WireModel):
    id: str = Field(min_length=1)
    title: str = Field(min_length=1)
    description: str = Field(min_length=10)
    category: StepCategory
    priority: StepPriority
    estimated_time: str = Field(min_length=1)
    dependencies: list[str] = Field(default_factory=list)
    resources: list[str] = Field(default_factory=list)
    success_criteria: list[SuccessCriterion] = Field(min_length=1)
    due_date: str = Field(min_length=1)
    completed: bool = False


class ActionPhase(_WireModel):
    name: str = Field(min_length=1)
    description: str = Field(min_length=10)
    steps: list[ActionStep] = Field(min_length=1)


class RiskMitigation(_WireModel):
    risk: str = Field(min_length=1)
    impact: Priority
    mitigation: str = Field(min_length=10)


class ActionPlan(_WireModel):
    overview: str = Field(min_length=20)
    total_steps: int = Field(ge=1)
    estimated_duration: str = Field(min_length=1)
    phases: list[ActionPhase] = Field(min_length=1)
    critical_path: list[str] = Field(min_length=1)
    risk_mitigation: list[RiskMitigation] = Field(default_factory=list)


class PersonalizedPlan(_WireModel):
    """Schema-valid plan, either parsed from upstream output or synthesized as a fallback."""

    id: str = Field(min_length=1)
    user_id: str = Field(min_length=1)
    generated_at: str = Field(min_length=1)
    language: Language
    affordability_estimate: AffordabilityEstimate
    program_recommendations: list[ProgramRecommendation] = Field(min_length=1, max_length=5)
    action_plan: ActionPlan
    confidence: float = Field(default=DEFAULT_PLAN_CONFIDENCE, ge=0, le=1)
    last_updated: str = Field(min_length=1)
    version: str = Field(min_length=1)
    is_valid: bool = True
    validation_errors: list[str] = Field(default_factory=list)

    @property
    def is_fallback(self) -> bool:
        """True for plans synthesized locally instead of generated upstream."""
        return self.version.endswith(FALLBACK_VERSION_SUFFIX)


# ═══════════════════════════════════════════════════════════
# Prompt templates and call options
# ═══════════════════════════════════════════════════════════


class PromptTemplate(BaseModel):
    """A named prompt body with {{placeholders}} and {{#if}} blocks."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1)
    name: str = ""
    description: str = ""
    language: Language = Language.EN
    type: ContentType = ContentType.STRUCTURED
    version: str = "1.0.0"
    body: str
    variables: frozenset[str] = Field(default_factory=frozenset)
    metadata: dict[str, Any] = Field(default_factory=dict)


class PromptVariables(BaseModel):
    """Known template variables plus a permissive map for extension variables."""

    user_profile_data: str = ""
    specialized_guidance: str = ""
    use_grounding: bool = False
    market_context: str = ""
    language: Language = Language.EN
    section_title: str = ""
    section_instructions: str = ""
    extra: dict[str, Any] = Field(default_factory=dict)

    def as_mapping(self) -> dict[str, Any]:
        """Flatten to name → value; extension variables never shadow known names."""
        known = self.model_dump(exclude={"extra"})
        known["language"] = self.language.value
        return {**self.extra, **known}


class GenerationOptions(BaseModel):
    """Per-call options for plan and narrative generation."""

    use_grounding: bool = True
    language: Optional[Language] = None
    model_override: Optional[str] = None
    max_output_tokens: Optional[int] = Field(default=None, gt=0)


class SectionPromptSpec(BaseModel):
    """Describes one streamed report section."""

    section_id: str = "analysis"
    title: str = ""
    # A custom prompt bypasses template selection and disables grounding
    prompt: Optional[str] = None
    template_id: Optional[str] = None
    instructions: str = ""
    variables: dict[str, Any] = Field(default_factory=dict)
    max_output_tokens: Optional[int] = Field(default=None, gt=0)
    model_override: Optional[str] = None
    use_grounding: Optional[bool] = None


@dataclass
class TokenUsageStats:
    total_tokens_used: int = 0
    request_count: int = 0
    average_tokens_per_request: float = 0.0
    last_request_tokens: Optional[int] = None

    def record(self, tokens: int) -> None:
        self.request_count += 1
        self.total_tokens_used += tokens
        self.average_tokens_per_request = self.total_tokens_used / self.request_count
        self.last_request_tokens = tokens
