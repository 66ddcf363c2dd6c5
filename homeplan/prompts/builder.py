"""
Prompt assembly: profile summary, market context, buyer specialization guidance.

The builder turns a PlanInput into PromptVariables and renders the selected
template. When templating is disabled or no template can be selected, a
minimal built-in prompt is used instead.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

import structlog

from homeplan.models import ContentType, Language, PlanInput, PromptVariables, SectionPromptSpec
from homeplan.prompts.engine import TemplateRegistry, render

logger = structlog.get_logger()

_MILITARY_KEYWORDS = ("military", "veteran", "defense", "base", "army", "navy", "air force", "marines")
_RURAL_CITIES = ("cedar creek", "bastrop", "elgin", "manor", "del valle", "buda", "dripping springs", "kyle")
_RURAL_ZIP_PREFIX = "786"
_USDA_INCOME_CEILING = 80_000

# Specialization code → guidance text by language
SPECIALIZATION_GUIDANCE: dict[str, dict[Language, str]] = {
    "ITIN_TAXPAYER": {
        Language.EN: (
            "**ITIN CONTEXT:** This buyer uses an ITIN instead of an SSN. REQUIRES: 2 years of ITIN tax returns, "
            "employer letter confirming work authorization, ITIN-accepting loan programs. NOT eligible for VA/USDA. "
            "FHA and conventional available with additional documentation."
        ),
        Language.ES: (
            "**CONTEXTO ITIN:** Este comprador usa ITIN en lugar de SSN. REQUIERE: 2 años de declaraciones de "
            "impuestos con ITIN, carta del empleador que confirme la elegibilidad laboral, programas de préstamo que "
            "acepten ITIN. NO elegible para VA/USDA. FHA y convencional disponibles con documentación adicional."
        ),
    },
    "MILITARY_VETERAN": {
        Language.EN: (
            "**MILITARY/VETERAN CONTEXT:** Eligible for a VA loan. BENEFITS: 0% down payment, no mortgage insurance "
            "(PMI), competitive rates. REQUIREMENTS: Certificate of Eligibility (COE) from the VA, active duty or "
            "eligible veteran status. ADVANTAGE: the VA benefit can be reused if qualified."
        ),
        Language.ES: (
            "**CONTEXTO MILITAR/VETERANO:** Elegible para préstamo VA. BENEFICIOS: 0% de enganche, sin seguro "
            "hipotecario (PMI), tasas competitivas. REQUISITOS: Certificado de Elegibilidad (COE) del VA, servicio "
            "activo o veterano elegible. VENTAJA: puede reutilizar el beneficio VA si califica."
        ),
    },
    "USDA_ELIGIBLE": {
        Language.EN: (
            "**USDA CONTEXT:** Eligible for a USDA Rural Development loan. BENEFITS: 0% down payment, competitive "
            "rates. REQUIREMENTS: USDA-eligible rural area, income under 115% of area median income, owner "
            "occupancy. TIMELINE: longer process (45-60 days)."
        ),
        Language.ES: (
            "**CONTEXTO USDA:** Elegible para préstamo USDA de Desarrollo Rural. BENEFICIOS: 0% de enganche, tasas "
            "competitivas. REQUISITOS: área rural elegible, ingresos menores al 115% del ingreso medio del área, "
            "ocupación por el propietario. PLAZO: proceso más largo (45-60 días)."
        ),
    },
    "SELF_EMPLOYED": {
        Language.EN: (
            "**SELF-EMPLOYED CONTEXT:** Requires additional documentation. NEEDED: 2 years of complete tax returns, "
            "P&L statements, 3 months of business bank statements, CPA letter. OPTIONS: bank statement loans if "
            "taxable income is low. DTI is calculated on the 2-year average net income."
        ),
        Language.ES: (
            "**CONTEXTO TRABAJADOR INDEPENDIENTE:** Requiere documentación adicional. NECESARIO: 2 años de "
            "declaraciones de impuestos, estados de pérdidas y ganancias, 3 meses de estados bancarios comerciales, "
            "carta de un contador. OPCIONES: préstamos basados en estados bancarios si el ingreso declarado es bajo."
        ),
    },
    "RETIRED_FIXED_INCOME": {
        Language.EN: (
            "**RETIRED/FIXED INCOME CONTEXT:** Focus on stable, conservative income. ACCEPTED INCOME: Social "
            "Security, pensions, 401k/IRA distributions, investment income. CONSIDERATIONS: avoid high payments, "
            "keep significant emergency reserves."
        ),
        Language.ES: (
            "**CONTEXTO JUBILADO/INGRESOS FIJOS:** Enfoque en ingresos estables y conservadores. INGRESOS ACEPTADOS: "
            "Seguro Social, pensiones, retiros de 401k/IRA, ingresos de inversión. CONSIDERACIONES: evitar pagos "
            "altos, mantener reservas de emergencia significativas."
        ),
    },
    "FIRST_TIME_BUYER": {
        Language.EN: (
            "**FIRST-TIME BUYER CONTEXT:** Eligible for multiple assistance programs. BENEFITS: free homebuyer "
            "education courses, down payment assistance programs, FHA financing. RESOURCES: state and local "
            "assistance programs, first-time buyer tax credits."
        ),
        Language.ES: (
            "**CONTEXTO PRIMER COMPRADOR:** Elegible para varios programas de asistencia. BENEFICIOS: cursos "
            "gratuitos para compradores, programas de asistencia para el enganche, financiamiento FHA. RECURSOS: "
            "programas estatales y locales, créditos fiscales para compradores primerizos."
        ),
    },
    "ZERO_DOWN_NEEDED": {
        Language.EN: (
            "**ZERO DOWN CONTEXT:** Needs 0% down payment programs. OPTIONS: local down payment assistance, "
            "employer loan programs, state affordable housing programs. CONSIDER: FHA with 3.5% minimum plus down "
            "payment assistance."
        ),
        Language.ES: (
            "**CONTEXTO SIN ENGANCHE:** Necesita programas de 0% de enganche. OPCIONES: asistencia local para el "
            "enganche, préstamos del empleador, programas estatales de vivienda asequible. CONSIDERAR: FHA con 3.5% "
            "mínimo más asistencia para el enganche."
        ),
    },
}


@dataclass
class BuyerProfile:
    """Detected specializations and the guidance blocks they contribute."""

    types: list[str] = field(default_factory=list)
    guidance: list[str] = field(default_factory=list)

    def add(self, code: str, language: Language) -> None:
        self.types.append(code)
        self.guidance.append(SPECIALIZATION_GUIDANCE[code][language])


def detect_buyer_specializations(plan_input: PlanInput) -> BuyerProfile:
    """Explicit flags first, then profile-derived signals (employer, location, status)."""
    profile = plan_input.user_profile
    spec = plan_input.preferences.buyer_specialization
    language = plan_input.language
    result = BuyerProfile()

    if spec.is_itin_taxpayer:
        result.add("ITIN_TAXPAYER", language)

    employer = profile.employment.employer_name.lower()
    work_address = profile.employment.work_address.lower()
    military_employer = any(k in employer or k in work_address for k in _MILITARY_KEYWORDS)
    if spec.is_military_veteran or military_employer:
        result.add("MILITARY_VETERAN", language)

    city = profile.location.preferred_city.lower()
    rural_location = any(c in city for c in _RURAL_CITIES) or profile.location.preferred_zip_code.startswith(
        _RURAL_ZIP_PREFIX
    )
    if spec.is_usda_eligible or (rural_location and profile.income_debt.annual_income <= _USDA_INCOME_CEILING):
        result.add("USDA_ELIGIBLE", language)

    status = profile.employment.employment_status.lower()
    if status == "self-employed":
        result.add("SELF_EMPLOYED", language)
    if status == "retired" or "retired" in profile.employment.job_title.lower():
        result.add("RETIRED_FIXED_INCOME", language)

    if spec.is_first_time_buyer or profile.location.first_time_buyer:
        result.add("FIRST_TIME_BUYER", language)

    if profile.income_debt.down_payment_amount == 0 and not (
        "MILITARY_VETERAN" in result.types or "USDA_ELIGIBLE" in result.types
    ):
        result.add("ZERO_DOWN_NEEDED", language)

    return result


def _buyer_type_labels(plan_input: PlanInput) -> list[str]:
    if plan_input.user_profile.buyer_types:
        return list(plan_input.user_profile.buyer_types)
    spec = plan_input.preferences.buyer_specialization
    labels = []
    if spec.is_first_time_buyer:
        labels.append("first-time")
    if spec.is_military_veteran:
        labels.append("veteran")
    if spec.is_investor:
        labels.append("investor")
    if spec.is_usda_eligible:
        labels.append("rural")
    return labels


def build_user_profile_data(plan_input: PlanInput) -> str:
    profile = plan_input.user_profile
    prefs = plan_input.preferences
    buyer_types = _buyer_type_labels(plan_input)
    priorities = profile.location_priorities
    emp = profile.employment
    lines = [
        f"Income: ${profile.income_debt.annual_income:,.0f}/year",
        f"Monthly Debts: ${profile.income_debt.monthly_debts:,.0f}",
        f"Down Payment Available: ${profile.income_debt.down_payment_amount:,.0f}",
        f"Credit Score Range: {profile.income_debt.credit_score}",
        f"Employment: {emp.job_title or emp.employment_status} at {emp.employer_name or 'n/a'} ({emp.years_at_job:g} years)",
        f"Location Preference: {profile.location.preferred_city}, {profile.location.preferred_state}",
        f"Max Budget: ${profile.location.max_budget:,.0f}",
        f"Property Type: {profile.location.home_type}",
        f"Timeline: {profile.location.timeframe}",
        f"First-time Buyer: {'Yes' if profile.location.first_time_buyer else 'No'}",
        f"Risk Tolerance: {prefs.risk_tolerance.value if prefs.risk_tolerance else 'moderate'}",
        f"Buyer Types: {', '.join(buyer_types) if buyer_types else 'Not specified'}",
        f"Location Priorities: {', '.join(priorities) if priorities else 'Not specified'}",
    ]
    if prefs.focus_areas:
        lines.append(f"Focus Areas: {', '.join(prefs.focus_areas)}")
    if prefs.exclude_programs:
        lines.append(f"Exclude Programs: {', '.join(p.value for p in prefs.exclude_programs)}")
    return "\n".join(lines)


def build_market_context(plan_input: PlanInput) -> str:
    city = plan_input.user_profile.location.preferred_city
    state = plan_input.user_profile.location.preferred_state
    return (
        f"**REAL-TIME MARKET DATA SEARCH:** Use Google Search to find and incorporate current information for "
        f"{city}, {state}:\n"
        f"- Current mortgage rates (30-year fixed, FHA, VA rates)\n"
        f"- Local down payment assistance programs available in {state}\n"
        f"- Recent housing market trends for the {city} area\n"
        f"- First-time buyer programs specific to {state}\n"
        f"- USDA rural development areas near {city} (if applicable)\n"
        f"Include specific program names and current rates or incentives when found."
    )


def build_variables(
    plan_input: PlanInput,
    use_grounding: bool,
    section: Optional[SectionPromptSpec] = None,
) -> PromptVariables:
    buyer = detect_buyer_specializations(plan_input)
    return PromptVariables(
        user_profile_data=build_user_profile_data(plan_input),
        specialized_guidance="\n\n".join(buyer.guidance),
        use_grounding=use_grounding,
        market_context=build_market_context(plan_input) if use_grounding else "",
        language=plan_input.language,
        section_title=section.title if section else "",
        section_instructions=section.instructions if section else "",
        extra=dict(section.variables) if section else {},
    )


# ── Minimal built-in prompts (templating disabled or no template available) ──

_MINIMAL_INTRO = {
    Language.EN: "You are an expert mortgage advisor. Generate a personalized home buying plan for this buyer.",
    Language.ES: "Eres un asesor hipotecario experto. Genera un plan personalizado de compra de vivienda para este comprador.",
}
_MINIMAL_JSON_RULE = {
    Language.EN: "Return ONLY a valid JSON object matching the PersonalizedPlan schema. No text before or after it.",
    Language.ES: "Devuelve SOLO un objeto JSON válido con el esquema PersonalizedPlan. Sin texto antes ni después.",
}
_MINIMAL_NARRATIVE_RULE = {
    Language.EN: "Write an educational markdown analysis: affordability, loan options, next steps, disclaimers.",
    Language.ES: "Escribe un análisis educativo en markdown: asequibilidad, opciones de préstamo, próximos pasos, avisos.",
}


def build_minimal_prompt(variables: PromptVariables, content_type: ContentType) -> str:
    language = variables.language
    parts = [_MINIMAL_INTRO[language]]
    if variables.specialized_guidance:
        parts.append(variables.specialized_guidance)
    if variables.section_title:
        parts.append(f"## {variables.section_title}\n{variables.section_instructions}".rstrip())
    parts.append(f"**USER PROFILE:**\n{variables.user_profile_data}")
    if variables.use_grounding and variables.market_context:
        parts.append(variables.market_context)
    rule = _MINIMAL_JSON_RULE if content_type is ContentType.STRUCTURED else _MINIMAL_NARRATIVE_RULE
    parts.append(rule[language])
    return "\n\n".join(parts)


class PromptBuilder:
    """Renders prompts for a PlanInput through the template registry."""

    def __init__(self, registry: TemplateRegistry, enable_templating: bool = True) -> None:
        self._registry = registry
        self._enable_templating = enable_templating

    def build(
        self,
        plan_input: PlanInput,
        content_type: ContentType,
        use_grounding: bool,
        section: Optional[SectionPromptSpec] = None,
    ) -> str:
        variables = build_variables(plan_input, use_grounding, section)
        if not self._enable_templating:
            return build_minimal_prompt(variables, content_type)

        template = None
        if section and section.template_id:
            template = self._registry.get(section.template_id)
            if template is None:
                logger.warning("section_template_not_found", template_id=section.template_id)
        if template is None:
            template = self._registry.select(content_type, plan_input.language)
        if template is None:
            logger.warning("template_unavailable_using_minimal_prompt", content_type=content_type.value)
            return build_minimal_prompt(variables, content_type)

        prompt = render(template.body, variables)
        logger.debug("prompt_rendered", template_id=template.id, length=len(prompt))
        return prompt
