"""
Deterministic fallback content.

When the upstream model cannot produce a usable result, the client serves a
plan (or narrative) computed locally from the buyer's numbers with the
standard 28/36 affordability rules. Fallback plans are marked with a
"-fallback" version suffix and a confidence strictly below the default
confidence of validated plans.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import structlog

from homeplan.models import FALLBACK_VERSION_SUFFIX, Language, PersonalizedPlan, PlanInput
from homeplan.reports.renderer import TemplateRenderer
from homeplan.resilience.cache import fingerprint

logger = structlog.get_logger()

FALLBACK_CONFIDENCE = 0.6
FALLBACK_VERSION = f"1.0{FALLBACK_VERSION_SUFFIX}"

HOUSING_RATIO = 0.28
DEBT_RATIO_HIGH = 0.36
PRICE_TO_ANNUAL_PAYMENT = 4
RECOMMENDED_PRICE_SHARE = 0.8
CLOSING_COST_SHARE = 0.03
EMERGENCY_FUND_MONTHS = 3


@dataclass(frozen=True)
class Affordability:
    monthly_income: float
    dti: float
    max_monthly_payment: float
    max_home_price: float
    recommended_price: float
    closing_costs: float
    emergency_fund: float

    @property
    def risk_level(self) -> str:
        if self.dti > DEBT_RATIO_HIGH:
            return "high"
        if self.dti > HOUSING_RATIO:
            return "moderate"
        return "low"


def compute_affordability(plan_input: PlanInput) -> Affordability:
    income_debt = plan_input.user_profile.income_debt
    monthly_income = income_debt.annual_income / 12
    debts = income_debt.monthly_debts
    dti = debts / monthly_income if monthly_income > 0 else 1.0
    max_monthly_payment = max(0.0, monthly_income * HOUSING_RATIO - debts)
    max_home_price = min(
        plan_input.user_profile.location.max_budget,
        max_monthly_payment * 12 * PRICE_TO_ANNUAL_PAYMENT,
    )
    return Affordability(
        monthly_income=monthly_income,
        dti=dti,
        max_monthly_payment=max_monthly_payment,
        max_home_price=max_home_price,
        recommended_price=max_home_price * RECOMMENDED_PRICE_SHARE,
        closing_costs=max_home_price * CLOSING_COST_SHARE,
        emergency_fund=monthly_income * EMERGENCY_FUND_MONTHS,
    )


# Localized strings for the fallback plan
_TEXT: dict[Language, dict[str, str]] = {
    Language.EN: {
        "dti_factor": "Debt-to-income ratio: {dti:.1f}%",
        "recommendation": "Automatically generated plan. Consult with an advisor for personalized recommendations.",
        "assumption": "Calculations based on general estimates",
        "program_name": "Conventional Loan Program",
        "first_time_program_name": "First-Time Buyer Program",
        "program_description": "Standard mortgage loan with competitive terms",
        "requirement": "Income verification",
        "benefit": "Competitive rates",
        "application_step": "Apply for pre-qualification",
        "program_timeline": "30-45 days",
        "overview": "Basic automatically generated home buying plan.",
        "duration": "60-90 days",
        "phase_name": "Preparation",
        "phase_description": "Prepare documentation and finances",
        "step_title": "Review credit",
        "step_description": "Obtain and review your credit report",
        "step_time": "1 week",
        "criterion_metric": "Report obtained",
        "criterion_target": "Yes",
        "risk": "Automatically generated plan without detailed analysis",
        "mitigation": "Consult with a professional mortgage advisor",
    },
    Language.ES: {
        "dti_factor": "Relación deuda-ingresos: {dti:.1f}%",
        "recommendation": "Plan generado automáticamente. Consulte con un asesor para recomendaciones personalizadas.",
        "assumption": "Cálculos basados en estimaciones generales",
        "program_name": "Programa Convencional",
        "first_time_program_name": "Programa para Primer Comprador",
        "program_description": "Préstamo hipotecario estándar con condiciones competitivas",
        "requirement": "Verificación de ingresos",
        "benefit": "Tasas competitivas",
        "application_step": "Solicitar precalificación",
        "program_timeline": "30-45 días",
        "overview": "Plan básico de compra de vivienda generado automáticamente.",
        "duration": "60-90 días",
        "phase_name": "Preparación",
        "phase_description": "Preparar documentación y finanzas",
        "step_title": "Revisar crédito",
        "step_description": "Obtener y revisar el reporte de crédito",
        "step_time": "1 semana",
        "criterion_metric": "Reporte obtenido",
        "criterion_target": "Sí",
        "risk": "Plan generado automáticamente sin análisis detallado",
        "mitigation": "Consultar con un asesor hipotecario profesional",
    },
}


def _iso(moment: datetime) -> str:
    return moment.isoformat().replace("+00:00", "Z")


def synthesize_fallback_plan(plan_input: PlanInput, now: Optional[datetime] = None) -> PersonalizedPlan:
    """Build a schema-valid plan from the buyer's numbers alone."""
    now = now or datetime.now(timezone.utc)
    language = plan_input.language
    text = _TEXT[language]
    a = compute_affordability(plan_input)
    first_time = plan_input.user_profile.location.first_time_buyer
    down_payment = plan_input.user_profile.income_debt.down_payment_amount
    timestamp = _iso(now)

    payload: dict[str, Any] = {
        "id": f"fallback-plan-{fingerprint(plan_input, use_grounding=False)}",
        "userId": plan_input.user_id,
        "generatedAt": timestamp,
        "language": language.value,
        "affordabilityEstimate": {
            "maxHomePrice": round(a.max_home_price),
            "recommendedPrice": round(a.recommended_price),
            "budgetBreakdown": {
                "downPayment": down_payment,
                "monthlyPayment": round(a.max_monthly_payment),
                "closingCosts": round(a.closing_costs),
                "emergencyFund": round(a.emergency_fund),
                "totalRequired": round(down_payment + a.closing_costs + a.emergency_fund),
            },
            "riskAssessment": {
                "riskLevel": a.risk_level,
                "factors": [text["dti_factor"].format(dti=a.dti * 100)],
                "recommendation": text["recommendation"],
            },
            "timeframe": "immediate",
            "assumptions": [text["assumption"]],
            "confidence": FALLBACK_CONFIDENCE,
        },
        "programRecommendations": [
            {
                "programType": "first-time-buyer" if first_time else "conventional",
                "name": text["first_time_program_name"] if first_time else text["program_name"],
                "description": text["program_description"],
                "eligibilityScore": 0.7,
                "requirements": [text["requirement"]],
                "benefits": [text["benefit"]],
                "costBenefit": {
                    "upfrontCosts": round(a.closing_costs),
                    "monthlySavings": 0,
                    "longTermValue": 0,
                    "breakEvenMonths": 0,
                    "netBenefit": 0,
                },
                "applicationSteps": [text["application_step"]],
                "estimatedTimeline": text["program_timeline"],
                "priority": "medium",
            }
        ],
        "actionPlan": {
            "overview": text["overview"],
            "totalSteps": 1,
            "estimatedDuration": text["duration"],
            "phases": [
                {
                    "name": text["phase_name"],
                    "description": text["phase_description"],
                    "steps": [
                        {
                            "id": "prep-1",
                            "title": text["step_title"],
                            "description": text["step_description"],
                            "category": "preparation",
                            "priority": "high",
                            "estimatedTime": text["step_time"],
                            "dependencies": [],
                            "resources": [],
                            "successCriteria": [
                                {
                                    "metric": text["criterion_metric"],
                                    "target": text["criterion_target"],
                                    "timeframe": text["step_time"],
                                    "measurable": True,
                                }
                            ],
                            "dueDate": _iso(now + timedelta(days=7)),
                            "completed": False,
                        }
                    ],
                }
            ],
            "criticalPath": ["prep-1"],
            "riskMitigation": [
                {"risk": text["risk"], "impact": "medium", "mitigation": text["mitigation"]},
            ],
        },
        "confidence": FALLBACK_CONFIDENCE,
        "lastUpdated": timestamp,
        "version": FALLBACK_VERSION,
        "isValid": True,
        "validationErrors": [],
    }
    return PersonalizedPlan.model_validate(payload)


_renderer = TemplateRenderer()

_MINIMAL_NARRATIVE = {
    Language.EN: "## Home Buying Analysis\n\nA detailed analysis is not available right now. "
    "Please consult a qualified mortgage advisor.",
    Language.ES: "## Análisis de Compra de Vivienda\n\nEl análisis detallado no está disponible en este momento. "
    "Consulta con un asesor hipotecario calificado.",
}


def synthesize_fallback_narrative(plan_input: PlanInput, renderer: Optional[TemplateRenderer] = None) -> str:
    """Bilingual markdown analysis computed locally from the buyer's numbers."""
    profile = plan_input.user_profile
    a = compute_affordability(plan_input)
    context = {
        "annual_income": profile.income_debt.annual_income,
        "monthly_income": a.monthly_income,
        "monthly_debts": profile.income_debt.monthly_debts,
        "down_payment": profile.income_debt.down_payment_amount,
        "dti": a.dti,
        "max_home_price": a.max_home_price,
        "recommended_price": a.recommended_price,
        "monthly_payment": a.max_monthly_payment,
        "closing_costs": a.closing_costs,
        "emergency_fund": a.emergency_fund,
        "first_time_buyer": profile.location.first_time_buyer,
        "city": profile.location.preferred_city,
        "state": profile.location.preferred_state,
    }
    rendered = (renderer or _renderer).render_fallback_narrative(context, plan_input.language)
    if not rendered:
        logger.warning("fallback_narrative_template_missing", language=plan_input.language.value)
        return _MINIMAL_NARRATIVE[plan_input.language]
    return rendered
