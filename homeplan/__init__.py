"""Resilient Gemini client for personalized home buying plans."""

from homeplan.errors import (
    CircuitOpenError,
    ClassifiedError,
    ConfigurationError,
    ErrorKind,
    InputValidationError,
    PlanClientError,
    StreamInterruptedError,
    TemplateError,
)
from homeplan.llm_client import PlanningClient, create_planning_client
from homeplan.models import (
    GenerationOptions,
    Language,
    PersonalizedPlan,
    PlanInput,
    PromptTemplate,
    SectionPromptSpec,
    TokenUsageStats,
)

__all__ = [
    "CircuitOpenError",
    "ClassifiedError",
    "ConfigurationError",
    "ErrorKind",
    "GenerationOptions",
    "InputValidationError",
    "Language",
    "PersonalizedPlan",
    "PlanClientError",
    "PlanInput",
    "PlanningClient",
    "PromptTemplate",
    "SectionPromptSpec",
    "StreamInterruptedError",
    "TemplateError",
    "TokenUsageStats",
    "create_planning_client",
]
