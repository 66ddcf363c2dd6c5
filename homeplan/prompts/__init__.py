"""Prompt templates, the template engine and prompt assembly."""

from homeplan.prompts.builder import PromptBuilder, detect_buyer_specializations
from homeplan.prompts.engine import TemplateRegistry, render

__all__ = ["PromptBuilder", "TemplateRegistry", "detect_buyer_specializations", "render"]
