"""
Template rendering, registration and selection.

render() is a pure function: conditional blocks are resolved innermost first,
one pass at a time, until none remain; then {{name}} placeholders are
substituted. Placeholders with no matching variable are left verbatim.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Mapping
from typing import Any, Optional, Union

import structlog
from pydantic import ValidationError

from homeplan.errors import ConfigurationError, TemplateError
from homeplan.models import ContentType, Language, PromptTemplate, PromptVariables
from homeplan.prompts.templates import BUILT_IN_TEMPLATES

logger = structlog.get_logger()

# Innermost block: the body may not contain another {{#if
_CONDITIONAL_RE = re.compile(r"\{\{#if\s+(\w+)\}\}((?:(?!\{\{#if\s).)*?)\{\{/if\}\}", re.DOTALL)
_PLACEHOLDER_RE = re.compile(r"\{\{(\w+)\}\}")
_CONDITIONAL_NAME_RE = re.compile(r"\{\{#if\s+(\w+)\}\}")

_TEMPLATE_IDS: dict[tuple[ContentType, Language], str] = {
    (ContentType.STRUCTURED, Language.EN): "structured-v2",
    (ContentType.STRUCTURED, Language.ES): "structured-v2-es",
    (ContentType.NARRATIVE, Language.EN): "narrative-v2",
    (ContentType.NARRATIVE, Language.ES): "narrative-v2-es",
}


def _is_truthy(value: Any) -> bool:
    return value is not None and value is not False and value != ""


def render(template: str, variables: Union[Mapping[str, Any], PromptVariables]) -> str:
    """Render a template body against a variable mapping."""
    values = variables.as_mapping() if isinstance(variables, PromptVariables) else dict(variables)

    def _resolve_block(match: re.Match[str]) -> str:
        return match.group(2) if _is_truthy(values.get(match.group(1))) else ""

    rendered = template
    while True:
        reduced = _CONDITIONAL_RE.sub(_resolve_block, rendered)
        if reduced == rendered:
            break
        rendered = reduced

    def _substitute(match: re.Match[str]) -> str:
        name = match.group(1)
        if name not in values:
            return match.group(0)
        value = values[name]
        return "" if value is None else str(value)

    return _PLACEHOLDER_RE.sub(_substitute, rendered)


def referenced_variables(body: str) -> set[str]:
    """Every name used by a placeholder or a conditional in body."""
    return set(_PLACEHOLDER_RE.findall(body)) | set(_CONDITIONAL_NAME_RE.findall(body))


def template_id_for(content_type: ContentType, language: Language) -> str:
    return _TEMPLATE_IDS[(content_type, language)]


class TemplateRegistry:
    """Named prompt templates; registration validates declared variables."""

    def __init__(self, fallback_template_id: str = "structured-v2", include_built_ins: bool = True) -> None:
        self._templates: dict[str, PromptTemplate] = {}
        self._fallback_id = fallback_template_id
        if include_built_ins:
            for template in BUILT_IN_TEMPLATES:
                self.register(template)

    def register(self, template: PromptTemplate) -> None:
        """Add or replace a template. Raises TemplateError on undeclared variables."""
        undeclared = referenced_variables(template.body) - set(template.variables)
        if undeclared:
            raise TemplateError(
                f"Template '{template.id}' references undeclared variables: {', '.join(sorted(undeclared))}"
            )
        replaced = template.id in self._templates
        self._templates[template.id] = template
        logger.debug("template_registered", template_id=template.id, version=template.version, replaced=replaced)

    def register_many(self, entries: Iterable[Mapping[str, Any]]) -> int:
        """Register templates described as plain mappings (e.g. loaded from YAML)."""
        count = 0
        for entry in entries:
            try:
                template = PromptTemplate.model_validate(entry)
            except ValidationError as exc:
                raise ConfigurationError(f"Invalid prompt template definition: {exc}") from exc
            try:
                self.register(template)
            except TemplateError as exc:
                raise ConfigurationError(str(exc)) from exc
            count += 1
        return count

    def get(self, template_id: str) -> Optional[PromptTemplate]:
        return self._templates.get(template_id)

    def list(self) -> list[PromptTemplate]:
        return list(self._templates.values())

    def __contains__(self, template_id: object) -> bool:
        return template_id in self._templates

    def select(self, content_type: ContentType, language: Language) -> Optional[PromptTemplate]:
        """Pick the template for a content type and language, or the fallback template."""
        template_id = template_id_for(content_type, language)
        template = self._templates.get(template_id)
        if template is not None:
            return template
        fallback = self._templates.get(self._fallback_id)
        logger.warning(
            "template_not_found",
            template_id=template_id,
            fallback_template=self._fallback_id,
            fallback_found=fallback is not None,
        )
        return fallback
