"""
Jinja2-based report template renderer.

Renders the locally synthesized narrative analysis that is served when the
upstream model cannot produce one.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Optional

import structlog
from jinja2 import Environment, FileSystemLoader, TemplateError

from homeplan.models import Language

logger = structlog.get_logger()

_TEMPLATES_DIR = Path(__file__).parent / "templates"


def _money(value: Any) -> str:
    try:
        return f"${float(value):,.0f}"
    except (TypeError, ValueError):
        return str(value)


def _percent(value: Any, digits: int = 1) -> str:
    try:
        return f"{float(value) * 100:.{digits}f}%"
    except (TypeError, ValueError):
        return str(value)


class TemplateRenderer:
    """Renders markdown reports using Jinja2 templates."""

    def __init__(self, templates_dir: Optional[Path] = None) -> None:
        self._dir = templates_dir or _TEMPLATES_DIR
        self._env: Optional[Environment] = None

    def _get_env(self) -> Environment:
        """Lazy-init Jinja2 environment."""
        if self._env is None:
            self._env = Environment(
                loader=FileSystemLoader(str(self._dir)),
                autoescape=False,  # noqa: S701 (markdown output, not HTML)
                trim_blocks=True,
                lstrip_blocks=True,
            )
            self._env.filters["money"] = _money
            self._env.filters["percent"] = _percent
        return self._env

    def render(self, template_name: str, context: dict[str, Any]) -> str:
        """Render a template with the given context. Returns an empty string on template errors."""
        try:
            template = self._get_env().get_template(template_name)
            return template.render(**context)
        except TemplateError as e:
            logger.warning("template_render_error", template=template_name, error=str(e))
            return ""

    def render_fallback_narrative(self, context: dict[str, Any], language: Language) -> str:
        return self.render(f"fallback_narrative.{language.value}.md.j2", context)
