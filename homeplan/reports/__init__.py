"""Markdown report rendering."""

from homeplan.reports.renderer import TemplateRenderer

__all__ = ["TemplateRenderer"]
