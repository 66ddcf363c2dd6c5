"""Observability: Prometheus metrics for the plan generation client."""

from homeplan.observability.metrics import metrics

__all__ = ["metrics"]
