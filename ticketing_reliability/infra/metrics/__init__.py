"""Prometheus metrics for the reliability layer."""

from ticketing_reliability.infra.metrics.prometheus import REGISTRY

__all__ = ["REGISTRY"]
