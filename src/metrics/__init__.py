"""Prometheus metrics module."""

from .prometheus_exporter import REGISTRY, generate_prometheus_metrics, observe_latency

__all__ = ["REGISTRY", "generate_prometheus_metrics", "observe_latency"]
