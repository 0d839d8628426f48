"""Metrics backend access."""

from costalloc.prometheus.client import PrometheusClient

__all__ = ["PrometheusClient"]
