"""Cost allocation: per-component resource snapshots from Prometheus."""

__version__ = "0.1.0"
