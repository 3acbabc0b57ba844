"""ReplGuard — logging and metrics."""

from replguard.telemetry.logging import setup_logging
from replguard.telemetry.metrics import MetricCollector, MetricSink

__all__ = ["MetricCollector", "MetricSink", "setup_logging"]
