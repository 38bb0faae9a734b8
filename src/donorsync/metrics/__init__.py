"""Prometheus metrics and the operational HTTP endpoints."""

from donorsync.metrics.exporter import FORBIDDEN_LABELS, REQUIRED_METRIC_NAMES, MetricsExporter
from donorsync.metrics.server import create_ops_app, start_ops_server, stop_ops_server

__all__ = [
    "FORBIDDEN_LABELS",
    "REQUIRED_METRIC_NAMES",
    "MetricsExporter",
    "create_ops_app",
    "start_ops_server",
    "stop_ops_server",
]
