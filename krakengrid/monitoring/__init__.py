"""
Monitoring and observability package.
"""

from krakengrid.monitoring.metrics import SessionMetrics, start_metrics_server

__all__ = [
    "SessionMetrics",
    "start_metrics_server",
]
