"""Watcher monitoring and metrics collection."""

from .dashboard import WatchDashboard, run_dashboard
from .metrics import MetricsCollector, WatchMetrics

__all__ = ["MetricsCollector", "WatchMetrics", "WatchDashboard", "run_dashboard"]
