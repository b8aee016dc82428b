"""Pipeline instrumentation."""

from libs.monitoring.performance import PerformanceMetrics, PerformanceMonitor, Timer

__all__ = ["PerformanceMetrics", "PerformanceMonitor", "Timer"]
