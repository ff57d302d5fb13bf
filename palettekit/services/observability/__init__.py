"""
Observability module for the palettekit extraction pipeline.

Stage timing, memory snapshots and per-run summaries.
"""

from .metrics import (
    PerformanceMetrics,
    ExtractionMetrics,
    MetricsCollector,
    ExtractionTracker,
    get_metrics_collector,
    performance_monitor,
    log_memory_usage
)

__all__ = [
    'PerformanceMetrics',
    'ExtractionMetrics',
    'MetricsCollector',
    'ExtractionTracker',
    'get_metrics_collector',
    'performance_monitor',
    'log_memory_usage'
]
