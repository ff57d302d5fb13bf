"""
Observability metrics for the palettekit extraction pipeline.

Stage timings, memory snapshots and per-run summaries. The collector is
process-wide and thread-safe; the run tracker is owned by a single extraction
call.
"""

import threading
import time
from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass, asdict, field
from typing import Dict, Any, Optional, List

import numpy as np
import psutil
from loguru import logger

from palettekit.config import config


@dataclass
class PerformanceMetrics:
    """Performance metrics for a single extraction stage."""
    operation_name: str
    duration_ms: float
    memory_usage_mb: float
    color_count: int
    timestamp: float
    error: Optional[str] = None


@dataclass
class ExtractionMetrics:
    """Summary of one extraction run."""
    extraction_id: str
    strategy: str
    total_duration_ms: float
    stage_durations_ms: Dict[str, float]
    histogram_size: int
    palette_size: int
    memory_peak_mb: float
    warnings: List[str] = field(default_factory=list)


@dataclass
class _OperationTally:
    calls: int = 0
    errors: int = 0
    durations: deque = field(default_factory=lambda: deque(maxlen=100))

    def summary(self, operation_name: str) -> Dict[str, Any]:
        durations = np.fromiter(self.durations, dtype=np.float64)
        return {
            'operation_name': operation_name,
            'total_calls': self.calls,
            'error_count': self.errors,
            'error_rate': self.errors / max(1, self.calls),
            'duration_stats': {
                'mean_ms': float(durations.mean()),
                'median_ms': float(np.median(durations)),
                'p95_ms': float(np.percentile(durations, 95)),
                'max_ms': float(durations.max())
            }
        }


class MetricsCollector:
    """Thread-safe metrics collector for extraction stages."""

    def __init__(self, max_history: int = 1000):
        self.max_history = max_history
        self._lock = threading.Lock()
        self._history: deque = deque(maxlen=max_history)
        self._tallies: Dict[str, _OperationTally] = {}
        self._extractions: deque = deque(maxlen=max_history)

    def record_performance(self, metrics: PerformanceMetrics) -> None:
        with self._lock:
            self._history.append(metrics)
            tally = self._tallies.setdefault(metrics.operation_name, _OperationTally())
            tally.calls += 1
            tally.errors += 1 if metrics.error else 0
            tally.durations.append(metrics.duration_ms)

    def get_operation_stats(self, operation_name: str) -> Dict[str, Any]:
        """Call counts, error rate and duration percentiles for one operation ({} if unseen)."""
        with self._lock:
            tally = self._tallies.get(operation_name)
            return tally.summary(operation_name) if tally else {}

    def get_recent_metrics(self, limit: int = 10) -> List[Dict[str, Any]]:
        with self._lock:
            return [asdict(m) for m in list(self._history)[-limit:]]

    def record_extraction(self, metrics: ExtractionMetrics) -> None:
        with self._lock:
            self._extractions.append(metrics)

    def get_recent_extractions(self, limit: int = 10) -> List[Dict[str, Any]]:
        """Summaries of the most recently finished extraction runs, oldest first."""
        with self._lock:
            return [asdict(m) for m in list(self._extractions)[-limit:]]

    def reset(self) -> None:
        with self._lock:
            self._history.clear()
            self._tallies.clear()
            self._extractions.clear()


_metrics_collector = MetricsCollector()


def get_metrics_collector() -> MetricsCollector:
    return _metrics_collector


def _rss_mb() -> float:
    return psutil.Process().memory_info().rss / 1024 / 1024


@contextmanager
def performance_monitor(operation_name: str, color_count: int = 0):
    """Context manager for monitoring performance of a stage."""
    start_time = time.time()
    start_memory = _rss_mb() if config.METRICS_ENABLED else 0.0
    stats = {'duration_ms': 0.0}

    error_msg = None

    try:
        yield stats
    except Exception as e:
        error_msg = f"{type(e).__name__}: {e}"
        raise
    finally:
        end_time = time.time()
        stats['duration_ms'] = (end_time - start_time) * 1000

        if config.METRICS_ENABLED:
            end_memory = _rss_mb()
            metrics = PerformanceMetrics(
                operation_name=operation_name,
                duration_ms=stats['duration_ms'],
                memory_usage_mb=max(end_memory, start_memory),
                color_count=color_count,
                timestamp=end_time,
                error=error_msg
            )
            _metrics_collector.record_performance(metrics)
            stats['memory_mb'] = metrics.memory_usage_mb

        if error_msg:
            logger.debug(f"Operation {operation_name} failed after {stats['duration_ms']:.1f}ms: {error_msg}")
        else:
            logger.debug(f"Operation {operation_name} completed in {stats['duration_ms']:.1f}ms")


class ExtractionTracker:
    """Stage bookkeeping for a single extraction call."""

    def __init__(self, extraction_id: str, strategy: str):
        self.extraction_id = extraction_id
        self.strategy = strategy
        self._start_time = time.time()
        self._stages: Dict[str, float] = {}
        self._memory_peak_mb = 0.0
        self.histogram_size = 0
        self.warnings: List[str] = []
        self._log = logger.bind(extraction_id=extraction_id, strategy=strategy)

    @contextmanager
    def stage(self, stage_name: str, color_count: int = 0):
        """Time a stage and fold it into this run's summary."""
        with performance_monitor(f"{self.strategy}.{stage_name}", color_count) as stats:
            yield
        self._stages[stage_name] = stats['duration_ms']
        self._memory_peak_mb = max(self._memory_peak_mb, stats.get('memory_mb', 0.0))
        self._log.debug(f"{stage_name} completed in {stats['duration_ms']:.1f}ms")

    def log_warning(self, message: str):
        self.warnings.append(message)
        self._log.warning(f"Extraction warning: {message}")

    def finish(self, palette_size: int) -> ExtractionMetrics:
        """Finish the run, record its summary in the collector and return it."""
        total_duration = (time.time() - self._start_time) * 1000
        metrics = ExtractionMetrics(
            extraction_id=self.extraction_id,
            strategy=self.strategy,
            total_duration_ms=total_duration,
            stage_durations_ms=dict(self._stages),
            histogram_size=self.histogram_size,
            palette_size=palette_size,
            memory_peak_mb=self._memory_peak_mb,
            warnings=list(self.warnings)
        )
        if config.METRICS_ENABLED:
            _metrics_collector.record_extraction(metrics)
        self._log.info(f"Extraction {self.extraction_id} completed in {total_duration:.1f}ms "
                       f"(palette: {palette_size} colors)")
        return metrics


def log_memory_usage(stage_name: str) -> Dict[str, Any]:
    """Log current memory usage for a specific stage."""
    memory_mb = _rss_mb()
    logger.debug(f"Memory usage at {stage_name}: {memory_mb:.1f}MB")
    return {
        'stage': stage_name,
        'memory_mb': memory_mb,
        'timestamp': time.time()
    }
