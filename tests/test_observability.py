"""
Tests for metrics, reliability primitives, configuration, ids and logging.
"""

import asyncio
import io
import time

import pytest
from loguru import logger

from palettekit import extract_palette
from palettekit.config import Config
from palettekit.services.observability import (
    ExtractionTracker,
    MetricsCollector,
    PerformanceMetrics,
    get_metrics_collector,
    log_memory_usage,
    performance_monitor,
)
from palettekit.services.reliability import (
    CancellationToken,
    ExtractionCancelledError,
    ExtractionContext,
    ExtractionError,
    ExtractionTimeoutError,
    deadline,
)
from palettekit.utils.ids import extract_timestamp_from_extraction_id, generate_extraction_id
from palettekit.utils.logging import StructuredLogger, get_logger


class TestMetricsCollector:
    """Test metrics aggregation"""

    def test_operation_stats(self):
        collector = MetricsCollector()
        for duration in (10.0, 20.0, 30.0):
            collector.record_performance(PerformanceMetrics(
                operation_name="scoring", duration_ms=duration, memory_usage_mb=50.0,
                color_count=10, timestamp=time.time()))
        collector.record_performance(PerformanceMetrics(
            operation_name="scoring", duration_ms=40.0, memory_usage_mb=50.0,
            color_count=10, timestamp=time.time(), error="ValueError: boom"))

        stats = collector.get_operation_stats("scoring")
        assert stats['total_calls'] == 4
        assert stats['error_count'] == 1
        assert stats['error_rate'] == 0.25
        assert stats['duration_stats']['mean_ms'] == 25.0
        assert stats['duration_stats']['max_ms'] == 40.0

    def test_unknown_operation_is_empty(self):
        assert MetricsCollector().get_operation_stats("missing") == {}

    def test_recent_metrics_and_reset(self):
        collector = MetricsCollector(max_history=2)
        for name in ("a", "b", "c"):
            collector.record_performance(PerformanceMetrics(
                operation_name=name, duration_ms=1.0, memory_usage_mb=1.0,
                color_count=0, timestamp=time.time()))

        recent = collector.get_recent_metrics()
        assert [m['operation_name'] for m in recent] == ["b", "c"]

        collector.reset()
        assert collector.get_recent_metrics() == []


class TestPerformanceMonitor:
    """Test stage timing"""

    def test_records_duration(self):
        with performance_monitor("unit.stage", color_count=3) as stats:
            time.sleep(0.01)
        assert stats['duration_ms'] >= 5.0

    def test_records_failure_and_reraises(self):
        with pytest.raises(RuntimeError):
            with performance_monitor("unit.failing"):
                raise RuntimeError("stage failed")

        stats = get_metrics_collector().get_operation_stats("unit.failing")
        if stats:
            assert stats['error_count'] == 1

    def test_log_memory_usage(self):
        snapshot = log_memory_usage("unit")
        assert snapshot['stage'] == "unit"
        assert snapshot['memory_mb'] > 0


class TestExtractionTracker:
    """Test per-run summaries"""

    def test_finish_summarizes_stages(self):
        tracker = ExtractionTracker("ext-1", "density")
        tracker.histogram_size = 42
        with tracker.stage("histogram"):
            pass
        with tracker.stage("dbscan", 42):
            pass
        tracker.log_warning("something odd")

        metrics = tracker.finish(palette_size=3)
        assert metrics.extraction_id == "ext-1"
        assert metrics.strategy == "density"
        assert set(metrics.stage_durations_ms) == {"histogram", "dbscan"}
        assert metrics.histogram_size == 42
        assert metrics.palette_size == 3
        assert metrics.warnings == ["something odd"]
        assert metrics.total_duration_ms >= 0.0


class TestCancellation:
    """Test cooperative cancellation primitives"""

    def test_token(self):
        token = CancellationToken()
        assert not token.is_cancelled
        token.raise_if_cancelled()

        token.cancel()
        first_cancel = token.cancelled_at
        token.cancel()
        assert token.is_cancelled
        assert token.cancelled_at == first_cancel
        with pytest.raises(ExtractionCancelledError):
            token.raise_if_cancelled()

    @pytest.mark.asyncio
    async def test_checkpoint_counts_and_raises(self):
        context = ExtractionContext()
        await context.checkpoint()
        await context.checkpoint()
        assert context.checkpoints == 2

        context.token.cancel()
        with pytest.raises(ExtractionCancelledError):
            await context.checkpoint()

    def test_cadence_is_at_least_one(self):
        context = ExtractionContext(rows_per_yield=0, neighbors_per_yield=-5)
        assert context.rows_per_yield == 1
        assert context.neighbors_per_yield == 1

    def test_errors_share_base_class(self):
        assert issubclass(ExtractionCancelledError, ExtractionError)
        assert issubclass(ExtractionTimeoutError, ExtractionError)


class TestDeadline:
    """Test host deadlines"""

    @pytest.mark.asyncio
    async def test_deadline_expires(self):
        with pytest.raises(ExtractionTimeoutError):
            async with deadline(20, "unit"):
                await asyncio.sleep(1)

    @pytest.mark.asyncio
    async def test_no_deadline(self):
        async with deadline(None):
            await asyncio.sleep(0)

    @pytest.mark.asyncio
    async def test_fast_work_within_deadline(self):
        async with deadline(5000):
            await asyncio.sleep(0.001)


class TestConfig:
    """Test configuration validators"""

    def test_strategies(self):
        assert Config.validate_strategy("density")
        assert Config.validate_strategy("centroid")
        assert not Config.validate_strategy("octree")

    def test_ranges(self):
        assert Config.validate_target_colors(1)
        assert not Config.validate_target_colors(0)


class TestExtractionIds:
    """Test extraction id helpers"""

    def test_generated_ids_are_unique(self):
        ids = {generate_extraction_id() for _ in range(50)}
        assert len(ids) == 50

    def test_prefix_and_timestamp(self):
        extraction_id = generate_extraction_id("density")
        assert extraction_id.startswith("density-")
        timestamp = extract_timestamp_from_extraction_id(extraction_id)
        assert len(timestamp) == 14
        assert timestamp.isdigit()

    def test_malformed_id(self):
        assert extract_timestamp_from_extraction_id("garbage") == ""
        assert extract_timestamp_from_extraction_id("ext-notatime-1234") == ""


class TestStructuredLogger:
    """Test loguru configuration"""

    def test_extra_fields_reach_sink(self):
        sink = io.StringIO()
        structured = StructuredLogger()
        structured.add_sink(sink)
        try:
            structured.warning("palette ready", extra={"extraction_id": "ext-42"})
        finally:
            structured.remove_sink()

        output = sink.getvalue()
        assert "palette ready" in output
        assert "ext-42" in output
        assert "WARNING" in output

    def test_add_sink_replaces_only_its_own_handler(self):
        host_messages = []
        host_handler = logger.add(host_messages.append, format="{message}")
        structured = StructuredLogger()
        try:
            structured.add_sink(io.StringIO())
            structured.add_sink(io.StringIO())
            structured.info("after reconfiguring")
        finally:
            structured.remove_sink()
            logger.remove(host_handler)

        assert any("after reconfiguring" in m for m in host_messages)

    @pytest.mark.asyncio
    async def test_extraction_keeps_host_sinks(self, solid_bitmap):
        host_messages = []
        host_handler = logger.add(host_messages.append, format="{message}")
        try:
            await extract_palette(solid_bitmap, strategy="weighted")
            logger.info("host message after extraction")
        finally:
            logger.remove(host_handler)

        assert any("host message after extraction" in m for m in host_messages)
        assert any("Starting weighted extraction" in m for m in host_messages)

    def test_get_logger_is_singleton(self):
        assert get_logger() is get_logger()
