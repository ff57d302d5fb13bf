"""
Tests for the progress/result channel.

Covers monotonic progress, terminal events, error propagation, cooperative
cancellation, backpressure and host deadlines.
"""

import asyncio

import pytest

from palettekit.schemas import Stage
from palettekit.services.colors.progress import ProgressChannel, ProgressReporter
from palettekit.services.reliability import (
    CancellationToken,
    ExtractionContext,
    ExtractionTimeoutError,
    InvalidImageError,
)


async def counting_source(reporter, context, count, produced):
    for i in range(count):
        produced.append(i)
        yield reporter.event(i / float(count), Stage.CLUSTERING)
        await context.checkpoint()
    yield reporter.completed([(1, 2, 3)])


class TestProgressReporter:
    """Test event construction"""

    def test_progress_never_decreases(self):
        reporter = ProgressReporter("density")
        assert reporter.event(0.5, Stage.CLUSTERING).progress == 0.5
        assert reporter.event(0.3, Stage.CLUSTERING).progress == 0.5
        assert reporter.event(0.7, Stage.SCORING).progress == 0.7

    def test_only_terminal_event_reaches_one(self):
        reporter = ProgressReporter("weighted")
        event = reporter.event(1.0, Stage.SELECTING_COLORS)
        assert event.progress < 1.0
        assert not event.is_complete

        final = reporter.completed([(1, 2, 3)], cluster_count=2)
        assert final.progress == 1.0
        assert final.is_complete
        assert final.stage == Stage.COMPLETED
        assert final.colors == [(1, 2, 3)]
        assert final.cluster_count == 2

    def test_events_carry_strategy_and_id(self):
        reporter = ProgressReporter("centroid", "ext-20240101000000-abcd1234")
        event = reporter.event(0.1, Stage.KMEANS, [(1, 2, 3)], iteration=2)
        assert event.strategy == "centroid"
        assert event.extraction_id == "ext-20240101000000-abcd1234"
        assert event.iteration == 2


class TestProgressChannel:
    """Test channel delivery semantics"""

    @pytest.mark.asyncio
    async def test_delivers_events_in_order(self):
        reporter = ProgressReporter("density")
        context = ExtractionContext()
        channel = ProgressChannel(counting_source(reporter, context, 5, []), token=context.token)

        events = [event async for event in channel]
        assert len(events) == 6
        assert [e.progress for e in events] == [0.0, 0.2, 0.4, 0.6, 0.8, 1.0]
        assert events[-1].is_complete

    @pytest.mark.asyncio
    async def test_final_returns_terminal_event(self):
        reporter = ProgressReporter("density")
        context = ExtractionContext()
        channel = ProgressChannel(counting_source(reporter, context, 3, []), token=context.token)

        final = await channel.final()
        assert final.is_complete
        assert final.colors == [(1, 2, 3)]

    @pytest.mark.asyncio
    async def test_not_restartable(self):
        reporter = ProgressReporter("density")
        context = ExtractionContext()
        channel = ProgressChannel(counting_source(reporter, context, 2, []), token=context.token)

        assert len([event async for event in channel]) == 3
        assert [event async for event in channel] == []

    @pytest.mark.asyncio
    async def test_error_raised_after_queued_events(self):
        reporter = ProgressReporter("density")

        async def failing_source():
            yield reporter.event(0.1, Stage.PREPROCESSING)
            raise InvalidImageError("broken bitmap")

        received = []
        with pytest.raises(InvalidImageError):
            async for event in ProgressChannel(failing_source()):
                received.append(event)

        assert len(received) == 1
        assert not received[0].is_complete

    @pytest.mark.asyncio
    async def test_cancel_ends_stream_without_result(self):
        reporter = ProgressReporter("density")
        context = ExtractionContext()
        channel = ProgressChannel(counting_source(reporter, context, 100, []), token=context.token)

        first = await channel.__anext__()
        assert not first.is_complete

        channel.cancel()
        rest = [event async for event in channel]
        assert rest == []
        await channel.aclose()

    @pytest.mark.asyncio
    async def test_token_cancelled_before_start(self):
        reporter = ProgressReporter("density")
        token = CancellationToken()
        context = ExtractionContext(token=token)
        token.cancel()

        channel = ProgressChannel(counting_source(reporter, context, 5, []), token=token)
        assert await channel.final() is None

    @pytest.mark.asyncio
    async def test_cancel_through_token_mid_stream(self):
        reporter = ProgressReporter("density")
        token = CancellationToken()
        context = ExtractionContext(token=token)
        channel = ProgressChannel(counting_source(reporter, context, 100, []), token=token)

        events = []
        async for event in channel:
            events.append(event)
            if len(events) == 3:
                token.cancel()

        assert len(events) == 3
        assert not any(e.is_complete for e in events)
        assert token.cancelled_at is not None
        await channel.aclose()

    @pytest.mark.asyncio
    async def test_backpressure_bounds_producer(self):
        reporter = ProgressReporter("density")
        context = ExtractionContext()
        produced = []
        channel = ProgressChannel(counting_source(reporter, context, 50, produced),
                                  token=context.token, max_queue=1)

        await channel.__anext__()
        await asyncio.sleep(0.05)
        assert len(produced) <= 3

        remaining = [event async for event in channel]
        assert remaining[-1].is_complete
        assert len(produced) == 50

    @pytest.mark.asyncio
    async def test_deadline_surfaces_timeout(self):
        reporter = ProgressReporter("density")

        async def slow_source():
            yield reporter.event(0.1, Stage.PREPROCESSING)
            await asyncio.sleep(5)
            yield reporter.completed([])

        with pytest.raises(ExtractionTimeoutError):
            async for _ in ProgressChannel(slow_source(), deadline_ms=50):
                pass

    @pytest.mark.asyncio
    async def test_async_context_manager_closes_producer(self):
        reporter = ProgressReporter("density")
        context = ExtractionContext()
        async with ProgressChannel(counting_source(reporter, context, 100, []),
                                   token=context.token, max_queue=2) as channel:
            await channel.__anext__()

        assert channel.token.is_cancelled
        assert channel._task.done()
