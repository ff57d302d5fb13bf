"""
Progress/result channel for extraction runs.

A strategy run is an async generator of ProgressEvent values. The channel
drives it on its own task and hands events to the host through a bounded
queue: the producer suspends when the host falls behind, and the host reads
at its own pace with ``async for``. The terminal event always carries
``progress == 1.0`` and ``is_complete``; errors end the stream by raising from
the iterator; cancellation ends it silently with no final result.
"""

import asyncio
from typing import AsyncIterator, Iterable, Optional

from loguru import logger

from palettekit.config import config
from palettekit.schemas import ProgressEvent, Stage
from palettekit.services.reliability import (
    CancellationToken,
    ExtractionCancelledError,
    deadline,
)

from .colorspace import RGB


class ProgressReporter:
    """Builds events for one run, keeping progress non-decreasing."""

    def __init__(self, strategy: str, extraction_id: str = ""):
        self.strategy = strategy
        self.extraction_id = extraction_id
        self._last_progress = 0.0

    @property
    def last_progress(self) -> float:
        return self._last_progress

    def event(self, progress: float, stage: Stage, colors: Iterable[RGB] = (), **counters) -> ProgressEvent:
        progress = min(1.0, max(self._last_progress, progress))
        if progress >= 1.0 and stage != Stage.COMPLETED:
            # Only the terminal event may report full progress
            progress = max(self._last_progress, 0.99)
        self._last_progress = progress
        return ProgressEvent(
            colors=[tuple(int(c) for c in color) for color in colors],
            progress=progress,
            stage=stage,
            strategy=self.strategy,
            extraction_id=self.extraction_id,
            is_complete=False,
            **counters
        )

    def completed(self, colors: Iterable[RGB], **counters) -> ProgressEvent:
        self._last_progress = 1.0
        return ProgressEvent(
            colors=[tuple(int(c) for c in color) for color in colors],
            progress=1.0,
            stage=Stage.COMPLETED,
            strategy=self.strategy,
            extraction_id=self.extraction_id,
            is_complete=True,
            **counters
        )


class _End:
    pass


class _Failure:
    def __init__(self, error: BaseException):
        self.error = error


_END = _End()


class ProgressChannel:
    """
    Finite, ordered, non-restartable stream of progress events.

    Usage::

        async for event in channel:
            ...
    """

    def __init__(self,
                 source: AsyncIterator[ProgressEvent],
                 token: Optional[CancellationToken] = None,
                 max_queue: int = config.CHANNEL_MAX_QUEUE,
                 deadline_ms: Optional[float] = None,
                 extraction_id: str = ""):
        self._source = source
        self.token = token or CancellationToken()
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=max(1, max_queue))
        self._deadline_ms = deadline_ms
        self._task: Optional[asyncio.Task] = None
        self._finished = False
        self._log = logger.bind(extraction_id=extraction_id)

    async def _produce(self):
        outcome = _END
        try:
            async with deadline(self._deadline_ms):
                async for event in self._source:
                    await self._queue.put(event)
        except ExtractionCancelledError:
            self._log.info("Extraction cancelled; stream closed without result")
        except Exception as e:
            self._log.error(f"Extraction failed: {type(e).__name__}: {e}")
            outcome = _Failure(e)
        await self._queue.put(outcome)

    def _ensure_started(self):
        if self._task is None:
            self._task = asyncio.get_running_loop().create_task(self._produce())

    def __aiter__(self):
        return self

    async def __anext__(self) -> ProgressEvent:
        if self.token.is_cancelled:
            self.cancel()
            self._finished = True
        if self._finished:
            raise StopAsyncIteration

        self._ensure_started()
        item = await self._queue.get()

        if self.token.is_cancelled:
            self.cancel()
        if self.token.is_cancelled or isinstance(item, _End):
            self._finished = True
            raise StopAsyncIteration
        if isinstance(item, _Failure):
            self._finished = True
            raise item.error

        if item.is_complete:
            self._finished = True
            # Let the producer observe the source's exhaustion
            await self._drain_task()
        return item

    def cancel(self):
        """Cancel cooperatively; no further events are delivered."""
        self.token.cancel()
        # Unblock a producer parked on a full queue so it reaches its next checkpoint
        while not self._queue.empty():
            self._queue.get_nowait()

    async def _drain_task(self):
        while True:
            item = await self._queue.get()
            if isinstance(item, _Failure):
                raise item.error
            if isinstance(item, _End):
                break
        await self._task

    async def aclose(self):
        """Cancel and wait for the producer to wind down."""
        self._finished = True
        if self._task is None:
            return
        while not self._task.done():
            self.cancel()
            await asyncio.wait({self._task}, timeout=0.01)
        self._task.result()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.aclose()

    async def final(self) -> Optional[ProgressEvent]:
        """Drain the stream and return its terminal event (None if cancelled)."""
        last = None
        async for event in self:
            last = event
        if last is not None and last.is_complete:
            return last
        return None
