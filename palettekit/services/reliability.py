"""
palettekit Reliability & Cancellation
Error taxonomy, cooperative cancellation and host deadlines for extraction runs.
"""
import asyncio
import time
from contextlib import asynccontextmanager
from typing import Optional

from loguru import logger


class ExtractionError(Exception):
    """Base class for extraction failures."""
    pass


class InvalidImageError(ExtractionError):
    """Source bitmap has no decodable pixel representation."""
    pass


class AllocationFailureError(ExtractionError):
    """Working pixel buffer could not be obtained."""
    pass


class ExtractionCancelledError(ExtractionError):
    """Raised at a checkpoint once the host cancelled the run."""
    pass


class ExtractionTimeoutError(ExtractionError):
    """Host deadline exceeded."""
    pass


class CancellationToken:
    """Cooperative cancellation flag shared between host and extraction task."""

    def __init__(self):
        self._cancelled = False
        self.cancelled_at: Optional[float] = None

    def cancel(self):
        """Request cancellation; honoured at the next checkpoint."""
        if not self._cancelled:
            self._cancelled = True
            self.cancelled_at = time.time()

    @property
    def is_cancelled(self) -> bool:
        return self._cancelled

    def raise_if_cancelled(self):
        if self._cancelled:
            raise ExtractionCancelledError("Extraction cancelled by host")


class ExtractionContext:
    """
    Per-call context handed to every long-running loop.

    Owns the cancellation token and the yield cadence. ``checkpoint`` checks
    for cancellation and then hands control back to the event loop, so a host
    sharing the loop (a UI bridge, a server) stays responsive.
    """

    def __init__(self,
                 token: Optional[CancellationToken] = None,
                 extraction_id: str = "",
                 rows_per_yield: int = 10,
                 neighbors_per_yield: int = 50):
        self.token = token or CancellationToken()
        self.extraction_id = extraction_id
        self.rows_per_yield = max(1, rows_per_yield)
        self.neighbors_per_yield = max(1, neighbors_per_yield)
        self.checkpoints = 0

    async def checkpoint(self):
        """Cancellation check followed by a cooperative yield."""
        self.token.raise_if_cancelled()
        self.checkpoints += 1
        await asyncio.sleep(0)
        self.token.raise_if_cancelled()


@asynccontextmanager
async def deadline(timeout_ms: Optional[float], operation: str = "extraction"):
    """
    Bound an extraction by a host deadline.

    ``None`` disables the bound. Expiry is surfaced as ExtractionTimeoutError.
    """
    if timeout_ms is None:
        yield
        return

    timeout_s = timeout_ms / 1000.0
    try:
        async with asyncio.timeout(timeout_s):
            yield
    except asyncio.TimeoutError:
        logger.error(f"Timeout in {operation} after {timeout_ms:.0f}ms")
        raise ExtractionTimeoutError(f"Operation {operation} timed out after {timeout_ms:.0f}ms")
