"""
Palette Extraction API Orchestrator

Entry points for palette extraction. Validates the request, resolves the
strategy and its parameters, and wires the strategy run into a
ProgressChannel the host consumes.
"""

import asyncio
from typing import Any, AsyncIterator, Callable, Dict, Optional, Tuple, Type, Union

from pydantic import BaseModel

from palettekit.config import config
from palettekit.schemas import (
    CentroidParams,
    DensityParams,
    MedianCutParams,
    ProgressEvent,
    StrategyParams,
    WeightedParams,
)
from palettekit.services.observability import ExtractionTracker
from palettekit.services.reliability import CancellationToken, ExtractionContext
from palettekit.utils.ids import generate_extraction_id
from palettekit.utils.logging import get_logger

from .centroid import extract_centroid
from .density import extract_density
from .median_cut import extract_median_cut
from .progress import ProgressChannel, ProgressReporter
from .weighted import extract_weighted

StrategyRunner = Callable[..., AsyncIterator[ProgressEvent]]

STRATEGIES: Dict[str, Tuple[StrategyRunner, Type[StrategyParams]]] = {
    "density": (extract_density, DensityParams),
    "median_cut": (extract_median_cut, MedianCutParams),
    "weighted": (extract_weighted, WeightedParams),
    "centroid": (extract_centroid, CentroidParams),
}

ParamsInput = Union[StrategyParams, Dict[str, Any], None]


def resolve_params(strategy: str, params: ParamsInput) -> StrategyParams:
    """
    Build the parameter model for a strategy.

    Raises:
        ValueError: If ``params`` belongs to a different strategy
        pydantic.ValidationError: If a field is unknown or out of range
    """
    model = STRATEGIES[strategy][1]
    if params is None:
        return model()
    if isinstance(params, model):
        return params
    if isinstance(params, BaseModel):
        raise ValueError(f"{type(params).__name__} does not apply to strategy '{strategy}'; "
                         f"expected {model.__name__}")
    if isinstance(params, dict):
        return model(**params)
    raise ValueError(f"Unsupported params type {type(params).__name__}")


def validate_request(strategy: str, target_color_count: int):
    """Reject unknown strategies and out-of-range palette sizes before any work starts."""
    if not config.validate_strategy(strategy):
        raise ValueError(f"Unknown strategy '{strategy}'. "
                         f"Supported: {', '.join(config.SUPPORTED_STRATEGIES)}")
    if isinstance(target_color_count, bool) or not isinstance(target_color_count, int):
        raise ValueError(f"target_color_count must be an int, got {type(target_color_count).__name__}")
    if not config.validate_target_colors(target_color_count):
        raise ValueError(f"target_color_count must be between 1 and {config.MAX_TARGET_COLORS}, "
                         f"got {target_color_count}")


async def _run_strategy(strategy: str,
                        bitmap,
                        target: int,
                        params: StrategyParams,
                        context: ExtractionContext) -> AsyncIterator[ProgressEvent]:
    runner = STRATEGIES[strategy][0]
    reporter = ProgressReporter(strategy, context.extraction_id)
    tracker = ExtractionTracker(context.extraction_id, strategy)

    async for event in runner(bitmap, target, params, context, reporter, tracker):
        if event.is_complete:
            tracker.finish(len(event.colors))
        yield event


def extract_palette_stream(bitmap,
                           strategy: str = "density",
                           target_color_count: int = config.DEFAULT_TARGET_COLORS,
                           params: ParamsInput = None,
                           token: Optional[CancellationToken] = None,
                           deadline_ms: Optional[float] = None) -> ProgressChannel:
    """
    Start a palette extraction and return its progress channel.

    Args:
        bitmap: PIL image or uint8 array of shape (H, W), (H, W, 3) or (H, W, 4)
        strategy: One of ``config.SUPPORTED_STRATEGIES``
        target_color_count: Maximum palette size
        params: Strategy parameter model or a dict of its fields
        token: Cancellation token shared with the host
        deadline_ms: Optional host deadline for the whole run

    Returns:
        ProgressChannel yielding ProgressEvent values; the last one is complete

    Raises:
        ValueError: For an unknown strategy, bad palette size or mismatched params
        pydantic.ValidationError: For invalid parameter values
    """
    validate_request(strategy, target_color_count)
    resolved = resolve_params(strategy, params)

    extraction_id = generate_extraction_id()
    token = token or CancellationToken()
    context = ExtractionContext(
        token=token,
        extraction_id=extraction_id,
        rows_per_yield=config.ROWS_PER_YIELD,
        neighbors_per_yield=config.NEIGHBORS_PER_YIELD
    )

    get_logger().info(
        f"Starting {strategy} extraction",
        extra={"extraction_id": extraction_id, "target_color_count": target_color_count}
    )

    return ProgressChannel(
        _run_strategy(strategy, bitmap, target_color_count, resolved, context),
        token=token,
        max_queue=config.CHANNEL_MAX_QUEUE,
        deadline_ms=deadline_ms,
        extraction_id=extraction_id
    )


async def extract_palette(bitmap,
                          strategy: str = "density",
                          target_color_count: int = config.DEFAULT_TARGET_COLORS,
                          params: ParamsInput = None,
                          token: Optional[CancellationToken] = None,
                          deadline_ms: Optional[float] = None) -> Optional[ProgressEvent]:
    """
    Run an extraction to completion.

    Returns:
        The terminal ProgressEvent, or None if the run was cancelled
    """
    channel = extract_palette_stream(bitmap, strategy, target_color_count, params, token, deadline_ms)
    return await channel.final()


def extract_palette_sync(bitmap,
                         strategy: str = "density",
                         target_color_count: int = config.DEFAULT_TARGET_COLORS,
                         params: ParamsInput = None,
                         deadline_ms: Optional[float] = None) -> Optional[ProgressEvent]:
    """Blocking wrapper around :func:`extract_palette` on a fresh event loop."""
    return asyncio.run(extract_palette(bitmap, strategy, target_color_count, params,
                                       deadline_ms=deadline_ms))
