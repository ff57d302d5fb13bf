"""
Weighted-score palette strategy.

The simplest selector: score every finely quantized histogram color once,
then walk them in importance order and greedily accept colors that are far
enough from everything already accepted.
"""

from typing import AsyncIterator, List

import numpy as np

from palettekit.schemas import ProgressEvent, Stage, WeightedParams
from palettekit.services.observability import ExtractionTracker
from palettekit.services.reliability import ExtractionContext

from .colorspace import RGB
from .dedupe import dedupe
from .progress import ProgressReporter
from .sampling import build_histogram
from .scoring import WEIGHTED_WEIGHTS, ScoredColorPoint, rank_by_importance, score_points_async


def greedy_select(ranked: List[ScoredColorPoint], target: int, threshold: float) -> List[RGB]:
    """Accept candidates in order whose Delta-E to every accepted color is >= ``threshold``."""
    accepted: List[RGB] = []
    accepted_lab: List[np.ndarray] = []

    for point in ranked:
        if len(accepted) >= target:
            break
        lab = point.lab.as_array()
        if accepted_lab:
            diff = np.array(accepted_lab) - lab
            if np.sqrt(np.sum(diff * diff, axis=1)).min() < threshold:
                continue
        accepted.append(point.rgb)
        accepted_lab.append(lab)

    return accepted


async def extract_weighted(bitmap,
                           target: int,
                           params: WeightedParams,
                           context: ExtractionContext,
                           reporter: ProgressReporter,
                           tracker: ExtractionTracker) -> AsyncIterator[ProgressEvent]:
    """Run weighted-score selection, yielding progress events."""
    yield reporter.event(0.1, Stage.PREPROCESSING)

    with tracker.stage("histogram"):
        histogram = await build_histogram(
            bitmap,
            alpha_threshold=params.alpha_threshold,
            quantization_bits=params.quantization_bits,
            max_edge=params.max_edge,
            context=context
        )
    tracker.histogram_size = len(histogram)

    if not histogram:
        tracker.log_warning("No opaque pixels; palette is empty")
        yield reporter.completed([])
        return

    yield reporter.event(0.3, Stage.BUILDING_HISTOGRAM)

    with tracker.stage("scoring", len(histogram)):
        ranked = rank_by_importance(await score_points_async(histogram.items(), WEIGHTED_WEIGHTS, context))
    yield reporter.event(0.6, Stage.SCORING)

    accepted = greedy_select(ranked, target, params.selection_threshold)
    yield reporter.event(0.8, Stage.SELECTING_COLORS, accepted)

    colors = dedupe(accepted, params.dedupe_threshold)
    yield reporter.event(0.95, Stage.DEDUPLICATING, colors)

    yield reporter.completed(colors)
