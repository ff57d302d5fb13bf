"""
Visual importance scoring.

Every candidate color is scored against the complete candidate set: its
uniqueness is the distance to its nearest neighbour, so no score is final
until the whole set has been seen. Scoring is a pure function from histogram
entries to a new list of immutable ScoredColorPoint values.
"""

import math
from dataclasses import dataclass
from typing import Iterable, List, Tuple

import numpy as np
from loguru import logger

from palettekit.services.reliability import ExtractionContext

from .colorspace import LabColor, RGB, rgb_array_to_lab


@dataclass(frozen=True)
class ScoringWeights:
    """
    Weight mix for visual importance.

    Uniqueness always dominates; frequency is a tie-breaker, normalized by
    ``log(frequency + 1) / frequency_scale``.
    """
    uniqueness: float
    contrast: float
    saturation: float
    frequency: float
    frequency_scale: float
    uniqueness_scale: float = 30.0
    saturation_scale: float = 80.0
    lone_uniqueness: float = 100.0


# Density clustering: outlier-friendly, frequency nearly ignored
DENSITY_WEIGHTS = ScoringWeights(uniqueness=0.50, contrast=0.30, saturation=0.20,
                                 frequency=0.05, frequency_scale=15.0)

# Median cut: boxes already reflect population, frequency gets a real share
MEDIAN_CUT_WEIGHTS = ScoringWeights(uniqueness=0.50, contrast=0.15, saturation=0.15,
                                    frequency=0.20, frequency_scale=10.0)

# Weighted score: 60/15/25 uniqueness/frequency/contrast
WEIGHTED_WEIGHTS = ScoringWeights(uniqueness=0.60, contrast=0.25, saturation=0.0,
                                  frequency=0.15, frequency_scale=12.0)


@dataclass(frozen=True)
class ScoredColorPoint:
    """A histogram color annotated with its uniqueness and importance."""
    lab: LabColor
    frequency: int
    uniqueness: float
    visual_importance: float

    @property
    def rgb(self) -> RGB:
        return self.lab.rgb


def visual_importance(lab: LabColor, frequency: int, uniqueness: float, weights: ScoringWeights) -> float:
    """Weighted blend of uniqueness, contrast, saturation and frequency."""
    normalized_uniqueness = min(uniqueness / weights.uniqueness_scale, 1.0)
    normalized_saturation = min(lab.saturation / weights.saturation_scale, 1.0)
    normalized_frequency = math.log(frequency + 1) / weights.frequency_scale

    return (normalized_uniqueness * weights.uniqueness +
            lab.contrast * weights.contrast +
            normalized_saturation * weights.saturation +
            normalized_frequency * weights.frequency)


def _color_codes(rgb: np.ndarray) -> np.ndarray:
    return (rgb[:, 0].astype(np.int64) << 16) | (rgb[:, 1].astype(np.int64) << 8) | rgb[:, 2].astype(np.int64)


def _block_minimum(lab: np.ndarray, codes: np.ndarray, start: int, stop: int) -> np.ndarray:
    distances = pairwise_block(lab[start:stop], lab)
    distances[codes[start:stop, None] == codes[None, :]] = np.inf
    return distances.min(axis=1)


def nearest_distances(lab: np.ndarray, rgb: np.ndarray, fallback: float,
                      block_size: int = 256) -> np.ndarray:
    """
    Minimum Delta-E from every color to any other color of the set.

    Entries with identical RGB are not counted as "other". A color with no
    other entry gets ``fallback``. Rows are processed in blocks so large
    fine-quantized histograms never materialize the full N x N matrix.
    """
    n = len(lab)
    codes = _color_codes(rgb)
    nearest = np.empty(n, dtype=np.float64)
    for start in range(0, n, block_size):
        stop = min(start + block_size, n)
        nearest[start:stop] = _block_minimum(lab, codes, start, stop)
    nearest[~np.isfinite(nearest)] = fallback
    return nearest


async def nearest_distances_async(lab: np.ndarray, rgb: np.ndarray, fallback: float,
                                  context: ExtractionContext, block_size: int = 256) -> np.ndarray:
    """:func:`nearest_distances` with a cancellation checkpoint after every block."""
    n = len(lab)
    codes = _color_codes(rgb)
    nearest = np.empty(n, dtype=np.float64)
    for start in range(0, n, block_size):
        stop = min(start + block_size, n)
        nearest[start:stop] = _block_minimum(lab, codes, start, stop)
        await context.checkpoint()
    nearest[~np.isfinite(nearest)] = fallback
    return nearest


def pairwise_block(rows: np.ndarray, lab: np.ndarray) -> np.ndarray:
    """Delta-E between every row of ``rows`` and every row of ``lab``."""
    if len(lab) <= 2048:
        diff = rows[:, None, :] - lab[None, :, :]
        return np.sqrt(np.sum(diff * diff, axis=2))
    squared = (np.sum(rows * rows, axis=1)[:, None] + np.sum(lab * lab, axis=1)[None, :]
               - 2.0 * rows @ lab.T)
    return np.sqrt(np.maximum(squared, 0.0))


def _entry_arrays(entries: List[Tuple[RGB, int]]) -> Tuple[np.ndarray, np.ndarray]:
    rgb = np.array([color for color, _ in entries], dtype=np.int64).reshape(-1, 3)
    return rgb, rgb_array_to_lab(rgb)


def _build_points(entries: List[Tuple[RGB, int]], lab: np.ndarray, uniqueness: np.ndarray,
                  weights: ScoringWeights) -> List[ScoredColorPoint]:
    points = []
    for i, (color, frequency) in enumerate(entries):
        lab_color = LabColor(L=float(lab[i, 0]), a=float(lab[i, 1]), b=float(lab[i, 2]),
                             rgb=tuple(int(c) for c in color))
        u = float(uniqueness[i])
        points.append(ScoredColorPoint(
            lab=lab_color,
            frequency=int(frequency),
            uniqueness=u,
            visual_importance=visual_importance(lab_color, int(frequency), u, weights)
        ))

    logger.debug(f"Scored {len(points)} colors "
                 f"(max importance {max(p.visual_importance for p in points):.3f})")
    return points


def score_points(entries: Iterable[Tuple[RGB, int]], weights: ScoringWeights) -> List[ScoredColorPoint]:
    """
    Score a complete candidate set.

    Args:
        entries: (rgb, frequency) pairs, e.g. ``histogram.items()``
        weights: Strategy weight mix

    Returns:
        One ScoredColorPoint per entry, in input order
    """
    entries = list(entries)
    if not entries:
        return []
    rgb, lab = _entry_arrays(entries)
    return _build_points(entries, lab, nearest_distances(lab, rgb, weights.lone_uniqueness), weights)


async def score_points_async(entries: Iterable[Tuple[RGB, int]], weights: ScoringWeights,
                             context: ExtractionContext) -> List[ScoredColorPoint]:
    """Same result as :func:`score_points`; the uniqueness scan can be cancelled between blocks."""
    entries = list(entries)
    if not entries:
        return []
    rgb, lab = _entry_arrays(entries)
    uniqueness = await nearest_distances_async(lab, rgb, weights.lone_uniqueness, context)
    return _build_points(entries, lab, uniqueness, weights)


def rank_by_importance(points: Iterable[ScoredColorPoint]) -> List[ScoredColorPoint]:
    """Sort descending by importance; ties broken by frequency, then RGB for determinism."""
    return sorted(points, key=lambda p: (-p.visual_importance, -p.frequency, p.rgb))
