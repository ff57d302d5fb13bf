"""
Median-cut quantization palette strategy.

Two phases: the most perceptually isolated colors are taken first as
outliers, then a modified median cut (MMCQ) carves the histogram into boxes
whose population-weighted averages fill the remaining slots. Candidates are
rescored, near-duplicates merged in Lab, and the result backfilled from the
histogram when merging left it short.
"""

from collections import Counter
from typing import AsyncIterator, List, Optional, Tuple

import numpy as np
from loguru import logger

from palettekit.schemas import MedianCutParams, ProgressEvent, Stage
from palettekit.services.observability import ExtractionTracker
from palettekit.services.reliability import ExtractionContext

from .colorspace import LabColor, RGB, rgb_array_to_lab, to_lab
from .dedupe import merge_similar
from .progress import ProgressReporter
from .sampling import build_histogram
from .scoring import MEDIAN_CUT_WEIGHTS, nearest_distances, rank_by_importance, score_points

AXIS_NAMES = ("red", "green", "blue")


class ColorBox:
    """An axis-aligned RGB region owning a subset of the histogram."""

    def __init__(self, keys: np.ndarray, counts: np.ndarray):
        self.keys = keys
        self.counts = counts
        if len(keys):
            self.mins = keys.min(axis=0)
            self.maxs = keys.max(axis=0)
        else:
            self.mins = np.zeros(3, dtype=np.int64)
            self.maxs = np.zeros(3, dtype=np.int64)

    @classmethod
    def from_histogram(cls, histogram: Counter) -> "ColorBox":
        keys = np.array(list(histogram.keys()), dtype=np.int64).reshape(-1, 3)
        counts = np.array(list(histogram.values()), dtype=np.int64)
        return cls(keys, counts)

    @property
    def r_min(self) -> int:
        return int(self.mins[0])

    @property
    def r_max(self) -> int:
        return int(self.maxs[0])

    @property
    def g_min(self) -> int:
        return int(self.mins[1])

    @property
    def g_max(self) -> int:
        return int(self.maxs[1])

    @property
    def b_min(self) -> int:
        return int(self.mins[2])

    @property
    def b_max(self) -> int:
        return int(self.maxs[2])

    @property
    def volume(self) -> int:
        return int(np.prod(self.maxs - self.mins + 1))

    @property
    def population(self) -> int:
        return int(self.counts.sum())

    @property
    def can_split(self) -> bool:
        return self.population > 1 and bool(np.any(self.maxs > self.mins))

    @property
    def longest_axis(self) -> int:
        """0, 1 or 2; ties go to red, then green."""
        return int(np.argmax(self.maxs - self.mins))

    def split(self) -> Optional[Tuple["ColorBox", "ColorBox"]]:
        """
        Cut at the population-weighted median of the longest axis.

        The split value is the first key (in axis order) at which the
        cumulative count reaches ``population // 2``; the left child owns
        ``[min, split]`` and the right child ``[split + 1, max]``. When a
        dominant color at the top of the axis pulls the median onto the
        axis maximum, the cut moves down to the next lower populated value
        so both children keep pixels.

        Returns:
            The two children, or None when the box cannot be split or a
            child would be empty
        """
        if not self.can_split:
            return None

        axis = self.longest_axis
        order = np.argsort(self.keys[:, axis], kind="stable")
        values = self.keys[order, axis]
        cumulative = np.cumsum(self.counts[order])

        median_index = int(np.searchsorted(cumulative, self.population // 2, side="left"))
        split_value = int(values[min(median_index, len(values) - 1)])
        axis_max = int(self.maxs[axis])
        if split_value >= axis_max:
            below = values[values < axis_max]
            if len(below) == 0:
                return None
            split_value = int(below[-1])

        left_mask = self.keys[:, axis] <= split_value
        if left_mask.all() or not left_mask.any():
            return None

        left = ColorBox(self.keys[left_mask], self.counts[left_mask])
        right = ColorBox(self.keys[~left_mask], self.counts[~left_mask])
        return left, right

    def average_color(self) -> RGB:
        """Population-weighted average color (integer division per channel)."""
        total = self.population
        if total <= 0:
            return tuple(int(c) for c in (self.mins + self.maxs) // 2)
        sums = (self.keys * self.counts[:, None]).sum(axis=0)
        return tuple(int(s) // total for s in sums)

    def __repr__(self):
        return (f"ColorBox(r={self.r_min}-{self.r_max}, g={self.g_min}-{self.g_max}, "
                f"b={self.b_min}-{self.b_max}, population={self.population})")


def detect_outliers(histogram: Counter, threshold: float) -> List[Tuple[RGB, int, float]]:
    """
    Colors whose minimum Delta-E to every other color exceeds ``threshold``.

    Histograms of three or fewer colors are all outliers.

    Returns:
        (rgb, frequency, uniqueness) triples, most unique first
    """
    if not histogram:
        return []

    entries = list(histogram.items())
    rgb = np.array([color for color, _ in entries], dtype=np.int64).reshape(-1, 3)
    uniqueness = nearest_distances(rgb_array_to_lab(rgb), rgb, fallback=float("inf"))

    small_set = len(entries) <= 3
    outliers = [
        (tuple(color), int(count), float(u))
        for (color, count), u in zip(entries, uniqueness)
        if small_set or u > threshold
    ]
    return sorted(outliers, key=lambda o: (-o[2], -o[1], o[0]))


async def iter_median_cut(histogram: Counter, box_target: int,
                          context: Optional[ExtractionContext] = None) -> AsyncIterator[List[ColorBox]]:
    """
    Split the histogram into at most ``box_target`` boxes, yielding the box list after every split.

    Each round splits the splittable box with the largest
    ``population * volume``; stops when the target is met or no box is left
    to split. A box whose split fails is set aside and the next candidate is
    tried.
    """
    context = context or ExtractionContext()
    if not histogram:
        return

    boxes = [ColorBox.from_histogram(histogram)]
    unsplittable = set()

    while len(boxes) < box_target:
        candidates = [(i, box) for i, box in enumerate(boxes)
                      if box.can_split and id(box) not in unsplittable]
        if not candidates:
            break

        index, box = max(candidates, key=lambda c: c[1].population * c[1].volume)
        children = box.split()
        if children is None:
            logger.debug(f"Skipping {box!r}: split would leave an empty child")
            unsplittable.add(id(box))
            continue

        logger.debug(f"Split {box!r} on {AXIS_NAMES[box.longest_axis]}")
        boxes.pop(index)
        boxes.extend(children)
        yield boxes
        await context.checkpoint()


async def median_cut(histogram: Counter, box_target: int,
                     context: Optional[ExtractionContext] = None) -> List[ColorBox]:
    """Populated boxes left by :func:`iter_median_cut`."""
    if not histogram:
        return []
    boxes = [ColorBox.from_histogram(histogram)]
    async for boxes in iter_median_cut(histogram, box_target, context):
        pass
    return [box for box in boxes if box.population > 0]


def _min_distance(lab: LabColor, selected: List[LabColor]) -> float:
    if not selected:
        return float("inf")
    return min(lab.delta_e(other) for other in selected)


def select_box_colors(candidates: List[Tuple[LabColor, int]], boxes: List[ColorBox],
                      target: int, threshold: float) -> List[Tuple[LabColor, int]]:
    """Append box averages lying more than ``threshold`` from every selected color, up to ``target``."""
    selected = list(candidates)
    selected_labs = [lab for lab, _ in selected]
    for box in boxes:
        if len(selected) >= target:
            break
        lab = to_lab(*box.average_color())
        if _min_distance(lab, selected_labs) > threshold:
            selected.append((lab, box.population))
            selected_labs.append(lab)
    return selected


def merge_candidates(candidates: List[Tuple[LabColor, int]], target: int,
                     merge_threshold: float) -> List[LabColor]:
    """Rank, fuse colors closer than ``merge_threshold``, rescore the survivors and keep the top ``target``."""
    scored = rank_by_importance(score_points(
        [(lab.rgb, frequency) for lab, frequency in candidates], MEDIAN_CUT_WEIGHTS))
    merged = merge_similar([(p.lab, p.frequency) for p in scored], merge_threshold)
    rescored = rank_by_importance(score_points(
        [(lab.rgb, frequency) for lab, frequency in merged], MEDIAN_CUT_WEIGHTS))
    return [p.lab for p in rescored[:target]]


def backfill(selected: List[LabColor], histogram: Counter, target: int,
             threshold: float) -> List[LabColor]:
    """Top up with the most frequent histogram colors at least ``threshold`` from every selected color."""
    filled = list(selected)
    for color, _ in sorted(histogram.items(), key=lambda item: (-item[1], item[0])):
        if len(filled) >= target:
            break
        if any(lab.rgb == tuple(color) for lab in filled):
            continue
        lab = to_lab(*color)
        if _min_distance(lab, filled) >= threshold:
            filled.append(lab)
    return filled


async def extract_median_cut(bitmap,
                             target: int,
                             params: MedianCutParams,
                             context: ExtractionContext,
                             reporter: ProgressReporter,
                             tracker: ExtractionTracker) -> AsyncIterator[ProgressEvent]:
    """Run outlier pre-selection plus median cut, yielding progress events."""
    log = logger.bind(extraction_id=context.extraction_id, strategy="median_cut")

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

    yield reporter.event(0.3, Stage.BUILDING_HISTOGRAM, box_count=1)

    # Phase 1: isolated colors first, up to half the palette
    with tracker.stage("outliers", len(histogram)):
        outliers = detect_outliers(histogram, params.outlier_threshold)
    outliers = outliers[:target // 2]
    candidates: List[Tuple[LabColor, int]] = [(to_lab(*rgb), frequency) for rgb, frequency, _ in outliers]
    yield reporter.event(0.3, Stage.DETECTING_OUTLIERS, [lab.rgb for lab, _ in candidates],
                         outlier_count=len(candidates))

    # Phase 2: median cut for the dominant colors
    remaining = target - len(candidates)
    box_count = 0
    if remaining > 0:
        box_target = remaining + params.box_buffer
        boxes = [ColorBox.from_histogram(histogram)]
        async for boxes in iter_median_cut(histogram, box_target, context):
            yield reporter.event(0.3 + 0.4 * len(boxes) / float(box_target), Stage.MEDIAN_CUT,
                                 box_count=len(boxes), outlier_count=len(candidates))
        boxes = [box for box in boxes if box.population > 0]
        box_count = len(boxes)

        candidates = select_box_colors(candidates, boxes, target, params.selection_threshold)

    log.debug(f"{len(outliers)} outliers + {len(candidates) - len(outliers)} box colors "
              f"from {box_count} boxes")

    # Rescore, fuse near-duplicates, keep the most important
    yield reporter.event(0.8, Stage.MERGING_COLORS, [lab.rgb for lab, _ in candidates],
                         box_count=box_count, outlier_count=len(outliers))
    with tracker.stage("merge", len(candidates)):
        final_labs = merge_candidates(candidates, target, params.merge_threshold)

    # Merging can leave the palette short
    if len(final_labs) < target:
        final_labs = backfill(final_labs, histogram, target, params.merge_threshold)

    colors = [lab.rgb for lab in final_labs]
    yield reporter.event(0.9, Stage.SELECTING_COLORS, colors,
                         box_count=box_count, outlier_count=len(outliers))
    yield reporter.completed(colors, box_count=box_count, outlier_count=len(outliers))
