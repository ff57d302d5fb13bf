"""
Perceptual deduplication and merging of candidate colors.
"""

from typing import List, Sequence, Tuple

import numpy as np
from loguru import logger

from .colorspace import LabColor, RGB, lab_to_rgb, rgb_array_to_lab, to_lab


def dedupe(colors: Sequence[RGB], threshold: float) -> List[RGB]:
    """
    Order-preserving greedy filter.

    A color is kept iff its Delta-E to every previously kept color is
    >= ``threshold``, so every pair of kept colors is at least ``threshold``
    apart.
    """
    if not colors:
        return []

    lab = rgb_array_to_lab(np.array(colors, dtype=np.float64))
    kept_idx: List[int] = []

    for i in range(len(colors)):
        if kept_idx:
            diff = lab[kept_idx] - lab[i]
            if np.sqrt(np.sum(diff * diff, axis=1)).min() < threshold:
                logger.debug(f"Rejected similar color {tuple(colors[i])}")
                continue
        kept_idx.append(i)

    kept = [tuple(int(c) for c in colors[i]) for i in kept_idx]
    logger.debug(f"Deduplication (threshold {threshold}): {len(colors)} -> {len(kept)} colors")
    return kept


def merge_similar(candidates: Sequence[Tuple[LabColor, int]], threshold: float) -> List[Tuple[LabColor, int]]:
    """
    Fuse near-identical colors.

    Walking in input order, the first unprocessed color absorbs every later
    unprocessed color closer than ``threshold``; each group becomes one color
    at the frequency-weighted Lab average, carrying the summed frequency.
    """
    merged: List[Tuple[LabColor, int]] = []
    processed = set()

    for i, (lab, frequency) in enumerate(candidates):
        if i in processed:
            continue
        processed.add(i)
        group = [(lab, frequency)]

        for j in range(i + 1, len(candidates)):
            if j in processed:
                continue
            other, other_frequency = candidates[j]
            if lab.delta_e(other) < threshold:
                group.append((other, other_frequency))
                processed.add(j)

        if len(group) == 1:
            merged.append(group[0])
        else:
            merged.append(_weighted_average(group))

    logger.debug(f"Merging (threshold {threshold}): {len(candidates)} -> {len(merged)} colors")
    return merged


def _weighted_average(group: Sequence[Tuple[LabColor, int]]) -> Tuple[LabColor, int]:
    total = sum(frequency for _, frequency in group)
    weights = [max(frequency, 0) for _, frequency in group] if total > 0 else [1] * len(group)
    norm = float(sum(weights))

    L = sum(lab.L * w for (lab, _), w in zip(group, weights)) / norm
    a = sum(lab.a * w for (lab, _), w in zip(group, weights)) / norm
    b = sum(lab.b * w for (lab, _), w in zip(group, weights)) / norm

    # Re-derive Lab from the rounded RGB so the merged color is self-consistent
    return to_lab(*lab_to_rgb(L, a, b)), total
