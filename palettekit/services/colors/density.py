"""
Density-clustering palette strategy.

DBSCAN over the Lab coordinates of a coarsely quantized histogram. Dense
regions become clusters that each contribute their most important member;
sparse colors become noise, and the most striking noise colors are
deliberately kept as accents ("outliers"), so a small red logo on a white
page survives even though it covers a tenth of the pixels.
"""

from typing import AsyncIterator, Dict, List, Optional, Tuple

import numpy as np
from loguru import logger

from palettekit.schemas import DensityParams, ProgressEvent, Stage
from palettekit.services.observability import ExtractionTracker
from palettekit.services.reliability import ExtractionContext

from .colorspace import RGB
from .dedupe import dedupe
from .progress import ProgressReporter
from .sampling import build_histogram, prune_rare
from .scoring import DENSITY_WEIGHTS, ScoredColorPoint, rank_by_importance, score_points_async

UNCLASSIFIED = -1
NOISE = -2


def region_query(lab: np.ndarray, index: int, eps: float) -> np.ndarray:
    """Indices of every point within ``eps`` Delta-E of ``lab[index]``, itself included."""
    diff = lab - lab[index]
    distances = np.sqrt(np.sum(diff * diff, axis=1))
    return np.flatnonzero(distances <= eps)


async def dbscan(lab: np.ndarray, eps: float, min_points: int,
                 context: Optional[ExtractionContext] = None) -> Tuple[np.ndarray, int]:
    """
    Label points by density.

    Args:
        lab: (N, 3) Lab coordinates
        eps: Neighbourhood radius in Delta-E
        min_points: Neighbourhood size (self included) that makes a core point
        context: Cancellation context; checkpoints every
            ``context.neighbors_per_yield`` expanded neighbours and after each
            outer point

    Returns:
        (labels, cluster_count) where labels[i] is a cluster id >= 0 or NOISE
    """
    context = context or ExtractionContext()
    n = len(lab)
    labels = np.full(n, UNCLASSIFIED, dtype=np.int64)
    visited = np.zeros(n, dtype=bool)
    cluster_id = 0

    for i in range(n):
        if visited[i]:
            continue
        visited[i] = True

        neighbours = region_query(lab, i, eps)
        if len(neighbours) < min_points:
            labels[i] = NOISE
            await context.checkpoint()
            continue

        labels[i] = cluster_id
        seeds: List[int] = [int(j) for j in neighbours]
        queued = set(seeds)
        expanded = 0

        while expanded < len(seeds):
            j = seeds[expanded]
            expanded += 1

            if not visited[j]:
                visited[j] = True
                reachable = region_query(lab, j, eps)
                if len(reachable) >= min_points:
                    for k in reachable.tolist():
                        if k not in queued:
                            queued.add(k)
                            seeds.append(k)

            if labels[j] == UNCLASSIFIED or labels[j] == NOISE:
                labels[j] = cluster_id

            if expanded % context.neighbors_per_yield == 0:
                await context.checkpoint()

        cluster_id += 1
        await context.checkpoint()

    return labels, cluster_id


def select_colors(points: List[ScoredColorPoint], labels: np.ndarray, target: int,
                  outlier_fraction: float) -> Tuple[List[RGB], int, int]:
    """
    Pick outliers first, then the best member of each cluster.

    Returns:
        (colors, cluster_count, noise_count)
    """
    clusters: Dict[int, List[ScoredColorPoint]] = {}
    noise: List[ScoredColorPoint] = []
    for point, label in zip(points, labels.tolist()):
        if label == NOISE:
            noise.append(point)
        elif label >= 0:
            clusters.setdefault(label, []).append(point)

    noise = rank_by_importance(noise)
    best_members = rank_by_importance(rank_by_importance(members)[0] for members in clusters.values())

    outlier_target = min(target, max(1, int(outlier_fraction * target)))
    selected = [p.rgb for p in noise[:outlier_target]]

    for point in best_members:
        if len(selected) >= target:
            break
        selected.append(point.rgb)

    # Clusters exhausted: fill the remaining slots with the next-best noise colors
    for point in noise[outlier_target:]:
        if len(selected) >= target:
            break
        selected.append(point.rgb)

    return selected, len(clusters), len(noise)


async def extract_density(bitmap,
                          target: int,
                          params: DensityParams,
                          context: ExtractionContext,
                          reporter: ProgressReporter,
                          tracker: ExtractionTracker) -> AsyncIterator[ProgressEvent]:
    """Run density clustering, yielding progress events."""
    log = logger.bind(extraction_id=context.extraction_id, strategy="density")

    yield reporter.event(0.05, Stage.PREPROCESSING)

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

    histogram = prune_rare(histogram, params.rare_divisor)
    yield reporter.event(0.2, Stage.BUILDING_HISTOGRAM)

    with tracker.stage("scoring", len(histogram)):
        points = await score_points_async(histogram.items(), DENSITY_WEIGHTS, context)
    yield reporter.event(0.3, Stage.CALCULATING_IMPORTANCE)

    lab = np.array([[p.lab.L, p.lab.a, p.lab.b] for p in points], dtype=np.float64)
    yield reporter.event(0.35, Stage.CLUSTERING)
    with tracker.stage("dbscan", len(points)):
        labels, cluster_count = await dbscan(lab, params.eps, params.min_points, context)

    noise_count = int(np.sum(labels == NOISE))
    log.debug(f"DBSCAN found {cluster_count} clusters and {noise_count} noise colors "
              f"among {len(points)} points")
    yield reporter.event(0.7, Stage.CLUSTERING, cluster_count=cluster_count, outlier_count=noise_count)

    with tracker.stage("selection", len(points)):
        selected, cluster_count, noise_count = select_colors(points, labels, target, params.outlier_fraction)
    yield reporter.event(0.85, Stage.SELECTING_COLORS, selected,
                         cluster_count=cluster_count, outlier_count=noise_count)

    colors = dedupe(selected, params.dedupe_threshold)
    yield reporter.event(0.95, Stage.DEDUPLICATING, colors,
                         cluster_count=cluster_count, outlier_count=noise_count)

    yield reporter.completed(colors, cluster_count=cluster_count, outlier_count=noise_count)
