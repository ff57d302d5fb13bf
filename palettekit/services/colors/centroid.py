"""
Centroid-clustering palette strategy.

k-means in RGB space over raw (unquantized) opaque pixels, seeded with
k-means++. Each iteration fans the assignment step out over a thread pool:
every batch returns its own per-cluster (sum, count) accumulators, which the
owning task merges once all batches are back, so no worker ever writes to
shared state.
"""

import asyncio
from concurrent.futures import ThreadPoolExecutor
from typing import AsyncIterator, List, Tuple

import numpy as np
from loguru import logger
from sklearn.cluster import kmeans_plusplus
from sklearn.utils import check_random_state

from palettekit.schemas import CentroidParams, ConvergenceInfo, ProgressEvent, Stage
from palettekit.services.observability import ExtractionTracker
from palettekit.services.reliability import ExtractionContext

from .colorspace import RGB, hue_of
from .progress import ProgressReporter
from .sampling import sample_pixels


def seed_centers(samples: np.ndarray, k: int, random_state=None) -> np.ndarray:
    """
    k-means++ seeding: first center uniform, then each next center drawn with
    probability proportional to its squared distance to the nearest center.
    """
    rng = check_random_state(random_state)
    centers, _ = kmeans_plusplus(
        samples.astype(np.float64), n_clusters=k, random_state=rng, n_local_trials=1
    )
    return centers


def assign_batch(batch: np.ndarray, centers: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """
    Assign a batch of samples to their nearest center.

    Returns:
        (sums, counts): per-cluster coordinate sums (k, 3) and member counts (k,)
    """
    diff = batch[:, None, :] - centers[None, :, :]
    labels = np.argmin(np.einsum("ijk,ijk->ij", diff, diff), axis=1)

    sums = np.zeros_like(centers)
    np.add.at(sums, labels, batch)
    counts = np.bincount(labels, minlength=len(centers))
    return sums, counts


def update_centers(centers: np.ndarray, partials: List[Tuple[np.ndarray, np.ndarray]]) -> np.ndarray:
    """Merge batch accumulators into new centers; empty clusters keep their previous center."""
    sums = np.zeros_like(centers)
    counts = np.zeros(len(centers), dtype=np.int64)
    for batch_sums, batch_counts in partials:
        sums += batch_sums
        counts += batch_counts

    updated = centers.copy()
    populated = counts > 0
    updated[populated] = sums[populated] / counts[populated, None]
    return updated


def hue_sorted(centers: np.ndarray) -> List[RGB]:
    """Round centers to integer RGB and order them by HSV hue."""
    rounded = np.clip(np.rint(centers), 0, 255).astype(np.int64)
    colors = [tuple(int(c) for c in row) for row in rounded]
    return sorted(colors, key=hue_of)


async def extract_centroid(bitmap,
                           target: int,
                           params: CentroidParams,
                           context: ExtractionContext,
                           reporter: ProgressReporter,
                           tracker: ExtractionTracker) -> AsyncIterator[ProgressEvent]:
    """Run k-means, yielding one progress event per iteration."""
    log = logger.bind(extraction_id=context.extraction_id, strategy="centroid")

    yield reporter.event(0.05, Stage.PREPROCESSING)

    with tracker.stage("sampling"):
        samples = await sample_pixels(
            bitmap,
            alpha_threshold=params.alpha_threshold,
            max_edge=params.max_edge,
            context=context
        )

    if len(samples) == 0:
        tracker.log_warning("No opaque pixels; palette is empty")
        yield reporter.completed([])
        return

    distinct = len(np.unique(samples, axis=0))
    tracker.histogram_size = distinct
    k = min(target, distinct)
    data = samples.astype(np.float64)

    with tracker.stage("seeding", len(samples)):
        centers = seed_centers(data, k, params.random_state)
    log.debug(f"Seeded {k} centers from {len(samples)} samples ({distinct} distinct colors)")
    yield reporter.event(0.2, Stage.KMEANS, hue_sorted(centers), cluster_count=k)

    loop = asyncio.get_running_loop()
    convergence = None

    with ThreadPoolExecutor(max_workers=params.workers) as pool:
        for iteration in range(1, params.max_iterations + 1):
            futures = [
                loop.run_in_executor(pool, assign_batch, data[start:start + params.batch_size], centers)
                for start in range(0, len(data), params.batch_size)
            ]
            partials = await asyncio.gather(*futures)

            updated = update_centers(centers, partials)
            movements = np.sqrt(np.sum((updated - centers) ** 2, axis=1))
            centers = updated
            await context.checkpoint()

            progress = 0.2 + 0.7 * iteration / float(params.max_iterations)
            yield reporter.event(progress, Stage.KMEANS, hue_sorted(centers),
                                 cluster_count=k, iteration=iteration)

            if movements.max() <= params.convergence_threshold:
                convergence = ConvergenceInfo(
                    converged_at=iteration,
                    center_movements=[float(m) for m in movements],
                    average_movement=float(movements.mean())
                )
                log.debug(f"k-means converged at iteration {iteration} "
                          f"(average movement {convergence.average_movement:.3f})")
                yield reporter.event(0.95, Stage.CONVERGED, hue_sorted(centers),
                                     cluster_count=k, iteration=iteration, convergence=convergence)
                break
        else:
            tracker.log_warning(f"k-means stopped at {params.max_iterations} iterations without converging")

    colors = hue_sorted(centers)
    yield reporter.completed(colors, cluster_count=k,
                             iteration=convergence.converged_at if convergence else params.max_iterations,
                             convergence=convergence)
