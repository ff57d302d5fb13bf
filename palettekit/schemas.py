"""
palettekit Schemas
Pydantic models for extraction parameters and progress events.
"""
from enum import Enum
from typing import Any, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

from palettekit.config import config
from palettekit.services.colors.colorspace import rgb_to_hex


# ============================================================================
# PROGRESS EVENTS
# ============================================================================

class Stage(str, Enum):
    """Pipeline stage reported on each progress event."""
    PREPROCESSING = "preprocessing"
    BUILDING_HISTOGRAM = "building_histogram"
    CLUSTERING = "clustering"
    CALCULATING_IMPORTANCE = "calculating_importance"
    DETECTING_OUTLIERS = "detecting_outliers"
    MEDIAN_CUT = "median_cut"
    MERGING_COLORS = "merging_colors"
    SCORING = "scoring"
    SELECTING_COLORS = "selecting_colors"
    DEDUPLICATING = "deduplicating"
    KMEANS = "kmeans"
    CONVERGED = "converged"
    COMPLETED = "completed"


class ConvergenceInfo(BaseModel):
    """Centroid clustering convergence summary."""
    model_config = ConfigDict(frozen=True)

    converged_at: int = Field(..., ge=1, description="Iteration at which all centers settled")
    center_movements: List[float] = Field(..., description="Per-center movement on the last iteration")
    average_movement: float = Field(..., ge=0.0, description="Mean of center_movements")


class ProgressEvent(BaseModel):
    """One element of an extraction's progress stream."""
    model_config = ConfigDict(frozen=True)

    colors: List[Tuple[int, int, int]] = Field(
        default_factory=list,
        description="Partial (or, when complete, final) palette as RGB triples"
    )
    progress: float = Field(..., ge=0.0, le=1.0, description="Fraction of work done")
    stage: Stage = Field(..., description="Current pipeline stage")
    strategy: str = Field(..., description="Extraction strategy producing the stream")
    cluster_count: int = Field(0, ge=0, description="Clusters found so far")
    box_count: int = Field(0, ge=0, description="Median-cut boxes so far")
    outlier_count: int = Field(0, ge=0, description="Outlier / noise colors so far")
    iteration: int = Field(0, ge=0, description="Centroid clustering iteration")
    is_complete: bool = Field(False, description="True only on the terminal event")
    convergence: Optional[ConvergenceInfo] = Field(None, description="Centroid convergence details")
    extraction_id: str = Field("", description="Log correlation id of the run")

    @property
    def hex_colors(self) -> List[str]:
        return [rgb_to_hex(c) for c in self.colors]


# ============================================================================
# STRATEGY PARAMETERS
# ============================================================================

class StrategyParams(BaseModel):
    """Parameters shared by every strategy."""
    model_config = ConfigDict(extra="forbid")

    alpha_threshold: int = Field(
        config.ALPHA_THRESHOLD, ge=0, le=255,
        description="Pixels with alpha <= threshold are ignored"
    )
    max_edge: int = Field(
        config.HISTOGRAM_MAX_EDGE, ge=8, le=4096,
        description="Long-edge bound of the working resolution"
    )


class HistogramParams(StrategyParams):
    """Parameters of histogram-based strategies."""
    quantization_bits: int = Field(3, ge=0, le=7, description="Low bits cleared per channel")


class DensityParams(HistogramParams):
    """Density clustering (DBSCAN over Lab)."""
    quantization_bits: int = Field(5, ge=0, le=7, description="Low bits cleared per channel")
    eps: float = Field(15.0, gt=0.0, description="Neighbourhood radius in Delta-E")
    min_points: int = Field(2, ge=1, description="Neighbourhood size (self included) for a core point")
    outlier_fraction: float = Field(0.35, ge=0.0, le=1.0, description="Share of slots reserved for noise colors")
    rare_divisor: int = Field(200, ge=1, description="Buckets below max_count // divisor are dropped")
    dedupe_threshold: float = Field(8.0, ge=0.0, description="Final Delta-E dedupe threshold")


class MedianCutParams(HistogramParams):
    """Median-cut quantization with outlier pre-selection."""
    quantization_bits: int = Field(3, ge=0, le=7, description="Low bits cleared per channel")
    outlier_threshold: float = Field(10.0, ge=0.0, description="Min Delta-E to all others for an outlier")
    selection_threshold: float = Field(10.0, ge=0.0, description="Box colors must exceed this Delta-E to selected colors")
    merge_threshold: float = Field(8.0, ge=0.0, description="Colors closer than this are fused")
    box_buffer: int = Field(2, ge=0, description="Extra boxes cut beyond the remaining target")


class WeightedParams(HistogramParams):
    """Direct weighted-score selection."""
    quantization_bits: int = Field(2, ge=0, le=7, description="Low bits cleared per channel")
    selection_threshold: float = Field(12.0, ge=0.0, description="Greedy acceptance Delta-E")
    dedupe_threshold: float = Field(10.0, ge=0.0, description="Final Delta-E dedupe threshold")


class CentroidParams(StrategyParams):
    """k-means with k-means++ seeding in RGB."""
    model_config = ConfigDict(extra="forbid", arbitrary_types_allowed=True)

    max_edge: int = Field(
        config.CENTROID_MAX_EDGE, ge=8, le=4096,
        description="Long-edge bound of the working resolution"
    )
    max_iterations: int = Field(10, ge=1, description="Iteration cap")
    convergence_threshold: float = Field(1.0, ge=0.0, description="Max center movement (RGB units) at convergence")
    batch_size: int = Field(2048, ge=1, description="Samples per assignment batch")
    workers: int = Field(config.CENTROID_WORKERS, ge=1, description="Assignment thread pool size")
    random_state: Any = Field(None, description="int seed, numpy RandomState or None")
