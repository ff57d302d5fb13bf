"""
palettekit

Extracts small, visually representative color palettes from raster images.
"""

from palettekit.schemas import (
    CentroidParams,
    ConvergenceInfo,
    DensityParams,
    MedianCutParams,
    ProgressEvent,
    Stage,
    WeightedParams,
)
from palettekit.services.colors.extract_api import (
    extract_palette,
    extract_palette_stream,
    extract_palette_sync,
)
from palettekit.services.reliability import (
    AllocationFailureError,
    CancellationToken,
    ExtractionCancelledError,
    ExtractionError,
    ExtractionTimeoutError,
    InvalidImageError,
)

__version__ = "1.0.0"

__all__ = [
    'extract_palette',
    'extract_palette_stream',
    'extract_palette_sync',
    'CancellationToken',
    'ProgressEvent',
    'Stage',
    'ConvergenceInfo',
    'DensityParams',
    'MedianCutParams',
    'WeightedParams',
    'CentroidParams',
    'ExtractionError',
    'InvalidImageError',
    'AllocationFailureError',
    'ExtractionCancelledError',
    'ExtractionTimeoutError',
]
