"""
Image sampling for palette extraction.

Turns a host-decoded bitmap into either a quantized color histogram
(color -> pixel count) or a flat array of opaque pixels. The bitmap is first
bounded to a small working resolution, since palette extraction gains nothing
from full-resolution sampling.
"""

from collections import Counter
from typing import Optional, Tuple

import numpy as np
from PIL import Image
from loguru import logger

from palettekit.config import config
from palettekit.services.observability import log_memory_usage
from palettekit.services.reliability import (
    AllocationFailureError,
    ExtractionContext,
    InvalidImageError,
)


def working_size(width: int, height: int, max_edge: int) -> Tuple[int, int]:
    """Aspect-preserving size whose long edge is at most ``max_edge``. Never upscales."""
    long_edge = max(width, height)
    if long_edge <= max_edge:
        return width, height
    scale = max_edge / float(long_edge)
    return max(1, int(round(width * scale))), max(1, int(round(height * scale)))


def _to_pil(bitmap) -> Image.Image:
    if bitmap is None:
        raise InvalidImageError("No bitmap supplied")

    if isinstance(bitmap, Image.Image):
        return bitmap

    if isinstance(bitmap, np.ndarray):
        if bitmap.size == 0:
            raise InvalidImageError("Bitmap has no pixels")
        if bitmap.dtype != np.uint8:
            raise InvalidImageError(f"Unsupported pixel dtype {bitmap.dtype}; expected uint8")
        # (H, W) gray, (H, W, 3) RGB or (H, W, 4) RGBA
        if bitmap.ndim == 2 or (bitmap.ndim == 3 and bitmap.shape[2] in (3, 4)):
            return Image.fromarray(np.ascontiguousarray(bitmap))
        raise InvalidImageError(f"Unsupported bitmap shape {bitmap.shape}")

    raise InvalidImageError(f"Unsupported bitmap type {type(bitmap).__name__}")


def prepare_bitmap(bitmap, max_edge: int = config.HISTOGRAM_MAX_EDGE) -> np.ndarray:
    """
    Decode-check, downsize and normalize a bitmap to an RGBA uint8 array.

    Args:
        bitmap: PIL image or uint8 array of shape (H, W), (H, W, 3) or (H, W, 4)
        max_edge: Long-edge bound of the working resolution

    Returns:
        (h, w, 4) uint8 array

    Raises:
        InvalidImageError: If the input has no decodable pixel buffer
        AllocationFailureError: If the working buffer cannot be obtained
    """
    image = _to_pil(bitmap)

    width, height = image.size
    if width == 0 or height == 0:
        raise InvalidImageError("Bitmap has zero width or height")

    try:
        rgba = image.convert("RGBA")
        target = working_size(width, height, max_edge)
        if target != (width, height):
            # Nearest neighbour keeps source colors; interpolation would invent edge blends
            rgba = rgba.resize(target, Image.Resampling.NEAREST)
            logger.debug(f"Downsized bitmap {width}x{height} -> {target[0]}x{target[1]}")
        buffer = np.asarray(rgba, dtype=np.uint8)
    except MemoryError as e:
        raise AllocationFailureError(f"Could not allocate working pixel buffer: {e}")
    except (OSError, ValueError) as e:
        raise InvalidImageError(f"Bitmap could not be decoded: {e}")

    if buffer.ndim != 3 or buffer.shape[2] != 4:
        raise InvalidImageError(f"Decoded buffer has unexpected shape {buffer.shape}")

    return buffer


def quantize(pixels: np.ndarray, quantization_bits: int) -> np.ndarray:
    """Clear the low ``quantization_bits`` bits of every channel."""
    if quantization_bits <= 0:
        return pixels
    mask = np.uint8((0xFF << quantization_bits) & 0xFF)
    return pixels & mask


def _opaque_rows(rgba_rows: np.ndarray, alpha_threshold: int) -> np.ndarray:
    flat = rgba_rows.reshape(-1, 4)
    return flat[flat[:, 3] > alpha_threshold, :3]


async def build_histogram(bitmap,
                          alpha_threshold: int = config.ALPHA_THRESHOLD,
                          quantization_bits: int = 3,
                          max_edge: int = config.HISTOGRAM_MAX_EDGE,
                          context: Optional[ExtractionContext] = None) -> Counter:
    """
    Build a quantized color histogram from a bitmap.

    Pixels with alpha <= ``alpha_threshold`` do not contribute. The scan
    checkpoints every ``context.rows_per_yield`` rows.

    Returns:
        Counter mapping quantized (r, g, b) to pixel count; empty when every
        pixel is transparent
    """
    context = context or ExtractionContext()
    buffer = prepare_bitmap(bitmap, max_edge)
    height = buffer.shape[0]
    log_memory_usage("histogram_buffer_ready")

    histogram: Counter = Counter()
    step = context.rows_per_yield

    for y0 in range(0, height, step):
        opaque = _opaque_rows(buffer[y0:y0 + step], alpha_threshold)
        if len(opaque):
            keys, counts = np.unique(quantize(opaque, quantization_bits), axis=0, return_counts=True)
            for key, count in zip(keys.tolist(), counts.tolist()):
                histogram[tuple(key)] += count
        await context.checkpoint()

    logger.debug(f"Histogram built: {len(histogram)} buckets, "
                 f"{sum(histogram.values())} opaque pixels, {quantization_bits} bits cleared")
    return histogram


async def sample_pixels(bitmap,
                        alpha_threshold: int = config.ALPHA_THRESHOLD,
                        max_edge: int = config.CENTROID_MAX_EDGE,
                        context: Optional[ExtractionContext] = None) -> np.ndarray:
    """
    Collect the opaque pixels of a bitmap at working resolution.

    Returns:
        (N, 3) uint8 array of raw (unquantized) RGB samples
    """
    context = context or ExtractionContext()
    buffer = prepare_bitmap(bitmap, max_edge)
    height = buffer.shape[0]

    chunks = []
    step = context.rows_per_yield
    for y0 in range(0, height, step):
        opaque = _opaque_rows(buffer[y0:y0 + step], alpha_threshold)
        if len(opaque):
            chunks.append(opaque)
        await context.checkpoint()

    if not chunks:
        return np.empty((0, 3), dtype=np.uint8)

    try:
        samples = np.concatenate(chunks, axis=0)
    except MemoryError as e:
        raise AllocationFailureError(f"Could not allocate sample buffer: {e}")

    logger.debug(f"Sampled {len(samples)} opaque pixels")
    return samples


def prune_rare(histogram: Counter, divisor: int = 200) -> Counter:
    """Drop buckets rarer than ``max(1, max_count // divisor)`` pixels."""
    if not histogram:
        return Counter()
    min_frequency = max(1, max(histogram.values()) // divisor)
    return Counter({key: count for key, count in histogram.items() if count >= min_frequency})
