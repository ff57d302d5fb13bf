"""
Unit tests for image sampling.

Tests bitmap validation, working-resolution sizing, quantization and
histogram construction.
"""

from collections import Counter

import numpy as np
import pytest
from PIL import Image

from palettekit.services.colors.sampling import (
    build_histogram,
    prepare_bitmap,
    prune_rare,
    quantize,
    sample_pixels,
    working_size,
)
from palettekit.services.reliability import (
    AllocationFailureError,
    CancellationToken,
    ExtractionCancelledError,
    ExtractionContext,
    InvalidImageError,
)


class TestWorkingSize:
    """Test aspect-preserving downsizing"""

    def test_never_upscales(self):
        assert working_size(40, 30, 150) == (40, 30)
        assert working_size(150, 150, 150) == (150, 150)

    def test_bounds_long_edge(self):
        assert working_size(300, 150, 150) == (150, 75)
        assert working_size(100, 1000, 100) == (10, 100)

    def test_thin_images_keep_one_pixel(self):
        assert working_size(1000, 1, 100) == (100, 1)


class TestPrepareBitmap:
    """Test bitmap validation and normalization"""

    def test_rgb_array_becomes_opaque_rgba(self, solid_bitmap):
        buffer = prepare_bitmap(solid_bitmap)
        assert buffer.shape == (100, 100, 4)
        assert buffer.dtype == np.uint8
        assert (buffer[..., 3] == 255).all()
        assert tuple(buffer[0, 0, :3]) == (128, 64, 32)

    def test_large_bitmap_is_downsized(self):
        image = np.zeros((600, 300, 3), dtype=np.uint8)
        buffer = prepare_bitmap(image, max_edge=150)
        assert buffer.shape == (150, 75, 4)

    def test_pil_image_accepted(self):
        image = Image.new("RGBA", (20, 10), (1, 2, 3, 200))
        buffer = prepare_bitmap(image)
        assert buffer.shape == (10, 20, 4)
        assert tuple(buffer[5, 5]) == (1, 2, 3, 200)

    def test_grayscale_array_accepted(self):
        buffer = prepare_bitmap(np.full((8, 8), 77, dtype=np.uint8))
        assert tuple(buffer[0, 0]) == (77, 77, 77, 255)

    def test_resize_keeps_source_colors(self, white_red_bitmap):
        """Nearest-neighbour downsizing never invents blended colors"""
        big = np.repeat(np.repeat(white_red_bitmap, 4, axis=0), 4, axis=1)
        buffer = prepare_bitmap(big, max_edge=150)
        colors = {tuple(c) for c in buffer[..., :3].reshape(-1, 3).tolist()}
        assert colors <= {(255, 255, 255), (255, 0, 0)}

    @pytest.mark.parametrize("bitmap", [
        None,
        "not an image",
        np.zeros((0, 10, 3), dtype=np.uint8),
        np.zeros((10, 10, 3), dtype=np.float32),
        np.zeros((10, 10, 2), dtype=np.uint8),
        np.zeros((2, 2, 2, 3), dtype=np.uint8),
    ])
    def test_invalid_inputs_raise(self, bitmap):
        with pytest.raises(InvalidImageError):
            prepare_bitmap(bitmap)


class TestQuantize:
    """Test low-bit clearing"""

    def test_clears_low_bits(self):
        pixels = np.array([[255, 129, 7]], dtype=np.uint8)
        assert quantize(pixels, 3).tolist() == [[248, 128, 0]]
        assert quantize(pixels, 5).tolist() == [[224, 128, 0]]

    def test_zero_bits_is_identity(self):
        pixels = np.array([[255, 129, 7]], dtype=np.uint8)
        assert quantize(pixels, 0).tolist() == [[255, 129, 7]]


class TestBuildHistogram:
    """Test histogram construction"""

    @pytest.mark.asyncio
    async def test_solid_image_single_bucket(self, solid_bitmap):
        histogram = await build_histogram(solid_bitmap, quantization_bits=3)
        assert histogram == Counter({(128, 64, 32): 10000})

    @pytest.mark.asyncio
    async def test_counts_sum_to_opaque_pixels(self, white_red_bitmap):
        histogram = await build_histogram(white_red_bitmap, quantization_bits=5)
        assert sum(histogram.values()) == 10000
        assert histogram[(224, 224, 224)] == 9000
        assert histogram[(224, 0, 0)] == 1000

    @pytest.mark.asyncio
    async def test_transparent_pixels_ignored(self, transparent_bitmap):
        histogram = await build_histogram(transparent_bitmap)
        assert histogram == Counter()

    @pytest.mark.asyncio
    async def test_alpha_threshold_is_exclusive(self):
        image = np.zeros((4, 4, 4), dtype=np.uint8)
        image[..., :3] = 200
        image[:2, :, 3] = 125
        image[2:, :, 3] = 126
        histogram = await build_histogram(image, alpha_threshold=125, quantization_bits=0)
        assert sum(histogram.values()) == 8

    @pytest.mark.asyncio
    async def test_deterministic(self, gradient_bitmap):
        first = await build_histogram(gradient_bitmap, quantization_bits=3)
        second = await build_histogram(gradient_bitmap, quantization_bits=3)
        assert first == second
        assert len(first) == 32 * 32

    @pytest.mark.asyncio
    async def test_checkpoints_every_chunk_of_rows(self, gradient_bitmap):
        context = ExtractionContext(rows_per_yield=10)
        await build_histogram(gradient_bitmap, context=context)
        assert context.checkpoints == 7

    @pytest.mark.asyncio
    async def test_cancelled_token_stops_scan(self, gradient_bitmap):
        token = CancellationToken()
        token.cancel()
        with pytest.raises(ExtractionCancelledError):
            await build_histogram(gradient_bitmap, context=ExtractionContext(token=token))


class TestSamplePixels:
    """Test raw pixel sampling"""

    @pytest.mark.asyncio
    async def test_returns_opaque_pixels(self, white_red_bitmap):
        samples = await sample_pixels(white_red_bitmap, max_edge=100)
        assert samples.shape == (10000, 3)
        assert samples.dtype == np.uint8

    @pytest.mark.asyncio
    async def test_transparent_gives_empty(self, transparent_bitmap):
        samples = await sample_pixels(transparent_bitmap)
        assert samples.shape == (0, 3)


class TestAllocationFailure:
    """Test working-buffer allocation failures"""

    @staticmethod
    def _out_of_memory(*args, **kwargs):
        raise MemoryError("simulated")

    @pytest.mark.asyncio
    async def test_histogram_buffer(self, solid_bitmap, monkeypatch):
        monkeypatch.setattr(Image.Image, "convert", self._out_of_memory)
        with pytest.raises(AllocationFailureError):
            await build_histogram(solid_bitmap)

    @pytest.mark.asyncio
    async def test_sample_buffer(self, solid_bitmap, monkeypatch):
        monkeypatch.setattr(np, "concatenate", self._out_of_memory)
        with pytest.raises(AllocationFailureError):
            await sample_pixels(solid_bitmap)

    def test_is_not_an_invalid_image(self, solid_bitmap, monkeypatch):
        monkeypatch.setattr(Image.Image, "convert", self._out_of_memory)
        with pytest.raises(AllocationFailureError) as excinfo:
            prepare_bitmap(solid_bitmap)
        assert not isinstance(excinfo.value, InvalidImageError)


class TestPruneRare:
    """Test rare bucket removal"""

    def test_drops_buckets_below_share_of_max(self):
        histogram = Counter({(0, 0, 0): 1000, (8, 8, 8): 5, (16, 16, 16): 4})
        pruned = prune_rare(histogram, divisor=200)
        assert set(pruned) == {(0, 0, 0), (8, 8, 8)}

    def test_small_histograms_keep_everything(self):
        histogram = Counter({(0, 0, 0): 3, (8, 8, 8): 1})
        assert prune_rare(histogram) == histogram

    def test_empty(self):
        assert prune_rare(Counter()) == Counter()
