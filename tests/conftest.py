"""
Test configuration and fixtures for palettekit tests.
"""
import numpy as np
import pytest

from palettekit.services.observability import get_metrics_collector


@pytest.fixture
def solid_bitmap():
    """100x100 opaque image of a single color (128, 64, 32)."""
    image = np.zeros((100, 100, 3), dtype=np.uint8)
    image[:, :] = (128, 64, 32)
    return image


@pytest.fixture
def white_red_bitmap():
    """100x100 image: 90% white, bottom 10 rows pure red."""
    image = np.full((100, 100, 3), 255, dtype=np.uint8)
    image[90:, :] = (255, 0, 0)
    return image


@pytest.fixture
def mostly_white_bitmap():
    """100x10 image: 60% white, then navy, green, orange and grey bands of 10% each."""
    image = np.full((100, 10, 3), 248, dtype=np.uint8)
    image[60:70] = (0, 0, 128)
    image[70:80] = (0, 128, 0)
    image[80:90] = (248, 128, 0)
    image[90:] = (128, 128, 128)
    return image


@pytest.fixture
def transparent_bitmap():
    """50x50 RGBA image with every pixel fully transparent."""
    return np.zeros((50, 50, 4), dtype=np.uint8)


@pytest.fixture
def quadrant_bitmap():
    """120x120 image with four distinct quadrants: red, green, blue, yellow."""
    image = np.zeros((120, 120, 3), dtype=np.uint8)
    image[:60, :60] = (220, 30, 30)
    image[:60, 60:] = (30, 180, 60)
    image[60:, :60] = (30, 60, 200)
    image[60:, 60:] = (240, 220, 40)
    return image


@pytest.fixture
def gradient_bitmap():
    """64x64 red/green gradient over a constant blue channel: 4096 distinct colors."""
    ys, xs = np.indices((64, 64))
    image = np.zeros((64, 64, 3), dtype=np.uint8)
    image[..., 0] = xs * 4
    image[..., 1] = ys * 4
    image[..., 2] = 128
    return image


@pytest.fixture(autouse=True)
def reset_metrics():
    """Reset metrics before each test."""
    get_metrics_collector().reset()
