"""
Color space conversion for palette extraction.

sRGB (D65) <-> CIE Lab conversion and CIE76 Delta-E. Scalar helpers work on
single colors; the ``*_array`` variants are the vectorized forms used by the
O(n^2) passes (uniqueness scoring, neighbourhood queries).
"""

import math
from dataclasses import dataclass
from typing import Tuple

import cv2
import numpy as np

RGB = Tuple[int, int, int]

# D65 reference white
XN, YN, ZN = 0.95047, 1.00000, 1.08883

# CIE Lab piecewise constants
DELTA = 6.0 / 29.0
EPSILON = DELTA ** 3                # ~0.008856
LINEAR_SLOPE = 1.0 / (3.0 * DELTA ** 2)  # ~7.787
LINEAR_OFFSET = 4.0 / 29.0          # 16/116

_RGB_TO_XYZ = np.array([
    [0.4124564, 0.3575761, 0.1804375],
    [0.2126729, 0.7151522, 0.0721750],
    [0.0193339, 0.1191920, 0.9503041],
])

_XYZ_TO_RGB = np.array([
    [3.2404542, -1.5371385, -0.4985314],
    [-0.9692660, 1.8760108, 0.0415560],
    [0.0556434, -0.2040259, 1.0572252],
])

_WHITE = np.array([XN, YN, ZN])


@dataclass(frozen=True)
class LabColor:
    """CIE Lab color with the integer RGB it was derived from."""
    L: float
    a: float
    b: float
    rgb: RGB

    @property
    def saturation(self) -> float:
        """Chroma: distance from the neutral axis."""
        return math.sqrt(self.a * self.a + self.b * self.b)

    @property
    def contrast(self) -> float:
        """Distance from neutral gray (L=50, a=b=0), roughly in [0, 1]."""
        return (abs(self.L - 50.0) / 50.0 + self.saturation / 80.0) / 2.0

    def delta_e(self, other: "LabColor") -> float:
        return delta_e(self, other)

    def as_array(self) -> np.ndarray:
        return np.array([self.L, self.a, self.b], dtype=np.float64)


def _srgb_to_linear(c: float) -> float:
    return c / 12.92 if c <= 0.04045 else ((c + 0.055) / 1.055) ** 2.4


def _linear_to_srgb(c: float) -> float:
    return 12.92 * c if c <= 0.0031308 else 1.055 * (c ** (1.0 / 2.4)) - 0.055


def _lab_f(t: float) -> float:
    return t ** (1.0 / 3.0) if t > EPSILON else t * LINEAR_SLOPE + LINEAR_OFFSET


def _lab_f_inv(f: float) -> float:
    return f ** 3 if f > DELTA else (f - LINEAR_OFFSET) / LINEAR_SLOPE


def to_lab(r: int, g: int, b: int) -> LabColor:
    """Convert an 8-bit sRGB triple to Lab."""
    rl = _srgb_to_linear(r / 255.0)
    gl = _srgb_to_linear(g / 255.0)
    bl = _srgb_to_linear(b / 255.0)

    x = (rl * 0.4124564 + gl * 0.3575761 + bl * 0.1804375) / XN
    y = (rl * 0.2126729 + gl * 0.7151522 + bl * 0.0721750) / YN
    z = (rl * 0.0193339 + gl * 0.1191920 + bl * 0.9503041) / ZN

    fx, fy, fz = _lab_f(x), _lab_f(y), _lab_f(z)
    return LabColor(
        L=116.0 * fy - 16.0,
        a=500.0 * (fx - fy),
        b=200.0 * (fy - fz),
        rgb=(int(r), int(g), int(b)),
    )


def lab_to_rgb(L: float, a: float, b: float) -> RGB:
    """Convert Lab coordinates to an 8-bit sRGB triple (rounded, clamped)."""
    fy = (L + 16.0) / 116.0
    fx = a / 500.0 + fy
    fz = fy - b / 200.0

    x = _lab_f_inv(fx) * XN
    y = _lab_f_inv(fy) * YN
    z = _lab_f_inv(fz) * ZN

    rl = x * 3.2404542 - y * 1.5371385 - z * 0.4985314
    gl = -x * 0.9692660 + y * 1.8760108 + z * 0.0415560
    bl = x * 0.0556434 - y * 0.2040259 + z * 1.0572252

    def encode(c: float) -> int:
        c = min(1.0, max(0.0, c))
        return int(round(_linear_to_srgb(c) * 255.0))

    return encode(rl), encode(gl), encode(bl)


def to_rgb(lab: LabColor) -> RGB:
    """Convert a LabColor back to 8-bit sRGB from its Lab coordinates."""
    return lab_to_rgb(lab.L, lab.a, lab.b)


def delta_e(first: LabColor, second: LabColor) -> float:
    """CIE76 Delta-E: Euclidean distance in Lab."""
    dl = first.L - second.L
    da = first.a - second.a
    db = first.b - second.b
    return math.sqrt(dl * dl + da * da + db * db)


def rgb_array_to_lab(rgb: np.ndarray) -> np.ndarray:
    """Convert an (N, 3) RGB array (0-255) to an (N, 3) Lab array."""
    rgb_norm = np.asarray(rgb, dtype=np.float64).reshape(-1, 3) / 255.0
    linear = np.where(rgb_norm > 0.04045, ((rgb_norm + 0.055) / 1.055) ** 2.4, rgb_norm / 12.92)

    xyz = linear @ _RGB_TO_XYZ.T / _WHITE
    f = np.where(xyz > EPSILON, np.cbrt(xyz), xyz * LINEAR_SLOPE + LINEAR_OFFSET)

    L = 116.0 * f[:, 1] - 16.0
    a = 500.0 * (f[:, 0] - f[:, 1])
    b = 200.0 * (f[:, 1] - f[:, 2])
    return np.column_stack([L, a, b])


def lab_array_to_rgb(lab: np.ndarray) -> np.ndarray:
    """Convert an (N, 3) Lab array to (N, 3) uint8 RGB."""
    lab = np.asarray(lab, dtype=np.float64).reshape(-1, 3)
    fy = (lab[:, 0] + 16.0) / 116.0
    fx = lab[:, 1] / 500.0 + fy
    fz = fy - lab[:, 2] / 200.0

    f = np.column_stack([fx, fy, fz])
    xyz = np.where(f > DELTA, f ** 3, (f - LINEAR_OFFSET) / LINEAR_SLOPE) * _WHITE

    linear = np.clip(xyz @ _XYZ_TO_RGB.T, 0.0, 1.0)
    srgb = np.where(linear > 0.0031308, 1.055 * np.power(linear, 1.0 / 2.4) - 0.055, 12.92 * linear)
    return np.clip(np.round(srgb * 255.0), 0, 255).astype(np.uint8)


def pairwise_delta_e(lab: np.ndarray) -> np.ndarray:
    """Full (N, N) CIE76 distance matrix for an (N, 3) Lab array."""
    lab = np.asarray(lab, dtype=np.float64).reshape(-1, 3)
    diff = lab[:, None, :] - lab[None, :, :]
    return np.sqrt(np.sum(diff * diff, axis=2))


def rgb_to_hex(rgb: RGB) -> str:
    """Convert an RGB triple to #RRGGBB."""
    r, g, b = [int(x) for x in rgb]
    return f"#{r:02X}{g:02X}{b:02X}"


def hex_to_rgb(hex_color: str) -> RGB:
    """Convert #RRGGBB to an RGB triple."""
    hex_color = hex_color.lstrip('#')
    return tuple(int(hex_color[i:i+2], 16) for i in (0, 2, 4))


def hue_of(rgb: RGB) -> float:
    """HSV hue in degrees [0, 360)."""
    pixel = np.array([[rgb]], dtype=np.float32) / 255.0
    hue = float(cv2.cvtColor(pixel, cv2.COLOR_RGB2HSV)[0, 0, 0])
    return hue % 360.0
